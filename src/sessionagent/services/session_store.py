import asyncio
import json
import logging
import time
import weakref
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Sequence, TypeVar

from redis.exceptions import RedisError

from ..models import Message, MessageRole, Part, SessionState, part_from_dict, part_to_dict
from ..settings import get_settings
from .redis import RedisCrudService, get_redis_crud_service

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATE_FIELD = "state"


def collapse_consecutive_user(messages: List[Message]) -> List[Message]:
    """Keep only the last of any run of consecutive user messages."""
    collapsed: List[Message] = []
    for msg in messages:
        if collapsed and msg.role == "user" and collapsed[-1].role == "user":
            collapsed[-1] = msg
        else:
            collapsed.append(msg)
    return collapsed


class SessionStore:
    """Durable message log and state record for one session."""

    def __init__(
        self,
        redis_crud: RedisCrudService,
        session_id: str,
        lock: asyncio.Lock,
        key_prefix: str = "session:",
        max_history: int = 200,
    ) -> None:
        self._redis = redis_crud
        self._lock = lock
        self.session_id = session_id
        self.max_history = max_history
        base = f"{key_prefix}{session_id}"
        self._messages_key = f"{base}:messages"
        self._seq_key = f"{base}:seq"
        self._kv_key = f"{base}:kv"

    def _default_state(self) -> SessionState:
        return SessionState(session_id=self.session_id, last_activity_at=time.time())

    async def load(self) -> SessionState:
        """Return the stored state, or a fresh default. Never raises."""
        raw = await self._redis.hget(self._kv_key, STATE_FIELD)
        if raw is None:
            return self._default_state()
        try:
            state = SessionState.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Invalid state data for %s: %s", self.session_id, e)
            return self._default_state()
        if not state.session_id:
            return self._default_state()
        return state

    async def save_state(self, state: SessionState) -> None:
        """Overwrite the state record."""
        await self._redis.hset(self._kv_key, STATE_FIELD, json.dumps(state.to_dict()))

    async def append_message(
        self, role: MessageRole, parts: Sequence[Part], timestamp: float | None = None
    ) -> Message:
        """Append one message to the log. Write errors propagate."""
        ts = time.time() if timestamp is None else timestamp
        msg_id = await self._redis.incr(self._seq_key)
        # Redis orders equal scores by member bytes; the padded key keeps that in id order.
        member = json.dumps(
            {
                "key": f"{msg_id:020d}",
                "id": msg_id,
                "role": role,
                "parts": [part_to_dict(p) for p in parts],
                "timestamp": ts,
            }
        )
        await self._redis.zadd(self._messages_key, member, ts)
        logger.debug("Session %s: appended %s message #%d", self.session_id, role, msg_id)
        return Message(role=role, parts=list(parts), timestamp=ts)

    async def load_history(self, limit: int | None = None) -> List[Message]:
        """Return up to ``limit`` most recent messages, oldest first."""
        capped = self.max_history if limit is None else max(0, min(limit, self.max_history))
        if capped == 0:
            return []
        rows = await self._redis.zrevrange(self._messages_key, 0, capped - 1)

        decoded: List[tuple[float, int, Message]] = []
        for raw in rows:
            try:
                data: Dict[str, Any] = json.loads(raw)
                role = "model" if data.get("role") == "model" else "user"
                parts = [part_from_dict(p) for p in data.get("parts", [])]
                ts = float(data["timestamp"])
                decoded.append((ts, int(data.get("id", 0)), Message(role=role, parts=parts, timestamp=ts)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable message in %s: %s", self.session_id, e)

        decoded.sort(key=lambda item: (item[0], item[1]))
        return collapse_consecutive_user([m for _, _, m in decoded])

    async def message_count(self) -> int:
        return await self._redis.zcard(self._messages_key)

    async def clear_all(self) -> None:
        """Drop the log, the state record and the message id counter atomically."""
        await self._redis.delete(self._messages_key, self._kv_key, self._seq_key)
        logger.info("Session %s cleared", self.session_id)

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        """Hold the session lock without touching the state."""
        async with self._lock:
            yield

    async def with_transaction(self, fn: Callable[[SessionState], Awaitable[T]]) -> T:
        """Run ``fn(state)`` while no other transaction on this session runs.

        The state is saved after ``fn`` returns or raises; work done before a
        failure is kept.
        """
        async with self._lock:
            state = await self.load()
            try:
                result = await fn(state)
            except Exception:
                try:
                    await self.save_state(state)
                except RedisError as e:
                    logger.error("Session %s: state save after failure failed: %s", self.session_id, e)
                raise
            await self.save_state(state)
            return result

    async def status(self) -> Dict[str, Any]:
        """Summary for the status endpoint. Never raises."""
        raw = await self._redis.hget(self._kv_key, STATE_FIELD)
        last_activity = None
        if raw is not None:
            try:
                last_activity = json.loads(raw).get("lastActivityAt")
            except (json.JSONDecodeError, AttributeError) as e:
                logger.warning("Invalid state data for %s: %s", self.session_id, e)
        count = await self.message_count()
        return {
            "sessionId": self.session_id,
            "status": "active" if count > 0 else "idle",
            "lastActivity": last_activity,
            "messageCount": count,
        }


class SessionStoreFactory:
    """Hands out per-session stores that share one Redis connection and a lock per session."""

    def __init__(
        self,
        redis_crud: RedisCrudService,
        key_prefix: str = "session:",
        max_history: int = 200,
    ) -> None:
        self._redis = redis_crud
        self._key_prefix = key_prefix
        self._max_history = max_history
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def get(self, session_id: str) -> SessionStore:
        return SessionStore(
            redis_crud=self._redis,
            session_id=session_id,
            lock=self._lock_for(session_id),
            key_prefix=self._key_prefix,
            max_history=self._max_history,
        )

    async def connect(self) -> None:
        await self._redis.connect()

    async def close(self) -> None:
        await self._redis.close()


def get_session_store_factory() -> SessionStoreFactory | None:
    """Build the store factory if Redis is configured; else return None."""
    redis_crud = get_redis_crud_service()
    if redis_crud is None:
        return None
    settings = get_settings()
    return SessionStoreFactory(
        redis_crud=redis_crud,
        key_prefix=settings.session_key_prefix,
        max_history=settings.max_history_messages,
    )
