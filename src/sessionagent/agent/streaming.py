import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List

logger = logging.getLogger(__name__)

Event = Dict[str, Any]
EmitFn = Callable[[Event], Awaitable[None]]


def status_event(message: str) -> Event:
    return {"type": "status", "message": message}


def chunk_event(content: str) -> Event:
    return {"type": "chunk", "content": content}


def tool_use_event(tools: List[str]) -> Event:
    return {"type": "tool_use", "tools": tools}


def done_event(turns: int, total_length: int, tokens_used: int) -> Event:
    return {"type": "done", "turns": turns, "totalLength": total_length, "tokensUsed": tokens_used}


def error_event(error: str) -> Event:
    return {"type": "error", "error": error}


class ChunkBatcher:
    """Coalesces rapid text fragments into fewer ``chunk`` events.

    ``add`` is synchronous so it can be used as a backend chunk callback. The
    first fragment after a flush arms a timer; when it fires, everything
    buffered so far goes out as one event. ``flush`` must be awaited before
    the producer finishes so nothing is left in the buffer.
    """

    def __init__(self, emit: EmitFn, flush_interval: float = 0.05) -> None:
        self._emit = emit
        self.flush_interval = flush_interval
        self._buffer: List[str] = []
        self._timer: asyncio.Task[None] | None = None
        self._send_lock = asyncio.Lock()

    def add(self, fragment: str) -> None:
        if not fragment:
            return
        self._buffer.append(fragment)
        if self._timer is None or self._timer.done():
            self._timer = asyncio.get_running_loop().create_task(self._flush_later())

    async def _flush_later(self) -> None:
        await asyncio.sleep(self.flush_interval)
        try:
            # Once content leaves the buffer it must reach emit, even if flush() cancels us.
            await asyncio.shield(self._send())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Timed chunk flush failed: %s", e)

    async def _send(self) -> None:
        async with self._send_lock:
            if not self._buffer:
                return
            content = "".join(self._buffer)
            self._buffer.clear()
            await self._emit(chunk_event(content))

    async def flush(self) -> None:
        """Cancel the pending timer and emit whatever is buffered."""
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done():
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        await self._send()
