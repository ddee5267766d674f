import asyncio
import logging
import math
import time
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Dict, List, Sequence, Set

from ..errors import MessageTooLargeError, RequestValidationError
from ..models import (
    FileRef,
    GenerateResult,
    Message,
    SessionState,
    TextPart,
    ToolCallPart,
    ToolResult,
    ToolResultPart,
)
from ..services.backend import GenerateOptions, GenerativeBackendClient, render_parts
from ..services.session_store import SessionStore, SessionStoreFactory
from ..settings import Settings, get_settings
from .streaming import (
    ChunkBatcher,
    EmitFn,
    Event,
    done_event,
    error_event,
    status_event,
    tool_use_event,
)
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

TOOL_PLACEHOLDER_TEXT = "[used external tools]"


@dataclass
class OrchestratorConfig:
    max_turns: int = 8
    max_message_size: int = 100_000
    max_history_messages: int = 200
    token_budget: int = 50_000
    chunk_flush_interval: float = 0.05
    tool_result_max_chars: int = 1500
    system_prompt: str = "You are a helpful assistant."
    model: str | None = None
    temperature: float | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "OrchestratorConfig":
        return cls(
            max_turns=settings.max_turns,
            max_message_size=settings.max_message_size,
            max_history_messages=settings.max_history_messages,
            token_budget=settings.token_budget,
            chunk_flush_interval=settings.chunk_flush_interval_seconds,
            tool_result_max_chars=settings.tool_result_max_chars,
            system_prompt=settings.agent_system_prompt,
            model=settings.model,
            temperature=settings.temperature,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "temperature": self.temperature,
            "maxTurns": self.max_turns,
            "maxMessageSize": self.max_message_size,
            "maxHistoryMessages": self.max_history_messages,
            "tokenBudget": self.token_budget,
            "toolResultMaxChars": self.tool_result_max_chars,
        }


# Fields that may change while the service runs; the value checks each must pass.
RUNTIME_FIELDS = {
    "max_turns": lambda v: isinstance(v, int) and v >= 1,
    "max_message_size": lambda v: isinstance(v, int) and v >= 1,
    "max_history_messages": lambda v: isinstance(v, int) and v >= 1,
    "token_budget": lambda v: isinstance(v, int) and v >= 1,
    "tool_result_max_chars": lambda v: isinstance(v, int) and v >= 1,
    "model": lambda v: isinstance(v, str) and bool(v.strip()),
    "temperature": lambda v: isinstance(v, (int, float)) and 0 <= v <= 2,
    "system_prompt": lambda v: isinstance(v, str) and bool(v.strip()),
}


@dataclass
class UserRequest:
    content: str
    files: List[FileRef] = field(default_factory=list)


@dataclass
class TurnOutcome:
    response: str
    turns: int
    tokens_used: int = 0


def estimate_tokens(message: Message) -> int:
    """Rough token count (4 characters per token)."""
    return len(render_parts(message.parts)) // 4 + 1


def trim_context(context: List[Message], max_messages: int, token_budget: int) -> List[Message]:
    """Drop the oldest non-system entries until both budgets hold.

    A leading system message is always kept, and so is the newest entry.
    """
    if not context:
        return context
    system = context[:1] if context[0].role == "system" else []
    rest = context[len(system):]

    used = sum(estimate_tokens(m) for m in system)
    kept: List[Message] = []
    for msg in reversed(rest):
        cost = estimate_tokens(msg)
        if kept and (len(kept) >= max_messages or used + cost > token_budget):
            break
        kept.append(msg)
        used += cost
    kept.reverse()

    dropped = len(rest) - len(kept)
    if dropped:
        logger.debug("Trimmed %d context entries", dropped)
    return system + kept


def fold_back(
    response: GenerateResult, results: Sequence[ToolResult], max_chars: int
) -> List[Message]:
    """The assistant entry that requested the tools and the user entry carrying their results."""
    assistant = Message(
        role="model",
        parts=[
            TextPart(response.text or TOOL_PLACEHOLDER_TEXT),
            *(ToolCallPart(name=c.name, args=c.args) for c in response.tool_calls),
        ],
    )
    user = Message(
        role="user",
        parts=[
            TextPart("Tool Results:"),
            *(
                ToolResultPart(name=r.name, success=r.success, result=r.result[:max_chars])
                for r in results
            ),
        ],
    )
    return [assistant, user]


def merge_files(state: SessionState, files: Sequence[FileRef], now: float) -> None:
    """Add request files to the session (same uri replaces) and drop expired ones."""
    by_uri = {f.uri: f for f in state.context.files}
    for f in files:
        by_uri[f.uri] = f
    state.context.files = [
        f for f in by_uri.values() if f.expires_at is None or f.expires_at > now
    ]


async def _discard(event: Event) -> None:
    return None


class AgentOrchestrator:
    """Runs the bounded plan / tool-execution loop for one user message."""

    def __init__(
        self,
        stores: SessionStoreFactory,
        backend: GenerativeBackendClient,
        tools: ToolRegistry,
        config: OrchestratorConfig | None = None,
    ) -> None:
        self._stores = stores
        self._backend = backend
        self._tools = tools
        self.config = config or OrchestratorConfig()
        self._background: Set[asyncio.Task[TurnOutcome]] = set()

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    def update_config(self, updates: Dict[str, Any]) -> OrchestratorConfig:
        """Merge ``updates`` into the configuration used by runs that start afterwards.

        Raises:
            RequestValidationError: A key is not runtime-settable or a value is out of range.
        """
        unknown = sorted(set(updates) - set(RUNTIME_FIELDS))
        if unknown:
            raise RequestValidationError(f"Unknown configuration fields: {', '.join(unknown)}")
        for name, value in updates.items():
            if not RUNTIME_FIELDS[name](value):
                raise RequestValidationError(f"Invalid value for {name}: {value!r}")
        self.config = replace(self.config, **updates)
        logger.info("Configuration updated: %s", ", ".join(sorted(updates)) or "no changes")
        return self.config

    def validate(self, request: UserRequest, config: OrchestratorConfig | None = None) -> None:
        config = config or self.config
        if not request.content.strip():
            raise RequestValidationError("Empty message")
        if len(request.content) > config.max_message_size:
            raise MessageTooLargeError(len(request.content), config.max_message_size)

    def build_system_prompt(self, state: SessionState, config: OrchestratorConfig | None = None) -> str:
        lines = [(config or self.config).system_prompt]
        names = self._tools.names()
        lines.append(f"\nExternal tools: {', '.join(names) if names else 'none'}")
        if any(f.is_usable() for f in state.context.files):
            lines.append("The user has uploaded files; they are attached to the latest message.")
        return "\n".join(lines)

    def build_context(
        self,
        state: SessionState,
        history: List[Message],
        content: str,
        config: OrchestratorConfig | None = None,
    ) -> List[Message]:
        config = config or self.config
        prior = list(history)
        # The new message supersedes an unanswered one.
        if prior and prior[-1].role == "user":
            prior.pop()
        context = [
            Message(role="system", parts=[TextPart(self.build_system_prompt(state, config))]),
            *prior,
            Message(role="user", parts=[TextPart(content)]),
        ]
        return trim_context(context, config.max_history_messages, config.token_budget)

    async def run(
        self, session_id: str, request: UserRequest, emit: EmitFn | None = None
    ) -> TurnOutcome:
        """Process one user message for a session, emitting protocol events.

        Raises:
            RequestValidationError: The message is empty or too large.
            BackendError: The backend failed terminally.
        """
        emit = emit or _discard
        config = self.config
        try:
            self.validate(request, config)
        except RequestValidationError as e:
            logger.warning("Session %s: rejected message: %s", session_id, e)
            await self._safe_emit(emit, error_event(str(e)))
            raise

        store = self._stores.get(session_id)
        try:
            return await store.with_transaction(
                lambda state: self._run_turns(store, state, request, emit, config)
            )
        except Exception as e:
            logger.exception("Session %s: processing failed: %s", session_id, e)
            await self._safe_emit(emit, error_event(str(e)))
            raise

    async def _run_turns(
        self,
        store: SessionStore,
        state: SessionState,
        request: UserRequest,
        emit: EmitFn,
        config: OrchestratorConfig,
    ) -> TurnOutcome:
        now = time.time()
        state.last_activity_at = now
        merge_files(state, request.files, now)

        history = await store.load_history(config.max_history_messages)
        await store.append_message("user", [TextPart(request.content)], now)
        context = self.build_context(state, history, request.content, config)

        tool_defs = self._tools.definitions()
        batcher = ChunkBatcher(emit, config.chunk_flush_interval)
        turn = 0
        answer = ""
        reported_tokens: int | None = None

        while turn < config.max_turns:
            turn += 1
            await emit(status_event("Thinking..." if turn == 1 else f"Processing step {turn}..."))
            logger.info("Session %s: turn %d/%d", store.session_id, turn, config.max_turns)

            options = GenerateOptions(
                model=config.model,
                temperature=config.temperature,
                stream=True,
                files=state.context.files,
                urls=state.context.urls,
            )
            try:
                response = await self._backend.generate(context, tool_defs, options, batcher.add)
            finally:
                await batcher.flush()

            if response.tokens_used is not None:
                reported_tokens = (reported_tokens or 0) + response.tokens_used
            answer = response.text
            if not response.tool_calls:
                break
            if turn >= config.max_turns:
                logger.warning(
                    "Session %s: turn limit reached with %d unexecuted tool call(s)",
                    store.session_id,
                    len(response.tool_calls),
                )
                break

            names = [c.name for c in response.tool_calls]
            logger.info("Session %s: tool calls: %s", store.session_id, ", ".join(names))
            await emit(tool_use_event(names))
            results = await self._tools.execute_all(response.tool_calls, state)

            context.extend(fold_back(response, results, config.tool_result_max_chars))
            context = trim_context(context, config.max_history_messages, config.token_budget)
            answer = ""

        if answer:
            await store.append_message("model", [TextPart(answer)], time.time())
        # Estimate from the answer when the backend reports no usage.
        tokens = reported_tokens if reported_tokens is not None else math.ceil(len(answer) / 4)
        await emit(done_event(turn, len(answer), tokens))
        logger.info(
            "Session %s: done after %d turn(s), %d chars, %d tokens",
            store.session_id,
            turn,
            len(answer),
            tokens,
        )
        return TurnOutcome(response=answer, turns=turn, tokens_used=tokens)

    async def stream(self, session_id: str, request: UserRequest) -> AsyncIterator[Event]:
        """Yield the events of ``run`` as they happen.

        Failures arrive as a terminal ``error`` event rather than an exception.
        If the consumer stops early, processing still runs to completion.
        """
        queue: asyncio.Queue[Event | None] = asyncio.Queue()

        async def emit(event: Event) -> None:
            await queue.put(event)

        async def runner() -> TurnOutcome:
            try:
                return await self.run(session_id, request, emit)
            finally:
                await queue.put(None)

        task = asyncio.create_task(runner())
        finished = False
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
            await asyncio.gather(task, return_exceptions=True)
            finished = True
        finally:
            if not finished:
                self._background.add(task)
                task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: "asyncio.Task[TurnOutcome]") -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Detached run ended with: %s", task.exception())

    @staticmethod
    async def _safe_emit(emit: EmitFn, event: Event) -> None:
        try:
            await emit(event)
        except Exception as e:
            logger.warning("Could not deliver %s event: %s", event.get("type"), e)


def get_orchestrator(
    stores: SessionStoreFactory,
    backend: GenerativeBackendClient,
    tools: ToolRegistry,
) -> AgentOrchestrator:
    return AgentOrchestrator(
        stores=stores,
        backend=backend,
        tools=tools,
        config=OrchestratorConfig.from_settings(get_settings()),
    )
