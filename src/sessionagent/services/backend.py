import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Sequence

import openai
from openai import AsyncOpenAI

from ..errors import BackendError, BackendTimeoutError, CircuitOpenError
from ..models import (
    FileRef,
    GenerateResult,
    Message,
    Part,
    TextPart,
    ToolCall,
    ToolCallPart,
    ToolResultPart,
)
from ..settings import get_settings
from .resilience import CircuitBreaker, RetryPolicy

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]

_ROLE_MAP = {"system": "system", "user": "user", "model": "assistant"}


@dataclass
class GenerateOptions:
    """Per-call overrides; unset values fall back to the client defaults."""

    model: str | None = None
    temperature: float | None = None
    stream: bool = True
    timeout_seconds: float | None = None
    files: List[FileRef] = field(default_factory=list)
    urls: List[str] = field(default_factory=list)


def render_parts(parts: Sequence[Part]) -> str:
    """Flatten typed fragments into the plain text the backend sees."""
    lines: List[str] = []
    for part in parts:
        if isinstance(part, TextPart):
            lines.append(part.text)
        elif isinstance(part, ToolCallPart):
            lines.append(f"[tool call] {part.name} {json.dumps(part.args, default=str)}")
        elif isinstance(part, ToolResultPart):
            status = "Success" if part.success else "Failed"
            lines.append(f"{part.name}: {status}\n{part.result}")
        else:
            raise TypeError(f"Unsupported message part: {part!r}")
    return "\n".join(lines)


def build_context_parts(files: Sequence[FileRef], urls: Sequence[str]) -> List[Dict[str, Any]]:
    """Content fragments for usable files and URLs, to be put in front of the question."""
    parts: List[Dict[str, Any]] = []
    for f in files:
        if not f.is_usable():
            continue
        if f.mime_type.startswith("image/"):
            parts.append({"type": "image_url", "image_url": {"url": f.uri}})
        else:
            label = f.display_name or f.uri
            parts.append(
                {"type": "text", "text": f"[Attached file: {label} ({f.mime_type}) {f.uri}]"}
            )
    for url in urls:
        if url:
            parts.append({"type": "text", "text": f"[Reference URL: {url}]"})
    return parts


def build_messages(
    history: Sequence[Message],
    files: Sequence[FileRef] = (),
    urls: Sequence[str] = (),
) -> List[Dict[str, Any]]:
    """Convert a prompt context into chat-completions messages."""
    messages: List[Dict[str, Any]] = [
        {"role": _ROLE_MAP[msg.role], "content": render_parts(msg.parts)} for msg in history
    ]
    context_parts = build_context_parts(files, urls)
    if context_parts and messages and messages[-1]["role"] == "user":
        last = messages[-1]
        last["content"] = [*context_parts, {"type": "text", "text": last["content"]}]
    return messages


def parse_tool_arguments(raw: str | None) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Tool call arguments are not valid JSON: %s", raw[:200])
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def total_tokens(usage: Any) -> int | None:
    """Token count reported by the backend, if any."""
    value = getattr(usage, "total_tokens", None)
    return value if isinstance(value, int) else None


class GenerativeBackendClient:
    """Chat-completions client with timeout, retry and circuit breaking."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        temperature: float = 0.7,
        timeout_seconds: float = 60.0,
        retry: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._client = client
        self.model = model
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds
        self.retry = retry or RetryPolicy()
        self.breaker = breaker or CircuitBreaker()

    def breaker_status(self) -> Dict[str, Any]:
        return self.breaker.status()

    async def generate(
        self,
        history: Sequence[Message],
        tools: Sequence[Dict[str, Any]] = (),
        options: GenerateOptions | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> GenerateResult:
        """Produce one response for ``history``, streaming text fragments to ``on_chunk``.

        Args:
            history: Prompt context (system/user/model messages), oldest first.
            tools: Function declarations the model may call.
            options: Per-call overrides (model, streaming, timeout, files, URLs).
            on_chunk: Called with each text fragment in arrival order.

        Returns:
            GenerateResult: Concatenated text, parsed tool calls, finish reason.

        Raises:
            CircuitOpenError: The breaker rejected the call.
            BackendError: The call failed and retries were exhausted or not allowed.
        """
        options = options or GenerateOptions()
        messages = build_messages(history, options.files, options.urls)
        timeout = options.timeout_seconds or self.timeout_seconds

        for attempt in range(self.retry.max_attempts):
            emitted = False

            def forward(fragment: str) -> None:
                nonlocal emitted
                emitted = True
                if on_chunk is None:
                    return
                try:
                    on_chunk(fragment)
                except Exception as e:
                    logger.warning("onChunk callback failed: %s", e)

            try:
                return await self.breaker.call(
                    lambda: self._attempt(messages, tools, options, forward, timeout)
                )
            except CircuitOpenError:
                raise
            except (openai.OpenAIError, BackendError, ConnectionError) as e:
                last = attempt == self.retry.max_attempts - 1
                if emitted:
                    raise BackendError(f"Backend stream interrupted: {e}") from e
                if not self.retry.is_retryable(e) or last:
                    logger.error(
                        "Backend call failed (attempt %d/%d): %s",
                        attempt + 1,
                        self.retry.max_attempts,
                        e,
                    )
                    if isinstance(e, BackendError):
                        raise
                    raise BackendError(str(e)) from e
                delay = self.retry.delay_for(attempt)
                logger.warning(
                    "Backend attempt %d/%d failed: %s; retrying in %.2fs",
                    attempt + 1,
                    self.retry.max_attempts,
                    e,
                    delay,
                )
                await self.retry.sleep(delay)

        raise BackendError("Backend call was not attempted")

    async def _attempt(
        self,
        messages: List[Dict[str, Any]],
        tools: Sequence[Dict[str, Any]],
        options: GenerateOptions,
        forward: ChunkCallback,
        timeout: float,
    ) -> GenerateResult:
        request: Dict[str, Any] = {
            "model": options.model or self.model,
            "messages": messages,
            "temperature": self.temperature if options.temperature is None else options.temperature,
        }
        if tools:
            request["tools"] = list(tools)
            request["tool_choice"] = "auto"

        if options.stream:
            call = self._stream(request, forward)
        else:
            call = self._complete(request, forward)
        try:
            return await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError as e:
            raise BackendTimeoutError(f"Backend call timed out after {timeout:g}s") from e

    async def _complete(self, request: Dict[str, Any], forward: ChunkCallback) -> GenerateResult:
        response = await self._client.chat.completions.create(**request)
        tokens = total_tokens(getattr(response, "usage", None))
        if not response.choices:
            return GenerateResult(text="", tokens_used=tokens)
        choice = response.choices[0]
        text = choice.message.content or ""
        tool_calls = [
            ToolCall(name=tc.function.name, args=parse_tool_arguments(tc.function.arguments))
            for tc in (choice.message.tool_calls or [])
            if tc.function and tc.function.name
        ]
        if text:
            forward(text)
        return GenerateResult(
            text=text, tool_calls=tool_calls, finish_reason=choice.finish_reason, tokens_used=tokens
        )

    async def _stream(self, request: Dict[str, Any], forward: ChunkCallback) -> GenerateResult:
        stream = await self._client.chat.completions.create(
            **request, stream=True, stream_options={"include_usage": True}
        )

        fragments: List[str] = []
        pending_calls: List[Dict[str, str]] = []
        finish_reason: str | None = None
        tokens: int | None = None

        async with stream:
            async for chunk in stream:
                # The usage chunk arrives last, with no choices.
                usage = total_tokens(getattr(chunk, "usage", None))
                if usage is not None:
                    tokens = usage
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
                delta = choice.delta
                if delta is None:
                    continue
                if delta.content:
                    fragments.append(delta.content)
                    forward(delta.content)
                for tc_delta in delta.tool_calls or []:
                    index = tc_delta.index if tc_delta.index is not None else len(pending_calls)
                    while len(pending_calls) <= index:
                        pending_calls.append({"id": "", "name": "", "arguments": ""})
                    tc = pending_calls[index]
                    if tc_delta.id:
                        tc["id"] = tc_delta.id
                    if tc_delta.function:
                        if tc_delta.function.name:
                            tc["name"] = tc_delta.function.name
                        if tc_delta.function.arguments:
                            tc["arguments"] += tc_delta.function.arguments

        tool_calls = [
            ToolCall(name=tc["name"], args=parse_tool_arguments(tc["arguments"]))
            for tc in pending_calls
            if tc["name"]
        ]
        return GenerateResult(
            text="".join(fragments),
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            tokens_used=tokens,
        )


def get_backend_client() -> GenerativeBackendClient:
    """Build the backend client from settings."""
    settings = get_settings()
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set; backend calls will be rejected")
    client = AsyncOpenAI(
        api_key=settings.openai_api_key or "",
        base_url=settings.openai_base_url,
        max_retries=0,
    )
    return GenerativeBackendClient(
        client=client,
        model=settings.model,
        temperature=settings.temperature,
        timeout_seconds=settings.backend_timeout_seconds,
        retry=RetryPolicy(
            max_attempts=settings.backend_max_attempts,
            base_delay=settings.backend_backoff_base_seconds,
        ),
        breaker=CircuitBreaker(
            name="backend",
            failure_threshold=settings.breaker_failure_threshold,
            reset_timeout=settings.breaker_reset_timeout_seconds,
        ),
    )
