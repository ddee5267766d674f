import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from sessionagent.errors import BackendError, BackendTimeoutError, CircuitOpenError
from sessionagent.models import FileRef, Message, TextPart, ToolCallPart, ToolResultPart
from sessionagent.services.backend import (
    GenerateOptions,
    GenerativeBackendClient,
    build_messages,
    parse_tool_arguments,
    render_parts,
)
from sessionagent.services.resilience import CircuitBreaker, RetryPolicy


def _chunk(content=None, tool_calls=None, finish_reason=None) -> SimpleNamespace:
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)])


def _tc(index, name=None, arguments=None, id=None) -> SimpleNamespace:
    return SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))


class FakeStream:
    """Async chat-completions stream; exceptions in ``items`` are raised in place."""

    def __init__(self, items) -> None:
        self._items = list(items)
        self.closed = False

    def __aiter__(self) -> "FakeStream":
        return self

    async def __anext__(self):
        if not self._items:
            raise StopAsyncIteration
        item = self._items.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def __aenter__(self) -> "FakeStream":
        return self

    async def __aexit__(self, *exc) -> None:
        self.closed = True


def _request() -> httpx.Request:
    return httpx.Request("POST", "https://api.example.com/v1/chat/completions")


def _history(text: str = "2+2?") -> list:
    return [
        Message(role="system", parts=[TextPart("be brief")]),
        Message(role="user", parts=[TextPart(text)]),
    ]


@pytest.fixture
def openai_client() -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock()
    return client


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def backend(openai_client: MagicMock, sleep: AsyncMock) -> GenerativeBackendClient:
    return GenerativeBackendClient(
        client=openai_client,
        model="test-model",
        timeout_seconds=5.0,
        retry=RetryPolicy(max_attempts=3, base_delay=1.0, sleep=sleep),
        breaker=CircuitBreaker(failure_threshold=5, reset_timeout=60.0),
    )


@pytest.mark.asyncio
async def test_stream_forwards_fragments_in_order(backend, openai_client) -> None:
    openai_client.chat.completions.create.return_value = FakeStream(
        [_chunk("The "), _chunk("answer "), _chunk("is 4", finish_reason="stop")]
    )
    fragments = []

    result = await backend.generate(_history(), on_chunk=fragments.append)

    assert fragments == ["The ", "answer ", "is 4"]
    assert result.text == "The answer is 4"
    assert result.tool_calls == []
    assert result.finish_reason == "stop"
    kwargs = openai_client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "test-model"
    assert kwargs["stream"] is True
    assert kwargs["messages"][0] == {"role": "system", "content": "be brief"}
    assert "tools" not in kwargs


@pytest.mark.asyncio
async def test_stream_accumulates_tool_call_deltas(backend, openai_client) -> None:
    openai_client.chat.completions.create.return_value = FakeStream(
        [
            _chunk(tool_calls=[_tc(0, name="add", arguments='{"a": ', id="call_1")]),
            _chunk(tool_calls=[_tc(0, arguments="2, \"b\": 2}")]),
            _chunk(tool_calls=[_tc(1, name="get_current_time", arguments="")]),
            _chunk(finish_reason="tool_calls"),
        ]
    )
    tools = [{"type": "function", "function": {"name": "add", "parameters": {}}}]

    result = await backend.generate(_history(), tools=tools)

    assert [(c.name, c.args) for c in result.tool_calls] == [
        ("add", {"a": 2, "b": 2}),
        ("get_current_time", {}),
    ]
    assert result.finish_reason == "tool_calls"
    kwargs = openai_client.chat.completions.create.call_args.kwargs
    assert kwargs["tools"] == tools
    assert kwargs["tool_choice"] == "auto"


@pytest.mark.asyncio
async def test_transient_error_is_retried(backend, openai_client, sleep) -> None:
    openai_client.chat.completions.create.side_effect = [
        openai.APIConnectionError(request=_request()),
        FakeStream([_chunk("ok")]),
    ]

    result = await backend.generate(_history())

    assert result.text == "ok"
    assert openai_client.chat.completions.create.await_count == 2
    sleep.assert_awaited_once_with(1.0)


@pytest.mark.asyncio
async def test_retries_exhausted_raise_backend_error(backend, openai_client, sleep) -> None:
    openai_client.chat.completions.create.side_effect = openai.APIConnectionError(request=_request())

    with pytest.raises(BackendError):
        await backend.generate(_history())

    assert openai_client.chat.completions.create.await_count == 3
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_non_retryable_error_attempted_once(backend, openai_client, sleep) -> None:
    openai_client.chat.completions.create.side_effect = openai.BadRequestError(
        "bad", response=httpx.Response(400, request=_request()), body=None
    )

    with pytest.raises(BackendError):
        await backend.generate(_history())

    assert openai_client.chat.completions.create.await_count == 1
    sleep.assert_not_awaited()
    assert backend.breaker.failures == 1


@pytest.mark.asyncio
async def test_failure_after_output_is_not_retried(backend, openai_client) -> None:
    stream = FakeStream([_chunk("partial "), openai.APIConnectionError(request=_request())])
    openai_client.chat.completions.create.return_value = stream
    fragments = []

    with pytest.raises(BackendError, match="interrupted"):
        await backend.generate(_history(), on_chunk=fragments.append)

    assert fragments == ["partial "]
    assert openai_client.chat.completions.create.await_count == 1
    assert stream.closed


@pytest.mark.asyncio
async def test_stream_is_closed_after_success(backend, openai_client) -> None:
    stream = FakeStream([_chunk("done", finish_reason="stop")])
    openai_client.chat.completions.create.return_value = stream

    await backend.generate(_history())

    assert stream.closed


@pytest.mark.asyncio
async def test_stream_reports_token_usage(backend, openai_client) -> None:
    usage_chunk = SimpleNamespace(choices=[], usage=SimpleNamespace(total_tokens=42))
    openai_client.chat.completions.create.return_value = FakeStream(
        [_chunk("4", finish_reason="stop"), usage_chunk]
    )

    result = await backend.generate(_history())

    assert result.text == "4"
    assert result.tokens_used == 42
    kwargs = openai_client.chat.completions.create.call_args.kwargs
    assert kwargs["stream_options"] == {"include_usage": True}


@pytest.mark.asyncio
async def test_stream_without_usage_leaves_tokens_unset(backend, openai_client) -> None:
    openai_client.chat.completions.create.return_value = FakeStream([_chunk("4")])
    assert (await backend.generate(_history())).tokens_used is None


@pytest.mark.asyncio
async def test_open_breaker_rejects_without_calling(openai_client, sleep) -> None:
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=60.0)
    breaker.record_failure()
    backend = GenerativeBackendClient(
        client=openai_client,
        model="test-model",
        retry=RetryPolicy(max_attempts=3, sleep=sleep),
        breaker=breaker,
    )

    with pytest.raises(CircuitOpenError):
        await backend.generate(_history())

    openai_client.chat.completions.create.assert_not_called()
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_breaker_opens_after_repeated_failures(openai_client, sleep) -> None:
    openai_client.chat.completions.create.side_effect = openai.APIConnectionError(request=_request())
    backend = GenerativeBackendClient(
        client=openai_client,
        model="test-model",
        retry=RetryPolicy(max_attempts=1, sleep=sleep),
        breaker=CircuitBreaker(failure_threshold=2, reset_timeout=60.0),
    )

    for _ in range(2):
        with pytest.raises(BackendError):
            await backend.generate(_history())
    with pytest.raises(CircuitOpenError):
        await backend.generate(_history())

    assert openai_client.chat.completions.create.await_count == 2
    assert backend.breaker_status()["state"] == "open"


@pytest.mark.asyncio
async def test_timeout_raises_backend_timeout(openai_client, sleep) -> None:
    async def slow(**kwargs):
        await asyncio.sleep(1.0)

    openai_client.chat.completions.create.side_effect = slow
    backend = GenerativeBackendClient(
        client=openai_client,
        model="test-model",
        timeout_seconds=0.01,
        retry=RetryPolicy(max_attempts=2, sleep=sleep),
    )

    with pytest.raises(BackendTimeoutError):
        await backend.generate(_history())
    assert openai_client.chat.completions.create.await_count == 2


@pytest.mark.asyncio
async def test_chunk_callback_errors_do_not_abort(backend, openai_client) -> None:
    openai_client.chat.completions.create.return_value = FakeStream([_chunk("a"), _chunk("b")])

    def broken(fragment: str) -> None:
        raise RuntimeError("socket closed")

    result = await backend.generate(_history(), on_chunk=broken)
    assert result.text == "ab"


@pytest.mark.asyncio
async def test_non_streaming_call(backend, openai_client) -> None:
    message = SimpleNamespace(
        content="4",
        tool_calls=[SimpleNamespace(function=SimpleNamespace(name="add", arguments='{"a": 1}'))],
    )
    openai_client.chat.completions.create.return_value = SimpleNamespace(
        choices=[SimpleNamespace(message=message, finish_reason="stop")],
        usage=SimpleNamespace(total_tokens=17),
    )
    fragments = []

    result = await backend.generate(
        _history(), options=GenerateOptions(stream=False, model="other"), on_chunk=fragments.append
    )

    assert result.text == "4"
    assert fragments == ["4"]
    assert result.tool_calls[0].args == {"a": 1}
    assert result.tokens_used == 17
    kwargs = openai_client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "other"
    assert "stream" not in kwargs


def test_build_messages_maps_roles_and_attachments() -> None:
    history = [
        Message(role="system", parts=[TextPart("sys")]),
        Message(role="user", parts=[TextPart("earlier")]),
        Message(role="model", parts=[TextPart("reply")]),
        Message(role="user", parts=[TextPart("look at this")]),
    ]
    files = [
        FileRef(uri="https://files/cat.png", mime_type="image/png"),
        FileRef(uri="files/report", mime_type="application/pdf", display_name="report.pdf"),
        FileRef(uri="files/broken", mime_type="text/plain", lifecycle_state="failed"),
    ]

    messages = build_messages(history, files, ["https://example.com"])

    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[1]["content"] == "earlier"
    content = messages[-1]["content"]
    assert content[0] == {"type": "image_url", "image_url": {"url": "https://files/cat.png"}}
    assert content[1]["text"] == "[Attached file: report.pdf (application/pdf) files/report]"
    assert content[2]["text"] == "[Reference URL: https://example.com]"
    assert content[-1] == {"type": "text", "text": "look at this"}
    assert len(content) == 4


def test_render_parts_flattens_tool_exchange() -> None:
    text = render_parts(
        [
            TextPart("Tool Results:"),
            ToolCallPart(name="add", args={"a": 1}),
            ToolResultPart(name="add", success=False, result="boom"),
        ]
    )
    assert text == 'Tool Results:\n[tool call] add {"a": 1}\nadd: Failed\nboom'


def test_parse_tool_arguments() -> None:
    assert parse_tool_arguments(None) == {}
    assert parse_tool_arguments('{"q": "x"}') == {"q": "x"}
    assert parse_tool_arguments("{not json") == {"_raw": "{not json"}
    assert parse_tool_arguments("[1, 2]") == {"value": [1, 2]}
