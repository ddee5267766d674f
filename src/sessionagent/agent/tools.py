import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Sequence

from ..models import SessionState, ToolCall, ToolResult

logger = logging.getLogger(__name__)


class Tool(ABC):
    """An external capability the model can invoke by name."""

    name: str = ""
    description: str = ""
    parameters: Dict[str, Any] = {"type": "object", "properties": {}}

    @abstractmethod
    async def execute(self, args: Dict[str, Any], state: SessionState) -> ToolResult:
        """Run the tool. May raise; the registry turns exceptions into failed results."""

    def definition(self) -> Dict[str, Any]:
        """OpenAI function-calling schema for this tool."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class FunctionTool(Tool):
    """Adapts a plain function to the Tool interface.

    The function receives the call arguments as keyword arguments and returns
    a string (or anything JSON-serializable). Sync functions run in a worker
    thread. If the function accepts a ``state`` parameter the session state
    is passed in.
    """

    def __init__(
        self,
        func: Callable[..., Any],
        name: str | None = None,
        description: str | None = None,
        parameters: Dict[str, Any] | None = None,
    ) -> None:
        self._func = func
        self.name = name or func.__name__
        self.description = description or (inspect.getdoc(func) or "").split("\n")[0]
        self.parameters = parameters or {"type": "object", "properties": {}}
        self._wants_state = "state" in inspect.signature(func).parameters

    async def execute(self, args: Dict[str, Any], state: SessionState) -> ToolResult:
        kwargs = dict(args)
        if self._wants_state:
            kwargs["state"] = state
        if inspect.iscoroutinefunction(self._func):
            value = await self._func(**kwargs)
        else:
            value = await asyncio.to_thread(self._func, **kwargs)
        if not isinstance(value, str):
            value = json.dumps(value, default=str)
        return ToolResult(name=self.name, success=True, result=value)


class ToolRegistry:
    """Name-keyed set of tools with isolated, concurrent execution."""

    def __init__(
        self,
        timeout_seconds: float = 15.0,
        max_retries: int = 1,
        retry_backoff_seconds: float = 0.6,
    ) -> None:
        self._tools: Dict[str, Tool] = {}
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(0, max_retries)
        self.retry_backoff_seconds = retry_backoff_seconds

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("Tool %s already registered, overwriting", tool.name)
        self._tools[tool.name] = tool
        logger.info("Registered tool: %s", tool.name)

    def unregister(self, name: str) -> bool:
        existed = self._tools.pop(name, None) is not None
        if existed:
            logger.info("Unregistered tool: %s", name)
        return existed

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def definitions(self) -> List[Dict[str, Any]]:
        return [tool.definition() for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    async def execute(self, name: str, args: Dict[str, Any], state: SessionState) -> ToolResult:
        """Run one tool under timeout and bounded retry. Never raises."""
        tool = self._tools.get(name)
        if tool is None:
            logger.warning("Tool %s not found in registry", name)
            return ToolResult(name=name, success=False, result=f'Tool "{name}" not found')

        attempts = self.max_retries + 1
        error = ""
        for attempt in range(1, attempts + 1):
            try:
                logger.info("Executing tool: %s (attempt %d/%d)", name, attempt, attempts)
                result = await asyncio.wait_for(tool.execute(args, state), self.timeout_seconds)
                logger.info("Tool %s completed: %s", name, "success" if result.success else "failed")
                return result
            except asyncio.TimeoutError:
                error = f"timed out after {self.timeout_seconds:g}s"
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
            logger.warning("Tool %s attempt %d failed: %s", name, attempt, error)
            if attempt < attempts:
                await asyncio.sleep(self.retry_backoff_seconds)

        return ToolResult(
            name=name,
            success=False,
            result=f"Tool execution failed after {attempts} attempt(s): {error}",
        )

    async def execute_all(self, calls: Sequence[ToolCall], state: SessionState) -> List[ToolResult]:
        """Run all calls concurrently; one result per call, in call order."""
        if not calls:
            return []
        settled = await asyncio.gather(
            *(self.execute(call.name, call.args, state) for call in calls),
            return_exceptions=True,
        )
        results: List[ToolResult] = []
        for call, outcome in zip(calls, settled):
            if isinstance(outcome, BaseException):
                logger.error("Tool %s rejected: %s", call.name, outcome)
                results.append(ToolResult(name=call.name, success=False, result=f"Rejected: {outcome}"))
            else:
                results.append(outcome)
        return results


def list_session_files(state: SessionState) -> str:
    """List the files attached to this conversation with their status."""
    files = [
        {
            "name": f.display_name or f.uri,
            "mimeType": f.mime_type,
            "sizeBytes": f.size_bytes,
            "state": f.lifecycle_state,
            "usable": f.is_usable(),
        }
        for f in state.context.files
    ]
    return json.dumps({"files": files})


def get_current_time() -> str:
    """Return the current UTC date and time in ISO 8601 format."""
    return json.dumps({"timezone": "UTC", "now": datetime.now(timezone.utc).isoformat()})


def builtin_tools() -> List[Tool]:
    """Tools that ship with the agent."""
    return [
        FunctionTool(list_session_files),
        FunctionTool(get_current_time),
    ]

