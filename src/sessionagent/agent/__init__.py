"""Agent package for the session-scoped conversational backend.

This package exposes the orchestrator as a service-style interface while
keeping implementation details (tools, MCP wiring, event streaming)
organized in separate modules.
"""

from .mcp_tools import McpTool, load_mcp_tools, parse_server_commands
from .orchestrator import (
    AgentOrchestrator,
    OrchestratorConfig,
    TurnOutcome,
    UserRequest,
    get_orchestrator,
)
from .tools import FunctionTool, Tool, ToolRegistry, builtin_tools

__all__ = [
    "AgentOrchestrator",
    "FunctionTool",
    "McpTool",
    "OrchestratorConfig",
    "Tool",
    "ToolRegistry",
    "TurnOutcome",
    "UserRequest",
    "builtin_tools",
    "get_orchestrator",
    "load_mcp_tools",
    "parse_server_commands",
]
