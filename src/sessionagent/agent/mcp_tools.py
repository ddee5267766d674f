import json
import logging
import os
import shlex
from typing import Any, Dict, List

from mcp import StdioServerParameters
from mcp.client.session import ClientSession
from mcp.client.stdio import stdio_client

from ..models import SessionState, ToolResult
from .tools import Tool

logger = logging.getLogger(__name__)


def parse_server_commands(raw: str | None) -> List[StdioServerParameters]:
    """Split the semicolon separated MCP_SERVER_CMDS setting into server parameters."""
    if not raw:
        return []
    servers: List[StdioServerParameters] = []
    for cmd in raw.split(";"):
        parts = shlex.split(cmd.strip())
        if not parts:
            continue
        servers.append(
            StdioServerParameters(command=parts[0], args=parts[1:], env=dict(os.environ))
        )
    return servers


class McpTool(Tool):
    """A tool published by an MCP server reached over stdio.

    Each call starts a short-lived client session against the server.
    """

    def __init__(
        self,
        server: StdioServerParameters,
        name: str,
        description: str = "",
        parameters: Dict[str, Any] | None = None,
    ) -> None:
        self.server = server
        self.name = name
        self.description = description
        self.parameters = parameters or {"type": "object", "properties": {}}

    async def execute(self, args: Dict[str, Any], state: SessionState) -> ToolResult:
        async with stdio_client(self.server) as (read, write):
            async with ClientSession(read, write) as session:
                await session.initialize()
                logger.info("Calling MCP tool %s via %s", self.name, self.server.command)
                result = await session.call_tool(self.name, args)

        texts = [block.text for block in result.content if getattr(block, "text", None)]
        if texts:
            text = "\n".join(texts)
        else:
            text = json.dumps(result.model_dump(), default=str)
        return ToolResult(name=self.name, success=not result.isError, result=text)


async def load_mcp_tools(servers: List[StdioServerParameters]) -> List[McpTool]:
    """List the tools of every reachable server. Unreachable servers are skipped."""
    tools: List[McpTool] = []
    for server in servers:
        try:
            async with stdio_client(server) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    listed = await session.list_tools()
        except (OSError, ConnectionError, TimeoutError) as e:
            logger.warning("Failed to connect to MCP server '%s': %s", server.command, e)
            continue

        for info in listed.tools:
            tools.append(
                McpTool(
                    server=server,
                    name=info.name,
                    description=info.description or "",
                    parameters=info.inputSchema or None,
                )
            )
        logger.info("MCP server '%s' provides %d tool(s)", server.command, len(listed.tools))
    return tools
