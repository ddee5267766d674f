import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Literal

import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError as BodyValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .agent import (
    AgentOrchestrator,
    ToolRegistry,
    UserRequest,
    builtin_tools,
    get_orchestrator,
    load_mcp_tools,
    parse_server_commands,
)
from .agent.streaming import error_event
from .errors import BackendError, RequestValidationError
from .models import FileRef
from .services.backend import get_backend_client
from .services.session_store import SessionStoreFactory, get_session_store_factory
from .settings import get_settings


def setup_server_logging(level: str = "INFO") -> logging.Logger:
    """Configure and return the package logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("sessionagent")
    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


settings = get_settings()
LOGGER = setup_server_logging(settings.log_level)


class InboundMessage(BaseModel):
    """One client request: a user message plus optional file references."""

    type: Literal["user_message", "message"] = "user_message"
    content: str
    files: List[Dict[str, Any]] = Field(default_factory=list)

    def to_request(self) -> UserRequest:
        try:
            files = [FileRef.from_dict(f) for f in self.files]
        except (TypeError, ValueError) as e:
            raise RequestValidationError(f"Invalid file reference: {e}") from e
        return UserRequest(content=self.content, files=files)


class ConfigUpdate(BaseModel):
    """Partial agent configuration; omitted fields keep their current value."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    model: str | None = Field(default=None, min_length=1)
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_turns: int | None = Field(default=None, alias="maxTurns", ge=1)
    max_message_size: int | None = Field(default=None, alias="maxMessageSize", ge=1)
    max_history_messages: int | None = Field(default=None, alias="maxHistoryMessages", ge=1)
    token_budget: int | None = Field(default=None, alias="tokenBudget", ge=1)
    tool_result_max_chars: int | None = Field(default=None, alias="toolResultMaxChars", ge=1)
    system_prompt: str | None = Field(default=None, alias="systemPrompt", min_length=1)


async def build_tool_registry() -> ToolRegistry:
    """Registry with the built-in tools plus whatever the MCP servers publish."""
    registry = ToolRegistry(
        timeout_seconds=settings.tool_timeout_seconds,
        max_retries=settings.tool_max_retries,
        retry_backoff_seconds=settings.tool_retry_backoff_seconds,
    )
    for tool in builtin_tools():
        registry.register(tool)

    servers = parse_server_commands(settings.mcp_server_cmds)
    if not servers:
        return registry
    LOGGER.info("Loading MCP tools from %d server(s)...", len(servers))
    try:
        for tool in await load_mcp_tools(servers):
            registry.register(tool)
        LOGGER.info("MCP tools loaded successfully")
    except (ValueError, RuntimeError) as e:
        LOGGER.exception("Failed to load MCP tools: %s", e)
    except Exception as e:
        LOGGER.exception("Unexpected error loading MCP tools: %s", e)
    return registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect Redis and assemble the orchestrator at startup; close Redis on shutdown."""
    stores = get_session_store_factory()
    if stores is None:
        raise RuntimeError("REDIS_URL is not configured; session storage is required")
    await stores.connect()
    LOGGER.info("Session store (Redis) ready")

    registry = await build_tool_registry()
    backend = get_backend_client()
    app.state.stores = stores
    app.state.backend = backend
    app.state.orchestrator = get_orchestrator(stores, backend, registry)
    LOGGER.info("Agent ready with %d tool(s): %s", len(registry), ", ".join(registry.names()))

    yield

    LOGGER.info("Shutting down...")
    await stores.close()


def _orchestrator(app: FastAPI) -> AgentOrchestrator:
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Agent is not initialized")
    return orchestrator


def _stores(app: FastAPI) -> SessionStoreFactory:
    stores = getattr(app.state, "stores", None)
    if stores is None:
        raise HTTPException(status_code=503, detail="Session store is not initialized")
    return stores


def create_app() -> FastAPI:
    app = FastAPI(
        title="Session Agent",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins_list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BodyValidationError)
    async def invalid_body(request: Request, exc: BodyValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        """Health check for load balancers and monitoring.

        Returns:
            dict[str, Any]: Status plus the backend circuit breaker state.
        """
        backend = getattr(request.app.state, "backend", None)
        return {
            "status": "ok",
            "circuitBreaker": backend.breaker_status() if backend is not None else None,
        }

    @app.websocket("/ws/{session_id}")
    async def session_ws(websocket: WebSocket, session_id: str) -> None:
        """Persistent chat connection bound to one session.

        Each inbound frame is one request:
            {"type": "user_message", "content": str, "files": [FileRef, ...]}

        The server answers with a stream of events:
            {"type": "status", "message": str}
            {"type": "chunk", "content": str}
            {"type": "tool_use", "tools": [str, ...]}
            {"type": "done", "turns": int, "totalLength": int, "tokensUsed": int}
            {"type": "error", "error": str}

        A malformed frame yields an error event; the connection stays open.
        """
        await websocket.accept()
        LOGGER.info("WS connected session_id=%s", session_id)
        try:
            orchestrator = _orchestrator(websocket.app)
        except HTTPException as e:
            await websocket.send_json(error_event(e.detail))
            await websocket.close()
            return

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    request = InboundMessage.model_validate_json(raw).to_request()
                except ValidationError as e:
                    LOGGER.warning("Invalid WS payload for %s: %s", session_id, e)
                    await websocket.send_json(error_event("Invalid message payload"))
                    continue
                except RequestValidationError as e:
                    await websocket.send_json(error_event(str(e)))
                    continue

                async for event in orchestrator.stream(session_id, request):
                    await websocket.send_json(event)
        except WebSocketDisconnect:
            LOGGER.info("WS disconnect session_id=%s", session_id)
        except (ConnectionError, RuntimeError) as e:
            LOGGER.exception("Unexpected WS error: %s", e)
            try:
                await websocket.send_json(error_event(str(e)))
                await websocket.close()
            except (OSError, RuntimeError) as close_error:
                LOGGER.debug("WS close after error failed: %s", close_error)

    @app.post("/sessions/{session_id}/chat")
    async def chat(session_id: str, body: InboundMessage, request: Request) -> dict[str, Any]:
        """Request/response variant of the WebSocket exchange."""
        orchestrator = _orchestrator(request.app)
        try:
            request_data = body.to_request()
            outcome = await orchestrator.run(session_id, request_data)
        except RequestValidationError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except BackendError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e
        return {
            "status": "completed",
            "response": outcome.response,
            "turns": outcome.turns,
            "tokensUsed": outcome.tokens_used,
        }

    @app.get("/sessions/{session_id}/history")
    async def history(session_id: str, request: Request, limit: int | None = None) -> dict[str, Any]:
        store = _stores(request.app).get(session_id)
        messages = await store.load_history(limit)
        return {"messages": [m.to_dict() for m in messages]}

    @app.post("/sessions/{session_id}/clear")
    async def clear(session_id: str, request: Request) -> dict[str, Any]:
        store = _stores(request.app).get(session_id)
        async with store.exclusive():
            await store.clear_all()
        return {"ok": True}

    @app.get("/sessions/{session_id}/status")
    async def status(session_id: str, request: Request) -> dict[str, Any]:
        store = _stores(request.app).get(session_id)
        summary = await store.status()
        summary["configuration"] = _orchestrator(request.app).config.to_dict()
        return summary

    @app.post("/config")
    async def update_config(body: ConfigUpdate, request: Request) -> dict[str, Any]:
        """Change agent settings for messages processed from now on."""
        orchestrator = _orchestrator(request.app)
        try:
            config = orchestrator.update_config(body.model_dump(exclude_none=True))
        except RequestValidationError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return {"ok": True, "configuration": config.to_dict()}

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    uvicorn.run("sessionagent.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
