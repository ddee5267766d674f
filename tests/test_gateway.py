import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from fakes import ScriptedBackend, failing_backend
from sessionagent.agent.orchestrator import AgentOrchestrator, OrchestratorConfig
from sessionagent.agent.tools import ToolRegistry, builtin_tools
from sessionagent.main import create_app
from sessionagent.models import GenerateResult
from sessionagent.services.session_store import SessionStoreFactory


def _wire(app: FastAPI, store_factory: SessionStoreFactory, backend, **config) -> FastAPI:
    registry = ToolRegistry()
    for tool in builtin_tools():
        registry.register(tool)
    app.state.stores = store_factory
    app.state.backend = backend
    app.state.orchestrator = AgentOrchestrator(
        store_factory, backend, registry, OrchestratorConfig(chunk_flush_interval=0.01, **config)
    )
    return app


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend(GenerateResult(text="4"))


@pytest.fixture
def client(store_factory: SessionStoreFactory, backend: ScriptedBackend) -> TestClient:
    return TestClient(_wire(create_app(), store_factory, backend))


def _receive_until_terminal(ws) -> list:
    events = []
    while True:
        event = ws.receive_json()
        events.append(event)
        if event["type"] in ("done", "error"):
            return events


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "circuitBreaker": {"state": "closed", "failures": 0}}


def test_chat_returns_completed_response(client: TestClient) -> None:
    resp = client.post("/sessions/s1/chat", json={"content": "2+2?"})
    assert resp.status_code == 200
    assert resp.json() == {"status": "completed", "response": "4", "turns": 1, "tokensUsed": 1}


def test_chat_rejects_oversized_message(store_factory, backend) -> None:
    client = TestClient(_wire(create_app(), store_factory, backend, max_message_size=5))
    resp = client.post("/sessions/s1/chat", json={"content": "far too long"})
    assert resp.status_code == 400
    assert backend.calls == []


def test_chat_rejects_malformed_body(client: TestClient) -> None:
    resp = client.post("/sessions/s1/chat", json={"text": "wrong field"})
    assert resp.status_code == 400


def test_chat_backend_failure_is_bad_gateway(store_factory) -> None:
    client = TestClient(_wire(create_app(), store_factory, failing_backend("upstream 503")))
    resp = client.post("/sessions/s1/chat", json={"content": "hi"})
    assert resp.status_code == 502
    assert resp.json()["detail"] == "upstream 503"


def test_history_status_and_clear(client: TestClient) -> None:
    client.post("/sessions/s1/chat", json={"content": "2+2?"})

    history = client.get("/sessions/s1/history").json()["messages"]
    assert [(m["role"], m["parts"][0]["text"]) for m in history] == [("user", "2+2?"), ("model", "4")]

    status = client.get("/sessions/s1/status").json()
    assert status["sessionId"] == "s1"
    assert status["status"] == "active"
    assert status["messageCount"] == 2
    assert status["lastActivity"] is not None
    assert status["configuration"]["maxTurns"] == 8

    assert client.post("/sessions/s1/clear").json() == {"ok": True}
    assert client.get("/sessions/s1/history").json() == {"messages": []}
    cleared = client.get("/sessions/s1/status").json()
    assert cleared["messageCount"] == 0
    assert cleared["status"] == "idle"


def test_config_update_changes_later_runs(client: TestClient, backend: ScriptedBackend) -> None:
    resp = client.post("/config", json={"model": "gpt-4o", "maxTurns": 2, "temperature": 0.1})
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["configuration"]["model"] == "gpt-4o"
    assert body["configuration"]["maxTurns"] == 2

    client.post("/sessions/s1/chat", json={"content": "2+2?"})
    assert backend.options[0].model == "gpt-4o"
    assert backend.options[0].temperature == 0.1
    assert client.get("/sessions/s1/status").json()["configuration"]["model"] == "gpt-4o"


def test_config_update_rejects_invalid_values(client: TestClient) -> None:
    assert client.post("/config", json={"maxTurns": 0}).status_code == 400
    assert client.post("/config", json={"chunkFlushInterval": 1}).status_code == 400
    assert client.post("/config", json={"temperature": 9}).status_code == 400


def test_websocket_conversation(client: TestClient) -> None:
    with client.websocket_connect("/ws/s1") as ws:
        ws.send_json({"type": "user_message", "content": "2+2?"})
        events = _receive_until_terminal(ws)

    assert events[0] == {"type": "status", "message": "Thinking..."}
    assert {"type": "chunk", "content": "4"} in events
    assert events[-1] == {"type": "done", "turns": 1, "totalLength": 1, "tokensUsed": 1}


def test_websocket_stays_open_after_bad_frame(client: TestClient) -> None:
    with client.websocket_connect("/ws/s1") as ws:
        ws.send_text("this is not json")
        assert ws.receive_json()["type"] == "error"

        ws.send_json({"type": "message", "content": "2+2?"})
        events = _receive_until_terminal(ws)

    assert events[-1]["type"] == "done"


def test_websocket_reports_validation_error(store_factory, backend) -> None:
    client = TestClient(_wire(create_app(), store_factory, backend, max_message_size=5))
    with client.websocket_connect("/ws/s1") as ws:
        ws.send_json({"type": "user_message", "content": "far too long"})
        event = ws.receive_json()

    assert event["type"] == "error"
    assert "exceeds maximum size" in event["error"]


def test_uninitialized_app_returns_503() -> None:
    client = TestClient(create_app())
    assert client.post("/sessions/s1/chat", json={"content": "hi"}).status_code == 503
    assert client.get("/health").json()["circuitBreaker"] is None
