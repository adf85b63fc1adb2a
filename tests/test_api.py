"""
Tests de la API HTTP: contrato de errores, corte por créditos antes del
proveedor, streaming y auditoría.
"""

import asyncio
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from conftest import FakeProvider, FakeProviderFactory, InMemoryRowStore
from lexia.ai.audit import audit_stream
from lexia.ai.controller import process_request
from lexia.ai.orchestrator import StreamOrchestrator
from lexia.ai.providers import StreamChunk
from lexia.ai.streaming import StreamTee
from lexia.ai.usage import CreditGate, RateLimiter
from lexia.api import deps
from lexia.api.main import app
from lexia.core.counters import InMemoryCounterStore


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class Env:
    def __init__(self):
        self.store = InMemoryRowStore()
        self.counters = InMemoryCounterStore()
        self.provider = FakeProvider(chunks=["Hola, ", "soy Lexia."])
        self.max_requests = 60

    def install(self) -> None:
        app.dependency_overrides[deps.get_current_user] = lambda: "user-1"
        app.dependency_overrides[deps.get_store] = lambda: self.store
        app.dependency_overrides[deps.get_counter_store] = lambda: self.counters
        app.dependency_overrides[deps.get_orchestrator] = lambda: StreamOrchestrator(
            FakeProviderFactory(default=self.provider), timeout_seconds=5, max_attempts=2
        )
        app.dependency_overrides[deps.get_rate_limiter] = lambda: RateLimiter(
            self.counters, window_seconds=60, max_requests=self.max_requests
        )
        app.dependency_overrides[deps.get_credit_gate] = lambda: CreditGate(
            self.counters, self.store, fail_open=True, clock=lambda: NOW
        )


@pytest.fixture
def env():
    environment = Env()
    environment.install()
    yield environment
    app.dependency_overrides.clear()


@pytest.fixture
def client(env):
    return TestClient(app)


def test_root():
    assert TestClient(app).get("/").json()["status"] == "ok"


def test_missing_token_is_401():
    response = TestClient(app).post("/api/v1/lexia", json={"userText": "Hola"})

    assert response.status_code == 401
    assert response.json()["error"]["kind"] == "unauthenticated"


def test_chat_streams_text(client, env):
    response = client.post("/api/v1/lexia", json={"userText": "Hola"})

    assert response.status_code == 200
    assert response.text == "Hola, soy Lexia."
    assert response.headers["x-lexia-intent"] == "general_chat"
    assert response.headers["x-lexia-trace-id"].startswith("lexia-")
    assert env.provider.calls[0]["messages"][0].content == "Hola"


def test_exhausted_credits_return_402_without_provider_call(client, env):
    """Test: con créditos agotados nunca se llama al proveedor."""
    env.store.tables["lexia_usage_periods"] = [
        {"user_id": "user-1", "period_start": "2026-03-01", "credits_used": 300, "tokens_used": 0},
    ]

    response = client.post("/api/v1/lexia", json={"userText": "Redactá una demanda"})

    assert response.status_code == 402
    assert response.json()["error"]["kind"] == "credits_exhausted"
    assert env.provider.calls == []


def test_case_without_access_is_403(client, env):
    body = {"userText": "Qué tareas pendientes tiene este caso?", "caseContext": {"caseId": "case-9"}}

    response = client.post("/api/v1/lexia", json=body)

    assert response.status_code == 403
    assert response.json()["error"]["kind"] == "forbidden"
    assert env.provider.calls == []


def test_case_with_assignment_is_enriched(client, env):
    env.store.tables["case_assignments"] = [{"case_id": "case-1", "user_id": "user-1", "case_role": "lead"}]
    env.store.tables["cases"] = [{
        "id": "case-1", "case_number": "EXP-55", "title": "Pérez c/ Sur", "case_type": "civil",
        "status": "active", "deadlines": [], "tasks": [], "case_notes": [], "documents": [{"id": "d1"}],
    }]
    body = {"userText": "Qué tareas pendientes tiene este caso?", "caseContext": {"caseId": "case-1"}}

    response = client.post("/api/v1/lexia", json=body)

    assert response.status_code == 200
    assert "EXP-55" in env.provider.calls[0]["system_prompt"]


def test_rate_limit_is_429_with_retry_after(client, env):
    env.max_requests = 1

    assert client.post("/api/v1/lexia", json={"userText": "Hola"}).status_code == 200
    response = client.post("/api/v1/lexia", json={"userText": "Hola"})

    assert response.status_code == 429
    assert 1 <= int(response.headers["retry-after"]) <= 60
    assert response.json()["error"]["details"]["retry_after"] == int(response.headers["retry-after"])


def test_invalid_body_is_400(client):
    response = client.post("/api/v1/lexia", json={"messages": []})

    assert response.status_code == 400
    assert response.json()["error"]["kind"] == "validation_error"


def test_usage_endpoint(client, env):
    env.store.tables["lexia_usage_periods"] = [
        {"user_id": "user-1", "period_start": "2026-03-01", "credits_used": 12, "tokens_used": 0},
    ]

    body = client.get("/api/v1/lexia/usage").json()

    assert body["plan"] == "individual"
    assert body["remaining"] == 288
    assert body["used"] == 12


def test_contestacion_session_endpoints(client, env):
    created = client.post("/api/v1/lexia/contestacion/sessions", json={})
    assert created.status_code == 201
    session_id = created.json()["session_id"]

    step = client.post(f"/api/v1/lexia/contestacion/sessions/{session_id}/orchestrate", json={})
    assert step.status_code == 200
    assert step.json()["action"]["type"] == "error"
    assert step.json()["state"] == {}

    assert client.get(f"/api/v1/lexia/contestacion/sessions/{session_id}").json()["current_step"] == "init"
    assert client.get("/api/v1/lexia/contestacion/sessions/sin-uuid").status_code == 400
    missing = client.get("/api/v1/lexia/contestacion/sessions/00000000-0000-0000-0000-000000000000")
    assert missing.status_code == 404


def test_draft_before_ready_is_409(client, env):
    created = client.post("/api/v1/lexia/contestacion/sessions", json={"demandaRaw": "I. HECHOS\nTexto."})
    session_id = created.json()["session_id"]

    response = client.post(f"/api/v1/lexia/contestacion/sessions/{session_id}/generate-draft", json={})

    assert response.status_code == 409
    assert response.json()["error"]["kind"] == "state_conflict"


def test_generic_draft_endpoint(client, env):
    body = {"documentType": "demanda", "formData": {"actor": "A", "demandado": "B", "hechos": "C"}}

    response = client.post("/api/v1/lexia/draft", json=body)

    assert response.status_code == 200
    assert response.text == "Hola, soy Lexia."
    assert "DEMANDA - ESTRUCTURA REQUERIDA" in env.provider.calls[0]["system_prompt"]


async def test_audit_records_activity_usage_and_message():
    store = InMemoryRowStore()
    gate = CreditGate(InMemoryCounterStore(), store, fail_open=True, clock=lambda: NOW)
    orchestrator = StreamOrchestrator(FakeProviderFactory(default=FakeProvider(chunks=["Respuesta"])), timeout_seconds=5)
    decision = process_request("Hola", None, "user-1").model_copy(update={"system_prompt": "s"})
    result = await orchestrator.run([], decision)

    tee = StreamTee(result.stream).start()
    client_text = "".join([chunk.text async for chunk in tee.client()])
    await audit_stream(tee.consumer(1), store, gate, result.decision, "user-1", conversation_id="conv-1")

    assert client_text == "Respuesta"
    assert store.rows("activity_log")[0]["action_type"] == "lexia_query"
    assert store.rows("lexia_usage_log")[0]["trace_id"] == decision.trace_id
    message = store.rows("lexia_messages")[0]
    assert message["conversation_id"] == "conv-1"
    assert message["content"] == "Respuesta"


async def test_audit_skips_aborted_stream():
    async def endless():
        yield StreamChunk("parcial")
        await asyncio.Event().wait()

    store = InMemoryRowStore()
    gate = CreditGate(InMemoryCounterStore(), store, fail_open=True, clock=lambda: NOW)
    decision = process_request("Hola", None, "user-1")
    tee = StreamTee(endless()).start()
    client = tee.client()
    await client.__anext__()
    await client.aclose()

    await audit_stream(tee.consumer(1), store, gate, decision, "user-1")

    assert store.rows("lexia_usage_log") == []
    assert store.rows("activity_log") == []
