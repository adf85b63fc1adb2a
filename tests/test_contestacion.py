"""
Tests del flujo guiado de contestación: parseo, máquina de estados, concurrencia
y redacción del borrador.
"""

import asyncio

import pytest

from conftest import FakeProvider, FakeProviderFactory, InMemoryRowStore
from lexia.agents.contestacion.graph import NO_SOURCE_MESSAGE, parse_node
from lexia.agents.contestacion.parse import classify_block, parse_demand
from lexia.agents.contestacion.service import SESSIONS, ContestacionService, select_contestacion_variant
from lexia.agents.contestacion.state import BlockResponse, ContestacionState, DemandBlock
from lexia.agents.contestacion.steps import ContestacionSteps, consolidate_responses
from lexia.ai.drafting import DraftGenerator
from lexia.ai.orchestrator import StreamOrchestrator
from lexia.ai import streaming
from lexia.ai.usage import CreditGate, RateLimiter
from lexia.core.errors import (
    Forbidden,
    NotFound,
    ProviderTransient,
    StateConflict,
    ValidationFailed,
)


DEMANDA = """Señor Juez:
Juan Pérez, por derecho propio, promueve demanda.

I. HECHOS
El actor celebró un contrato de locación con el demandado en marzo de 2024.
El demandado dejó de pagar el canon desde agosto de 2024.

II. DERECHO
Fundo el derecho en los artículos 1187 y siguientes del Código Civil y Comercial.
"""

DEMANDA_SIMPLE = "I. HECHOS\nEl actor alquiló un inmueble.\nII. DERECHO\nArtículos 1187 y ss. CCyC."


def analysis_response(user_content: str) -> dict:
    ids = [block_id for block_id in ("bloque_1", "bloque_2", "bloque_3") if f"Bloque {block_id} " in user_content]
    return {
        "analisis": [
            {"bloque_id": block_id, "argumentos_clave": ["mora"], "puntos_debiles": ["fechas imprecisas"]}
            for block_id in ids
        ],
        "tipo_demanda_detectado": "incumplimiento locación",
        "pretensiones_principales": ["cobro de cánones adeudados"],
    }


def questions_response(user_content: str) -> dict:
    ids = [block_id for block_id in ("bloque_1", "bloque_2", "bloque_3") if f"Bloque {block_id} " in user_content]
    return {
        "preguntas": [
            {"bloque_id": block_id, "pregunta": f"¿Qué postura adopta sobre {block_id}?", "tipo": "postura"}
            for block_id in ids
        ]
    }


def make_provider(**kwargs) -> FakeProvider:
    kwargs.setdefault("chunks", ["CONTESTA DEMANDA. ", "Niega los hechos."])
    return FakeProvider(
        responses={
            "AnalyzeBlocksOutput": analysis_response,
            "GenerateQuestionsOutput": questions_response,
            "AgentDecisionOutput": {"action": "ready_for_redaction", "reason": "", "bloque_ids": []},
        },
        **kwargs,
    )


def make_service(store, counters, clock, provider) -> ContestacionService:
    orchestrator = StreamOrchestrator(FakeProviderFactory(default=provider), timeout_seconds=5, max_attempts=2)
    return ContestacionService(
        store,
        ContestacionSteps(orchestrator),
        RateLimiter(counters, window_seconds=60, max_requests=1000, clock=clock),
        drafts=DraftGenerator(orchestrator, store),
        credits=CreditGate(counters, store, fail_open=True),
    )


async def drain_background() -> None:
    loop = asyncio.get_running_loop()
    pending = [t for t in streaming._background_tasks if t.get_loop() is loop]
    if pending:
        await asyncio.gather(*pending)


def session_row(store: InMemoryRowStore, session_id: str) -> dict:
    return next(r for r in store.rows(SESSIONS) if r["id"] == session_id)


COMPLETE_RESPONSES = {
    "bloque_2": {"postura": "negar", "fundamentacion": "El contrato se pagó en término", "prueba_ofrecida": ["Recibos"]},
    "bloque_3": {"postura": "sin_posicion"},
}


async def advance_to_questions(service, user_id="user-1", text=DEMANDA) -> str:
    row = await service.create_session(user_id, demanda_raw=text)
    for _ in range(3):
        await service.orchestrate_step(user_id, row["id"])
    return row["id"]


# Parseo


def test_parse_numbered_headings():
    blocks = parse_demand(DEMANDA_SIMPLE)

    assert [b.id for b in blocks] == ["bloque_1", "bloque_2"]
    assert [b.orden for b in blocks] == [1, 2]
    assert [b.tipo for b in blocks] == ["hechos", "derecho"]
    assert blocks[0].contenido == "El actor alquiló un inmueble."


def test_parse_keeps_preamble_as_first_block():
    blocks = parse_demand(DEMANDA)

    assert blocks[0].titulo == "Encabezado"
    assert [b.titulo for b in blocks[1:]] == ["I. HECHOS", "II. DERECHO"]


def test_parse_without_headings_is_single_block():
    blocks = parse_demand("El actor reclama el pago de una suma de dinero.")

    assert len(blocks) == 1
    assert blocks[0].titulo == "Contenido completo"


def test_parse_empty_text():
    assert parse_demand("   \n ") == []
    assert parse_demand(None) == []


def test_lowercase_numbered_line_is_not_heading():
    blocks = parse_demand("I. HECHOS\n1. el actor pagó tarde.\nII. PETITORIO\nSe rechace.")

    assert [b.titulo for b in blocks] == ["I. HECHOS", "II. PETITORIO"]
    assert classify_block("II. PETITORIO") == "petitorio"


async def test_parse_is_idempotent():
    """Test: parsear un estado que ya tiene bloques no los duplica."""
    blocks = [DemandBlock(id="bloque_1", titulo="I. HECHOS", contenido="x", tipo="hechos", orden=1)]
    state = ContestacionState(bloques=blocks)

    result = await parse_node({"session_state": state, "demanda_raw": DEMANDA, "current_step": "parsed"})

    assert result["changed"] is False
    assert "session_state" not in result
    assert state.bloques == blocks


# Escenarios de la máquina de estados


async def test_happy_path_reaches_ready_for_redaction(store, counters, clock):
    service = make_service(store, counters, clock, make_provider())
    row = await service.create_session("user-1", demanda_raw=DEMANDA_SIMPLE)

    parsed = await service.orchestrate_step("user-1", row["id"])
    assert parsed.action.type == "parse"
    assert [b["orden"] for b in parsed.state["bloques"]] == [1, 2]
    assert parsed.next_step == "parsed"

    analyzed = await service.orchestrate_step("user-1", row["id"])
    assert analyzed.action.type == "analyze"
    assert set(analyzed.state["analisis_por_bloque"]) == {"bloque_1", "bloque_2"}
    assert analyzed.state["tipo_demanda_detectado"] == "incumplimiento locación"

    questioned = await service.orchestrate_step("user-1", row["id"])
    assert questioned.action.type == "generate_questions"
    assert {q.bloque_id for q in questioned.preguntas} == {"bloque_1", "bloque_2"}

    ready = await service.orchestrate_step("user-1", row["id"], user_responses={
        "bloque_1": {"postura": "admitir_parcial", "fundamentacion": "Solo se adeuda agosto"},
        "bloque_2": {"postura": "sin_posicion"},
    })
    assert ready.action.type == "ready_for_redaction"
    assert ready.state["listo_para_redaccion"] is True
    assert ready.next_step == "ready_for_redaction"

    persisted = session_row(store, row["id"])
    assert persisted["current_step"] == "ready_for_redaction"
    assert persisted["version"] == 4
    assert "Solo se adeuda agosto" in persisted["state"]["form_data_consolidado"]["hechos_admitidos"]


async def test_missing_source_returns_error_and_keeps_empty_state(store, counters, clock):
    provider = make_provider()
    service = make_service(store, counters, clock, provider)
    row = await service.create_session("user-1")

    result = await service.orchestrate_step("user-1", row["id"])

    assert result.action.type == "error"
    assert result.action.message == NO_SOURCE_MESSAGE
    assert result.state == {}
    assert session_row(store, row["id"])["state"] == {}
    assert session_row(store, row["id"])["version"] == 0
    assert provider.calls == []


async def test_waits_for_user_without_new_input(store, counters, clock):
    provider = make_provider()
    service = make_service(store, counters, clock, provider)
    session_id = await advance_to_questions(service)
    calls_before = len(provider.calls)

    result = await service.orchestrate_step("user-1", session_id)

    assert result.action.type == "wait_user"
    assert len(result.preguntas) == 3
    assert len(provider.calls) == calls_before


async def test_incomplete_responses_need_more_info(store, counters, clock):
    """Test: el agente dice ready pero falta fundamentación; se valida la cobertura."""
    service = make_service(store, counters, clock, make_provider())
    session_id = await advance_to_questions(service)

    result = await service.orchestrate_step("user-1", session_id, user_responses={
        "bloque_1": {"postura": "sin_posicion"},
        "bloque_2": {"postura": "negar"},
    })

    assert result.action.type == "need_more_info"
    assert result.action.bloque_ids == ["bloque_2", "bloque_3"]
    assert result.state["bloques_sin_respuesta"] == ["bloque_2", "bloque_3"]
    assert not result.state.get("listo_para_redaccion")
    # Las respuestas nuevas se guardan aunque no se avance.
    assert set(session_row(store, session_id)["state"]["respuestas_usuario"]) == {"bloque_1", "bloque_2"}


async def test_idle_step_stays_in_need_more_info(store, counters, clock):
    """Test: sin respuestas nuevas ni texto, la sesión sigue en need_more_info."""
    provider = make_provider()
    service = make_service(store, counters, clock, provider)
    session_id = await advance_to_questions(service)
    await service.orchestrate_step("user-1", session_id, user_responses={
        "bloque_1": {"postura": "sin_posicion"},
        "bloque_2": {"postura": "negar"},
    })
    row_before = session_row(store, session_id)
    calls_before = len(provider.calls)

    result = await service.orchestrate_step("user-1", session_id)

    assert result.action.type == "need_more_info"
    assert result.action.bloque_ids == ["bloque_2", "bloque_3"]
    assert result.next_step == "need_more_info"
    assert session_row(store, session_id)["current_step"] == "need_more_info"
    assert session_row(store, session_id)["version"] == row_before["version"]
    assert len(provider.calls) == calls_before


async def test_readiness_is_monotonic(store, counters, clock):
    service = make_service(store, counters, clock, make_provider())
    session_id = await advance_to_questions(service)
    ready = await service.orchestrate_step(
        "user-1", session_id, user_responses={"bloque_1": {"postura": "sin_posicion"}, **COMPLETE_RESPONSES}
    )
    assert ready.state["listo_para_redaccion"] is True

    degraded = await service.orchestrate_step(
        "user-1", session_id, user_responses={"bloque_2": {"postura": "negar"}}
    )
    assert degraded.action.type == "complete"
    assert degraded.state["listo_para_redaccion"] is True

    again = await service.orchestrate_step("user-1", session_id, user_responses=COMPLETE_RESPONSES)
    assert again.action.type == "ready_for_redaction"
    assert session_row(store, session_id)["state"]["listo_para_redaccion"] is True


async def test_model_failure_keeps_state_and_is_retryable(store, counters, clock):
    provider = make_provider()
    service = make_service(store, counters, clock, provider)
    row = await service.create_session("user-1", demanda_raw=DEMANDA_SIMPLE)
    await service.orchestrate_step("user-1", row["id"])
    before = session_row(store, row["id"]).copy()

    provider.error = ProviderTransient("timeout")
    result = await service.orchestrate_step("user-1", row["id"])

    assert result.action.type == "error"
    assert result.action.retryable is True
    assert result.action.step == "analyze"
    after = session_row(store, row["id"])
    assert after["state"] == before["state"]
    assert after["version"] == before["version"]

    provider.error = None
    retried = await service.orchestrate_step("user-1", row["id"])
    assert retried.action.type == "analyze"


async def test_fatal_model_failure_is_not_retryable(store, counters, clock):
    provider = make_provider()
    service = make_service(store, counters, clock, provider)
    row = await service.create_session("user-1", demanda_raw=DEMANDA_SIMPLE)
    await service.orchestrate_step("user-1", row["id"])

    provider.error = ValueError("solicitud rechazada")
    result = await service.orchestrate_step("user-1", row["id"])

    assert result.action.type == "error"
    assert result.action.retryable is False


# Concurrencia y validaciones


class RacingStore(InMemoryRowStore):
    """Simula otro request que escribe la sesión justo antes que nosotros."""

    async def update(self, table, filters, values):
        if table == SESSIONS:
            for row in self.tables[table]:
                if row["id"] == filters.get("id"):
                    row["version"] += 1
        return await super().update(table, filters, values)


async def test_concurrent_write_raises_state_conflict(counters, clock):
    store = RacingStore()
    service = make_service(store, counters, clock, make_provider())
    row = await service.create_session("user-1", demanda_raw=DEMANDA_SIMPLE)

    with pytest.raises(StateConflict):
        await service.orchestrate_step("user-1", row["id"])


async def test_responses_for_unknown_blocks_are_rejected(store, counters, clock):
    service = make_service(store, counters, clock, make_provider())
    session_id = await advance_to_questions(service)

    with pytest.raises(ValidationFailed):
        await service.orchestrate_step("user-1", session_id, user_responses={"bloque_99": {"postura": "admitir"}})
    with pytest.raises(ValidationFailed):
        await service.orchestrate_step("user-1", session_id, user_responses={"bloque_1": {"postura": "tal vez"}})


async def test_session_access_errors(store, counters, clock):
    service = make_service(store, counters, clock, make_provider())
    row = await service.create_session("user-1", demanda_raw=DEMANDA_SIMPLE)

    with pytest.raises(ValidationFailed):
        await service.get_session("user-1", "no-es-un-uuid")
    with pytest.raises(NotFound):
        await service.get_session("user-1", "00000000-0000-0000-0000-000000000000")
    with pytest.raises(Forbidden):
        await service.get_session("user-2", row["id"])

    session = await service.get_session("user-1", row["id"])
    assert session["current_step"] == "init"
    assert session["state"] == {}


async def test_create_session_checks_case_and_document(store, counters, clock):
    store.tables["case_assignments"] = [{"case_id": "case-1", "user_id": "user-1", "case_role": "lead"}]
    store.tables["documents"] = [
        {"id": "doc-1", "case_id": "case-1"},
        {"id": "doc-2", "case_id": "case-2"},
    ]
    service = make_service(store, counters, clock, make_provider())

    with pytest.raises(Forbidden):
        await service.create_session("user-1", case_id="case-2")
    with pytest.raises(Forbidden):
        await service.create_session("user-1", case_id="case-1", demanda_document_id="doc-2")

    row = await service.create_session("user-1", case_id="case-1", demanda_document_id="doc-1")
    assert row["demanda_document_id"] == "doc-1"
    assert row["version"] == 0


def test_consolidation_routes_prescription_to_excepciones():
    blocks = [
        DemandBlock(id="bloque_1", titulo="I. HECHOS", contenido="", tipo="hechos", orden=1),
        DemandBlock(id="bloque_2", titulo="II. RUBROS", contenido="", tipo="rubros", orden=2),
    ]
    form = consolidate_responses(blocks, {
        "bloque_1": BlockResponse(postura="admitir"),
        "bloque_2": BlockResponse(postura="negar", fundamentacion="Opera la prescripción bienal"),
    })

    assert form.hechos_admitidos == "1. I. HECHOS."
    assert "prescripción" in form.excepciones
    assert consolidate_responses(blocks, {"bloque_1": BlockResponse(postura="sin_posicion")}) is None


async def test_variant_selection(store):
    store.tables["lexia_document_templates"] = [
        {"document_type": "contestacion", "is_active": True, "variant": ""},
        {"document_type": "contestacion", "is_active": True, "variant": "incumplimiento_locacion"},
    ]

    assert await select_contestacion_variant(store, "Incumplimiento locación") == "incumplimiento_locacion"
    assert await select_contestacion_variant(store, "daños y perjuicios") == ""
    assert await select_contestacion_variant(store, None) == ""


# Redacción


async def test_draft_requires_ready_session(store, counters, clock):
    service = make_service(store, counters, clock, make_provider())
    session_id = await advance_to_questions(service)

    with pytest.raises(StateConflict):
        await service.generate_draft("user-1", session_id)


async def test_draft_is_persisted_and_revision_includes_previous(store, counters, clock):
    provider = make_provider()
    service = make_service(store, counters, clock, provider)
    session_id = await advance_to_questions(service)
    await service.orchestrate_step(
        "user-1", session_id, user_responses={"bloque_1": {"postura": "sin_posicion"}, **COMPLETE_RESPONSES}
    )

    stream, decision = await service.generate_draft("user-1", session_id)
    text = "".join([chunk async for chunk in stream])
    await drain_background()

    assert text == "CONTESTA DEMANDA. Niega los hechos."
    state = session_row(store, session_id)["state"]
    assert state["draft_content"] == text
    assert state["listo_para_redaccion"] is True
    assert [r["trace_id"] for r in store.rows("lexia_usage_log")] == [decision.trace_id]

    first_prompt = provider.calls[-1]["system_prompt"]
    assert "HECHOS NEGADOS" in first_prompt
    assert "El contrato se pagó en término" in first_prompt

    stream, _ = await service.generate_draft("user-1", session_id, "Agregá la excepción de pago")
    _ = [chunk async for chunk in stream]
    await drain_background()

    revision = provider.calls[-1]
    assert f"--- BORRADOR ANTERIOR (para modificar) ---\n{text}" in revision["system_prompt"]
    assert "Agregá la excepción de pago" in revision["messages"][0].content


async def test_save_draft_writes_lexia_drafts(store, counters, clock):
    service = make_service(store, counters, clock, make_provider())
    session_id = await advance_to_questions(service)
    await service.orchestrate_step(
        "user-1", session_id, user_responses={"bloque_1": {"postura": "sin_posicion"}, **COMPLETE_RESPONSES}
    )

    with pytest.raises(ValidationFailed):
        await service.save_draft("user-1", session_id)

    stream, _ = await service.generate_draft("user-1", session_id)
    _ = [chunk async for chunk in stream]
    await drain_background()

    saved = await service.save_draft("user-1", session_id, "Contestación Pérez")

    drafts = store.rows("lexia_drafts")
    assert len(drafts) == 1
    assert drafts[0]["name"] == "Contestación Pérez"
    assert drafts[0]["document_type"] == "contestacion"
    assert session_row(store, session_id)["state"]["draft_id"] == saved["draft_id"]
