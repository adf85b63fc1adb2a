"""
Tests del clasificador de intención y del armado de decisiones.
"""

import pytest

from lexia.ai.classifier import classify
from lexia.ai.controller import build_decision, finalize_decision, process_request
from lexia.ai.models import CaseContext, CaseContextInput, Intent
from lexia.ai.routing import get_plan_credits_limit, get_routing_rule
from lexia.ai.tools import allowed_tools_for, get_tools_for_decision


CASE = CaseContextInput(caseId="case-1", caseNumber="EXP-123", title="Pérez c/ Gómez", type="civil")


@pytest.mark.parametrize("text, case", [
    ("Hola, qué puedes hacer?", None),
    ("Redactá un borrador de demanda por daños", None),
    ("Cuándo vence el plazo de apelación?", CASE),
    ("Analizá la viabilidad de una nulidad", CASE),
    ("", None),
])
def test_classifier_is_deterministic(text, case):
    """Test: mismo texto y contexto dan exactamente la misma clasificación."""
    first = classify(text, case, "user-1")
    second = classify(text, case, "user-1")

    assert first == second
    assert first.tools_allowed == second.tools_allowed
    assert first.credits == second.credits


def test_caller_id_does_not_change_classification():
    assert classify("Resumí este contrato", None, "a") == classify("Resumí este contrato", None, "b")


def test_empty_text_is_general_chat():
    """Test: texto vacío o espacios no falla, clasifica como general_chat."""
    result = classify("   ", None, "user-1")

    assert result.intent == Intent.GENERAL_CHAT
    assert result.credits == 0.5


def test_drafting_request():
    result = classify("Necesito redactar un escrito de contestación", None, "user-1")

    assert result.intent == Intent.DOCUMENT_DRAFTING
    assert "generate_draft" in result.tools_allowed
    assert result.credits == 2


def test_procedural_query_allows_deadline_tool():
    result = classify("Calculá el plazo en días hábiles para contestar", None, "user-1")

    assert result.intent == Intent.PROCEDURAL_QUERY
    assert "calculate_deadline" in result.tools_allowed


def test_case_reference_boosts_case_query():
    """Test: con un caso activo, referirse a "este caso" favorece case_query."""
    result = classify("Qué tareas pendientes tiene este caso?", CASE, "user-1")

    assert result.intent == Intent.CASE_QUERY
    assert result.requires_context


def test_decision_enriches_only_with_case():
    with_case = process_request("Qué tareas pendientes tiene este caso?", CASE, "user-1")
    without_case = process_request("Qué tareas pendientes tiene este caso?", None, "user-1")

    assert with_case.enrich_context
    assert not without_case.enrich_context


def test_decision_uses_routing_chain():
    decision = build_decision(classify("Hola", None, "user-1"), None, trace_id="t-1")

    assert decision.trace_id == "t-1"
    assert decision.model_chain[0] == decision.model
    assert len(decision.model_chain) >= 2
    assert decision.system_prompt == ""


def test_finalize_keeps_tool_allowlist():
    """Test: agregar el contexto del caso no amplía la lista blanca de herramientas."""
    decision = process_request("Hola", CASE, "user-1")
    context = CaseContext.minimal(CASE)

    final = finalize_decision(decision, context)

    assert final.tools_allowed == decision.tools_allowed
    assert "EXP-123" in final.system_prompt
    assert final.trace_id == decision.trace_id


def test_tools_match_allowlist_exactly():
    decision = process_request("Calculá el plazo de 15 días hábiles", None, "user-1")

    tools = get_tools_for_decision(decision.tools_allowed)

    assert {t.name for t in tools} == set(decision.tools_allowed)


@pytest.mark.parametrize("intent", list(Intent))
def test_allowlist_equals_routing_rule(intent):
    """Test: la lista blanca de cada intención es exactamente la de su regla."""
    rule = get_routing_rule(intent)

    assert allowed_tools_for(intent, rule.tools_allowed) == frozenset(rule.tools_allowed)


def test_general_chat_has_no_tools():
    """Test: el chat general (y el texto sin coincidencias) no recibe herramientas."""
    assert classify("Hola", None, "user-1").tools_allowed == frozenset()
    assert classify("", None, "user-1").tools_allowed == frozenset()
    assert get_tools_for_decision(process_request("Hola", None, "user-1").tools_allowed) == []


def test_legal_analysis_does_not_get_summaries():
    result = classify("Analizá la viabilidad de una nulidad", CASE, "user-1")

    assert result.intent == Intent.LEGAL_ANALYSIS
    assert "summarize_document" not in result.tools_allowed


def test_unregistered_tool_is_dropped():
    assert allowed_tools_for(Intent.CASE_QUERY, ("query_case_info", "borrar_caso")) == frozenset({"query_case_info"})


def test_unknown_plan_falls_back_to_individual():
    assert get_plan_credits_limit("professional") == 600
    assert get_plan_credits_limit("inexistente") == 300
