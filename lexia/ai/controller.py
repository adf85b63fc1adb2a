"""
Controlador de Lexia: convierte el pedido del usuario en una ``Decision``.

UI -> API -> controlador -> Decision -> orquestador de streaming

El controlador no llama a ningún modelo. Clasifica, elige la cadena de
modelos y arma el prompt; el orquestador ejecuta.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from lexia.ai.classifier import classify
from lexia.ai.models import (
    AuditEntry,
    CaseContext,
    CaseContextInput,
    Decision,
    IntentClassification,
)
from lexia.ai.prompts import build_system_prompt
from lexia.ai.routing import get_routing_rule


def new_trace_id(prefix: str = "lexia") -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def build_decision(
    classification: IntentClassification,
    case_input: Optional[CaseContextInput],
    trace_id: Optional[str] = None,
) -> Decision:
    rule = get_routing_rule(classification.intent)
    return Decision(
        intent=classification.intent,
        confidence=classification.confidence,
        tools_allowed=classification.tools_allowed,
        credits=classification.credits,
        enrich_context=classification.requires_context and case_input is not None,
        model_chain=rule.models,
        temperature=rule.temperature,
        max_tokens=rule.max_tokens,
        trace_id=trace_id or new_trace_id(),
    )


def process_request(
    user_text: str,
    case_input: Optional[CaseContextInput],
    caller_id: str,
) -> Decision:
    """Decisión parcial: sin prompt hasta que se enriquezca el contexto."""
    classification = classify(user_text, case_input, caller_id)
    return build_decision(classification, case_input)


def finalize_decision(decision: Decision, case_context: Optional[CaseContext]) -> Decision:
    """
    Agrega el prompt de sistema con el contexto del caso.

    Solo cambia el texto del prompt; la lista blanca de herramientas queda
    exactamente como la dejó el clasificador.
    """
    return decision.model_copy(
        update={"system_prompt": build_system_prompt(decision.intent, case_context)}
    )


def create_audit_entry(
    decision: Decision,
    user_id: str,
    case_id: Optional[str],
    message_count: int,
    tokens_used: int,
    duration_ms: int,
    tools_invoked: Optional[List[str]] = None,
) -> AuditEntry:
    return AuditEntry(
        trace_id=decision.trace_id,
        user_id=user_id,
        timestamp=datetime.now(timezone.utc),
        intent=decision.intent,
        provider=decision.provider,
        model=decision.model,
        case_id=case_id,
        message_count=message_count,
        tokens_used=tokens_used,
        duration_ms=duration_ms,
        tools_invoked=tools_invoked or [],
    )
