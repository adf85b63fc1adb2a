"""Auditoría de un stream completado: activity_log, uso y mensaje de la conversación."""

import logging
import time
from typing import AsyncIterator, Optional

from lexia.ai.controller import create_audit_entry
from lexia.ai.models import Decision
from lexia.ai.streaming import StreamAborted, collect_text
from lexia.ai.usage import CreditGate
from lexia.core.errors import LexiaError
from lexia.core.store import RowStore


logger = logging.getLogger(__name__)


async def audit_stream(
    stream: AsyncIterator,
    store: RowStore,
    credits: CreditGate,
    decision: Decision,
    user_id: str,
    case_id: Optional[str] = None,
    message_count: int = 1,
    conversation_id: Optional[str] = None,
    started_at: Optional[float] = None,
    label: str = "Lexia",
) -> None:
    """
    Consume la copia de auditoría del stream y registra el request.

    Corre del lado del servidor: si el stream terminó, se registra aunque el
    cliente se haya desconectado. Un stream cancelado o fallido no cobra.
    """
    started_at = started_at or time.monotonic()
    try:
        content, tokens = await collect_text(stream)
    except StreamAborted:
        logger.info("[%s] Stream cancelado por el cliente, no se registra uso", decision.trace_id)
        return
    except Exception as e:
        logger.error("[%s] Stream interrumpido: %s", decision.trace_id, e)
        return

    duration_ms = int((time.monotonic() - started_at) * 1000)
    audit = create_audit_entry(decision, user_id, case_id, message_count, tokens, duration_ms)
    logger.info(
        "[%s] %s %s via %s/%s (%d tokens, %dms)",
        audit.trace_id, label, audit.intent.value, audit.provider, audit.model, tokens, duration_ms,
    )

    try:
        await store.insert("activity_log", {
            "user_id": user_id,
            "action_type": "lexia_query",
            "entity_type": "case" if case_id else "general",
            "entity_id": case_id or "general",
            "description": f"{label} [{audit.intent.value}] via {audit.model} ({duration_ms}ms)",
            "case_id": case_id,
        })
    except LexiaError as e:
        logger.error("[%s] No se pudo registrar activity_log: %s", audit.trace_id, e.message)

    try:
        await credits.record(user_id, decision.trace_id, decision.intent.value, decision.credits, tokens)
    except LexiaError as e:
        logger.error("[%s] No se pudo registrar el uso: %s", audit.trace_id, e.message)

    if conversation_id and content:
        try:
            await store.insert("lexia_messages", {
                "conversation_id": conversation_id,
                "role": "assistant",
                "content": content,
                "metadata": {
                    "trace_id": audit.trace_id,
                    "intent": audit.intent.value,
                    "provider": audit.provider,
                    "model": audit.model,
                    "tokens_used": tokens,
                },
            })
        except LexiaError as e:
            logger.error("[%s] No se pudo guardar el mensaje en %s: %s", audit.trace_id, conversation_id, e.message)
