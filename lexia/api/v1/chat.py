"""Endpoint de chat de Lexia con streaming de texto."""

import logging
import time
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator

from lexia.ai.audit import audit_stream
from lexia.ai.context import check_case_permission, enrich_case_context
from lexia.ai.controller import finalize_decision, process_request
from lexia.ai.models import CaseContextInput, ChatMessage, Decision
from lexia.ai.orchestrator import StreamOrchestrator
from lexia.ai.streaming import StreamTee, spawn_background
from lexia.ai.tools import get_tools_for_decision
from lexia.ai.usage import CreditGate, RateLimiter
from lexia.api.deps import (
    get_credit_gate,
    get_current_user,
    get_orchestrator,
    get_rate_limiter,
    get_store,
)
from lexia.core.errors import Forbidden
from lexia.core.store import RowStore


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/lexia", tags=["lexia"])


class LexiaChatRequest(BaseModel):
    """Historial completo (``messages``) o solo el texto nuevo (``userText``)."""

    model_config = ConfigDict(populate_by_name=True)

    messages: List[ChatMessage] = Field(default_factory=list)
    user_text: Optional[str] = Field(default=None, alias="userText")
    case_context: Optional[CaseContextInput] = Field(default=None, alias="caseContext")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")

    @model_validator(mode="after")
    def _require_content(self) -> "LexiaChatRequest":
        if not self.messages and not (self.user_text or "").strip():
            raise ValueError("Se requiere messages o userText")
        return self

    def conversation(self) -> List[ChatMessage]:
        if self.messages:
            return list(self.messages)
        return [ChatMessage(role="user", content=self.user_text or "")]

    def latest_user_text(self) -> str:
        if self.user_text and not self.messages:
            return self.user_text
        return next((m.content for m in reversed(self.messages) if m.role == "user"), "")


def stream_headers(decision: Decision) -> dict:
    return {
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
        "X-Lexia-Trace-Id": decision.trace_id,
        "X-Lexia-Intent": decision.intent.value,
        "X-Lexia-Provider": decision.provider or "",
        "X-Lexia-Model": decision.model,
    }


async def client_text(tee: StreamTee) -> AsyncIterator[str]:
    async for chunk in tee.client():
        if chunk.text:
            yield chunk.text


@router.post("")
async def lexia_chat(
    request: LexiaChatRequest,
    user_id: str = Depends(get_current_user),
    store: RowStore = Depends(get_store),
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    credits: CreditGate = Depends(get_credit_gate),
) -> StreamingResponse:
    """
    Chat con Lexia.

    Orden fijo, de lo más barato a lo más caro: límite de requests,
    clasificación, permiso sobre el caso, contexto, créditos y recién
    entonces el proveedor. Un error antes del primer token vuelve como JSON;
    después, el texto se streamea y la auditoría corre en segundo plano.
    """
    started_at = time.monotonic()
    await rate_limiter.hit(user_id)

    case_input = request.case_context
    decision = process_request(request.latest_user_text(), case_input, user_id)

    if case_input and not await check_case_permission(store, user_id, case_input.case_id):
        raise Forbidden("Sin acceso a este caso", case_id=case_input.case_id)

    case_context = await enrich_case_context(store, case_input) if decision.enrich_context and case_input else None
    decision = finalize_decision(decision, case_context)

    await credits.ensure_allowed(user_id)

    tools = get_tools_for_decision(decision.tools_allowed, case_context)
    messages = request.conversation()
    result = await orchestrator.run(messages, decision, tools)

    tee = StreamTee(result.stream).start()
    spawn_background(
        audit_stream(
            tee.consumer(1), store, credits, result.decision, user_id,
            case_id=case_input.case_id if case_input else None,
            message_count=len(messages),
            conversation_id=request.conversation_id,
            started_at=started_at,
        ),
        name=f"audit-{result.decision.trace_id}",
    )
    return StreamingResponse(
        client_text(tee),
        media_type="text/plain; charset=utf-8",
        headers=stream_headers(result.decision),
    )
