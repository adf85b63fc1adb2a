"""Endpoint de redacción de borradores (cualquier tipo de documento)."""

import time
from typing import Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from lexia.ai.audit import audit_stream
from lexia.ai.context import check_case_permission
from lexia.ai.drafting import DocumentType, DraftGenerator, DraftRequest
from lexia.ai.models import CaseContextInput
from lexia.ai.streaming import StreamTee, spawn_background
from lexia.ai.usage import CreditGate, RateLimiter
from lexia.api.deps import (
    get_credit_gate,
    get_current_user,
    get_draft_generator,
    get_rate_limiter,
    get_store,
)
from lexia.api.v1.chat import client_text, stream_headers
from lexia.core.errors import Forbidden
from lexia.core.store import RowStore


router = APIRouter(prefix="/lexia/draft", tags=["lexia"])


class DraftBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_type: DocumentType = Field(alias="documentType")
    variant: str = ""
    form_data: Dict[str, str] = Field(default_factory=dict, alias="formData")
    case_context: Optional[CaseContextInput] = Field(default=None, alias="caseContext")
    previous_draft: Optional[str] = Field(default=None, alias="previousDraft")
    iteration_instruction: Optional[str] = Field(default=None, alias="iterationInstruction")


@router.post("")
async def generate_draft(
    body: DraftBody,
    user_id: str = Depends(get_current_user),
    store: RowStore = Depends(get_store),
    drafts: DraftGenerator = Depends(get_draft_generator),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    credits: CreditGate = Depends(get_credit_gate),
) -> StreamingResponse:
    """Streamea el borrador. Con previousDraft e iterationInstruction es una revisión."""
    started_at = time.monotonic()
    await rate_limiter.hit(user_id)

    case_input = body.case_context
    if case_input and not await check_case_permission(store, user_id, case_input.case_id):
        raise Forbidden("Sin acceso a este caso", case_id=case_input.case_id)

    await credits.ensure_allowed(user_id)

    request = DraftRequest(
        document_type=body.document_type,
        variant=body.variant,
        form_data=body.form_data,
        case_context=case_input,
        previous_draft=body.previous_draft,
        iteration_instruction=(body.iteration_instruction or "").strip() or None,
    )
    profile = await store.fetch_one("profiles", {"id": user_id}, "organization_id")
    result = await drafts.generate(request, organization_id=(profile or {}).get("organization_id"))

    tee = StreamTee(result.stream).start()
    spawn_background(
        audit_stream(
            tee.consumer(1), store, credits, result.decision, user_id,
            case_id=case_input.case_id if case_input else None,
            started_at=started_at,
            label="Lexia Draft",
        ),
        name=f"audit-{result.decision.trace_id}",
    )
    return StreamingResponse(
        client_text(tee),
        media_type="text/plain; charset=utf-8",
        headers=stream_headers(result.decision),
    )
