"""Endpoints del flujo guiado de contestación de demanda."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from lexia.agents.contestacion.service import ContestacionService, OrchestrateResult
from lexia.api.deps import get_contestacion_service, get_current_user


router = APIRouter(prefix="/lexia/contestacion", tags=["contestacion"])


class CreateSessionBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    case_id: Optional[str] = Field(default=None, alias="caseId")
    demanda_raw: Optional[str] = Field(default=None, alias="demandaRaw")
    demanda_document_id: Optional[str] = Field(default=None, alias="demandaDocumentId")


class OrchestrateBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_input: Optional[str] = Field(default=None, alias="userInput")
    user_responses: Dict[str, Any] = Field(default_factory=dict, alias="userResponses")
    """Respuestas por bloque: ``{bloque_id: {postura, fundamentacion, prueba_ofrecida}}``."""


class GenerateDraftBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    iteration_instruction: Optional[str] = Field(default=None, alias="iterationInstruction")


class SaveDraftBody(BaseModel):
    name: Optional[str] = None


@router.post("/sessions", status_code=201)
async def create_session(
    body: CreateSessionBody,
    user_id: str = Depends(get_current_user),
    service: ContestacionService = Depends(get_contestacion_service),
) -> dict:
    row = await service.create_session(user_id, body.case_id, body.demanda_raw, body.demanda_document_id)
    return {
        "session_id": row["id"],
        "state": row.get("state") or {},
        "current_step": row.get("current_step", "init"),
    }


@router.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    user_id: str = Depends(get_current_user),
    service: ContestacionService = Depends(get_contestacion_service),
) -> dict:
    return await service.get_session(user_id, session_id)


@router.post("/sessions/{session_id}/orchestrate", response_model=OrchestrateResult)
async def orchestrate(
    session_id: str,
    body: OrchestrateBody,
    user_id: str = Depends(get_current_user),
    service: ContestacionService = Depends(get_contestacion_service),
) -> OrchestrateResult:
    """
    Avanza la sesión un paso.

    Una acción ``error`` vuelve con 200: es parte del flujo (por ejemplo, no
    hay texto de la demanda) y el estado persistido no cambia.
    """
    return await service.orchestrate_step(user_id, session_id, body.user_input, body.user_responses)


@router.post("/sessions/{session_id}/generate-draft")
async def generate_draft(
    session_id: str,
    body: GenerateDraftBody,
    user_id: str = Depends(get_current_user),
    service: ContestacionService = Depends(get_contestacion_service),
) -> StreamingResponse:
    stream, decision = await service.generate_draft(user_id, session_id, body.iteration_instruction)
    return StreamingResponse(
        stream,
        media_type="text/plain; charset=utf-8",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "X-Lexia-Trace-Id": decision.trace_id,
            "X-Lexia-Model": decision.model,
        },
    )


@router.post("/sessions/{session_id}/save-draft")
async def save_draft(
    session_id: str,
    body: SaveDraftBody,
    user_id: str = Depends(get_current_user),
    service: ContestacionService = Depends(get_contestacion_service),
) -> dict:
    return await service.save_draft(user_id, session_id, body.name)
