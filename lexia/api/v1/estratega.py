"""Endpoints de Lexia Estratega: análisis estratégico de casos."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from lexia.agents.estratega.service import EstrategaService
from lexia.api.deps import get_current_user, get_estratega_service


router = APIRouter(prefix="/lexia/estratega", tags=["estratega"])


class AnalyzeBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    case_id: Optional[str] = Field(default=None, alias="caseId")


@router.post("/analyze")
async def analyze(
    body: AnalyzeBody,
    user_id: str = Depends(get_current_user),
    service: EstrategaService = Depends(get_estratega_service),
) -> dict:
    """Corre el análisis completo (riesgos, jurisprudencia, escenarios, timeline y recomendación)."""
    result = await service.analyze_case(user_id, body.case_id)
    return {"success": True, **result}


@router.get("/analyses")
async def list_analyses(
    case_id: Optional[str] = Query(default=None, alias="caseId"),
    user_id: str = Depends(get_current_user),
    service: EstrategaService = Depends(get_estratega_service),
) -> dict:
    return {"analyses": await service.list_analyses(user_id, case_id)}


@router.get("/analyses/{analysis_id}")
async def get_analysis(
    analysis_id: str,
    user_id: str = Depends(get_current_user),
    service: EstrategaService = Depends(get_estratega_service),
) -> dict:
    return {"analysis": await service.get_analysis(user_id, analysis_id)}
