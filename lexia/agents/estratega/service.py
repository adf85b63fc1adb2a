"""Análisis estratégico de casos: permisos, ejecución del grafo y persistencia."""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from lexia.agents.estratega.graph import estratega_graph
from lexia.agents.estratega.state import AnalysisMetadata, AnalyzeParams, StrategicAnalysis
from lexia.agents.estratega.steps import EstrategaSteps
from lexia.ai.context import check_case_permission
from lexia.ai.controller import new_trace_id
from lexia.ai.models import Intent
from lexia.ai.routing import get_credits_for_intent
from lexia.ai.usage import CreditGate, RateLimiter
from lexia.core.errors import Forbidden, LexiaError, NotFound, ValidationFailed
from lexia.core.store import RowStore


logger = logging.getLogger(__name__)

ANALYSES = "lexia_strategic_analyses"
CASE_COLUMNS = "id, case_number, title, case_type, description, filing_date, jurisdiction, court_name, estimated_value"
MAX_LISTED = 20


def summarize_analysis(row: Dict[str, Any]) -> Dict[str, Any]:
    """Resumen para listados: sin escenarios, jurisprudencia ni timeline."""
    analysis = row.get("analysis") or {}
    return {
        "id": row.get("id"),
        "case_id": row.get("case_id"),
        "created_at": row.get("created_at"),
        "updated_at": row.get("updated_at"),
        "case_number": analysis.get("case_number"),
        "case_title": analysis.get("case_title"),
        "analyzed_at": analysis.get("analyzed_at"),
        "risk_level": (analysis.get("risk_matrix") or {}).get("risk_level"),
        "overall_score": (analysis.get("risk_matrix") or {}).get("overall_score"),
        "primary_strategy": (analysis.get("recommendations") or {}).get("primary_strategy"),
    }


class EstrategaService:
    def __init__(
        self,
        store: RowStore,
        steps: EstrategaSteps,
        rate_limiter: RateLimiter,
        credits: Optional[CreditGate] = None,
    ):
        self._store = store
        self._steps = steps
        self._rate_limiter = rate_limiter
        self._credits = credits

    async def _ensure_case_access(self, user_id: str, case_id: str) -> None:
        if not await check_case_permission(self._store, user_id, case_id):
            raise Forbidden("Sin acceso al caso", case_id=case_id)

    async def _load_params(self, case_id: str) -> AnalyzeParams:
        row = await self._store.fetch_one("cases", {"id": case_id}, CASE_COLUMNS)
        if row is None:
            raise NotFound("Caso no encontrado", case_id=case_id)
        description = (row.get("description") or "").strip()
        if not description:
            raise ValidationFailed("El caso necesita una descripción para poder analizarlo", case_id=case_id)
        return AnalyzeParams(
            case_id=row["id"],
            case_number=row.get("case_number") or "",
            case_title=row.get("title") or "",
            case_type=row.get("case_type") or "",
            description=description,
            filing_date=row.get("filing_date"),
            jurisdiction=row.get("jurisdiction"),
            court_name=row.get("court_name"),
            estimated_value=row.get("estimated_value"),
        )

    async def analyze_case(self, user_id: str, case_id: Optional[str]) -> Dict[str, Any]:
        """
        Ejecuta el análisis estratégico completo de un caso y lo guarda.

        Orden: límite de análisis por ventana, permiso sobre el caso, datos del
        caso, créditos y recién entonces los modelos.

        Args:
            user_id: ID del usuario
            case_id: ID del caso a analizar

        Returns:
            ``{"analysis_id", "analysis"}`` con el análisis serializado.

        Raises:
            RateLimited: si el usuario superó los análisis de la ventana
            ValidationFailed: sin case_id o si el caso no tiene descripción
            Forbidden: si el usuario no puede ver el caso
            NotFound: si el caso no existe
            CreditsExhausted: si no quedan créditos
            ModelStepFailed: si algún paso con modelo falla
            PersistenceError: si no se pudo guardar el análisis
        """
        await self._rate_limiter.hit(user_id)
        if not (case_id or "").strip():
            raise ValidationFailed("caseId es requerido")

        await self._ensure_case_access(user_id, case_id)
        params = await self._load_params(case_id)
        if self._credits is not None:
            await self._credits.ensure_allowed(user_id)

        trace_id = new_trace_id("estratega")
        started_at = time.monotonic()
        result = await estratega_graph.ainvoke(
            {"params": params, "trace_id": trace_id},
            config={"configurable": {"steps": self._steps}},
        )
        duration_ms = int((time.monotonic() - started_at) * 1000)

        analysis = StrategicAnalysis(
            case_id=params.case_id,
            case_number=params.case_number,
            case_title=params.case_title,
            analyzed_at=datetime.now(timezone.utc).isoformat(),
            risk_matrix=result["risk_matrix"],
            scenarios=result["scenarios"],
            jurisprudence=result["jurisprudence"],
            timeline=result["timeline"],
            recommendations=result["recommendations"],
            metadata=AnalysisMetadata(duration_ms=duration_ms),
        )
        payload = analysis.model_dump(mode="json")
        saved = await self._save(user_id, case_id, payload)
        logger.info("[%s] Análisis estratégico del caso %s guardado (%dms)", trace_id, case_id, duration_ms)

        try:
            await self._store.insert("activity_log", {
                "user_id": user_id,
                "case_id": case_id,
                "action_type": "lexia_query",
                "entity_type": "case",
                "entity_id": case_id,
                "description": f"Lexia Estratega: Análisis estratégico completo ({duration_ms}ms)",
            })
        except LexiaError as e:
            logger.error("[%s] No se pudo registrar activity_log: %s", trace_id, e.message)

        if self._credits is not None:
            try:
                await self._credits.record(
                    user_id, trace_id, Intent.LEGAL_ANALYSIS.value,
                    get_credits_for_intent(Intent.LEGAL_ANALYSIS), 0,
                )
            except LexiaError as e:
                logger.error("[%s] No se pudo registrar el uso: %s", trace_id, e.message)

        return {"analysis_id": saved["id"], "analysis": payload}

    async def _save(self, user_id: str, case_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Un análisis por caso y usuario: el nuevo reemplaza al anterior."""
        filters = {"case_id": case_id, "user_id": user_id}
        existing = await self._store.fetch_one(ANALYSES, filters, "id")
        if existing:
            updated = await self._store.update(ANALYSES, {"id": existing["id"]}, {"analysis": payload})
            if updated:
                return updated[0]
        return await self._store.insert(ANALYSES, {**filters, "analysis": payload})

    async def list_analyses(self, user_id: str, case_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Últimos análisis del usuario o, con case_id, todos los del caso.

        Raises:
            Forbidden: si se filtra por un caso que el usuario no puede ver
        """
        filters: Dict[str, Any] = {"user_id": user_id}
        if case_id:
            await self._ensure_case_access(user_id, case_id)
            filters = {"case_id": case_id}
        rows = await self._store.fetch_many(
            ANALYSES, filters, "id, case_id, analysis, created_at, updated_at",
            order_by=("created_at", True), limit=MAX_LISTED,
        )
        return [summarize_analysis(row) for row in rows]

    async def get_analysis(self, user_id: str, analysis_id: str) -> Dict[str, Any]:
        row = await self._store.fetch_one(ANALYSES, {"id": analysis_id}, "id, case_id, analysis, created_at, updated_at")
        if row is None:
            raise NotFound("Análisis no encontrado", analysis_id=analysis_id)
        if row.get("case_id"):
            await self._ensure_case_access(user_id, row["case_id"])
        return row
