"""Servicio de sesiones de contestación: crear, avanzar, consultar y redactar."""

import logging
import unicodedata
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from lexia.agents.contestacion.graph import contestacion_graph
from lexia.agents.contestacion.parse import DEMANDA_RAW_MAX_LENGTH
from lexia.agents.contestacion.state import (
    Action,
    BlockQuestion,
    BlockResponse,
    ContestacionState,
    GenerateQuestionsAction,
    WaitUserAction,
)
from lexia.agents.contestacion.steps import ContestacionSteps, build_demanda_context
from lexia.ai.context import check_case_permission, fetch_case_parties
from lexia.ai.controller import new_trace_id
from lexia.ai.drafting import DraftGenerator, DraftRequest, default_draft_title
from lexia.ai.models import CaseContextInput, Decision
from lexia.ai.streaming import StreamAborted, StreamTee, collect_text, spawn_background
from lexia.ai.usage import CreditGate, RateLimiter
from lexia.core.errors import (
    Forbidden,
    NotFound,
    PersistenceError,
    StateConflict,
    ValidationFailed,
)
from lexia.core.store import Row, RowStore


logger = logging.getLogger(__name__)

SESSIONS = "lexia_contestacion_sessions"
SESSION_COLUMNS = "id, user_id, case_id, demanda_raw, demanda_document_id, state, current_step, version, created_at, updated_at"

DEMANDA_TO_VARIANT: Dict[str, str] = {
    "incumplimiento_locacion": "incumplimiento_locacion",
    "incumplimiento_compraventa": "incumplimiento_compraventa",
    "incumplimiento_suministro": "incumplimiento_suministro",
    "incumplimiento_servicios": "incumplimiento_servicios",
}

DRAFT_WRITE_ATTEMPTS = 3


class OrchestrateResult(BaseModel):
    action: Action
    state: Dict[str, Any]
    next_step: str
    preguntas: List[BlockQuestion] = Field(default_factory=list)


def _slug(text: str) -> str:
    normalized = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode()
    return "_".join(normalized.lower().split())


def _parse_session_id(session_id: str) -> str:
    try:
        return str(uuid.UUID(str(session_id)))
    except ValueError:
        raise ValidationFailed("sessionId inválido", session_id=session_id)


async def select_contestacion_variant(store: RowStore, tipo_demanda: Optional[str]) -> str:
    """
    Variante de plantilla según el tipo de demanda detectado.

    Cadena vacía = plantilla estándar (no hay variante activa que coincida).
    """
    rows = await store.fetch_many(
        "lexia_document_templates", {"document_type": "contestacion", "is_active": True}, "variant"
    )
    available = {(r.get("variant") or "").strip() for r in rows} - {""}
    if not available or not tipo_demanda:
        return ""

    tipo = _slug(tipo_demanda)
    direct = DEMANDA_TO_VARIANT.get(tipo)
    if direct in available:
        return direct
    words = set(tipo.split("_"))
    for key, variant in DEMANDA_TO_VARIANT.items():
        if variant in available and set(key.split("_")) <= words:
            return variant
    return ""


class ContestacionService:
    def __init__(
        self,
        store: RowStore,
        steps: ContestacionSteps,
        rate_limiter: RateLimiter,
        drafts: Optional[DraftGenerator] = None,
        credits: Optional[CreditGate] = None,
    ):
        self._store = store
        self._steps = steps
        self._rate_limiter = rate_limiter
        self._drafts = drafts
        self._credits = credits

    async def _load(self, user_id: str, session_id: str) -> Row:
        session_id = _parse_session_id(session_id)
        row = await self._store.fetch_one(SESSIONS, {"id": session_id}, SESSION_COLUMNS)
        if row is None:
            raise NotFound("Sesión no encontrada", session_id=session_id)
        if row.get("user_id") != user_id:
            raise Forbidden("La sesión pertenece a otro usuario")
        return row

    def _state(self, row: Row) -> ContestacionState:
        try:
            return ContestacionState.model_validate(row.get("state") or {})
        except ValidationError as e:
            logger.error("Estado inválido en la sesión %s: %s", row.get("id"), e)
            raise PersistenceError("El estado guardado de la sesión es inválido", session_id=row.get("id"))

    async def _write(self, row: Row, state: ContestacionState, next_step: str) -> Row:
        """Escritura condicionada a la versión leída; si otro paso escribió antes, StateConflict."""
        version = int(row.get("version") or 0)
        updated = await self._store.update(
            SESSIONS,
            {"id": row["id"], "version": version},
            {"state": state.dump(), "current_step": next_step, "version": version + 1},
        )
        if not updated:
            raise StateConflict(
                "La sesión fue modificada por otro request. Volvé a cargarla y reintentá.",
                session_id=row["id"],
            )
        return updated[0]

    async def create_session(
        self,
        user_id: str,
        case_id: Optional[str] = None,
        demanda_raw: Optional[str] = None,
        demanda_document_id: Optional[str] = None,
    ) -> Row:
        """
        Crea una sesión de contestación vacía (paso ``init``).

        Args:
            user_id: ID del usuario dueño de la sesión
            case_id: caso al que pertenece (opcional)
            demanda_raw: texto de la demanda; se recorta a 100 000 caracteres
            demanda_document_id: documento con la demanda, del mismo caso

        Returns:
            La fila creada en ``lexia_contestacion_sessions``.

        Raises:
            Forbidden: si el usuario no puede ver el caso o el documento
            ValidationFailed: si el documento no existe o es de otro caso
        """
        if case_id and not await check_case_permission(self._store, user_id, case_id):
            raise Forbidden("Sin acceso a este caso", case_id=case_id)

        document_id = None
        if demanda_document_id:
            document = await self._store.fetch_one("documents", {"id": demanda_document_id}, "id, case_id")
            if document is None:
                raise ValidationFailed("Documento no encontrado", document_id=demanda_document_id)
            doc_case = document.get("case_id")
            if doc_case and not await check_case_permission(self._store, user_id, doc_case):
                raise Forbidden("Sin acceso al caso del documento", document_id=demanda_document_id)
            if case_id and doc_case != case_id:
                raise ValidationFailed("El documento debe pertenecer al mismo caso", document_id=demanda_document_id)
            document_id = document["id"]

        text = (demanda_raw or "")[:DEMANDA_RAW_MAX_LENGTH]
        row = await self._store.insert(SESSIONS, {
            "user_id": user_id,
            "case_id": case_id or None,
            "demanda_raw": text or None,
            "demanda_document_id": document_id,
            "state": {},
            "current_step": "init",
            "version": 0,
        })
        logger.info("Sesión de contestación %s creada (caso=%s)", row.get("id"), case_id)
        return row

    async def get_session(self, user_id: str, session_id: str) -> Row:
        """
        Raises:
            ValidationFailed: si session_id no es un UUID
            NotFound: si la sesión no existe
            Forbidden: si la sesión es de otro usuario
        """
        row = await self._load(user_id, session_id)
        return {
            "id": row["id"],
            "case_id": row.get("case_id"),
            "demanda_raw": row.get("demanda_raw"),
            "state": row.get("state") or {},
            "current_step": row.get("current_step", "init"),
            "created_at": row.get("created_at"),
            "updated_at": row.get("updated_at"),
        }

    async def orchestrate_step(
        self,
        user_id: str,
        session_id: str,
        user_input: Optional[str] = None,
        user_responses: Optional[Mapping[str, Any]] = None,
    ) -> OrchestrateResult:
        """
        Avanza la sesión una acción y persiste el resultado.

        Args:
            user_id: ID del usuario
            session_id: ID de la sesión
            user_input: texto libre del usuario para el agente
            user_responses: respuestas por bloque a fusionar con las guardadas

        Returns:
            OrchestrateResult con la acción, el estado y el próximo paso. Una
            acción ``error`` deja el estado persistido intacto.

        Raises:
            RateLimited: si el usuario superó el límite de la ventana
            ValidationFailed: si hay respuestas para bloques inexistentes o inválidas
            StateConflict: si otro request escribió la sesión en el medio
        """
        await self._rate_limiter.hit(user_id)
        row = await self._load(user_id, session_id)
        state = self._state(row)

        responses = self._validate_responses(state, user_responses or {})
        if responses:
            state = state.model_copy(update={"respuestas_usuario": {**state.respuestas_usuario, **responses}})

        trace_id = new_trace_id("contestacion")
        result = await contestacion_graph.ainvoke(
            {
                "session_state": state,
                "demanda_raw": row.get("demanda_raw"),
                "user_input": user_input,
                "has_new_responses": bool(responses),
                "current_step": row.get("current_step") or "init",
                "trace_id": trace_id,
            },
            config={"configurable": {"steps": self._steps, "thread_id": row["id"]}},
        )

        action = result["action"]
        next_step = result.get("next_step") or row.get("current_step") or "init"
        final_state = result["session_state"]

        if action.type == "error":
            # El estado persistido queda intacto.
            final_state = self._state(row)
            next_step = row.get("current_step") or "init"
        elif result.get("changed"):
            await self._write(row, final_state, next_step)

        logger.info("[%s] Sesión %s: %s -> %s", trace_id, row["id"], action.type, next_step)
        preguntas: List[BlockQuestion] = []
        if isinstance(action, GenerateQuestionsAction):
            preguntas = final_state.preguntas_generadas
        elif isinstance(action, WaitUserAction):
            preguntas = action.preguntas
        return OrchestrateResult(action=action, state=final_state.dump(), next_step=next_step, preguntas=preguntas)

    def _validate_responses(
        self, state: ContestacionState, raw: Mapping[str, Any]
    ) -> Dict[str, BlockResponse]:
        if not raw:
            return {}
        if not state.bloques:
            raise ValidationFailed("No hay bloques parseados para responder")
        known = set(state.block_ids)
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ValidationFailed("Respuestas para bloques inexistentes", bloque_ids=unknown)
        responses: Dict[str, BlockResponse] = {}
        for block_id, value in raw.items():
            try:
                response = value if isinstance(value, BlockResponse) else BlockResponse.model_validate(value)
            except ValidationError as e:
                raise ValidationFailed(f"Respuesta inválida para {block_id}", errors=e.errors(include_url=False))
            responses[block_id] = response.model_copy(update={"bloque_id": block_id})
        return responses

    async def _form_data(self, state: ContestacionState, case_id: Optional[str]) -> Dict[str, str]:
        form_data = state.form_data_consolidado.as_form_data() if state.form_data_consolidado else {}
        if case_id:
            form_data.update(await fetch_case_parties(self._store, case_id))
        return form_data

    async def _case_input(self, case_id: Optional[str]) -> Optional[CaseContextInput]:
        if not case_id:
            return None
        row = await self._store.fetch_one("cases", {"id": case_id}, "id, case_number, title, case_type")
        if not row:
            return None
        return CaseContextInput(
            case_id=row["id"],
            case_number=row.get("case_number") or "",
            title=row.get("title") or "",
            type=row.get("case_type") or "",
        )

    async def generate_draft(
        self, user_id: str, session_id: str, iteration_instruction: Optional[str] = None
    ) -> Tuple[AsyncIterator[str], Decision]:
        """
        Streamea el borrador y lo guarda en la sesión una sola vez, al terminar.

        El guardado corre del lado del servidor: si el stream llegó completo,
        se persiste aunque el cliente haya dejado de escuchar.

        Args:
            user_id: ID del usuario
            session_id: ID de la sesión
            iteration_instruction: pedido de cambios sobre el borrador anterior

        Returns:
            El stream de texto para el cliente y la decisión que lo sirve.

        Raises:
            StateConflict: si la sesión no está lista para redactar
            CreditsExhausted: si no quedan créditos
        """
        if self._drafts is None:
            raise RuntimeError("ContestacionService sin DraftGenerator")
        await self._rate_limiter.hit(user_id)
        row = await self._load(user_id, session_id)
        state = self._state(row)
        if not state.listo_para_redaccion or state.form_data_consolidado is None:
            raise StateConflict(
                "La sesión todavía no está lista para redactar. Completá el flujo de preguntas primero.",
                current_step=row.get("current_step"),
            )
        if self._credits is not None:
            await self._credits.ensure_allowed(user_id)

        case_id = row.get("case_id")
        variant = state.variant_seleccionada or await select_contestacion_variant(self._store, state.tipo_demanda_detectado)
        instruction = (iteration_instruction or "").strip() or None
        request = DraftRequest(
            document_type="contestacion",
            variant=variant,
            form_data=await self._form_data(state, case_id),
            case_context=await self._case_input(case_id),
            demanda_context=build_demanda_context(state),
            previous_draft=state.draft_content if instruction else None,
            iteration_instruction=instruction,
        )
        profile = await self._store.fetch_one("profiles", {"id": user_id}, "organization_id")
        result = await self._drafts.generate(request, organization_id=(profile or {}).get("organization_id"))

        tee = StreamTee(result.stream).start()
        spawn_background(
            self._persist_draft(tee.consumer(1), user_id, row["id"], variant, result.decision),
            name=f"draft-{row['id']}",
        )

        async def client_text() -> AsyncIterator[str]:
            async for chunk in tee.client():
                if chunk.text:
                    yield chunk.text

        return client_text(), result.decision

    async def _persist_draft(
        self, stream: AsyncIterator, user_id: str, session_id: str, variant: str, decision: Decision
    ) -> None:
        try:
            content, tokens = await collect_text(stream)
        except StreamAborted:
            logger.info("[%s] Borrador cancelado por el cliente, no se guarda", decision.trace_id)
            return
        except Exception as e:
            logger.error("[%s] El borrador falló a mitad del stream: %s", decision.trace_id, e)
            return

        for attempt in range(DRAFT_WRITE_ATTEMPTS):
            row = await self._store.fetch_one(SESSIONS, {"id": session_id}, SESSION_COLUMNS)
            if row is None:
                logger.error("[%s] La sesión %s desapareció antes de guardar el borrador", decision.trace_id, session_id)
                return
            state = self._state(row).model_copy(update={
                "variant_seleccionada": variant,
                "draft_content": content,
                "draft_generado_at": datetime.now(timezone.utc).isoformat(),
            })
            try:
                await self._write(row, state, row.get("current_step") or "ready_for_redaction")
                break
            except StateConflict:
                logger.warning("[%s] Conflicto al guardar el borrador (intento %d)", decision.trace_id, attempt + 1)
        else:
            logger.error("[%s] No se pudo guardar el borrador en la sesión %s", decision.trace_id, session_id)

        if self._credits is not None:
            await self._credits.record(user_id, decision.trace_id, decision.intent.value, decision.credits, tokens)

    async def save_draft(self, user_id: str, session_id: str, name: Optional[str] = None) -> Dict[str, Any]:
        """
        Guarda el borrador de la sesión en ``lexia_drafts``.

        Args:
            user_id: ID del usuario
            session_id: ID de la sesión
            name: título; sin título se usa "Borrador Contestación - <actor> C/ <demandado>"

        Returns:
            ``{"draft_id", "case_id"}`` del borrador guardado.

        Raises:
            ValidationFailed: si todavía no se generó un borrador
        """
        row = await self._load(user_id, session_id)
        state = self._state(row)
        if not (state.draft_content or "").strip():
            raise ValidationFailed("No hay borrador para guardar. Generá el borrador primero.")

        case_id = row.get("case_id")
        form_data = await self._form_data(state, case_id)
        draft = await self._store.insert("lexia_drafts", {
            "user_id": user_id,
            "document_type": "contestacion",
            "name": (name or "").strip() or default_draft_title("contestacion", form_data),
            "content": state.draft_content,
            "form_data": form_data,
            "case_id": case_id,
        })
        await self._write(row, state.model_copy(update={"draft_id": draft["id"]}), row.get("current_step") or "ready_for_redaction")
        return {"draft_id": draft["id"], "case_id": case_id}
