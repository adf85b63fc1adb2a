"""
Grafo de LangGraph para un paso del flujo de contestación.

decide -> (parse | analyze | generate_questions | ready_for_redaction) -> END
decide -> END para wait_user, need_more_info, complete y error

Cada invocación ejecuta como máximo una acción. El grafo se compila sin
checkpointer: la fila de la sesión es la única fuente de verdad y cada paso
lee, calcula y vuelve a escribir el estado completo.
"""

import logging
from datetime import datetime, timezone
from typing import List

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph

from lexia.agents.contestacion.parse import parse_demand
from lexia.agents.contestacion.state import (
    AnalyzeAction,
    BlockQuestion,
    CompleteAction,
    ContestacionState,
    ErrorAction,
    GenerateQuestionsAction,
    GraphState,
    NeedMoreInfoAction,
    ParseAction,
    ReadyForRedactionAction,
    WaitUserAction,
)
from lexia.agents.contestacion.steps import ContestacionSteps, consolidate_responses, missing_blocks
from lexia.core.errors import ModelStepFailed, ProviderFatal


logger = logging.getLogger(__name__)

NO_SOURCE_MESSAGE = "No hay texto de la demanda para parsear. Cargá el texto o un documento con la demanda."


def _steps(config: RunnableConfig) -> ContestacionSteps:
    return config["configurable"]["steps"]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _pending_questions(session: ContestacionState, block_ids: List[str]) -> List[BlockQuestion]:
    return [q for q in session.preguntas_generadas if q.bloque_id in block_ids]


def _model_error(error: ModelStepFailed) -> ErrorAction:
    return ErrorAction(
        message=f"{error.message}. Reintentá el mismo paso.",
        retryable=not isinstance(error.cause, ProviderFatal),
        step=error.step,
    )


def _hold(state: GraphState, action, next_step) -> GraphState:
    """Acciones que no avanzan: solo se persisten las respuestas nuevas."""
    return {"action": action, "next_step": next_step, "changed": bool(state.get("has_new_responses"))}


def _need_more_info(state: GraphState, block_ids: List[str], reason: str) -> GraphState:
    session = state["session_state"]
    result = _hold(state, NeedMoreInfoAction(bloque_ids=block_ids, reason=reason), "need_more_info")
    if session.bloques_sin_respuesta != block_ids:
        result["session_state"] = session.model_copy(update={"bloques_sin_respuesta": block_ids})
        result["changed"] = True
    return result


async def decide_node(state: GraphState, config: RunnableConfig) -> GraphState:
    """
    Decide la próxima acción.

    Mientras falten bloques, análisis o preguntas las reglas son fijas. Con
    preguntas generadas decide el agente, y su decisión se valida contra la
    cobertura real de las respuestas.
    """
    session = state["session_state"]
    current = state.get("current_step", "init")
    has_new = bool(state.get("has_new_responses"))
    user_input = (state.get("user_input") or "").strip()

    if not session.bloques:
        if (state.get("demanda_raw") or "").strip():
            return {"action": ParseAction()}
        return {"action": ErrorAction(message=NO_SOURCE_MESSAGE), "next_step": current, "changed": False}

    if not session.analisis_por_bloque:
        return {"action": AnalyzeAction()}
    if not session.preguntas_generadas:
        return {"action": GenerateQuestionsAction()}

    missing = missing_blocks(session)

    if session.listo_para_redaccion:
        # La preparación para redactar no se revierte.
        if has_new and not missing and consolidate_responses(session.bloques, session.respuestas_usuario):
            return {"action": ReadyForRedactionAction()}
        return {"action": CompleteAction(), "next_step": "ready_for_redaction", "changed": has_new}

    if not has_new and not user_input:
        if current == "need_more_info":
            # Sin información nueva no se sale de need_more_info.
            ids = session.bloques_sin_respuesta or missing
            if ids:
                return _need_more_info(state, ids, "Falta información en algunos bloques.")
        reason = "Completá las respuestas por bloque para continuar."
        return _hold(state, WaitUserAction(reason=reason, preguntas=_pending_questions(session, missing)), "questions")

    try:
        decision = await _steps(config).agent_decision(session, user_input or None, state.get("trace_id", ""))
    except ModelStepFailed as e:
        logger.error("[%s] Decisión del agente falló: %s", state.get("trace_id", ""), e.message)
        return {"action": _model_error(e), "next_step": current, "changed": False}

    known = set(session.block_ids)
    agent_ids = [block_id for block_id in decision.bloque_ids if block_id in known]

    if decision.action == "generate_questions" and agent_ids:
        return {"action": GenerateQuestionsAction(bloque_ids=agent_ids)}

    if decision.action == "wait_user" or decision.action == "generate_questions":
        reason = decision.reason.strip() or "Completá las respuestas por bloque para continuar."
        return _hold(state, WaitUserAction(reason=reason, preguntas=_pending_questions(session, missing)), "questions")

    if decision.action == "need_more_info":
        ids = agent_ids or missing
        if ids:
            reason = decision.reason.strip() or "Falta información en algunos bloques."
            return _need_more_info(state, ids, reason)

    # ready_for_redaction (o need_more_info sin bloques pendientes): validar cobertura.
    if missing:
        reason = "Faltan respuestas utilizables (postura y, si corresponde, fundamentación) en algunos bloques."
        return _need_more_info(state, missing, reason)
    if consolidate_responses(session.bloques, session.respuestas_usuario) is None:
        reason = "Al menos un bloque necesita una postura distinta de 'sin_posicion' para redactar la contestación."
        return _need_more_info(state, session.block_ids, reason)
    return {"action": ReadyForRedactionAction()}


async def parse_node(state: GraphState) -> GraphState:
    session = state["session_state"]
    if session.bloques:
        # Idempotente: bloques ya parseados no se tocan.
        return {"next_step": state.get("current_step", "parsed"), "changed": False}

    bloques = parse_demand(state.get("demanda_raw"))
    if not bloques:
        return {"next_step": "init", "changed": False}

    updated = session.model_copy(update={"bloques": bloques, "ultima_accion": "parse", "ultima_accion_at": _now()})
    logger.info("[%s] Demanda dividida en %d bloques", state.get("trace_id", ""), len(bloques))
    return {"session_state": updated, "next_step": "parsed", "changed": True}


async def analyze_node(state: GraphState, config: RunnableConfig) -> GraphState:
    session = state["session_state"]
    try:
        analyses, tipo, pretensiones = await _steps(config).analyze(
            session, state.get("demanda_raw") or "", state.get("trace_id", "")
        )
    except ModelStepFailed as e:
        logger.error("[%s] Análisis falló: %s", state.get("trace_id", ""), e.message)
        return {"action": _model_error(e), "next_step": state.get("current_step", "parsed"), "changed": False}

    updated = session.model_copy(update={
        "analisis_por_bloque": {**session.analisis_por_bloque, **analyses},
        "tipo_demanda_detectado": tipo or session.tipo_demanda_detectado,
        "pretensiones_principales": pretensiones or session.pretensiones_principales,
        "ultima_accion": "analyze",
        "ultima_accion_at": _now(),
    })
    return {"session_state": updated, "next_step": "analyzed", "changed": True}


async def generate_questions_node(state: GraphState, config: RunnableConfig) -> GraphState:
    session = state["session_state"]
    action = state["action"]
    try:
        questions = await _steps(config).generate_questions(session, action.bloque_ids, state.get("trace_id", ""))
    except ModelStepFailed as e:
        logger.error("[%s] Generación de preguntas falló: %s", state.get("trace_id", ""), e.message)
        return {"action": _model_error(e), "next_step": state.get("current_step", "analyzed"), "changed": False}

    # Upsert por bloque: las preguntas nuevas reemplazan a las del mismo bloque.
    replaced = {q.bloque_id for q in questions}
    merged = [q for q in session.preguntas_generadas if q.bloque_id not in replaced] + questions
    order = {block_id: index for index, block_id in enumerate(session.block_ids)}
    merged.sort(key=lambda q: order.get(q.bloque_id, len(order)))

    updated = session.model_copy(update={
        "preguntas_generadas": merged,
        "ultima_accion": "generate_questions",
        "ultima_accion_at": _now(),
    })
    return {"session_state": updated, "next_step": "questions", "changed": True}


async def ready_for_redaction_node(state: GraphState) -> GraphState:
    session = state["session_state"]
    form_data = consolidate_responses(session.bloques, session.respuestas_usuario)
    updated = session.model_copy(update={
        "form_data_consolidado": form_data,
        "listo_para_redaccion": True,
        "bloques_sin_respuesta": [],
        "ultima_accion": "ready_for_redaction",
        "ultima_accion_at": _now(),
    })
    return {"session_state": updated, "next_step": "ready_for_redaction", "changed": True}


def route_action(state: GraphState) -> str:
    return state["action"].type


workflow = StateGraph(GraphState)

workflow.add_node("decide", decide_node)
workflow.add_node("parse", parse_node)
workflow.add_node("analyze", analyze_node)
workflow.add_node("generate_questions", generate_questions_node)
workflow.add_node("ready_for_redaction", ready_for_redaction_node)

workflow.set_entry_point("decide")

workflow.add_conditional_edges(
    "decide",
    route_action,
    {
        "parse": "parse",
        "analyze": "analyze",
        "generate_questions": "generate_questions",
        "ready_for_redaction": "ready_for_redaction",
        "wait_user": END,
        "need_more_info": END,
        "complete": END,
        "error": END,
    },
)

for executable in ("parse", "analyze", "generate_questions", "ready_for_redaction"):
    workflow.add_edge(executable, END)

contestacion_graph = workflow.compile()
