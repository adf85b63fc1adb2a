"""
Pasos del flujo de contestación.

Los pasos con modelo (análisis, preguntas, decisión del agente) usan salida
estructurada con fallback entre proveedores. La cobertura de respuestas y la
consolidación del formulario son deterministas.
"""

import json
import logging
from typing import Dict, List, Literal, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from lexia.agents.contestacion.state import (
    NOT_APPLICABLE,
    BlockAnalysis,
    BlockQuestion,
    BlockResponse,
    ContestacionState,
    DemandBlock,
    FormDataConsolidado,
)
from lexia.ai.orchestrator import StreamOrchestrator
from lexia.ai.routing import AGENT_CHAIN, ANALYSIS_CHAIN
from lexia.core.errors import ModelStepFailed, ProviderError


logger = logging.getLogger(__name__)


# Salidas estructuradas de los modelos


class AnalyzeBlocksOutput(BaseModel):
    analisis: List[BlockAnalysis]
    tipo_demanda_detectado: str = Field(default="", description="Tipo de demanda, ej: 'incumplimiento contractual locación'")
    pretensiones_principales: List[str] = Field(default_factory=list)


class GenerateQuestionsOutput(BaseModel):
    preguntas: List[BlockQuestion]


class AgentDecisionOutput(BaseModel):
    action: Literal["generate_questions", "wait_user", "need_more_info", "ready_for_redaction"]
    reason: str = ""
    bloque_ids: List[str] = Field(default_factory=list)


ANALYZE_SYSTEM_PROMPT = """Eres un abogado experto en derecho procesal argentino (Córdoba, Argentina) que asesora al demandado.

Tu tarea es analizar cada bloque de una demanda judicial desde la perspectiva del demandado. Para cada bloque extrae:

1. argumentos_clave: Los argumentos principales que el actor sostiene en ese bloque.
2. puntos_debiles: Aspectos discutibles, imprecisos o vulnerables que el demandado podría cuestionar.
3. prueba_implicita: Qué prueba invoca o sugiere implícitamente el actor.
4. sugerencias_defensa: Líneas defensivas o contraargumentos que el demandado podría plantear.

Además indica tipo_demanda_detectado y pretensiones_principales de la demanda completa.
Sé conciso pero preciso. Usa el bloque_id exacto que se te proporciona para cada bloque."""

QUESTIONS_SYSTEM_PROMPT = """Eres un abogado experto que asesora al demandado en una contestación de demanda (Córdoba, Argentina).

Genera preguntas concretas para que el abogado del demandado complete su estrategia. Para cada bloque indicado, pregunta sobre:

1. postura: ¿Admitir, negar, admitir parcialmente o negar con matices? Incluye opciones sugeridas cuando sea útil.
2. fundamentacion: Qué argumentos o fundamentos legales plantear.
3. prueba: Qué prueba ofrecer para sostener la postura.

Sé específico y práctico. Usa el bloque_id exacto proporcionado. Genera 1-3 preguntas por bloque."""

AGENT_SYSTEM_PROMPT = """Eres el orquestador del flujo de contestación de demanda (Córdoba, Argentina).

Ya hay bloques, análisis y preguntas. Dado el estado de las respuestas del abogado, decide:

- wait_user: faltan respuestas y el abogado todavía no terminó de completarlas.
- need_more_info: hay respuestas pero algunos bloques críticos (hechos, rubros) no tienen información suficiente. Indica bloque_ids y reason.
- generate_questions: el abogado pidió nuevas preguntas para bloques específicos (bloque_ids).
- ready_for_redaction: todos los bloques tienen una respuesta suficiente.

Siempre incluye reason y bloque_ids. Usa "" o [] cuando no aplique."""


def blocks_context(bloques: Sequence[DemandBlock], limit: int = 3000) -> str:
    return "\n\n".join(f"--- Bloque {b.id} ({b.titulo}) ---\n{b.contenido[:limit]}" for b in bloques)


# Cobertura y consolidación (deterministas)


def missing_blocks(state: ContestacionState) -> List[str]:
    """Bloques sin una respuesta utilizable (sin_posicion cuenta como respondido)."""
    missing = []
    for block in state.bloques:
        response = state.respuestas_usuario.get(block.id)
        if response is None or not response.is_usable:
            missing.append(block.id)
    return missing


def _numbered(items: Sequence[str]) -> str:
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, start=1))


def consolidate_responses(
    bloques: Sequence[DemandBlock], respuestas: Dict[str, BlockResponse]
) -> Optional[FormDataConsolidado]:
    """
    Arma los datos del formulario de contestación.

    Devuelve None si no se puede armar (no hay ninguna postura más allá de
    bloques no aplicables).
    """
    admitidos: List[str] = []
    negados: List[str] = []
    defensas: List[str] = []
    excepciones: List[str] = []
    prueba: List[str] = []

    for block in bloques:
        response = respuestas.get(block.id)
        if response is None or response.postura == NOT_APPLICABLE:
            continue
        fundamento = response.fundamentacion.strip()
        if response.postura == "admitir":
            admitidos.append(f"{block.titulo}.")
        elif response.postura == "admitir_parcial":
            admitidos.append(f"{block.titulo}, parcialmente: {fundamento}")
            negados.append(f"{block.titulo}, en lo que excede lo admitido.")
        elif response.postura == "negar":
            negados.append(f"{block.titulo}: {fundamento}")
        else:
            negados.append(f"{block.titulo}, con matices: {fundamento}")
        if fundamento:
            lower = fundamento.lower()
            target = excepciones if ("prescrip" in lower or "caducidad" in lower or "excepci" in lower) else defensas
            target.append(f"{block.titulo}: {fundamento}")
        prueba.extend(p.strip() for p in response.prueba_ofrecida if p.strip())

    if not (admitidos or negados):
        return None

    return FormDataConsolidado(
        hechos_admitidos=_numbered(admitidos) or "No se admiten hechos de la demanda.",
        hechos_negados=_numbered(negados) or "No se niegan hechos de la demanda.",
        defensas=_numbered(defensas) or "Se remite a los fundamentos expuestos al contestar cada hecho.",
        excepciones=_numbered(excepciones),
        prueba_ofrecida=_numbered(list(dict.fromkeys(prueba))),
    )


def build_demanda_context(state: ContestacionState) -> str:
    """Resumen de la demanda y su análisis para el prompt de redacción."""
    parts: List[str] = []
    if state.tipo_demanda_detectado:
        parts.append(f"Tipo de demanda: {state.tipo_demanda_detectado}")
    if state.pretensiones_principales:
        parts.append(f"Pretensiones: {'; '.join(state.pretensiones_principales)}")
    if state.bloques:
        lines = ["Bloques de la demanda:"]
        lines += [f"- {b.titulo} ({b.tipo or 'otro'}): {b.contenido[:200]}..." for b in state.bloques]
        parts.append("\n".join(lines))
    if state.analisis_por_bloque:
        lines = ["Análisis por bloque (argumentos clave, puntos débiles):"]
        lines += [
            f"- Bloque {block_id}: argumentos={', '.join(a.argumentos_clave)}; débiles={', '.join(a.puntos_debiles)}"
            for block_id, a in state.analisis_por_bloque.items()
        ]
        parts.append("\n".join(lines))
    return "\n\n".join(parts)


class ContestacionSteps:
    """Pasos con modelo. Cualquier falla se informa como ``ModelStepFailed``."""

    def __init__(self, orchestrator: StreamOrchestrator):
        self._orchestrator = orchestrator

    async def analyze(
        self, state: ContestacionState, demanda_raw: str, trace_id: str = ""
    ) -> Tuple[Dict[str, BlockAnalysis], Optional[str], List[str]]:
        prompt = (
            "Analiza los siguientes bloques de la demanda. La demanda completa (resumida) está debajo para contexto.\n\n"
            f"BLOQUES A ANALIZAR:\n{blocks_context(state.bloques)}\n\n"
            f"---\nCONTEXTO DEMANDA (inicio):\n{demanda_raw[:5000]}\n---"
        )
        try:
            output = await self._orchestrator.invoke_structured(
                ANALYSIS_CHAIN, ANALYZE_SYSTEM_PROMPT, prompt, AnalyzeBlocksOutput,
                temperature=0.3, max_tokens=4096, trace_id=trace_id,
            )
        except ProviderError as e:
            raise ModelStepFailed("analyze", "No se pudo analizar la demanda", e) from e

        known = set(state.block_ids)
        analyses = {a.bloque_id: a for a in output.analisis if a.bloque_id in known}
        if not analyses:
            raise ModelStepFailed("analyze", "El análisis no corresponde a ningún bloque de la demanda")
        for block_id in state.block_ids:
            if block_id not in analyses:
                logger.warning("[%s] Bloque %s sin análisis, se registra vacío", trace_id, block_id)
                analyses[block_id] = BlockAnalysis(bloque_id=block_id)

        tipo = output.tipo_demanda_detectado.strip() or None
        return analyses, tipo, [p for p in output.pretensiones_principales if p.strip()]

    async def generate_questions(
        self, state: ContestacionState, bloque_ids: Sequence[str] = (), trace_id: str = ""
    ) -> List[BlockQuestion]:
        targets = [b for b in state.bloques if not bloque_ids or b.id in bloque_ids]
        if not targets:
            return []

        lines = []
        for block in targets:
            analysis = state.analisis_por_bloque.get(block.id)
            line = f"--- Bloque {block.id} ({block.titulo}) ---\nContenido: {block.contenido[:2000]}"
            if analysis:
                line += (
                    f"\nAnálisis: argumentos={'; '.join(analysis.argumentos_clave)}"
                    f" | puntos débiles={'; '.join(analysis.puntos_debiles)}"
                    f" | sugerencias={'; '.join(analysis.sugerencias_defensa)}"
                )
            lines.append(line)

        prompt = "Genera preguntas para el abogado demandado sobre los siguientes bloques de la demanda.\n\nBLOQUES:\n" + "\n\n".join(lines)
        try:
            output = await self._orchestrator.invoke_structured(
                ANALYSIS_CHAIN, QUESTIONS_SYSTEM_PROMPT, prompt, GenerateQuestionsOutput,
                temperature=0.4, max_tokens=4096, trace_id=trace_id,
            )
        except ProviderError as e:
            raise ModelStepFailed("generate_questions", "No se pudieron generar las preguntas", e) from e

        target_ids = {b.id for b in targets}
        questions = [q for q in output.preguntas if q.bloque_id in target_ids and q.pregunta.strip()]
        if not questions:
            raise ModelStepFailed("generate_questions", "El modelo no generó preguntas para los bloques")
        return questions

    async def agent_decision(
        self, state: ContestacionState, user_input: Optional[str], trace_id: str = ""
    ) -> AgentDecisionOutput:
        summary = {
            "bloques": [{"id": b.id, "tipo": b.tipo, "titulo": b.titulo} for b in state.bloques],
            "analisis_count": len(state.analisis_por_bloque),
            "preguntas_count": len(state.preguntas_generadas),
            "respuestas_por_bloque": {
                block_id: {"postura": r.postura, "has_fundamentacion": bool(r.fundamentacion.strip())}
                for block_id, r in state.respuestas_usuario.items()
            },
            "bloques_sin_respuesta": missing_blocks(state),
        }
        prompt = f"Estado actual:\n{json.dumps(summary, ensure_ascii=False, indent=2)}"
        if user_input:
            prompt += f'\n\nÚltimo input del usuario: "{user_input}"'
        prompt += "\n\nDecide la próxima acción."

        try:
            return await self._orchestrator.invoke_structured(
                AGENT_CHAIN, AGENT_SYSTEM_PROMPT, prompt, AgentDecisionOutput,
                temperature=0.2, max_tokens=512, trace_id=trace_id,
            )
        except ProviderError as e:
            raise ModelStepFailed("agent_decision", "No se pudo decidir el próximo paso", e) from e
