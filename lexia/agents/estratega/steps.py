"""
Pasos del análisis estratégico.

Riesgos, jurisprudencia, escenarios, timeline y recomendación usan salida
estructurada con fallback entre proveedores. El orden de los escenarios, la
banda de riesgo y las fechas del timeline se resuelven sin modelo.
"""

import logging
from datetime import date, timedelta
from typing import List, Optional, Sequence

from lexia.agents.estratega.state import (
    PHASE_NAMES,
    PHASE_ORDER,
    SCENARIO_ORDER,
    AnalyzeParams,
    Jurisprudence,
    JurisprudenceOutput,
    RiskMatrix,
    ScenariosOutput,
    StrategicRecommendations,
    StrategicScenario,
    StrategicTimeline,
    TimelineMilestone,
    TimelineOutput,
    TimelinePhaseBlock,
    risk_level_for,
)
from lexia.ai.orchestrator import StreamOrchestrator
from lexia.ai.routing import STRATEGY_CHAIN
from lexia.core.errors import ModelStepFailed, ProviderError


logger = logging.getLogger(__name__)


RISK_SYSTEM_PROMPT = """Eres un abogado estratega argentino experto en análisis de riesgo legal.

Identifica entre 5 y 8 factores de riesgo específicos del caso. Para cada factor:
- score de 0 a 10 (0 = sin riesgo, 10 = riesgo crítico)
- level: low (0-3), medium (4-6), high (7-8), critical (9-10)
- category: probatorio, procesal, económico, temporal, normativo, estratégico o reputacional
- mitigation: estrategia de mitigación concreta y accionable

overall_score es el promedio ponderado de los factores y risk_level sigue las mismas bandas.
Usa terminología jurídica argentina. Las recomendaciones deben ser accionables y específicas."""

JURISPRUDENCE_SYSTEM_PROMPT = """Eres un especialista en jurisprudencia argentina.

Proporciona entre 3 y 5 fallos relevantes para el caso:
1. Representativos de la jurisprudencia argentina actual sobre el tema
2. De distintos tribunales cuando sea posible (CSJN, Cámaras, primera instancia)
3. Con los argumentos clave que aplican al caso
4. Con montos indemnizatorios de referencia, si corresponde

Indica tribunal, fecha aproximada y argumentos principales. Son referencias a verificar por el abogado."""

SCENARIOS_SYSTEM_PROMPT = """Eres un abogado estratega argentino experto en planificación de litigios.

Genera exactamente 3 escenarios, en este orden:
1. conservative: menor riesgo, evitar litigio prolongado, buscar acuerdo temprano
2. moderate: balance entre negociación y litigio
3. aggressive: máxima presión legal, litigio completo, buscar sentencia favorable

Para cada uno: success_probability (0-100) considerando los riesgos, duración realista en meses,
rango de costos en ARS (honorarios y gastos procesales), pros y contras específicos del caso y
acciones recomendadas ordenadas por prioridad."""

TIMELINE_SYSTEM_PROMPT = """Eres un abogado estratega argentino. Genera el timeline del caso.

Fases: preparation (pruebas, análisis), negotiation (negociación o mediación previa),
litigation (escritos, audiencias, prueba), resolution (sentencia, recursos, cumplimiento).

Para cada hito: id corto y único, title, description, phase, offset_days (días desde el inicio,
progresivos y realistas según los plazos del proceso civil argentino), is_critical,
dependencies (ids de hitos previos) y alerts (plazos legales, riesgos).
Incluye hitos reales: audiencia preliminar, ofrecimiento y producción de prueba, alegatos, sentencia."""

RECOMMENDATIONS_SYSTEM_PROMPT = """Eres un abogado estratega argentino senior. Con el análisis completo del caso,
da la recomendación final:
1. primary_strategy: conservative, moderate o aggressive
2. reasoning: razonamiento claro y específico (2-3 párrafos)
3. next_steps: entre 3 y 7 próximos pasos inmediatos y concretos"""


def case_block(params: AnalyzeParams) -> str:
    lines = [
        f"- Número: {params.case_number}",
        f"- Título: {params.case_title}",
        f"- Tipo: {params.case_type}",
        f"- Descripción: {params.description}",
    ]
    if params.filing_date:
        lines.append(f"- Fecha de inicio: {params.filing_date}")
    if params.jurisdiction:
        lines.append(f"- Jurisdicción: {params.jurisdiction}")
    if params.court_name:
        lines.append(f"- Tribunal: {params.court_name}")
    if params.estimated_value:
        lines.append(f"- Valor estimado: ${params.estimated_value:,.0f}")
    return "CASO:\n" + "\n".join(lines)


def normalize_risk_matrix(matrix: RiskMatrix) -> RiskMatrix:
    """La banda de riesgo se recalcula desde los scores."""
    factors = [f.model_copy(update={"level": risk_level_for(f.score)}) for f in matrix.factors]
    return matrix.model_copy(update={"factors": factors, "risk_level": risk_level_for(matrix.overall_score)})


def order_scenarios(scenarios: Sequence[StrategicScenario]) -> List[StrategicScenario]:
    """
    Un escenario por tipo, en orden conservative, moderate, aggressive.

    Raises:
        ModelStepFailed: si falta alguno de los tres tipos
    """
    by_type = {}
    for scenario in scenarios:
        by_type.setdefault(scenario.type, scenario)
    missing = [t for t in SCENARIO_ORDER if t not in by_type]
    if missing:
        raise ModelStepFailed("scenarios", f"Faltan escenarios: {', '.join(missing)}")
    return [by_type[t] for t in SCENARIO_ORDER]


def timeline_scenario(scenarios: Sequence[StrategicScenario]) -> StrategicScenario:
    """El timeline se arma sobre el escenario moderado (o el primero)."""
    return next((s for s in scenarios if s.type == "moderate"), scenarios[0])


def start_date_for(params: AnalyzeParams, today: Optional[date] = None) -> date:
    if params.filing_date:
        try:
            return date.fromisoformat(params.filing_date[:10])
        except ValueError:
            logger.warning("Fecha de inicio inválida en el caso %s: %s", params.case_id, params.filing_date)
    return today or date.today()


def build_timeline(output: TimelineOutput, start: date) -> StrategicTimeline:
    """
    Convierte los offsets en fechas y agrupa los hitos por fase.

    Las fases sin hitos se omiten. Dependencias y camino crítico solo
    conservan ids de hitos existentes.
    """
    known = {m.id for m in output.milestones}
    milestones = [
        TimelineMilestone(
            id=m.id,
            title=m.title,
            description=m.description,
            phase=m.phase,
            estimated_date=(start + timedelta(days=m.offset_days)).isoformat(),
            is_critical=m.is_critical,
            dependencies=[d for d in m.dependencies if d in known and d != m.id],
            alerts=m.alerts,
        )
        for m in sorted(output.milestones, key=lambda m: m.offset_days)
    ]

    phases = []
    for phase in PHASE_ORDER:
        in_phase = [m for m in milestones if m.phase == phase]
        if not in_phase:
            continue
        dates = sorted(m.estimated_date for m in in_phase)
        phases.append(TimelinePhaseBlock(
            phase=phase,
            name=PHASE_NAMES[phase],
            start_date=dates[0],
            end_date=dates[-1],
            milestones=in_phase,
        ))

    return StrategicTimeline(
        phases=phases,
        critical_path=[m for m in output.critical_path if m in known],
        total_estimated_months=output.total_estimated_months,
        alerts=output.alerts,
    )


class EstrategaSteps:
    """Pasos con modelo del análisis. Cualquier falla se informa como ``ModelStepFailed``."""

    def __init__(self, orchestrator: StreamOrchestrator):
        self._orchestrator = orchestrator

    async def _invoke(self, step: str, system_prompt: str, prompt: str, schema, temperature: float, trace_id: str):
        try:
            return await self._orchestrator.invoke_structured(
                STRATEGY_CHAIN, system_prompt, prompt, schema,
                temperature=temperature, max_tokens=4096, trace_id=trace_id,
            )
        except ProviderError as e:
            raise ModelStepFailed(step, f"No se pudo completar el paso {step} del análisis", e) from e

    async def analyze_risks(self, params: AnalyzeParams, trace_id: str = "") -> RiskMatrix:
        matrix = await self._invoke(
            "risks", RISK_SYSTEM_PROMPT, f"Analiza los riesgos de este caso.\n\n{case_block(params)}",
            RiskMatrix, 0.3, trace_id,
        )
        return normalize_risk_matrix(matrix)

    async def search_jurisprudence(self, params: AnalyzeParams, trace_id: str = "") -> List[Jurisprudence]:
        output = await self._invoke(
            "jurisprudence", JURISPRUDENCE_SYSTEM_PROMPT,
            f"Jurisprudencia relevante para este caso.\n\n{case_block(params)}",
            JurisprudenceOutput, 0.4, trace_id,
        )
        return output.results

    async def generate_scenarios(
        self, params: AnalyzeParams, matrix: RiskMatrix, trace_id: str = ""
    ) -> List[StrategicScenario]:
        top_risks = ", ".join(f.name for f in sorted(matrix.factors, key=lambda f: -f.score)[:3])
        prompt = (
            f"{case_block(params)}\n\n"
            f"ANÁLISIS DE RIESGOS:\n- Score general: {matrix.overall_score}/10\n"
            f"- Nivel: {matrix.risk_level}\n- Principales riesgos: {top_risks}"
        )
        output = await self._invoke("scenarios", SCENARIOS_SYSTEM_PROMPT, prompt, ScenariosOutput, 0.4, trace_id)
        return order_scenarios(output.scenarios)

    async def generate_timeline(
        self, params: AnalyzeParams, scenario: StrategicScenario, start: date, trace_id: str = ""
    ) -> StrategicTimeline:
        prompt = (
            f"{case_block(params)}\n"
            f"- Estrategia elegida: {scenario.name} ({scenario.type})\n"
            f"- Duración estimada: {scenario.estimated_duration_months} meses"
        )
        output = await self._invoke("timeline", TIMELINE_SYSTEM_PROMPT, prompt, TimelineOutput, 0.3, trace_id)
        return build_timeline(output, start)

    async def build_recommendations(
        self,
        params: AnalyzeParams,
        matrix: RiskMatrix,
        scenarios: Sequence[StrategicScenario],
        jurisprudence: Sequence[Jurisprudence],
        trace_id: str = "",
    ) -> StrategicRecommendations:
        scenario_lines = "\n".join(
            f"- {s.name} ({s.type}): {s.success_probability:.0f}% de éxito, {s.estimated_duration_months:g} meses"
            for s in scenarios
        )
        prompt = (
            f"CASO: {params.case_title} ({params.case_type})\n"
            f"RIESGO GENERAL: {matrix.risk_level} ({matrix.overall_score}/10)\n\n"
            f"ESCENARIOS:\n{scenario_lines}\n\n"
            f"JURISPRUDENCIA: {len(jurisprudence)} fallos relevantes"
        )
        return await self._invoke(
            "recommendations", RECOMMENDATIONS_SYSTEM_PROMPT, prompt, StrategicRecommendations, 0.3, trace_id,
        )
