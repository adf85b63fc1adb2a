"""Modelos del análisis estratégico de un caso y estado del grafo."""

from typing import Dict, List, Literal, Optional, TypedDict

from pydantic import BaseModel, Field


RiskLevel = Literal["low", "medium", "high", "critical"]
ScenarioType = Literal["conservative", "moderate", "aggressive"]
TimelinePhase = Literal["preparation", "negotiation", "litigation", "resolution"]
Priority = Literal["high", "medium", "low"]

SCENARIO_ORDER: List[str] = ["conservative", "moderate", "aggressive"]
PHASE_ORDER: List[str] = ["preparation", "negotiation", "litigation", "resolution"]
PHASE_NAMES: Dict[str, str] = {
    "preparation": "Preparación",
    "negotiation": "Negociación",
    "litigation": "Litigio",
    "resolution": "Resolución",
}

ANALYSIS_VERSION = "1.0.0"


def risk_level_for(score: float) -> RiskLevel:
    """Bandas del score: low 0-3, medium 4-6, high 7-8, critical 9-10."""
    if score < 4:
        return "low"
    if score < 7:
        return "medium"
    if score < 9:
        return "high"
    return "critical"


class AnalyzeParams(BaseModel):
    """Datos del caso que alimentan el análisis (tabla ``cases``)."""

    case_id: str
    case_number: str = ""
    case_title: str = ""
    case_type: str = ""
    description: str
    filing_date: Optional[str] = None
    jurisdiction: Optional[str] = None
    court_name: Optional[str] = None
    estimated_value: Optional[float] = None


# Matriz de riesgos


class RiskFactor(BaseModel):
    id: str
    name: str
    description: str
    score: float = Field(ge=0, le=10)
    level: RiskLevel
    category: str = Field(description="probatorio, procesal, económico, temporal, normativo, estratégico o reputacional")
    mitigation: str


class RiskMatrix(BaseModel):
    factors: List[RiskFactor] = Field(min_length=3, max_length=8)
    overall_score: float = Field(ge=0, le=10)
    risk_level: RiskLevel
    summary: str
    recommendations: List[str] = Field(min_length=2, max_length=6)


# Jurisprudencia


class Jurisprudence(BaseModel):
    title: str
    court: str
    date: str
    summary: str
    relevance: str
    key_arguments: List[str] = Field(min_length=1, max_length=5)
    url: Optional[str] = None
    indemnization_amount: Optional[str] = None


class JurisprudenceOutput(BaseModel):
    results: List[Jurisprudence] = Field(min_length=2, max_length=5)


# Escenarios


class ScenarioAction(BaseModel):
    action: str
    timeframe: str
    priority: Priority


class CostRange(BaseModel):
    min: float = Field(ge=0)
    max: float = Field(ge=0)


class StrategicScenario(BaseModel):
    type: ScenarioType
    name: str
    success_probability: float = Field(ge=0, le=100)
    estimated_duration_months: float = Field(ge=1)
    estimated_cost_range: CostRange
    pros: List[str] = Field(min_length=2, max_length=5)
    cons: List[str] = Field(min_length=2, max_length=5)
    recommended_actions: List[ScenarioAction] = Field(min_length=2, max_length=6)
    description: str


class ScenariosOutput(BaseModel):
    scenarios: List[StrategicScenario] = Field(min_length=3, max_length=3)


# Timeline


class MilestoneOutput(BaseModel):
    id: str
    title: str
    description: str
    phase: TimelinePhase
    offset_days: int = Field(ge=0, description="Días desde el inicio del caso")
    is_critical: bool = False
    dependencies: List[str] = Field(default_factory=list)
    alerts: List[str] = Field(default_factory=list)


class TimelineOutput(BaseModel):
    milestones: List[MilestoneOutput] = Field(min_length=4, max_length=16)
    critical_path: List[str] = Field(default_factory=list)
    total_estimated_months: float = Field(ge=1)
    alerts: List[str] = Field(default_factory=list)


class TimelineMilestone(BaseModel):
    id: str
    title: str
    description: str
    phase: TimelinePhase
    estimated_date: str
    is_critical: bool
    dependencies: List[str]
    alerts: List[str]


class TimelinePhaseBlock(BaseModel):
    phase: TimelinePhase
    name: str
    start_date: str
    end_date: str
    milestones: List[TimelineMilestone]


class StrategicTimeline(BaseModel):
    phases: List[TimelinePhaseBlock] = Field(default_factory=list)
    critical_path: List[str] = Field(default_factory=list)
    total_estimated_months: float = 0
    alerts: List[str] = Field(default_factory=list)


# Recomendación final


class StrategicRecommendations(BaseModel):
    primary_strategy: ScenarioType
    reasoning: str
    next_steps: List[str] = Field(min_length=3, max_length=7)


class AnalysisMetadata(BaseModel):
    analysis_version: str = ANALYSIS_VERSION
    duration_ms: int = 0


class StrategicAnalysis(BaseModel):
    """Análisis completo, tal como se guarda en ``lexia_strategic_analyses.analysis``."""

    case_id: str
    case_number: str
    case_title: str
    analyzed_at: str
    risk_matrix: RiskMatrix
    scenarios: List[StrategicScenario]
    jurisprudence: List[Jurisprudence]
    timeline: StrategicTimeline
    recommendations: StrategicRecommendations
    metadata: AnalysisMetadata


class EstrategaState(TypedDict, total=False):
    """
    Estado del grafo de análisis estratégico.

    Cada nodo escribe una sola clave, así las ramas paralelas no se pisan.
    """

    params: AnalyzeParams
    trace_id: str
    risk_matrix: RiskMatrix
    jurisprudence: List[Jurisprudence]
    scenarios: List[StrategicScenario]
    timeline: StrategicTimeline
    recommendations: StrategicRecommendations
