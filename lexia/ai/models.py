"""Contratos compartidos entre el controlador, los proveedores y las herramientas."""

from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class Intent(str, Enum):
    """Categorías de intención que decide el clasificador."""

    LEGAL_ANALYSIS = "legal_analysis"
    DOCUMENT_DRAFTING = "document_drafting"
    PROCEDURAL_QUERY = "procedural_query"
    DOCUMENT_SUMMARY = "document_summary"
    CASE_QUERY = "case_query"
    GENERAL_CHAT = "general_chat"
    UNKNOWN = "unknown"


class ChatMessage(BaseModel):
    role: str = Field(pattern="^(user|assistant|system)$")
    content: str


class CaseContextInput(BaseModel):
    """Versión liviana del caso que manda la UI."""

    model_config = ConfigDict(populate_by_name=True)

    case_id: str = Field(alias="caseId", min_length=1)
    case_number: str = Field(default="", alias="caseNumber")
    title: str = ""
    type: str = ""


class CaseDeadline(BaseModel):
    title: str
    due_date: str
    status: str


class CaseTask(BaseModel):
    title: str
    status: str
    priority: str


class CaseNote(BaseModel):
    content: str
    created_at: str


class CaseContext(BaseModel):
    """Resumen acotado de un caso para anclar la respuesta del modelo."""

    case_id: str
    case_number: str = ""
    title: str = ""
    type: str = ""
    status: str = "unknown"
    description: Optional[str] = None
    company_name: Optional[str] = None
    deadlines: List[CaseDeadline] = Field(default_factory=list)
    tasks: List[CaseTask] = Field(default_factory=list)
    recent_notes: List[CaseNote] = Field(default_factory=list)
    documents_count: int = 0
    notes_count: int = 0

    @classmethod
    def minimal(cls, case_input: CaseContextInput) -> "CaseContext":
        return cls(
            case_id=case_input.case_id,
            case_number=case_input.case_number,
            title=case_input.title,
            type=case_input.type,
        )


class IntentClassification(BaseModel):
    """Salida del clasificador: pura función de sus entradas."""

    model_config = ConfigDict(frozen=True)

    intent: Intent
    confidence: float
    tools_allowed: FrozenSet[str]
    requires_context: bool
    credits: float


class Decision(BaseModel):
    """Configuración resuelta para un request. Inmutable una vez creada."""

    model_config = ConfigDict(frozen=True)

    intent: Intent
    confidence: float
    tools_allowed: FrozenSet[str]
    credits: float
    enrich_context: bool
    model_chain: Tuple[str, ...]
    """Claves de MODEL_REGISTRY en orden de prioridad; la primera es el modelo elegido."""
    temperature: float
    max_tokens: int
    trace_id: str
    system_prompt: str = ""
    provider: Optional[str] = None
    """Proveedor que efectivamente sirvió el request (lo completa el orquestador)."""

    @property
    def model(self) -> str:
        return self.model_chain[0]


class UsageRecord(BaseModel):
    """Fila append-only de lexia_usage_log."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    trace_id: str
    intent: str
    credits_charged: float
    tokens_used: int
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AuditEntry(BaseModel):
    trace_id: str
    user_id: str
    timestamp: datetime
    intent: Intent
    provider: Optional[str]
    model: str
    case_id: Optional[str]
    message_count: int
    tokens_used: int
    duration_ms: int
    tools_invoked: List[str] = Field(default_factory=list)
