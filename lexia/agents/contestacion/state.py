"""Estado de la sesión de contestación y acciones del orquestador."""

from typing import Annotated, Dict, List, Literal, Optional, TypedDict, Union

from pydantic import BaseModel, Field


BlockType = Literal["objeto", "hechos", "derecho", "rubros", "prueba", "petitorio", "otro"]
QuestionType = Literal["postura", "prueba", "fundamentacion", "otro"]
Postura = Literal["admitir", "negar", "admitir_parcial", "negar_con_matices", "sin_posicion"]
Step = Literal["init", "parsed", "analyzed", "questions", "need_more_info", "ready_for_redaction"]

# Posturas que no se sostienen sin fundamentación.
POSTURAS_CON_FUNDAMENTO = frozenset({"negar", "admitir_parcial", "negar_con_matices"})

NOT_APPLICABLE = "sin_posicion"
"""Marca explícita de bloque no aplicable: cuenta como respondido."""


class DemandBlock(BaseModel):
    """Bloque argumental de la demanda. Estable una vez parseado."""

    id: str
    titulo: str
    contenido: str
    tipo: Optional[BlockType] = None
    orden: int


class BlockAnalysis(BaseModel):
    bloque_id: str
    argumentos_clave: List[str] = Field(default_factory=list)
    puntos_debiles: List[str] = Field(default_factory=list)
    prueba_implicita: List[str] = Field(default_factory=list)
    sugerencias_defensa: List[str] = Field(default_factory=list)


class BlockQuestion(BaseModel):
    bloque_id: str
    pregunta: str
    tipo: QuestionType = "postura"
    opciones_sugeridas: List[str] = Field(default_factory=list)


class BlockResponse(BaseModel):
    """Respuesta del abogado para un bloque."""

    bloque_id: str = ""
    postura: Postura
    fundamentacion: str = ""
    prueba_ofrecida: List[str] = Field(default_factory=list)

    @property
    def is_usable(self) -> bool:
        if self.postura in POSTURAS_CON_FUNDAMENTO:
            return bool(self.fundamentacion.strip())
        return True


class FormDataConsolidado(BaseModel):
    hechos_admitidos: str
    hechos_negados: str
    defensas: str
    excepciones: str = ""
    prueba_ofrecida: str = ""

    def as_form_data(self) -> Dict[str, str]:
        return self.model_dump()


class ContestacionState(BaseModel):
    """
    Estado completo de la sesión (columna ``state`` de la sesión).

    Los bloques no se reordenan ni se borran; análisis, preguntas y respuestas
    se indexan por id de bloque y solo se agregan o reemplazan.
    """

    bloques: List[DemandBlock] = Field(default_factory=list)
    tipo_demanda_detectado: Optional[str] = None
    pretensiones_principales: List[str] = Field(default_factory=list)
    analisis_por_bloque: Dict[str, BlockAnalysis] = Field(default_factory=dict)
    preguntas_generadas: List[BlockQuestion] = Field(default_factory=list)
    respuestas_usuario: Dict[str, BlockResponse] = Field(default_factory=dict)
    bloques_sin_respuesta: List[str] = Field(default_factory=list)
    form_data_consolidado: Optional[FormDataConsolidado] = None
    listo_para_redaccion: bool = False
    variant_seleccionada: Optional[str] = None
    draft_content: Optional[str] = None
    draft_generado_at: Optional[str] = None
    draft_id: Optional[str] = None
    ultima_accion: Optional[str] = None
    ultima_accion_at: Optional[str] = None

    @property
    def block_ids(self) -> List[str]:
        return [b.id for b in self.bloques]

    def dump(self) -> dict:
        """Serialización para la base: sin valores por defecto (estado vacío == ``{}``)."""
        return self.model_dump(mode="json", exclude_defaults=True)


# Acciones: una variante por tipo, cada una con solo sus campos.


class ParseAction(BaseModel):
    type: Literal["parse"] = "parse"


class AnalyzeAction(BaseModel):
    type: Literal["analyze"] = "analyze"
    bloque_ids: List[str] = Field(default_factory=list)


class GenerateQuestionsAction(BaseModel):
    type: Literal["generate_questions"] = "generate_questions"
    bloque_ids: List[str] = Field(default_factory=list)


class WaitUserAction(BaseModel):
    type: Literal["wait_user"] = "wait_user"
    reason: str
    preguntas: List[BlockQuestion] = Field(default_factory=list)


class NeedMoreInfoAction(BaseModel):
    type: Literal["need_more_info"] = "need_more_info"
    bloque_ids: List[str]
    reason: str


class ReadyForRedactionAction(BaseModel):
    type: Literal["ready_for_redaction"] = "ready_for_redaction"


class CompleteAction(BaseModel):
    type: Literal["complete"] = "complete"


class ErrorAction(BaseModel):
    type: Literal["error"] = "error"
    message: str
    retryable: bool = False
    step: Optional[str] = None


Action = Annotated[
    Union[
        ParseAction,
        AnalyzeAction,
        GenerateQuestionsAction,
        WaitUserAction,
        NeedMoreInfoAction,
        ReadyForRedactionAction,
        CompleteAction,
        ErrorAction,
    ],
    Field(discriminator="type"),
]

EXECUTABLE_ACTIONS = frozenset({"parse", "analyze", "generate_questions", "ready_for_redaction"})


class GraphState(TypedDict, total=False):
    """Estado que recorre el grafo de LangGraph durante un único paso."""

    session_state: ContestacionState
    """Estado de la sesión (con las respuestas nuevas ya fusionadas)."""

    demanda_raw: Optional[str]
    """Texto de la demanda. None si la sesión no tiene texto."""

    user_input: Optional[str]
    """Texto libre del abogado para el agente."""

    has_new_responses: bool
    """Si este paso trajo respuestas nuevas (hay que persistirlas aunque no se avance)."""

    current_step: Step
    """Paso persistido al inicio del request."""

    action: Action
    """Acción decidida en este paso."""

    next_step: Step
    """Paso resultante."""

    changed: bool
    """Si el estado de la sesión debe escribirse."""

    trace_id: str
