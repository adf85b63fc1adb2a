"""
Redactor jurídico: prompts por tipo de documento y generación de borradores.

Sin herramientas, texto puro. Una revisión incluye el borrador anterior
completo más la instrucción del usuario.
"""

import logging
import re
from datetime import date
from typing import AsyncIterator, Dict, Literal, Mapping, Optional, Tuple, get_args

from pydantic import BaseModel, Field

from lexia.ai.controller import new_trace_id
from lexia.ai.models import CaseContextInput, ChatMessage, Decision, Intent
from lexia.ai.orchestrator import StreamOrchestrator, StreamResult
from lexia.ai.providers import StreamChunk
from lexia.ai.routing import (
    DRAFTING_CHAIN,
    DRAFTING_MAX_TOKENS,
    DRAFTING_TEMPERATURE,
    get_credits_for_intent,
)
from lexia.core.errors import ValidationFailed
from lexia.core.store import RowStore


logger = logging.getLogger(__name__)

DocumentType = Literal[
    "demanda", "contestacion", "apelacion", "casacion", "recurso_extraordinario",
    "contrato", "carta_documento", "mediacion", "oficio_judicial",
]
DOCUMENT_TYPES: Tuple[str, ...] = get_args(DocumentType)


DRAFT_BASE = """Eres LEXIA, un asistente legal de inteligencia artificial para un estudio jurídico profesional en Córdoba, Argentina.

ROL: REDACCIÓN JURÍDICA
- Generas borradores de documentos legales profesionales
- Usas el lenguaje y formalidades del derecho argentino
- Incluyes todas las secciones y requisitos formales
- Citas correctamente artículos del CPCC Córdoba (Ley 8465)
- Formato del Poder Judicial de Córdoba

JURISDICCIÓN: Córdoba, Argentina
FORMATO: Español formal, estructura procesal argentina

Al final incluye: "Esta información es orientativa. Verifique con la normativa vigente y el tribunal correspondiente.\""""

TYPE_STRUCTURE: Dict[str, str] = {
    "demanda": """DEMANDA - ESTRUCTURA REQUERIDA:
- Encabezado: Tribunal, expediente (si aplica), tipo de escrito
- PARTE ACTORA: datos completos (nombre, domicilio, CUIT/DNI)
- PARTE DEMANDADA: datos completos
- HECHOS: numerados, orden cronológico
- FUNDAMENTOS: citar artículos y normativa aplicable
- PETITORIO: pretensiones claras
- FIRMA Y ACREDITACIÓN""",
    "contestacion": """CONTESTACIÓN DE DEMANDA - ESTRUCTURA:
- Encabezado
- PARTE DEMANDANTE y PARTE DEMANDADA
- HECHOS ADMITIDOS (numerados)
- HECHOS NEGADOS (numerados)
- DEFENSAS DE FONDO
- EXCEPCIONES (si corresponde)
- PRUEBA OFRECIDA
- PETITORIO""",
    "apelacion": """RECURSO DE APELACIÓN - ESTRUCTURA:
- Encabezado
- PARTE RECURRENTE y RECURRIDA
- RESOLUCIÓN IMPUGNADA (fecha, contenido, fundamentos)
- AGRAVIOS (motivos específicos)
- FUNDAMENTOS LEGALES
- PETITORIO (solicitar revocación o reforma)""",
    "casacion": """RECURSO DE CASACIÓN - ESTRUCTURA:
- Encabezado
- PARTE RECURRENTE y RECURRIDA
- Fundamentación de la infracción
- AGRAVIOS específicos
- PETITORIO""",
    "recurso_extraordinario": """RECURSO EXTRAORDINARIO - ESTRUCTURA:
- Encabezado
- Cuestión federal o gravedad institucional
- AGRAVIOS
- PETITORIO""",
    "contrato": """CONTRATO - ESTRUCTURA:
- ANTECEDENTES
- PARTES CONTRATANTES (datos completos)
- OBJETO
- OBLIGACIONES DE CADA PARTE
- PLAZO (si aplica)
- CLÁUSULAS ESPECIALES
- FIRMAS""",
    "carta_documento": """CARTA DOCUMENTO - ESTRUCTURA:
- Datos del remitente y destinatario
- TIPO DE NOTIFICACIÓN
- CONTENIDO del comunicado
- Fecha y firma""",
    "mediacion": """ESCRITO DE MEDIACIÓN - ESTRUCTURA:
- PARTES (datos completos)
- OBJETO de la mediación
- PROPUESTA o solicitud
- PETITORIO""",
    "oficio_judicial": """OFICIO JUDICIAL - ESTRUCTURA:
- Encabezado (Tribunal, expediente)
- DESTINATARIO
- OBJETO del oficio
- FUNDAMENTO
- PETITORIO
- Firma y sellos""",
}

TYPE_NAMES: Dict[str, str] = {
    "demanda": "Demanda",
    "contestacion": "Contestación de demanda",
    "apelacion": "Recurso de apelación",
    "casacion": "Recurso de casación",
    "recurso_extraordinario": "Recurso extraordinario",
    "contrato": "Contrato",
    "carta_documento": "Carta documento",
    "mediacion": "Escrito de mediación",
    "oficio_judicial": "Oficio judicial",
}

TITLE_LABELS: Dict[str, str] = {
    "demanda": "Demanda",
    "contestacion": "Contestación",
    "apelacion": "Apelación",
    "casacion": "Casación",
    "recurso_extraordinario": "Recurso Extraordinario",
    "contrato": "Contrato",
    "carta_documento": "Carta Documento",
    "mediacion": "Mediación",
    "oficio_judicial": "Oficio Judicial",
}

REQUIRED_FIELDS: Dict[str, Tuple[str, ...]] = {
    "demanda": ("actor", "demandado", "hechos"),
    "contestacion": ("hechos_admitidos", "hechos_negados", "defensas"),
    "apelacion": ("resolucion_impugnada", "agravios"),
    "carta_documento": ("texto",),
}

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


class DraftTemplate(BaseModel):
    system_prompt_fragment: Optional[str] = None
    template_content: Optional[str] = None


class DraftRequest(BaseModel):
    document_type: DocumentType
    variant: str = ""
    form_data: Dict[str, str] = Field(default_factory=dict)
    case_context: Optional[CaseContextInput] = None
    demanda_context: Optional[str] = None
    previous_draft: Optional[str] = None
    iteration_instruction: Optional[str] = None

    @property
    def is_revision(self) -> bool:
        return bool(self.previous_draft and self.iteration_instruction)


def validate_form_data(document_type: str, form_data: Mapping[str, str]) -> None:
    missing = [f for f in REQUIRED_FIELDS.get(document_type, ()) if not (form_data.get(f) or "").strip()]
    if missing:
        raise ValidationFailed("Faltan campos obligatorios del formulario", missing_fields=missing)


def resolve_template_content(template_content: Optional[str], form_data: Mapping[str, str]) -> str:
    """Reemplaza los ``{{campo}}`` de la plantilla; un campo sin valor queda vacío."""
    if not template_content or not template_content.strip():
        return ""
    return _PLACEHOLDER.sub(lambda m: form_data.get(m.group(1), ""), template_content)


def _label(key: str) -> str:
    return key.replace("_", " ").title()


def build_draft_prompt(request: DraftRequest, template: Optional[DraftTemplate] = None) -> str:
    sections = [DRAFT_BASE, f"--- ESTRUCTURA DEL DOCUMENTO ---\n{TYPE_STRUCTURE[request.document_type]}"]

    if template and template.system_prompt_fragment:
        sections.append(f"--- INSTRUCCIONES ESPECÍFICAS ---\n{template.system_prompt_fragment}")

    base_content = resolve_template_content(template.template_content if template else None, request.form_data)
    if base_content.strip():
        sections.append(f"--- CONTENIDO BASE DEL DOCUMENTO ---\n{base_content.strip()}")

    data_lines = [f"{_label(key)}: {value}" for key, value in request.form_data.items() if value and value.strip()]
    sections.append("--- DATOS PROPORCIONADOS POR EL USUARIO ---\n" + "\n\n".join(data_lines))

    if request.demanda_context:
        sections.append(f"--- CONTEXTO DE LA DEMANDA ---\n{request.demanda_context}")

    if request.case_context:
        case_lines = [
            "--- CONTEXTO DEL CASO ---",
            f"Expediente: {request.case_context.case_number}",
            f"Título: {request.case_context.title}",
        ]
        if request.case_context.type:
            case_lines.append(f"Tipo: {request.case_context.type}")
        case_lines.append("\nUsa este contexto para referencias al expediente en el documento.")
        sections.append("\n".join(case_lines))

    if request.is_revision:
        sections.append(f"--- BORRADOR ANTERIOR (para modificar) ---\n{request.previous_draft}")
        sections.append(f'--- INSTRUCCIÓN DE MODIFICACIÓN ---\n"{request.iteration_instruction}"')
        sections.append(
            "Genera el documento completo modificado según la instrucción del usuario. "
            "Mantén la estructura y formalidad, aplicando los cambios solicitados."
        )
    else:
        sections.append(
            "Genera el documento legal completo basándote en los datos proporcionados. "
            "Usa la estructura indicada. Incluye todos los elementos formales."
        )
    return "\n\n".join(sections) + "\n"


def build_draft_user_message(document_type: str, iteration_instruction: Optional[str] = None) -> str:
    if iteration_instruction:
        return f'Por favor modifica el borrador anterior según la siguiente instrucción: "{iteration_instruction}"'
    return f"Genera el borrador completo del documento: {TYPE_NAMES[document_type]}."


def _first_line(text: str) -> str:
    return text.strip().split("\n")[0].strip()[:80]


def default_draft_title(document_type: str, form_data: Mapping[str, str], today: Optional[date] = None) -> str:
    """``Borrador <Tipo> - <actor> C/ <demandado>`` con las variantes de cada tipo."""
    label = TITLE_LABELS.get(document_type, document_type)

    def get(key: str) -> str:
        return _first_line(form_data.get(key) or "")

    if document_type in ("demanda", "contestacion"):
        actor = get("actor") if document_type == "demanda" else get("demandante") or get("actor")
        demandado = get("demandado")
        if actor and demandado:
            return f"Borrador {label} - {actor} C/ {demandado}"
        if actor:
            return f"Borrador {label} - {actor}"
        if demandado:
            return f"Borrador {label} - C/ {demandado}"
    elif document_type in ("apelacion", "casacion", "recurso_extraordinario"):
        recurrente, recurrido = get("recurrente"), get("recurrido")
        if recurrente and recurrido:
            return f"Borrador {label} - {recurrente} C/ {recurrido}"
    elif document_type in ("contrato", "mediacion") and get("partes"):
        return f"Borrador {label} - {get('partes')}"

    first = next((v for v in form_data.values() if v and v.strip()), None)
    if first:
        return f"Borrador {label} - {_first_line(first)}"
    return f"Borrador {label} - {(today or date.today()).strftime('%d/%m/%Y')}"


async def _static_stream(text: str) -> AsyncIterator[StreamChunk]:
    yield StreamChunk(text)
    yield StreamChunk("", total_tokens=0)


class DraftGenerator:
    """Arma el prompt de redacción y lo ejecuta con el orquestador."""

    def __init__(self, orchestrator: StreamOrchestrator, store: RowStore):
        self._orchestrator = orchestrator
        self._store = store

    async def load_template(
        self, document_type: str, variant: str, organization_id: Optional[str] = None
    ) -> Optional[DraftTemplate]:
        """Plantilla activa de la organización; si no hay, la global."""
        columns = "system_prompt_fragment, template_content"
        base = {"document_type": document_type, "variant": variant, "is_active": True}
        if organization_id:
            row = await self._store.fetch_one(
                "lexia_document_templates", {**base, "organization_id": organization_id}, columns
            )
            if row:
                return DraftTemplate(**row)
        row = await self._store.fetch_one("lexia_document_templates", {**base, "organization_id": None}, columns)
        return DraftTemplate(**row) if row else None

    def build_decision(self, system_prompt: str, trace_id: Optional[str] = None) -> Decision:
        return Decision(
            intent=Intent.DOCUMENT_DRAFTING,
            confidence=1.0,
            tools_allowed=frozenset(),
            credits=get_credits_for_intent(Intent.DOCUMENT_DRAFTING),
            enrich_context=False,
            model_chain=DRAFTING_CHAIN,
            temperature=DRAFTING_TEMPERATURE,
            max_tokens=DRAFTING_MAX_TOKENS,
            trace_id=trace_id or new_trace_id("draft"),
            system_prompt=system_prompt,
        )

    async def generate(
        self,
        request: DraftRequest,
        organization_id: Optional[str] = None,
        trace_id: Optional[str] = None,
    ) -> StreamResult:
        if not request.is_revision:
            validate_form_data(request.document_type, request.form_data)

        # La carta documento se devuelve tal cual la escribió el usuario, sin modelo.
        if request.document_type == "carta_documento" and not request.is_revision:
            decision = self.build_decision("", trace_id)
            return StreamResult(_static_stream(request.form_data.get("texto", "").strip()), decision)

        template = await self.load_template(request.document_type, request.variant, organization_id)
        decision = self.build_decision(build_draft_prompt(request, template), trace_id)
        messages = [ChatMessage(
            role="user",
            content=build_draft_user_message(request.document_type, request.iteration_instruction if request.is_revision else None),
        )]
        logger.info(
            "[%s] Borrador %s (variante=%r, revisión=%s)",
            decision.trace_id, request.document_type, request.variant, request.is_revision,
        )
        return await self._orchestrator.run(messages, decision)
