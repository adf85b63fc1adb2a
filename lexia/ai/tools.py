"""Herramientas de Lexia y su registro.

DETERMINISTAS: código puro, sin IA (calculate_deadline, query_case_info).
SEMÁNTICAS: preparan el terreno y el modelo continúa generando
(summarize_document, generate_draft, get_procedural_checklist).
"""

from datetime import date, timedelta
from typing import Dict, FrozenSet, Iterable, List, Literal, NamedTuple, Optional

from langchain_core.tools import BaseTool, tool

from lexia.ai.models import CaseContext, Intent


class ToolEntry(NamedTuple):
    name: str
    category: Literal["deterministic", "semantic"]
    description: str
    allowed_intents: FrozenSet[Intent]


TOOL_REGISTRY: Dict[str, ToolEntry] = {
    "summarize_document": ToolEntry(
        "summarize_document", "semantic",
        "Resumen estructurado de un documento legal",
        frozenset({Intent.DOCUMENT_SUMMARY}),
    ),
    "generate_draft": ToolEntry(
        "generate_draft", "semantic",
        "Borradores de escritos a partir de plantillas",
        frozenset({Intent.DOCUMENT_DRAFTING}),
    ),
    "get_procedural_checklist": ToolEntry(
        "get_procedural_checklist", "semantic",
        "Checklists procesales paso a paso",
        frozenset({Intent.PROCEDURAL_QUERY, Intent.LEGAL_ANALYSIS}),
    ),
    "calculate_deadline": ToolEntry(
        "calculate_deadline", "deterministic",
        "Cálculo de plazos en días hábiles",
        frozenset({Intent.PROCEDURAL_QUERY, Intent.CASE_QUERY, Intent.LEGAL_ANALYSIS}),
    ),
    "query_case_info": ToolEntry(
        "query_case_info", "deterministic",
        "Consulta de datos del caso activo",
        frozenset({Intent.CASE_QUERY, Intent.LEGAL_ANALYSIS, Intent.DOCUMENT_DRAFTING, Intent.UNKNOWN}),
    ),
}


DEADLINE_DAYS: Dict[str, int] = {
    "apelacion_5dias": 5,
    "apelacion_10dias": 10,
    "contestacion_15dias": 15,
    "ofrecimiento_prueba": 10,
    "alegatos": 6,
    "recurso_extraordinario": 10,
}


def add_business_days(start: date, days: int) -> date:
    current = start
    remaining = days
    while remaining > 0:
        current += timedelta(days=1)
        if current.weekday() < 5:
            remaining -= 1
    return current


@tool
def calculate_deadline(
    start_date: str,
    deadline_type: Literal[
        "apelacion_5dias", "apelacion_10dias", "contestacion_15dias",
        "ofrecimiento_prueba", "alegatos", "recurso_extraordinario", "custom",
    ],
    custom_days: Optional[int] = None,
) -> dict:
    """Calcula un plazo procesal en días hábiles (sin feriados) desde start_date (YYYY-MM-DD)."""
    days = (custom_days or 0) if deadline_type == "custom" else DEADLINE_DAYS[deadline_type]
    start = date.fromisoformat(start_date)
    due = add_business_days(start, days)
    return {
        "start_date": start.isoformat(),
        "business_days": days,
        "due_date": due.isoformat(),
        "message": f"Plazo de {days} días hábiles desde {start.isoformat()}: vence el {due.isoformat()}.",
    }


@tool
def summarize_document(document_text: str, summary_type: Literal["brief", "detailed", "key_points"]) -> dict:
    """Prepara el resumen estructurado de un documento legal (partes, obligaciones, plazos)."""
    return {
        "state": "ready",
        "summary_type": summary_type,
        "characters": len(document_text),
        "message": "Documento analizado. Generando resumen...",
    }


DRAFT_TEMPLATES: Dict[str, str] = {
    "demanda": "Escrito de Demanda",
    "contestacion": "Contestación de Demanda",
    "apelacion": "Recurso de Apelación",
    "contrato": "Contrato",
    "poder": "Poder",
    "carta_documento": "Carta Documento",
    "escrito_judicial": "Escrito Judicial",
    "recurso": "Recurso",
    "ofrecimiento_prueba": "Ofrecimiento de Prueba",
}


@tool
def generate_draft(
    template_type: Literal[
        "demanda", "contestacion", "apelacion", "contrato", "poder",
        "carta_documento", "escrito_judicial", "recurso", "ofrecimiento_prueba",
    ],
    context: Optional[str] = None,
) -> dict:
    """Selecciona la plantilla de un escrito judicial para que el asistente redacte el borrador."""
    name = DRAFT_TEMPLATES[template_type]
    return {"state": "ready", "template_name": name, "message": f'Plantilla "{name}" lista.'}


CHECKLIST_NAMES: Dict[str, str] = {
    "civil_ordinario": "Juicio Civil Ordinario",
    "civil_ejecutivo": "Juicio Ejecutivo",
    "laboral": "Juicio Laboral",
    "familia_divorcio": "Divorcio",
    "familia_alimentos": "Alimentos",
    "sucesion": "Sucesión",
    "penal": "Proceso Penal",
    "amparo": "Acción de Amparo",
    "desalojo": "Desalojo",
}


@tool
def get_procedural_checklist(
    case_type: Literal[
        "civil_ordinario", "civil_ejecutivo", "laboral", "familia_divorcio",
        "familia_alimentos", "sucesion", "penal", "amparo", "desalojo",
    ],
    stage: Literal["inicial", "prueba", "alegatos", "sentencia", "ejecucion", "completo"] = "completo",
) -> dict:
    """Devuelve la referencia del checklist procesal para un tipo de caso."""
    name = CHECKLIST_NAMES[case_type]
    return {"state": "ready", "case_type_name": name, "stage": stage,
            "message": f'Checklist para "{name}" disponible.'}


def build_query_case_info_tool(case_context: Optional[CaseContext]) -> BaseTool:
    """La consulta responde sobre el contexto ya enriquecido del request."""

    @tool
    def query_case_info(query_type: Literal["documents", "notes", "deadlines", "tasks", "summary"]) -> dict:
        """Consulta documentos, notas, vencimientos o tareas del caso activo."""
        if case_context is None:
            return {"found": False, "count": None, "message": "No hay un caso activo."}
        if query_type == "documents":
            return {"found": True, "count": case_context.documents_count,
                    "message": f"El caso tiene {case_context.documents_count} documentos."}
        if query_type == "notes":
            return {"found": True, "count": case_context.notes_count,
                    "message": "; ".join(n.content[:200] for n in case_context.recent_notes)}
        if query_type == "deadlines":
            return {"found": True, "count": len(case_context.deadlines),
                    "message": "; ".join(f"{d.title} ({d.due_date})" for d in case_context.deadlines)}
        if query_type == "tasks":
            return {"found": True, "count": len(case_context.tasks),
                    "message": "; ".join(f"{t.title} [{t.priority}]" for t in case_context.tasks)}
        return {"found": True, "count": None,
                "message": f"{case_context.case_number} - {case_context.title} ({case_context.status})"}

    return query_case_info


_STATIC_TOOLS: Dict[str, BaseTool] = {
    "summarize_document": summarize_document,
    "generate_draft": generate_draft,
    "get_procedural_checklist": get_procedural_checklist,
    "calculate_deadline": calculate_deadline,
}


def allowed_tools_for(intent: Intent, rule_tools: Iterable[str]) -> FrozenSet[str]:
    """
    Lista blanca de herramientas para una intención.

    Es la lista de la regla de ruteo, nunca más amplia: una herramienta que no
    está registrada o cuyo registro no habilita la intención queda afuera.
    general_chat no tiene herramientas.
    """
    return frozenset(
        name for name in rule_tools
        if name in TOOL_REGISTRY and intent in TOOL_REGISTRY[name].allowed_intents
    )


def get_tools_for_decision(
    allowed: FrozenSet[str], case_context: Optional[CaseContext] = None
) -> List[BaseTool]:
    """Instancia exactamente las herramientas de la lista blanca, en orden estable."""
    tools: List[BaseTool] = []
    for name in sorted(allowed):
        if name == "query_case_info":
            tools.append(build_query_case_info_tool(case_context))
        elif name in _STATIC_TOOLS:
            tools.append(_STATIC_TOOLS[name])
    return tools
