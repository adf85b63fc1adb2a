"""Permisos sobre casos y enriquecimiento del contexto del caso."""

import logging
from typing import Dict

from lexia.ai.models import CaseContext, CaseContextInput, CaseDeadline, CaseNote, CaseTask
from lexia.core.errors import PersistenceError
from lexia.core.store import RowStore


logger = logging.getLogger(__name__)

CASE_COLUMNS = (
    "id, case_number, title, case_type, status, description, "
    "companies(company_name), deadlines(title, due_date, status), "
    "tasks(title, status, priority), case_notes(content, created_at), documents(id)"
)

MAX_DEADLINES = 5
MAX_TASKS = 5
MAX_NOTES = 3


async def check_case_permission(store: RowStore, user_id: str, case_id: str) -> bool:
    """
    Permiso ``can_view`` sobre un caso.

    - admin_general: todos los casos
    - client: solo casos de la empresa a la que está vinculado en el portal
    - equipo: necesita una asignación en case_assignments
    """
    profile = await store.fetch_one("profiles", {"id": user_id}, "system_role")
    role = (profile or {}).get("system_role")

    if role == "admin_general":
        return True

    if role == "client":
        case_row = await store.fetch_one("cases", {"id": case_id}, "company_id")
        company_id = (case_row or {}).get("company_id")
        if not company_id:
            return False
        person = await store.fetch_one(
            "people", {"portal_user_id": user_id, "company_id": company_id}, "id"
        )
        return person is not None

    assignment = await store.fetch_one(
        "case_assignments", {"case_id": case_id, "user_id": user_id}, "case_role"
    )
    return assignment is not None


async def enrich_case_context(store: RowStore, case_input: CaseContextInput) -> CaseContext:
    """
    Trae un resumen acotado del caso.

    El llamador ya verificó el permiso de lectura. Si el caso no existe o el
    store falla, devuelve un contexto mínimo: la conversación sigue sin
    anclaje en lugar de romperse.
    """
    try:
        row = await store.fetch_one("cases", {"id": case_input.case_id}, CASE_COLUMNS)
    except PersistenceError as e:
        logger.warning("No se pudo enriquecer el caso %s: %s", case_input.case_id, e)
        return CaseContext.minimal(case_input)

    if not row:
        logger.info("Caso %s no encontrado, contexto mínimo", case_input.case_id)
        return CaseContext.minimal(case_input)

    deadlines = row.get("deadlines") or []
    tasks = [t for t in (row.get("tasks") or []) if t.get("status") != "completed"]
    notes = sorted(row.get("case_notes") or [], key=lambda n: n.get("created_at") or "", reverse=True)
    company = row.get("companies") or {}

    return CaseContext(
        case_id=case_input.case_id,
        case_number=row.get("case_number") or case_input.case_number,
        title=row.get("title") or case_input.title,
        type=row.get("case_type") or case_input.type,
        status=row.get("status") or "unknown",
        description=row.get("description"),
        company_name=company.get("company_name") if isinstance(company, dict) else None,
        deadlines=[
            CaseDeadline(title=d.get("title", ""), due_date=d.get("due_date", ""), status=d.get("status", ""))
            for d in deadlines[:MAX_DEADLINES]
        ],
        tasks=[
            CaseTask(title=t.get("title", ""), status=t.get("status", ""), priority=t.get("priority", ""))
            for t in tasks[:MAX_TASKS]
        ],
        recent_notes=[
            CaseNote(content=n.get("content", ""), created_at=n.get("created_at", ""))
            for n in notes[:MAX_NOTES]
        ],
        documents_count=len(row.get("documents") or []),
        notes_count=len(row.get("case_notes") or []),
    )


PARTY_COLUMNS = (
    "id, companies(company_name, legal_name, cuit, address, city), "
    "case_participants(role, people(name, first_name, last_name, dni, cuit, address, city))"
)


def _format_party(row: dict, name_keys=("name",)) -> str:
    name = next((row.get(k) for k in name_keys if row.get(k)), None)
    if not name:
        name = " ".join(p for p in (row.get("first_name"), row.get("last_name")) if p) or "Sin nombre"
    parts = [name]
    if row.get("dni"):
        parts.append(f"DNI: {row['dni']}")
    if row.get("cuit"):
        parts.append(f"CUIT: {row['cuit']}")
    domicilio = ", ".join(p for p in (row.get("address"), row.get("city")) if p)
    if domicilio:
        parts.append(f"Domicilio: {domicilio}")
    return ". ".join(parts)


async def fetch_case_parties(store: RowStore, case_id: str) -> Dict[str, str]:
    """
    Partes del caso para una contestación: el cliente del estudio es el
    demandado y la contraparte es el demandante.
    """
    row = await store.fetch_one("cases", {"id": case_id}, PARTY_COLUMNS)
    if not row:
        return {}

    participants = row.get("case_participants") or []
    company = row.get("companies")
    representatives = [p["people"] for p in participants if p.get("role") == "client_representative" and p.get("people")]
    opposing = [p["people"] for p in participants if p.get("role") == "opposing_party" and p.get("people")]

    parties: Dict[str, str] = {}
    if isinstance(company, dict) and company:
        parties["demandado"] = _format_party(company, ("legal_name", "company_name"))
    elif representatives:
        parties["demandado"] = _format_party(representatives[0])
    if opposing:
        parties["demandante"] = "\n\n".join(_format_party(p) for p in opposing)
    return parties
