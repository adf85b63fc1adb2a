"""División de la demanda en bloques por sus encabezados."""

import re
from typing import List, Optional, Tuple

from lexia.agents.contestacion.state import BlockType, DemandBlock


DEMANDA_RAW_MAX_LENGTH = 100_000

# "I. HECHOS", "II - DERECHO", "3) PRUEBA"
NUMBERED_HEADING = re.compile(r"^\s*(?:[IVXLC]+|\d{1,2})\s*[.)\-–]\s*(?P<title>\S.{0,118})$")
KEYWORD_HEADING = re.compile(
    r"^\s*(OBJETO|HECHOS|DERECHO|FUNDAMENTOS|RUBROS|PRUEBA|PETITORIO|POR LO EXPUESTO|RESERVA)\b"
)

BLOCK_TYPES: List[Tuple[BlockType, Tuple[str, ...]]] = [
    ("petitorio", ("PETITORIO", "POR LO EXPUESTO", "PETICI")),
    ("prueba", ("PRUEBA",)),
    ("rubros", ("RUBRO", "DAÑO", "RECLAM", "INDEMNIZ")),
    ("hechos", ("HECHO",)),
    ("derecho", ("DERECHO", "FUNDAMENT")),
    ("objeto", ("OBJETO", "COMPARE")),
]


def _is_uppercase_title(title: str) -> bool:
    letters = [c for c in title if c.isalpha()]
    return bool(letters) and all(c.isupper() for c in letters)


def heading_title(line: str) -> Optional[str]:
    """El título si la línea es un encabezado en mayúsculas, si no None."""
    match = NUMBERED_HEADING.match(line)
    if match and _is_uppercase_title(match.group("title")):
        return line.strip()
    if KEYWORD_HEADING.match(line) and _is_uppercase_title(line):
        return line.strip()
    return None


def classify_block(title: str) -> BlockType:
    upper = title.upper()
    for block_type, keywords in BLOCK_TYPES:
        if any(keyword in upper for keyword in keywords):
            return block_type
    return "otro"


def parse_demand(raw_text: Optional[str]) -> List[DemandBlock]:
    """
    Bloques en orden de aparición.

    Sin encabezados reconocibles, todo el texto es un único bloque; texto
    vacío no produce bloques.
    """
    text = (raw_text or "")[:DEMANDA_RAW_MAX_LENGTH]
    if not text.strip():
        return []

    sections: List[Tuple[str, List[str]]] = []
    preamble: List[str] = []
    for line in text.splitlines():
        title = heading_title(line)
        if title is not None:
            sections.append((title, []))
        elif sections:
            sections[-1][1].append(line)
        else:
            preamble.append(line)

    if not sections:
        return [DemandBlock(id="bloque_1", titulo="Contenido completo", contenido=text.strip(), tipo="otro", orden=1)]

    if "\n".join(preamble).strip():
        sections.insert(0, ("Encabezado", preamble))

    return [
        DemandBlock(
            id=f"bloque_{index}",
            titulo=title,
            contenido="\n".join(lines).strip(),
            tipo=classify_block(title),
            orden=index,
        )
        for index, (title, lines) in enumerate(sections, start=1)
    ]
