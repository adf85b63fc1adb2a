"""Clasificación de intención por reglas (sin IA).

Función pura: mismo texto y mismo contexto dan siempre la misma
clasificación, así se prueba sin simular ningún modelo.
"""

import re
from typing import Dict, List, Optional, Tuple

from lexia.ai.models import CaseContextInput, Intent, IntentClassification
from lexia.ai.routing import get_credits_for_intent, get_routing_rule
from lexia.ai.tools import allowed_tools_for


_I = re.IGNORECASE

INTENT_PATTERNS: Dict[Intent, List[re.Pattern]] = {
    Intent.DOCUMENT_DRAFTING: [
        re.compile(r"\b(redact|escrib|borrador|draft|generar?\s+(un|el|la)?\s*(escrito|demanda|contestaci|contrato|poder|carta|recurso|apelaci|ofrecimiento))", _I),
        re.compile(r"\b(plantilla|modelo\s+de|template|carta\s+documento)\b", _I),
        re.compile(r"\b(redacci[oó]n|mejorar?\s+texto|reescrib)", _I),
    ],
    Intent.DOCUMENT_SUMMARY: [
        re.compile(r"\b(resum|sintetiz|analiz[ae]\s+(este|el|la|un)\s*(documento|texto|escrito|contrato|sentencia))", _I),
        re.compile(r"\b(resumen|s[ií]ntesis|puntos?\s+clave|extracto)\b", _I),
        re.compile(r"\b(qu[eé]\s+dice|de\s+qu[eé]\s+trata|identific[ae]\s+(las\s+)?partes)\b", _I),
    ],
    Intent.LEGAL_ANALYSIS: [
        re.compile(r"\b(anali[zs]|evalua|dictam[ei]n|jurisprudencia|doctrina|fundament)", _I),
        re.compile(r"\b(estrategia\s+legal|viabilidad|posibilidad|chances|probabilidad)", _I),
        re.compile(r"\b(argumento|defensa|impugn|nulidad|prescripci[oó]n|caducidad)\b", _I),
        re.compile(r"\b(qu[eé]\s+opinas?\s+sobre|c[oó]mo\s+analiz|qu[eé]\s+dice\s+la\s+ley)\b", _I),
    ],
    Intent.PROCEDURAL_QUERY: [
        re.compile(r"\b(checklist|lista\s+de\s+(pasos|verificaci)|paso\s+a\s+paso)\b", _I),
        re.compile(r"\b(plazo|vencimiento|t[eé]rmino|d[ií]as?\s+h[aá]biles|calcul[ae]\s+(el\s+)?plazo)\b", _I),
        re.compile(r"\b(procedimiento|etapa\s+procesal|tr[aá]mite|requisitos?\s+formales)\b", _I),
        re.compile(r"\b(cu[aá]nto\s+tiempo|cu[aá]ndo\s+vence|fecha\s+l[ií]mite)\b", _I),
    ],
    Intent.CASE_QUERY: [
        re.compile(r"\b(este\s+caso|el\s+caso|mi\s+caso|estado\s+del\s+caso)\b", _I),
        re.compile(r"\b(tareas?\s+pendientes?|documentos?\s+del\s+caso|notas?\s+del\s+caso)\b", _I),
        re.compile(r"\b(qu[eé]\s+tengo\s+pendiente|pr[oó]ximos?\s+vencimientos?)\b", _I),
        re.compile(r"\b(informaci[oó]n\s+del\s+caso|datos?\s+del\s+expediente)\b", _I),
    ],
    Intent.GENERAL_CHAT: [
        re.compile(r"\b(hola|buenas?|gracias|adi[oó]s|chau)\b", _I),
        re.compile(r"\b(qu[eé]\s+puedes?\s+hacer|ayuda|c[oó]mo\s+funciona)\b", _I),
    ],
}

CASE_REFERENCE = re.compile(r"\b(caso|expediente|este|el)\b", _I)
CASE_BOOST = 0.3
MIN_SCORE = 0.1

# Intenciones que necesitan datos del caso aunque el texto no lo mencione.
CONTEXT_INTENTS = frozenset({Intent.LEGAL_ANALYSIS, Intent.CASE_QUERY})


def score_intent(text: str, has_case_context: bool) -> Tuple[Intent, float]:
    scores: Dict[Intent, float] = {}
    for intent, patterns in INTENT_PATTERNS.items():
        matches = sum(1 for pattern in patterns if pattern.search(text))
        if matches:
            scores[intent] = matches / len(patterns)

    if has_case_context and CASE_REFERENCE.search(text):
        scores[Intent.CASE_QUERY] = scores.get(Intent.CASE_QUERY, 0.0) + CASE_BOOST

    best_intent, best_score = Intent.GENERAL_CHAT, 0.0
    # Empates: gana la primera intención en el orden de INTENT_PATTERNS.
    for intent, score in scores.items():
        if score > best_score:
            best_intent, best_score = intent, score

    if best_score < MIN_SCORE:
        return Intent.GENERAL_CHAT, 0.5
    return best_intent, min(best_score, 1.0)


def classify(
    user_text: str,
    case_context: Optional[CaseContextInput],
    caller_id: str,
) -> IntentClassification:
    """
    Clasifica el último mensaje del usuario.

    Texto vacío o solo espacios clasifica como general_chat en lugar de fallar.
    ``caller_id`` no altera la clasificación; se recibe para que la firma sea
    la misma que la del resto del controlador.
    """
    text = (user_text or "").strip()
    has_case = case_context is not None
    intent, confidence = score_intent(text, has_case) if text else (Intent.GENERAL_CHAT, 0.5)

    rule = get_routing_rule(intent)
    return IntentClassification(
        intent=intent,
        confidence=confidence,
        tools_allowed=allowed_tools_for(intent, rule.tools_allowed),
        requires_context=has_case or intent in CONTEXT_INTENTS,
        credits=get_credits_for_intent(intent),
    )
