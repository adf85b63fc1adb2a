"""Registro de modelos, reglas de ruteo por intención y costos en créditos.

Para agregar un modelo: sumarlo a MODEL_REGISTRY con el nombre del proveedor
que lo sirve y referenciarlo desde las reglas.
"""

from typing import Dict, NamedTuple, Tuple

from lexia.ai.models import Intent


class ModelConfig(NamedTuple):
    provider: str
    model: str
    display_name: str
    max_tokens: int


MODEL_REGISTRY: Dict[str, ModelConfig] = {
    "llama-70b": ModelConfig("groq", "llama-3.3-70b-versatile", "Llama 3.3 70B", 8192),
    "llama-8b": ModelConfig("groq", "llama-3.1-8b-instant", "Llama 3.1 8B", 4096),
    "gpt4o": ModelConfig("openai", "gpt-4o", "GPT-4o", 8192),
    "gpt4o-mini": ModelConfig("openai", "gpt-4o-mini", "GPT-4o Mini", 4096),
}


class RoutingRule(NamedTuple):
    models: Tuple[str, ...]
    """Primario primero, después los fallbacks en orden."""
    temperature: float
    max_tokens: int
    tools_allowed: Tuple[str, ...]


ROUTING_RULES: Dict[Intent, RoutingRule] = {
    Intent.LEGAL_ANALYSIS: RoutingRule(
        ("llama-70b", "gpt4o"), 0.4, 3000,
        ("get_procedural_checklist", "query_case_info", "calculate_deadline"),
    ),
    Intent.DOCUMENT_DRAFTING: RoutingRule(
        ("llama-70b", "gpt4o"), 0.6, 4096, ("generate_draft", "query_case_info"),
    ),
    Intent.DOCUMENT_SUMMARY: RoutingRule(
        ("gpt4o", "llama-70b"), 0.3, 2048, ("summarize_document",),
    ),
    Intent.PROCEDURAL_QUERY: RoutingRule(
        ("llama-70b", "gpt4o"), 0.3, 2048, ("get_procedural_checklist", "calculate_deadline"),
    ),
    Intent.CASE_QUERY: RoutingRule(
        ("llama-8b", "gpt4o-mini"), 0.2, 1024, ("query_case_info", "calculate_deadline"),
    ),
    Intent.GENERAL_CHAT: RoutingRule(("llama-8b", "gpt4o-mini"), 0.7, 1024, ()),
    Intent.UNKNOWN: RoutingRule(("gpt4o-mini", "llama-8b"), 0.5, 1024, ("query_case_info",)),
}

# Redacción de borradores (fuera del chat): sin herramientas, más tokens.
DRAFTING_CHAIN: Tuple[str, ...] = ("llama-70b", "gpt4o")
DRAFTING_MAX_TOKENS = 8192
DRAFTING_TEMPERATURE = 0.6

# Pasos estructurados del agente de contestación.
AGENT_CHAIN: Tuple[str, ...] = ("llama-8b", "gpt4o-mini")
ANALYSIS_CHAIN: Tuple[str, ...] = ("llama-70b", "gpt4o")

# Análisis estratégico de casos.
STRATEGY_CHAIN: Tuple[str, ...] = ("llama-70b", "gpt4o")


def get_routing_rule(intent: Intent) -> RoutingRule:
    return ROUTING_RULES.get(intent, ROUTING_RULES[Intent.UNKNOWN])


CREDITS_BY_INTENT: Dict[Intent, float] = {
    Intent.GENERAL_CHAT: 0.5,
    Intent.CASE_QUERY: 0.5,
    Intent.UNKNOWN: 0.5,
    Intent.PROCEDURAL_QUERY: 0.5,
    Intent.DOCUMENT_SUMMARY: 1,
    Intent.DOCUMENT_DRAFTING: 2,
    Intent.LEGAL_ANALYSIS: 3,
}

DEFAULT_CREDITS = 1.0


def get_credits_for_intent(intent: Intent) -> float:
    return CREDITS_BY_INTENT.get(intent, DEFAULT_CREDITS)


PLAN_CREDITS: Dict[str, int] = {
    "individual": 300,
    "professional": 600,
    "estudio": 1000,
}

DEFAULT_PLAN = "individual"


def get_plan_credits_limit(plan_slug: str) -> int:
    """Un slug desconocido cae en el plan individual."""
    return PLAN_CREDITS.get(plan_slug, PLAN_CREDITS[DEFAULT_PLAN])
