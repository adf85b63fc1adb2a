"""Dependencias de FastAPI para autenticación, almacenamiento y servicios."""

import asyncio
import logging
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from lexia.agents.contestacion.service import ContestacionService
from lexia.agents.contestacion.steps import ContestacionSteps
from lexia.agents.estratega.service import EstrategaService
from lexia.agents.estratega.steps import EstrategaSteps
from lexia.ai.drafting import DraftGenerator
from lexia.ai.orchestrator import StreamOrchestrator
from lexia.ai.usage import CreditGate, RateLimiter
from lexia.core.config import settings
from lexia.core.counters import CounterStore, InMemoryCounterStore
from lexia.core.errors import ServiceUnavailable, Unauthenticated
from lexia.core.store import RowStore, SupabaseRowStore
from lexia.core.supabase_client import get_authenticated_supabase_client, get_supabase_client


logger = logging.getLogger(__name__)

# auto_error=False: la falta de token se informa como Unauthenticated (401), no como 403.
security = HTTPBearer(auto_error=False)


def _token(credentials: Optional[HTTPAuthorizationCredentials]) -> str:
    if credentials is None or not credentials.credentials:
        raise Unauthenticated("Falta el token de autenticación")
    return credentials.credentials


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Valida el token Bearer con Supabase Auth y devuelve el user_id.

    Raises:
        Unauthenticated: si el token falta, es inválido o expiró
    """
    token = _token(credentials)

    supabase = get_supabase_client()
    if not supabase:
        raise ServiceUnavailable("Servicio de autenticación no disponible")

    try:
        user_response = await asyncio.to_thread(supabase.auth.get_user, token)
    except Exception as e:
        logger.info("Token rechazado por Supabase Auth: %s", e)
        raise Unauthenticated("Token inválido o expirado") from e

    user = getattr(user_response, "user", None) if user_response else None
    if not user or not getattr(user, "id", None):
        raise Unauthenticated("Token inválido o usuario no encontrado")
    return user.id


async def get_store(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> RowStore:
    """Store del request, autenticado con el token del usuario para que aplique RLS."""
    client = get_authenticated_supabase_client(_token(credentials))
    if not client:
        raise ServiceUnavailable("Servicio de base de datos no disponible")
    return SupabaseRowStore(client)


def get_counter_store(request: Request) -> CounterStore:
    counters = getattr(request.app.state, "counters", None)
    if counters is None:
        # Sin lifespan (por ejemplo, en scripts) se usa un store en memoria.
        counters = InMemoryCounterStore()
        request.app.state.counters = counters
    return counters


def get_orchestrator() -> StreamOrchestrator:
    return StreamOrchestrator()


def get_rate_limiter(counters: CounterStore = Depends(get_counter_store)) -> RateLimiter:
    return RateLimiter(counters)


def get_credit_gate(
    counters: CounterStore = Depends(get_counter_store),
    store: RowStore = Depends(get_store),
) -> CreditGate:
    return CreditGate(counters, store)


def get_draft_generator(
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
    store: RowStore = Depends(get_store),
) -> DraftGenerator:
    return DraftGenerator(orchestrator, store)


def get_contestacion_service(
    store: RowStore = Depends(get_store),
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    drafts: DraftGenerator = Depends(get_draft_generator),
    credits: CreditGate = Depends(get_credit_gate),
) -> ContestacionService:
    return ContestacionService(store, ContestacionSteps(orchestrator), rate_limiter, drafts, credits)


def get_estratega_service(
    store: RowStore = Depends(get_store),
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
    counters: CounterStore = Depends(get_counter_store),
    credits: CreditGate = Depends(get_credit_gate),
) -> EstrategaService:
    # Límite propio, separado del chat.
    rate_limiter = RateLimiter(counters, max_requests=settings.estratega_rate_limit_max_requests, scope="estratega")
    return EstrategaService(store, EstrategaSteps(orchestrator), rate_limiter, credits)
