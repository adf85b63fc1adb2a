"""
Créditos por período y límite de requests por ventana.

Los contadores compartidos viven en un ``CounterStore`` inyectado; el
registro persistente de uso vive en ``lexia_usage_log`` y
``lexia_usage_periods``.
"""

import logging
import math
import time
from datetime import date, datetime, timedelta, timezone
from typing import Callable, NamedTuple, Optional

from lexia.ai.models import UsageRecord
from lexia.ai.routing import DEFAULT_PLAN, get_plan_credits_limit
from lexia.core.config import settings
from lexia.core.counters import CounterStore
from lexia.core.errors import (
    CounterStoreUnavailable,
    CreditsExhausted,
    PersistenceError,
    RateLimited,
)
from lexia.core.store import RowStore


logger = logging.getLogger(__name__)


class CreditsRemaining(NamedTuple):
    allowed: bool
    remaining: float
    limit: int


class UserPlan(NamedTuple):
    slug: str
    credits_per_month: int


def period_start(now: datetime) -> date:
    return date(now.year, now.month, 1)


def next_period_start(now: datetime) -> datetime:
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


class CreditGate:
    """
    Créditos por usuario y mes calendario.

    El contador ``credits:{user}:{YYYY-MM}`` se siembra una sola vez por
    período desde ``lexia_usage_periods`` y después se incrementa en cada
    ``record``. Si el almacenamiento no responde, ``fail_open`` decide si el
    request pasa o se rechaza.
    """

    def __init__(
        self,
        counters: CounterStore,
        store: RowStore,
        fail_open: Optional[bool] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._counters = counters
        self._store = store
        self._fail_open = settings.credits_fail_open if fail_open is None else fail_open
        self._clock = clock

    def _key(self, user_id: str, now: datetime) -> str:
        return f"credits:{user_id}:{now:%Y-%m}"

    def _ttl(self, now: datetime) -> float:
        return max((next_period_start(now) - now).total_seconds(), 1.0)

    async def get_user_plan(self, user_id: str) -> UserPlan:
        """Sin plan asignado (o plan inexistente) corresponde el plan individual."""
        default = UserPlan(DEFAULT_PLAN, get_plan_credits_limit(DEFAULT_PLAN))
        profile = await self._store.fetch_one("profiles", {"id": user_id}, "lexia_plan_id")
        plan_id = (profile or {}).get("lexia_plan_id")
        if not plan_id:
            return default
        plan = await self._store.fetch_one("lexia_plans", {"id": plan_id}, "slug, credits_per_month")
        if not plan:
            return default
        slug = plan.get("slug") or DEFAULT_PLAN
        return UserPlan(slug, int(plan.get("credits_per_month") or get_plan_credits_limit(slug)))

    async def _used_credits(self, user_id: str, now: datetime) -> float:
        key = self._key(user_id, now)
        ttl = self._ttl(now)
        # Solo el primer request del período (en todo el cluster) siembra el contador.
        seeded = await self._counters.increment(f"{key}:seeded", 1, ttl)
        if seeded.value == 1:
            try:
                row = await self._store.fetch_one(
                    "lexia_usage_periods",
                    {"user_id": user_id, "period_start": period_start(now).isoformat()},
                    "credits_used",
                )
            except PersistenceError:
                await self._counters.reset(f"{key}:seeded")
                raise
            persisted = float((row or {}).get("credits_used") or 0)
            if persisted:
                await self._counters.increment(key, persisted, ttl)
        return (await self._counters.peek(key)).value

    async def check_remaining(self, user_id: str) -> CreditsRemaining:
        """
        Créditos restantes del usuario en el período actual.

        No consume créditos. La primera consulta del período siembra el
        contador desde ``lexia_usage_periods`` (una única vez, idempotente);
        las siguientes solo leen el contador.

        Args:
            user_id: ID del usuario

        Returns:
            CreditsRemaining con ``allowed``, lo restante y el límite del plan.
            Si el almacenamiento no responde, ``allowed`` sigue a ``fail_open``.
        """
        now = self._clock()
        try:
            plan = await self.get_user_plan(user_id)
            used = await self._used_credits(user_id, now)
        except (PersistenceError, CounterStoreUnavailable) as e:
            logger.warning("Créditos no disponibles para %s (fail_open=%s): %s", user_id, self._fail_open, e)
            limit = get_plan_credits_limit(DEFAULT_PLAN)
            return CreditsRemaining(self._fail_open, float(limit) if self._fail_open else 0.0, limit)

        remaining = max(0.0, plan.credits_per_month - used)
        return CreditsRemaining(remaining > 0, remaining, plan.credits_per_month)

    async def ensure_allowed(self, user_id: str) -> CreditsRemaining:
        """
        Corta el request antes de cualquier llamada a un proveedor.

        Args:
            user_id: ID del usuario

        Returns:
            El estado de créditos, si el request puede seguir.

        Raises:
            CreditsExhausted: si no quedan créditos (o el almacenamiento no
                responde y ``fail_open`` es False)
        """
        status = await self.check_remaining(user_id)
        if not status.allowed:
            raise CreditsExhausted(
                "Créditos de Lexia agotados para este período",
                remaining=status.remaining,
                limit=status.limit,
            )
        return status

    async def record(
        self, user_id: str, trace_id: str, intent: str, credits: float, tokens: int
    ) -> bool:
        """
        Registra un request completado en el log, el período y el contador.

        Args:
            user_id: ID del usuario
            trace_id: ID de traza del request; hace idempotente el registro
            intent: intención clasificada
            credits: créditos a cobrar
            tokens: tokens informados por el proveedor

        Returns:
            False si el trace_id ya estaba registrado (no se cobra dos veces).

        Raises:
            PersistenceError: si falla la escritura del log o del período
        """
        existing = await self._store.fetch_one("lexia_usage_log", {"trace_id": trace_id}, "id")
        if existing:
            logger.info("[%s] Uso ya registrado", trace_id)
            return False

        now = self._clock()
        # Sembrar antes de escribir el período para no contar este request dos veces.
        try:
            await self._used_credits(user_id, now)
        except CounterStoreUnavailable as e:
            logger.warning("[%s] Contador de créditos no disponible: %s", trace_id, e)

        record = UsageRecord(
            user_id=user_id,
            trace_id=trace_id,
            intent=intent,
            credits_charged=credits,
            tokens_used=tokens,
            created_at=now,
        )
        await self._store.insert("lexia_usage_log", record.model_dump(mode="json"))

        start = period_start(now).isoformat()
        filters = {"user_id": user_id, "period_start": start}
        period = await self._store.fetch_one("lexia_usage_periods", filters, "credits_used, tokens_used")
        if period is None:
            await self._store.insert("lexia_usage_periods", {
                **filters,
                "period_end": (next_period_start(now) - timedelta(days=1)).date().isoformat(),
                "credits_used": credits,
                "tokens_used": tokens,
            })
        else:
            await self._store.update("lexia_usage_periods", filters, {
                "credits_used": float(period.get("credits_used") or 0) + credits,
                "tokens_used": int(period.get("tokens_used") or 0) + tokens,
            })

        try:
            await self._counters.increment(self._key(user_id, now), credits, self._ttl(now))
        except CounterStoreUnavailable as e:
            logger.error("[%s] No se pudo actualizar el contador de créditos: %s", trace_id, e)
        return True


class RateLimiter:
    """
    Ventana fija por usuario que arranca con el primer request.

    ``scope`` separa límites independientes sobre el mismo CounterStore
    (por ejemplo, el chat y el análisis estratégico).
    """

    def __init__(
        self,
        counters: CounterStore,
        window_seconds: Optional[int] = None,
        max_requests: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        scope: str = "rate",
    ):
        self._counters = counters
        self._window = window_seconds or settings.rate_limit_window_seconds
        self._max = max_requests or settings.rate_limit_max_requests
        self._clock = clock
        self._scope = scope

    async def hit(self, user_id: str) -> int:
        """
        Cuenta el request en la ventana del usuario.

        Returns:
            La cantidad de requests en la ventana actual, incluido este.

        Raises:
            RateLimited: si supera el máximo; ``retry_after`` va de 1 a la
                duración de la ventana
        """
        current = await self._counters.increment(f"{self._scope}:{user_id}", 1, self._window)
        if current.value > self._max:
            expires_at = current.expires_at or self._clock() + self._window
            retry_after = min(max(math.ceil(expires_at - self._clock()), 1), self._window)
            raise RateLimited(
                f"Demasiadas solicitudes. Reintentar en {retry_after} segundos.",
                retry_after=retry_after,
            )
        return int(current.value)
