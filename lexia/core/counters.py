"""Contadores compartidos para límites de uso y créditos.

Son el único estado mutable compartido entre requests. ``InMemoryCounterStore``
sirve para un único proceso; con varias réplicas hay que usar
``PostgresCounterStore``.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, NamedTuple, Optional, Protocol

import psycopg

from lexia.core.config import settings
from lexia.core.errors import CounterStoreUnavailable


logger = logging.getLogger(__name__)


class CounterValue(NamedTuple):
    value: float
    expires_at: Optional[float]
    """Epoch en segundos en que el contador vuelve a cero. None = no expira."""


class CounterStore(Protocol):
    async def increment(
        self, key: str, amount: float = 1, ttl_seconds: Optional[float] = None
    ) -> CounterValue:
        """Suma ``amount``. Si la clave expiró (o no existe) arranca una ventana nueva."""
        ...

    async def peek(self, key: str) -> CounterValue:
        ...

    async def reset(self, key: str) -> None:
        ...


class InMemoryCounterStore:
    """Contadores en memoria del proceso, protegidos con un asyncio.Lock."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._values: Dict[str, CounterValue] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str, now: float) -> Optional[CounterValue]:
        current = self._values.get(key)
        if current is None:
            return None
        if current.expires_at is not None and now >= current.expires_at:
            del self._values[key]
            return None
        return current

    async def increment(
        self, key: str, amount: float = 1, ttl_seconds: Optional[float] = None
    ) -> CounterValue:
        async with self._lock:
            now = self._clock()
            current = self._live(key, now)
            if current is None:
                expires_at = now + ttl_seconds if ttl_seconds else None
                current = CounterValue(amount, expires_at)
            else:
                current = CounterValue(current.value + amount, current.expires_at)
            self._values[key] = current
            return current

    async def peek(self, key: str) -> CounterValue:
        async with self._lock:
            current = self._live(key, self._clock())
            return current if current is not None else CounterValue(0, None)

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._values.pop(key, None)


_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS lexia_counters (
    key TEXT PRIMARY KEY,
    value DOUBLE PRECISION NOT NULL DEFAULT 0,
    expires_at DOUBLE PRECISION
)
"""

# La ventana se reinicia dentro del mismo upsert para que dos réplicas no
# puedan abrir ventanas distintas para la misma clave.
_INCREMENT = """
INSERT INTO lexia_counters (key, value, expires_at)
VALUES (%(key)s, %(amount)s, %(expires_at)s)
ON CONFLICT (key) DO UPDATE SET
    value = CASE
        WHEN lexia_counters.expires_at IS NOT NULL AND lexia_counters.expires_at <= %(now)s
        THEN EXCLUDED.value
        ELSE lexia_counters.value + EXCLUDED.value
    END,
    expires_at = CASE
        WHEN lexia_counters.expires_at IS NOT NULL AND lexia_counters.expires_at <= %(now)s
        THEN EXCLUDED.expires_at
        ELSE lexia_counters.expires_at
    END
RETURNING value, expires_at
"""

_PEEK = """
SELECT value, expires_at FROM lexia_counters
WHERE key = %(key)s AND (expires_at IS NULL OR expires_at > %(now)s)
"""

_RESET = "DELETE FROM lexia_counters WHERE key = %(key)s"


class PostgresCounterStore:
    """Contadores en PostgreSQL (Supabase) compartidos entre procesos."""

    def __init__(self, conninfo: str, clock: Callable[[], float] = time.time):
        self._conninfo = conninfo
        self._clock = clock

    async def _run(self, sql: str, params: dict, fetch: bool = True):
        try:
            async with await psycopg.AsyncConnection.connect(self._conninfo, autocommit=True) as conn:
                async with conn.cursor() as cur:
                    await cur.execute(sql, params)
                    return await cur.fetchone() if fetch else None
        except psycopg.Error as e:
            logger.error("Error en lexia_counters: %s", e)
            raise CounterStoreUnavailable("Almacenamiento de contadores no disponible") from e

    async def setup(self) -> None:
        await self._run(_CREATE_TABLE, {}, fetch=False)

    async def increment(
        self, key: str, amount: float = 1, ttl_seconds: Optional[float] = None
    ) -> CounterValue:
        now = self._clock()
        row = await self._run(_INCREMENT, {
            "key": key,
            "amount": amount,
            "expires_at": now + ttl_seconds if ttl_seconds else None,
            "now": now,
        })
        return CounterValue(float(row[0]), row[1])

    async def peek(self, key: str) -> CounterValue:
        row = await self._run(_PEEK, {"key": key, "now": self._clock()})
        if not row:
            return CounterValue(0, None)
        return CounterValue(float(row[0]), row[1])

    async def reset(self, key: str) -> None:
        await self._run(_RESET, {"key": key}, fetch=False)


def build_counter_store() -> CounterStore:
    """Elige el backend según ``settings.counter_backend``."""
    if settings.counter_backend == "postgres":
        if not settings.supabase_db_url:
            raise RuntimeError("counter_backend=postgres requiere SUPABASE_DB_URL")
        return PostgresCounterStore(settings.supabase_db_url)
    return InMemoryCounterStore()
