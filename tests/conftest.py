"""
Fakes compartidos: proveedor de modelos, store de filas en memoria y reloj.

Ningún test hace llamadas de red.
"""

import copy
import uuid
from typing import Any, Dict, List, Optional, Sequence

import pytest

from lexia.ai.orchestrator import StreamOrchestrator
from lexia.ai.providers import StreamChunk
from lexia.core.counters import InMemoryCounterStore
from lexia.core.errors import PersistenceError


class InMemoryRowStore:
    """RowStore en memoria. ``columns`` se ignora: siempre devuelve la fila completa."""

    def __init__(self, tables: Optional[Dict[str, List[dict]]] = None):
        self.tables: Dict[str, List[dict]] = {name: list(rows) for name, rows in (tables or {}).items()}
        self.fail_tables: set = set()

    def _check(self, table: str) -> None:
        if table in self.fail_tables:
            raise PersistenceError(f"Error de base de datos en {table}")

    def _matches(self, row: dict, filters) -> bool:
        return all(row.get(column) == value for column, value in filters.items())

    async def fetch_one(self, table, filters, columns="*"):
        self._check(table)
        for row in self.tables.get(table, []):
            if self._matches(row, filters):
                return copy.deepcopy(row)
        return None

    async def fetch_many(self, table, filters, columns="*", order_by=None, limit=None):
        self._check(table)
        rows = [copy.deepcopy(r) for r in self.tables.get(table, []) if self._matches(r, filters)]
        if order_by:
            column, desc = order_by
            rows.sort(key=lambda r: r.get(column) or "", reverse=desc)
        return rows[:limit] if limit else rows

    async def insert(self, table, row):
        self._check(table)
        stored = {"id": str(uuid.uuid4()), **copy.deepcopy(row)}
        self.tables.setdefault(table, []).append(stored)
        return copy.deepcopy(stored)

    async def update(self, table, filters, values):
        self._check(table)
        updated = []
        for row in self.tables.get(table, []):
            if self._matches(row, filters):
                row.update(copy.deepcopy(values))
                updated.append(copy.deepcopy(row))
        return updated

    def rows(self, table: str) -> List[dict]:
        return self.tables.get(table, [])


class FakeProvider:
    """
    Proveedor scripteado.

    ``chunks``: texto que devuelve ``stream``. ``error``: excepción que levanta
    antes del primer chunk. ``responses``: salida estructurada por nombre de
    schema (dict o función ``user_content -> dict``).
    """

    def __init__(
        self,
        name: str = "groq",
        model: str = "fake-model",
        chunks: Sequence[str] = ("Hola", " mundo"),
        error: Optional[BaseException] = None,
        responses: Optional[Dict[str, Any]] = None,
        tokens: int = 42,
    ):
        self.name = name
        self.model = model
        self.chunks = list(chunks)
        self.error = error
        self.responses = responses or {}
        self.tokens = tokens
        self.calls: List[dict] = []

    def stream(self, system_prompt, messages, tools, temperature, max_tokens):
        self.calls.append({
            "kind": "stream",
            "system_prompt": system_prompt,
            "messages": list(messages),
            "tools": [t.name for t in tools],
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        return self._stream()

    async def _stream(self):
        if self.error is not None:
            raise self.error
        for text in self.chunks:
            yield StreamChunk(text)
        yield StreamChunk("", total_tokens=self.tokens)

    async def invoke_structured(self, system_prompt, user_content, schema, temperature, max_tokens):
        self.calls.append({"kind": "structured", "schema": schema.__name__, "user_content": user_content})
        if self.error is not None:
            raise self.error
        response = self.responses[schema.__name__]
        if callable(response):
            response = response(user_content)
        return schema.model_validate(response)


class FakeProviderFactory:
    """Devuelve el proveedor configurado para cada clave de modelo (o el default)."""

    def __init__(self, providers: Optional[Dict[str, FakeProvider]] = None, default: Optional[FakeProvider] = None):
        self.providers = providers or {}
        self.default = default or FakeProvider()
        self.requested: List[str] = []

    def __call__(self, model_key: str) -> FakeProvider:
        self.requested.append(model_key)
        return self.providers.get(model_key, self.default)

    @property
    def total_calls(self) -> int:
        providers = list(self.providers.values()) + [self.default]
        return sum(len(p.calls) for p in {id(p): p for p in providers}.values())


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store() -> InMemoryRowStore:
    return InMemoryRowStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def counters(clock) -> InMemoryCounterStore:
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def factory(provider) -> FakeProviderFactory:
    return FakeProviderFactory(default=provider)


@pytest.fixture
def orchestrator(factory) -> StreamOrchestrator:
    return StreamOrchestrator(provider_factory=factory, timeout_seconds=5, max_attempts=3)

