"""Acceso a filas (Supabase) a través de una interfaz mínima.

El núcleo nunca arma consultas de PostgREST directamente: pide filas por
tabla y filtros de igualdad. RLS se aplica en Supabase con el token del
usuario, este módulo no agrega autorización propia.
"""

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from supabase import Client

from lexia.core.errors import PersistenceError


logger = logging.getLogger(__name__)

Row = Dict[str, Any]
Filters = Mapping[str, Any]


class RowStore(Protocol):
    """Colecciones lógicas: sesiones, usos, borradores, casos."""

    async def fetch_one(self, table: str, filters: Filters, columns: str = "*") -> Optional[Row]:
        ...

    async def fetch_many(
        self,
        table: str,
        filters: Filters,
        columns: str = "*",
        order_by: Optional[Tuple[str, bool]] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        ...

    async def insert(self, table: str, row: Row) -> Row:
        ...

    async def update(self, table: str, filters: Filters, values: Row) -> List[Row]:
        """Actualiza las filas que cumplen los filtros y devuelve las afectadas."""
        ...


def _apply_filters(query, filters: Filters):
    for column, value in filters.items():
        if value is None:
            query = query.is_(column, "null")
        else:
            query = query.eq(column, value)
    return query


class SupabaseRowStore:
    """RowStore sobre el cliente síncrono de supabase-py."""

    def __init__(self, client: Client):
        self._client = client

    async def _execute(self, table: str, operation: str, query) -> List[Row]:
        try:
            response = await asyncio.to_thread(query.execute)
        except Exception as e:
            logger.error("Supabase %s sobre %s falló: %s", operation, table, e)
            raise PersistenceError(f"Error de base de datos en {table} ({operation})") from e
        return list(response.data or [])

    async def fetch_one(self, table: str, filters: Filters, columns: str = "*") -> Optional[Row]:
        query = _apply_filters(self._client.table(table).select(columns), filters).limit(1)
        rows = await self._execute(table, "select", query)
        return rows[0] if rows else None

    async def fetch_many(
        self,
        table: str,
        filters: Filters,
        columns: str = "*",
        order_by: Optional[Tuple[str, bool]] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        query = _apply_filters(self._client.table(table).select(columns), filters)
        if order_by:
            column, desc = order_by
            query = query.order(column, desc=desc)
        if limit:
            query = query.limit(limit)
        return await self._execute(table, "select", query)

    async def insert(self, table: str, row: Row) -> Row:
        rows = await self._execute(table, "insert", self._client.table(table).insert(row))
        if not rows:
            raise PersistenceError(f"La inserción en {table} no devolvió filas")
        return rows[0]

    async def update(self, table: str, filters: Filters, values: Row) -> List[Row]:
        query = _apply_filters(self._client.table(table).update(values), filters)
        return await self._execute(table, "update", query)
