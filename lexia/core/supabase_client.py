"""Cliente de Supabase para operaciones de base de datos."""

import logging
from typing import Optional

from supabase import create_client, Client

from lexia.core.config import settings


logger = logging.getLogger(__name__)

# Instancia global del cliente de Supabase
_supabase_client: Optional[Client] = None


def get_supabase_client() -> Optional[Client]:
    """
    Obtiene o crea una instancia del cliente de Supabase.

    Returns:
        Cliente de Supabase configurado o None si no hay configuración
    """
    global _supabase_client

    if not settings.supabase_url or not settings.supabase_key:
        return None

    if _supabase_client is None:
        _supabase_client = create_client(settings.supabase_url, settings.supabase_key)

    return _supabase_client


def get_authenticated_supabase_client(user_token: str) -> Optional[Client]:
    """
    Crea un cliente de Supabase autenticado con el token del usuario.

    Esto es necesario para que RLS (Row Level Security) funcione correctamente,
    ya que el cliente autenticado tiene el contexto del usuario.

    Args:
        user_token: Token JWT del usuario autenticado

    Returns:
        Cliente de Supabase autenticado o None si no hay configuración
    """
    if not settings.supabase_url or not settings.supabase_key:
        return None

    # Anon key (no service_role) para que RLS aplique con el token del usuario
    client = create_client(settings.supabase_url, settings.supabase_key)
    client.postgrest.auth(user_token)
    logger.debug("Token de usuario establecido en el cliente postgrest")

    return client
