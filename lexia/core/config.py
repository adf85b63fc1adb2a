"""Configuración de entorno y variables de entorno."""

from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuración de la aplicación desde variables de entorno."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Model providers
    groq_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None

    # Supabase Configuration
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    supabase_db_url: Optional[str] = None
    """Cadena de conexión directa a PostgreSQL de Supabase (postgresql://...)"""

    # Créditos y límites
    credits_fail_open: bool = True
    """Si el almacenamiento de créditos no responde: True deja pasar, False rechaza."""
    rate_limit_window_seconds: int = 60
    rate_limit_max_requests: int = 60
    estratega_rate_limit_max_requests: int = 5
    """Análisis estratégicos por usuario y ventana."""
    counter_backend: str = "memory"
    """"memory" para un único proceso, "postgres" para varias réplicas."""

    # Proveedores
    provider_timeout_seconds: float = 45.0
    provider_max_attempts: int = 3

    # Application Configuration
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: str = "*"
    """Orígenes permitidos separados por coma."""

    @property
    def cors_origin_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


# Instancia global de configuración
settings = Settings()
