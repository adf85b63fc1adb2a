"""Taxonomía de errores de Lexia.

Cada error terminal lleva un ``kind`` estable y un código HTTP; la capa HTTP
los serializa como ``{"error": {"kind": ..., "message": ...}}``.
"""

from typing import Any, Dict, List, Optional


class LexiaError(Exception):
    """Error base de Lexia."""

    kind = "internal"
    status_code = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class Unauthenticated(LexiaError):
    kind = "unauthenticated"
    status_code = 401


class Forbidden(LexiaError):
    kind = "forbidden"
    status_code = 403


class NotFound(LexiaError):
    kind = "not_found"
    status_code = 404


class ValidationFailed(LexiaError):
    kind = "validation_error"
    status_code = 400


class StateConflict(LexiaError):
    kind = "state_conflict"
    status_code = 409


class CreditsExhausted(LexiaError):
    kind = "credits_exhausted"
    status_code = 402


class RateLimited(LexiaError):
    kind = "rate_limited"
    status_code = 429

    def __init__(self, message: str, retry_after: int):
        super().__init__(message, retry_after=retry_after)
        self.retry_after = retry_after


class PersistenceError(LexiaError):
    """La escritura en el store falló después de un paso de modelo exitoso."""

    kind = "persistence_error"
    status_code = 500


class ServiceUnavailable(LexiaError):
    """Supabase (auth o base) no está configurado o no responde."""

    kind = "service_unavailable"
    status_code = 503


class CounterStoreUnavailable(LexiaError):
    kind = "counter_store_unavailable"
    status_code = 503


class ProviderError(LexiaError):
    """Falla de un proveedor de modelos."""

    kind = "provider_error"
    status_code = 502

    def __init__(self, message: str, provider: str = "", model: str = ""):
        super().__init__(message)
        self.provider = provider
        self.model = model


class ProviderTransient(ProviderError):
    """Timeout, 5xx o falta de capacidad: habilita el fallback."""

    kind = "provider_transient"
    status_code = 503


class ProviderFatal(ProviderError):
    """Rechazo de validación o de política: no se reintenta."""

    kind = "provider_fatal"
    status_code = 502


class ProvidersExhausted(ProviderTransient):
    """Todos los proveedores configurados fallaron de forma transitoria."""

    def __init__(self, attempts: List[ProviderTransient]):
        tried = ", ".join(f"{a.provider}/{a.model}" for a in attempts) or "ninguno"
        super().__init__(f"Ningún proveedor disponible (intentados: {tried})")
        self.attempts = attempts
        self.details = {"attempts": [
            {"provider": a.provider, "model": a.model, "error": a.message} for a in attempts
        ]}


class ModelStepFailed(LexiaError):
    """Un paso del agente respaldado por modelo devolvió una salida inutilizable."""

    kind = "model_step_failed"
    status_code = 503

    def __init__(self, step: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, step=step)
        self.step = step
        self.cause = cause
