"""Aplicación FastAPI de Lexia."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lexia.api.v1 import chat as chat_router
from lexia.api.v1 import contestacion as contestacion_router
from lexia.api.v1 import draft as draft_router
from lexia.api.v1 import estratega as estratega_router
from lexia.api.v1 import usage as usage_router
from lexia.core.config import settings
from lexia.core.counters import PostgresCounterStore, build_counter_store
from lexia.core.errors import LexiaError, RateLimited, ValidationFailed


logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Gestión del ciclo de vida de la aplicación.

    Configura el logging y crea el store de contadores compartido (créditos y
    límite de requests) al iniciar.
    """
    configure_logging()

    counters = build_counter_store()
    if isinstance(counters, PostgresCounterStore):
        await counters.setup()
    app.state.counters = counters
    logger.info("Lexia iniciada (entorno=%s, contadores=%s)", settings.environment, settings.counter_backend)

    yield

    app.state.counters = None


# Crear la aplicación FastAPI
app = FastAPI(
    title="Lexia AI",
    description="Asistente legal: chat, redacción de borradores, contestación guiada y análisis estratégico",
    version="0.1.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# Configurar CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Lexia-Trace-Id", "X-Lexia-Intent", "X-Lexia-Provider", "X-Lexia-Model", "Retry-After"],
)


@app.exception_handler(LexiaError)
async def lexia_error_handler(request: Request, exc: LexiaError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.kind, exc.message)
    else:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.kind, exc.message)
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimited) else None
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()}, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = ValidationFailed("Request inválido", errors=[
        {"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()
    ])
    return JSONResponse(status_code=error.status_code, content={"error": error.to_dict()})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Nunca se devuelve un traceback: el detalle queda en el log."""
    logger.error("Error no manejado en %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": {"kind": "internal", "message": "Error interno procesando el request"}},
    )


# Incluir routers de v1
app.include_router(chat_router.router, prefix="/api/v1")
app.include_router(draft_router.router, prefix="/api/v1")
app.include_router(contestacion_router.router, prefix="/api/v1")
app.include_router(estratega_router.router, prefix="/api/v1")
app.include_router(usage_router.router, prefix="/api/v1")


@app.get("/")
async def root():
    """Endpoint de salud."""
    return {"message": "Lexia AI API", "status": "ok"}
