"""
Orquestador de streaming con fallback entre proveedores.

Recorre la cadena de modelos de la decisión en orden. Una falla transitoria
antes del primer token pasa al siguiente proveedor con el mismo prompt y las
mismas herramientas; una falla fatal se propaga de inmediato. Una vez que el
cliente recibió texto ya no hay fallback.
"""

import asyncio
import logging
from typing import AsyncIterator, List, NamedTuple, Optional, Sequence, Tuple, Type

from langchain_core.tools import BaseTool

from lexia.ai.models import ChatMessage, Decision
from lexia.ai.providers import (
    ModelProvider,
    ProviderFactory,
    SchemaT,
    StreamChunk,
    build_provider,
    classify_provider_error,
)
from lexia.core.config import settings
from lexia.core.errors import ProviderFatal, ProvidersExhausted, ProviderTransient


logger = logging.getLogger(__name__)


class StreamResult(NamedTuple):
    stream: AsyncIterator[StreamChunk]
    decision: Decision
    """La decisión con el proveedor y el modelo que efectivamente respondieron."""


async def _aclose(iterator) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        try:
            await aclose()
        except Exception as e:
            logger.debug("Error al cerrar el stream: %s", e)


class StreamOrchestrator:
    def __init__(
        self,
        provider_factory: ProviderFactory = build_provider,
        timeout_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        self._provider_factory = provider_factory
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.provider_timeout_seconds
        self._max_attempts = max_attempts if max_attempts is not None else settings.provider_max_attempts

    def _chain(self, chain: Sequence[str]) -> Tuple[str, ...]:
        return tuple(chain)[: max(self._max_attempts, 1)]

    async def run(
        self,
        messages: Sequence[ChatMessage],
        decision: Decision,
        tools: Sequence[BaseTool] = (),
    ) -> StreamResult:
        """
        Devuelve el stream del primer proveedor que entregó un chunk.

        Si todos fallan de forma transitoria se levanta un único
        ``ProvidersExhausted`` con todos los intentos.
        """
        attempts: List[ProviderTransient] = []
        chain = self._chain(decision.model_chain)

        for index, model_key in enumerate(chain):
            provider = self._provider_factory(model_key)
            iterator = provider.stream(
                decision.system_prompt, messages, tools, decision.temperature, decision.max_tokens
            ).__aiter__()
            try:
                first = await asyncio.wait_for(iterator.__anext__(), self._timeout)
            except StopAsyncIteration:
                first = None
            except asyncio.CancelledError:
                await _aclose(iterator)
                raise
            except Exception as e:
                await _aclose(iterator)
                error = classify_provider_error(e, provider.name, provider.model)
                if isinstance(error, ProviderFatal):
                    logger.error("[%s] %s/%s rechazó el request: %s", decision.trace_id, provider.name, provider.model, error)
                    raise error from e
                logger.warning(
                    "[%s] %s/%s falló (%s), intento %d de %d",
                    decision.trace_id, provider.name, provider.model, error.message, index + 1, len(chain),
                )
                attempts.append(error)
                continue

            served = decision.model_copy(update={
                "provider": provider.name,
                "model_chain": decision.model_chain[decision.model_chain.index(model_key):],
            })
            if attempts:
                logger.info("[%s] Respondió %s/%s tras %d fallas", decision.trace_id, provider.name, provider.model, len(attempts))
            return StreamResult(self._continue(provider, iterator, first), served)

        raise ProvidersExhausted(attempts)

    async def _continue(
        self, provider: ModelProvider, iterator: AsyncIterator[StreamChunk], first: Optional[StreamChunk]
    ) -> AsyncIterator[StreamChunk]:
        try:
            if first is None:
                return
            yield first
            while True:
                try:
                    chunk = await asyncio.wait_for(iterator.__anext__(), self._timeout)
                except StopAsyncIteration:
                    return
                except (asyncio.TimeoutError, TimeoutError) as e:
                    raise ProviderTransient(
                        "El proveedor dejó de responder a mitad del stream",
                        provider=provider.name, model=provider.model,
                    ) from e
                yield chunk
        finally:
            await _aclose(iterator)

    async def invoke_structured(
        self,
        chain: Sequence[str],
        system_prompt: str,
        user_content: str,
        schema: Type[SchemaT],
        temperature: float = 0.2,
        max_tokens: int = 4096,
        trace_id: str = "",
    ) -> SchemaT:
        """Salida estructurada (pasos del agente) con el mismo fallback que el streaming."""
        attempts: List[ProviderTransient] = []
        for model_key in self._chain(chain):
            provider = self._provider_factory(model_key)
            try:
                return await asyncio.wait_for(
                    provider.invoke_structured(system_prompt, user_content, schema, temperature, max_tokens),
                    self._timeout,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = classify_provider_error(e, provider.name, provider.model)
                if isinstance(error, ProviderFatal):
                    raise error from e
                logger.warning("[%s] %s/%s falló: %s", trace_id, provider.name, provider.model, error.message)
                attempts.append(error)
        raise ProvidersExhausted(attempts)
