"""Proveedores de modelos (Groq y OpenAI) detrás de una interfaz mínima."""

import asyncio
import logging
from typing import (
    AsyncIterator,
    Callable,
    Dict,
    List,
    NamedTuple,
    Optional,
    Protocol,
    Sequence,
    Type,
    TypeVar,
)

import groq
import httpx
import openai
from langchain_core.exceptions import OutputParserException
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_core.tools import BaseTool
from langchain_groq import ChatGroq
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from lexia.ai.models import ChatMessage
from lexia.ai.routing import MODEL_REGISTRY, ModelConfig
from lexia.core.config import settings
from lexia.core.errors import ProviderError, ProviderFatal, ProviderTransient


logger = logging.getLogger(__name__)

MAX_TOOL_STEPS = 5

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class StreamChunk(NamedTuple):
    text: str
    total_tokens: Optional[int] = None
    """Solo el último chunk de un stream trae el total de tokens."""


class ModelProvider(Protocol):
    name: str
    model: str

    def stream(
        self,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        tools: Sequence[BaseTool],
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[StreamChunk]:
        ...

    async def invoke_structured(
        self,
        system_prompt: str,
        user_content: str,
        schema: Type[SchemaT],
        temperature: float,
        max_tokens: int,
    ) -> SchemaT:
        ...


ProviderFactory = Callable[[str], ModelProvider]


_TRANSIENT_SDK_ERRORS = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.InternalServerError,
    openai.RateLimitError,
    groq.APITimeoutError,
    groq.APIConnectionError,
    groq.InternalServerError,
    groq.RateLimitError,
    httpx.TransportError,
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
)

_TRANSIENT_STATUS = {408, 429, 529}


def classify_provider_error(exc: BaseException, provider: str, model: str) -> ProviderError:
    """
    Traduce una excepción del SDK a ProviderTransient o ProviderFatal.

    Timeouts, errores de red, 5xx y falta de capacidad son transitorios; todo
    lo demás (validación, autenticación, política de contenido) es fatal.
    """
    if isinstance(exc, ProviderError):
        return exc
    message = str(exc) or exc.__class__.__name__
    if isinstance(exc, _TRANSIENT_SDK_ERRORS):
        return ProviderTransient(message, provider=provider, model=model)
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int) and (status_code >= 500 or status_code in _TRANSIENT_STATUS):
        return ProviderTransient(message, provider=provider, model=model)
    return ProviderFatal(message, provider=provider, model=model)


def to_langchain_messages(system_prompt: str, messages: Sequence[ChatMessage]) -> List[BaseMessage]:
    converted: List[BaseMessage] = [SystemMessage(content=system_prompt)] if system_prompt else []
    for message in messages:
        if message.role == "user":
            converted.append(HumanMessage(content=message.content))
        elif message.role == "assistant":
            converted.append(AIMessage(content=message.content))
        else:
            converted.append(SystemMessage(content=message.content))
    return converted


def build_chat_model(config: ModelConfig, temperature: float, max_tokens: int) -> BaseChatModel:
    """Instancia el modelo de chat de LangChain para el proveedor configurado."""
    if config.provider == "groq":
        return ChatGroq(
            model=config.model,
            groq_api_key=settings.groq_api_key,
            temperature=temperature,
            max_tokens=max_tokens,
            max_retries=0,
        )
    if config.provider == "openai":
        return ChatOpenAI(
            model=config.model,
            api_key=settings.openai_api_key,
            temperature=temperature,
            max_tokens=max_tokens,
            max_retries=0,
            stream_usage=True,
        )
    raise ProviderFatal(f"Proveedor desconocido: {config.provider}", provider=config.provider, model=config.model)


def _chunk_text(chunk: AIMessageChunk) -> str:
    content = chunk.content
    if isinstance(content, str):
        return content
    # Algunos proveedores devuelven bloques de contenido en lugar de texto plano.
    return "".join(part.get("text", "") for part in content if isinstance(part, dict))


class LangChainChatProvider:
    """
    Proveedor respaldado por un chat model de LangChain.

    Los reintentos del SDK están desactivados (``max_retries=0``): el
    fallback entre proveedores lo decide el orquestador.
    """

    def __init__(self, config: ModelConfig, model_factory=build_chat_model):
        self.config = config
        self.name = config.provider
        self.model = config.model
        self._model_factory = model_factory

    async def stream(
        self,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        tools: Sequence[BaseTool],
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[StreamChunk]:
        llm = self._model_factory(self.config, temperature, min(max_tokens, self.config.max_tokens))
        runnable = llm.bind_tools(list(tools)) if tools else llm
        tools_by_name: Dict[str, BaseTool] = {t.name: t for t in tools}
        history = to_langchain_messages(system_prompt, messages)
        total_tokens = 0

        try:
            for _ in range(MAX_TOOL_STEPS):
                gathered: Optional[AIMessageChunk] = None
                async for chunk in runnable.astream(history):
                    gathered = chunk if gathered is None else gathered + chunk
                    text = _chunk_text(chunk)
                    if text:
                        yield StreamChunk(text)
                if gathered is None:
                    break
                if gathered.usage_metadata:
                    total_tokens += gathered.usage_metadata.get("total_tokens", 0)
                if not gathered.tool_calls:
                    break

                history.append(gathered)
                for call in gathered.tool_calls:
                    selected = tools_by_name.get(call["name"])
                    if selected is None:
                        result = {"error": f"Herramienta no permitida: {call['name']}"}
                    else:
                        result = await selected.ainvoke(call["args"])
                    logger.debug("Herramienta %s ejecutada", call["name"])
                    history.append(ToolMessage(content=str(result), tool_call_id=call["id"]))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise classify_provider_error(e, self.name, self.model) from e

        yield StreamChunk("", total_tokens=total_tokens)

    async def invoke_structured(
        self,
        system_prompt: str,
        user_content: str,
        schema: Type[SchemaT],
        temperature: float,
        max_tokens: int,
    ) -> SchemaT:
        llm = self._model_factory(self.config, temperature, min(max_tokens, self.config.max_tokens))
        structured_llm = llm.with_structured_output(schema)
        try:
            return await structured_llm.ainvoke([
                SystemMessage(content=system_prompt),
                HumanMessage(content=user_content),
            ])
        except asyncio.CancelledError:
            raise
        except (OutputParserException, ValidationError) as e:
            # Salida inutilizable: otro modelo puede responder bien.
            raise ProviderTransient(f"Salida estructurada inválida: {e}", provider=self.name, model=self.model) from e
        except Exception as e:
            raise classify_provider_error(e, self.name, self.model) from e


def build_provider(model_key: str) -> ModelProvider:
    """Factory por defecto: clave de MODEL_REGISTRY -> proveedor."""
    config = MODEL_REGISTRY.get(model_key)
    if config is None:
        raise ProviderFatal(f"Modelo no registrado: {model_key}", model=model_key)
    return LangChainChatProvider(config)
