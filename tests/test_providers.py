"""
Tests del proveedor sobre chat models de LangChain: streaming, bucle de
herramientas, tokens y errores de salida estructurada.
"""

import pytest
from langchain_core.exceptions import OutputParserException
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, ToolMessage
from langchain_core.runnables import RunnableLambda
from pydantic import BaseModel

from lexia.ai.models import ChatMessage
from lexia.ai.providers import MAX_TOOL_STEPS, LangChainChatProvider
from lexia.ai.routing import MODEL_REGISTRY
from lexia.ai.tools import calculate_deadline
from lexia.core.errors import ProviderFatal, ProviderTransient


CONFIG = MODEL_REGISTRY["llama-70b"]
MESSAGES = [ChatMessage(role="user", content="Cuándo vence?")]


class Answer(BaseModel):
    value: str


def tool_call(name: str, args: str, call_id: str = "call-1") -> AIMessageChunk:
    return AIMessageChunk(content="", tool_call_chunks=[{"name": name, "args": args, "id": call_id, "index": 0}])


def usage(total: int) -> AIMessageChunk:
    return AIMessageChunk(content="", usage_metadata={"input_tokens": total - 1, "output_tokens": 1, "total_tokens": total})


class ScriptedChatModel:
    """Chat model guionado: cada llamada a astream reproduce el próximo turno."""

    def __init__(self, turns=(), repeat_last=False, error=None, structured=None):
        self.turns = list(turns)
        self.repeat_last = repeat_last
        self.error = error
        self.structured = structured
        self.bound_tools = None
        self.histories = []

    def bind_tools(self, tools):
        self.bound_tools = [t.name for t in tools]
        return self

    async def astream(self, history):
        self.histories.append(list(history))
        if self.error is not None:
            raise self.error
        if not self.turns:
            return
        turn = self.turns[0] if self.repeat_last and len(self.turns) == 1 else self.turns.pop(0)
        for chunk in turn:
            yield chunk

    def with_structured_output(self, schema):
        return RunnableLambda(self.structured)


def make_provider(model) -> LangChainChatProvider:
    return LangChainChatProvider(CONFIG, model_factory=lambda config, temperature, max_tokens: model)


async def collect(provider, tools=()):
    return [chunk async for chunk in provider.stream("Sistema", MESSAGES, list(tools), 0.3, 1024)]


async def test_streams_text_from_langchain_model():
    model = GenericFakeChatModel(messages=iter([AIMessage(content="Vence el lunes")]))

    chunks = await collect(make_provider(model))

    assert "".join(c.text for c in chunks) == "Vence el lunes"
    assert chunks[-1].total_tokens == 0


async def test_tool_call_runs_and_continues():
    """Test: la herramienta se ejecuta y su resultado vuelve al modelo en el siguiente turno."""
    model = ScriptedChatModel([
        [tool_call("calculate_deadline", '{"start_date": "2026-03-02", "deadline_type": "contestacion_15dias"}'), usage(10)],
        [AIMessageChunk(content="Vence el 23/03."), usage(5)],
    ])

    chunks = await collect(make_provider(model), [calculate_deadline])

    assert model.bound_tools == ["calculate_deadline"]
    assert "".join(c.text for c in chunks) == "Vence el 23/03."
    assert chunks[-1].total_tokens == 15
    tool_message = model.histories[1][-1]
    assert isinstance(tool_message, ToolMessage)
    assert tool_message.tool_call_id == "call-1"
    assert "2026-03-23" in tool_message.content


async def test_tool_outside_allowlist_is_not_executed():
    model = ScriptedChatModel([
        [tool_call("borrar_caso", '{"case_id": "case-1"}')],
        [AIMessageChunk(content="No puedo hacer eso.")],
    ])

    await collect(make_provider(model), [calculate_deadline])

    tool_message = model.histories[1][-1]
    assert "Herramienta no permitida: borrar_caso" in tool_message.content


async def test_tool_loop_is_bounded():
    model = ScriptedChatModel(
        [[tool_call("calculate_deadline", '{"start_date": "2026-03-02", "deadline_type": "alegatos"}')]],
        repeat_last=True,
    )

    chunks = await collect(make_provider(model), [calculate_deadline])

    assert len(model.histories) == MAX_TOOL_STEPS
    assert chunks[-1].text == ""


async def test_tools_are_not_bound_when_none_allowed():
    model = ScriptedChatModel([[AIMessageChunk(content="Hola")]])

    await collect(make_provider(model))

    assert model.bound_tools is None


@pytest.mark.parametrize("error, expected", [
    (ConnectionError("reset"), ProviderTransient),
    (ValueError("contenido rechazado"), ProviderFatal),
])
async def test_stream_errors_are_classified(error, expected):
    with pytest.raises(expected):
        await collect(make_provider(ScriptedChatModel(error=error)))


async def test_structured_output_is_returned():
    model = ScriptedChatModel(structured=lambda messages: Answer(value="42"))

    answer = await make_provider(model).invoke_structured("s", "u", Answer, 0.2, 512)

    assert answer == Answer(value="42")


def _unparseable(messages):
    raise OutputParserException("no es JSON")


def _invalid(messages):
    return Answer.model_validate({})


@pytest.mark.parametrize("structured", [_unparseable, _invalid])
async def test_invalid_structured_output_is_transient(structured):
    """Test: una salida estructurada inutilizable permite probar con otro modelo."""
    provider = make_provider(ScriptedChatModel(structured=structured))

    with pytest.raises(ProviderTransient) as excinfo:
        await provider.invoke_structured("s", "u", Answer, 0.2, 512)

    assert "Salida estructurada inválida" in excinfo.value.message
