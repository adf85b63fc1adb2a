"""Fan-out de un stream a varios consumidores independientes."""

import asyncio
import logging
from typing import AsyncIterator, Coroutine, Generic, List, Optional, Set, Tuple, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")

_ITEM = "item"
_END = "end"
_ERROR = "error"
_ABORTED = "aborted"


class StreamAborted(Exception):
    """El stream se cortó antes de terminar (por ejemplo, el cliente se desconectó)."""


class StreamTee(Generic[T]):
    """
    Un único lector del stream de origen alimenta una cola por consumidor.

    Las colas no tienen límite: un consumidor lento nunca frena al productor
    ni al otro consumidor, y todos ven los elementos en el mismo orden.

    El consumidor 0 es el cliente HTTP. Si lo cierran antes de terminar, el
    origen se cancela y el resto de los consumidores recibe ``StreamAborted``.
    Si el origen ya terminó, cerrar al cliente no afecta a nadie.
    """

    def __init__(self, source: AsyncIterator[T], consumers: int = 2):
        self._source = source
        self._queues: List[asyncio.Queue] = [asyncio.Queue() for _ in range(consumers)]
        self._task: Optional[asyncio.Task] = None

    def start(self) -> "StreamTee[T]":
        if self._task is None:
            self._task = asyncio.create_task(self._pump())
        return self

    @property
    def finished(self) -> bool:
        return self._task is not None and self._task.done()

    def _broadcast(self, marker: str, payload=None) -> None:
        for queue in self._queues:
            queue.put_nowait((marker, payload))

    async def _pump(self) -> None:
        try:
            async for item in self._source:
                self._broadcast(_ITEM, item)
        except asyncio.CancelledError:
            self._broadcast(_ABORTED)
            raise
        except Exception as e:
            self._broadcast(_ERROR, e)
        else:
            self._broadcast(_END)

    async def _consume(self, queue: asyncio.Queue) -> AsyncIterator[T]:
        while True:
            marker, payload = await queue.get()
            if marker == _ITEM:
                yield payload
            elif marker == _END:
                return
            elif marker == _ERROR:
                raise payload
            else:
                raise StreamAborted("El stream fue cancelado antes de completarse")

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def client(self) -> AsyncIterator[T]:
        self.start()
        completed = False
        try:
            async for item in self._consume(self._queues[0]):
                yield item
            completed = True
        finally:
            if not completed:
                self.cancel()

    def consumer(self, index: int) -> AsyncIterator[T]:
        """Consumidores secundarios (auditoría, persistencia)."""
        if index == 0:
            raise ValueError("El consumidor 0 es el cliente; usar client()")
        self.start()
        return self._consume(self._queues[index])


_background_tasks: Set[asyncio.Task] = set()


def spawn_background(coro: Coroutine, name: str = "") -> asyncio.Task:
    """Lanza una tarea que sobrevive a la respuesta HTTP y registra sus errores."""
    task = asyncio.create_task(coro, name=name or None)
    _background_tasks.add(task)

    def _done(finished: asyncio.Task) -> None:
        _background_tasks.discard(finished)
        if not finished.cancelled() and finished.exception() is not None:
            logger.error("Tarea en segundo plano %s falló: %s", name, finished.exception())

    task.add_done_callback(_done)
    return task


async def collect_text(stream: AsyncIterator) -> Tuple[str, int]:
    """Junta el texto completo y el total de tokens de un stream de ``StreamChunk``."""
    parts: List[str] = []
    tokens = 0
    async for chunk in stream:
        parts.append(chunk.text)
        if chunk.total_tokens:
            tokens = chunk.total_tokens
    return "".join(parts), tokens
