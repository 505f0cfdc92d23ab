import asyncio
import inspect
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

from src.hume_evi.models import VoiceChatResponse
from utils.ml_logging import get_logger

logger = get_logger(__name__)

MaybeAwaitable = Union[None, Awaitable[None]]


class VoiceChatHandler:
    """
    Callbacks for one voice chat session.

    Every method is a no-op; override the ones you need. Overrides may be
    plain methods or coroutines, the session awaits coroutines before reading
    the next frame.

    Example:
        class Printer(VoiceChatHandler):
            async def on_response(self, response):
                print(response.type)
    """

    def on_connect(self) -> MaybeAwaitable:
        """Called once the socket is open, before any frame is read."""

    def on_disconnect(self, error: Optional[BaseException]) -> MaybeAwaitable:
        """
        Called exactly once when the session ends.

        Args:
            error: ``None`` after a clean close, the failure otherwise.
        """

    def on_response(self, response: VoiceChatResponse) -> MaybeAwaitable:
        """Called once per decoded inbound frame."""


class CallbackHandler(VoiceChatHandler):
    """
    Handler built from plain callables (functions or coroutine functions).

    Any callback left as ``None`` is a no-op.
    """

    def __init__(
        self,
        on_connect: Optional[Callable[[], Any]] = None,
        on_disconnect: Optional[Callable[[Optional[BaseException]], Any]] = None,
        on_response: Optional[Callable[[VoiceChatResponse], Any]] = None,
    ) -> None:
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._on_response = on_response

    def on_connect(self) -> MaybeAwaitable:
        if self._on_connect:
            return self._on_connect()

    def on_disconnect(self, error: Optional[BaseException]) -> MaybeAwaitable:
        if self._on_disconnect:
            return self._on_disconnect(error)

    def on_response(self, response: VoiceChatResponse) -> MaybeAwaitable:
        if self._on_response:
            return self._on_response(response)


class QueueHandler(VoiceChatHandler):
    """
    Handler that turns the session into an async stream of responses.

    Example:
        handler = QueueHandler()
        await client.start_voice_chat("cfg-123", handler)
        async for response in handler.responses():
            ...
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 0) -> None:
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.connected = asyncio.Event()
        self.disconnect_error: Optional[BaseException] = None

    def on_connect(self) -> None:
        self.connected.set()

    async def on_disconnect(self, error: Optional[BaseException]) -> None:
        self.disconnect_error = error
        await self.queue.put(self._CLOSED)

    async def on_response(self, response: VoiceChatResponse) -> None:
        await self.queue.put(response)

    async def responses(self) -> AsyncIterator[VoiceChatResponse]:
        """Yield responses until the session disconnects."""
        while True:
            item = await self.queue.get()
            if item is self._CLOSED:
                return
            yield item


async def invoke_callback(name: str, callback: Callable[..., Any], *args: Any) -> None:
    """
    Call a handler method and await it if it returned an awaitable.

    Exceptions raised by the callback are logged and swallowed; a faulty
    handler must not take the session down. Cancellation propagates.
    """
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Error in handler callback {name}: {e}", exc_info=True)
