"""
Voice chat WebSocket session.
Owns the single streaming connection to the Hume EVI chat endpoint.
"""

import asyncio
import functools
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedOK,
    InvalidStatus,
    WebSocketException,
)

from src.hume_evi import settings
from src.hume_evi.endpoint import ChatEndpoint
from src.hume_evi.enums import AuthScheme, ReceiveState, UnknownMessagePolicy
from src.hume_evi.event_handler import VoiceChatHandler, invoke_callback
from src.hume_evi.exceptions import (
    AlreadyActiveError,
    DecodeError,
    EVIConnectionError,
    NotConnectedError,
    TransportError,
)
from src.hume_evi.models import ChatMetadata, ErrorResponse
from src.hume_evi.protocol import decode_response, encode_frame
from utils.ml_logging import get_logger
from utils.trace_context import TraceContext

logger = get_logger(__name__)

DEFAULT_MAX_FRAME_SIZE = 16 * 2**20


@dataclass(eq=False)
class _Session:
    """One opened connection and the tasks that serve it."""

    ws: ClientConnection
    handler: VoiceChatHandler
    task: Optional[asyncio.Task] = None
    cleanup: Optional[asyncio.Task] = None
    finished: bool = False
    closed: asyncio.Event = field(default_factory=asyncio.Event)

    async def wait_done(self) -> None:
        # From inside the session's own tasks there is nothing to wait for
        if asyncio.current_task() in (self.task, self.cleanup):
            return
        await self.closed.wait()


class VoiceChatAPI:
    """
    Handles the WebSocket connection to the Hume EVI chat endpoint.

    At most one connection is live per instance. The connection handle is only
    read or replaced under ``self._lock``, and the lock is never held across
    the handshake, a close or a read. The receive loop runs as its own task
    and owns delivery of ``on_connect`` and ``on_disconnect``.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = settings.HUME_BASE_URL,
        *,
        auth_scheme: Union[AuthScheme, str] = AuthScheme.API_KEY,
        handshake_timeout: float = settings.HUME_HANDSHAKE_TIMEOUT,
        close_timeout: float = settings.HUME_CLOSE_TIMEOUT,
        unknown_policy: Union[UnknownMessagePolicy, str] = UnknownMessagePolicy.DROP,
        max_frame_size: Optional[int] = DEFAULT_MAX_FRAME_SIZE,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.auth_scheme = AuthScheme.from_string(auth_scheme) if isinstance(auth_scheme, str) else auth_scheme
        self.handshake_timeout = handshake_timeout
        self.close_timeout = close_timeout
        self.unknown_policy = (
            UnknownMessagePolicy.from_string(unknown_policy)
            if isinstance(unknown_policy, str)
            else unknown_policy
        )
        self.max_frame_size = max_frame_size
        self.state = ReceiveState.IDLE
        self.chat_id: Optional[str] = None

        self._lock = asyncio.Lock()
        self._ws: Optional[ClientConnection] = None
        self._session: Optional[_Session] = None
        self._connecting = False
        self._abort_connect = False

    def is_connected(self) -> bool:
        """
        Check if a voice chat connection is live.

        Returns:
            bool: True if connected, False otherwise.
        """
        return self._ws is not None

    @property
    def _receive_task(self) -> Optional[asyncio.Task]:
        return self._session.task if self._session else None

    def _headers(self) -> dict:
        headers = {"X-Hume-Api-Key": self.api_key}
        if self.auth_scheme is AuthScheme.BEARER:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _connect(self, url: str, endpoint: ChatEndpoint) -> ClientConnection:
        try:
            async with TraceContext(
                "hume.voice_chat.connect", endpoint=url, config_id=endpoint.config_id
            ):
                return await connect(
                    url,
                    additional_headers=self._headers(),
                    open_timeout=self.handshake_timeout,
                    close_timeout=self.close_timeout,
                    max_size=self.max_frame_size,
                )
        except InvalidStatus as e:
            status = e.response.status_code
            body = (e.response.body or b"").decode("utf-8", errors="replace")
            logger.error(f"Voice chat handshake rejected: status={status} body={body!r}")
            raise EVIConnectionError("websocket connection failed", status=status, body=body) from e
        except (WebSocketException, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Voice chat connection failed: {e!r}")
            raise EVIConnectionError(f"websocket connection failed: {e}") from e

    async def start(
        self,
        endpoint: ChatEndpoint,
        handler: Optional[VoiceChatHandler] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        """
        Open the voice chat connection and start the receive loop.

        Returns once the connection is open and ``on_connect`` has run;
        responses are delivered to ``handler`` from a background task. If
        ``start`` is cancelled after the socket opened, the session is torn
        down and ``on_disconnect`` receives the cancellation.

        Args:
            endpoint: Configuration id or stream parameters to open the chat with.
            handler: Callbacks for this session; no-op callbacks when omitted.
            cancel_event: Setting this event ends the session, aborting a
                pending read.

        Raises:
            AlreadyActiveError: A session is live or being opened.
            EVIConnectionError: URL construction or the handshake failed, or
                ``stop()`` was called during the handshake.
        """
        handler = handler or VoiceChatHandler()

        async with self._lock:
            if self._ws is not None or self._connecting:
                raise AlreadyActiveError("voice chat session already active")
            url = endpoint.build_url(self.base_url)
            self._connecting = True
            self._abort_connect = False
            previous_state = self.state
            self.state = ReceiveState.CONNECTING

        logger.info(f"Starting voice chat at {url}")
        try:
            ws = await self._connect(url, endpoint)
        except BaseException:
            self._connecting = False
            self.state = previous_state
            raise

        try:
            async with self._lock:
                self._connecting = False
                aborted = self._abort_connect
                if not aborted:
                    session = _Session(ws=ws, handler=handler)
                    self._ws = ws
                    self._session = session
                    self.chat_id = None
        except BaseException:
            self._connecting = False
            self.state = previous_state
            await self._close_quietly(ws)
            raise

        if aborted:
            logger.info("Voice chat stopped during handshake")
            self.state = ReceiveState.CLOSED
            await self._close_quietly(ws)
            raise EVIConnectionError("voice chat stopped during handshake")

        logger.keyinfo("Voice chat connection established")
        ready = asyncio.get_running_loop().create_future()
        session.task = asyncio.create_task(
            self._receive_messages(session, cancel_event, ready),
            name="hume-evi-receive",
        )
        session.task.add_done_callback(functools.partial(self._on_receive_done, session))

        try:
            await asyncio.wait({ready, session.task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            logger.warning("Voice chat start cancelled, closing session")
            session.task.cancel()
            await session.wait_done()
            raise

    async def send(self, message: Any) -> None:
        """
        Send one frame over the voice chat connection.

        Args:
            message: Raw audio bytes (binary frame) or a JSON-serializable
                message (text frame).

        Raises:
            NotConnectedError: No session is live.
            TransportError: The write failed.
            TypeError: The message is not JSON serializable.
        """
        frame = encode_frame(message)
        if isinstance(message, dict) and isinstance(message.get("type"), str):
            logger.debug(f"Sending message type: {message['type']}")

        # Holding the lock serializes writes
        async with self._lock:
            ws = self._ws
            if ws is None:
                raise NotConnectedError("no active voice chat connection")
            try:
                await ws.send(frame)
            except ConnectionClosed as e:
                code = e.rcvd.code if e.rcvd else None
                raise TransportError(f"sending frame failed: {e}", code=code) from e

    async def stop(self) -> None:
        """
        Close the voice chat connection. A no-op when no session is live.

        The close frame is best effort: failing to send it is logged, not
        raised. Waits for the receive loop to deliver ``on_disconnect``
        unless called from inside a handler callback. During a handshake,
        makes the pending ``start()`` fail instead.
        """
        async with self._lock:
            if self._connecting:
                self._abort_connect = True
            ws, session = self._ws, self._session
            self._ws = None

        if ws is None:
            return
        await self._close_quietly(ws)
        await session.wait_done()

    async def wait_closed(self) -> None:
        """Wait until the current session has delivered ``on_disconnect`` (returns at once from inside it)."""
        session = self._session
        if session is not None:
            await session.wait_done()

    async def _close_quietly(self, ws: ClientConnection) -> None:
        try:
            await ws.close(code=1000)
        except Exception as e:
            logger.warning(f"Error sending close frame: {e}")

    async def _next_frame(
        self, ws: ClientConnection, cancel_event: Optional[asyncio.Event]
    ) -> Optional[Union[str, bytes]]:
        """Read one frame, or return None if ``cancel_event`` fires first."""
        if cancel_event is None:
            return await ws.recv()
        if cancel_event.is_set():
            return None

        recv_task = asyncio.ensure_future(ws.recv())
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({recv_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_task.cancel()
            if not recv_task.done():
                recv_task.cancel()

        if recv_task.done() and not recv_task.cancelled():
            return recv_task.result()
        return None

    async def _receive_messages(
        self,
        session: _Session,
        cancel_event: Optional[asyncio.Event],
        ready: asyncio.Future,
    ) -> None:
        """
        Announce the connection, then read, decode and dispatch frames until
        the session ends.

        Malformed frames are logged and skipped. The loop ends on the first
        read failure or on cancellation and reports it through
        ``on_disconnect`` exactly once.
        """
        ws, handler = session.ws, session.handler
        reason: Optional[BaseException] = None
        try:
            try:
                await invoke_callback("on_connect", handler.on_connect)
            finally:
                if not ready.done():
                    ready.set_result(None)

            while True:
                self.state = ReceiveState.WAITING_FRAME
                try:
                    frame = await self._next_frame(ws, cancel_event)
                except ConnectionClosedOK as e:
                    logger.info(f"Voice chat connection closed: {e}")
                    break
                except ConnectionClosed as e:
                    logger.warning(f"Unexpected voice chat close: {e}")
                    reason = TransportError(
                        f"connection closed: {e}",
                        code=e.rcvd.code if e.rcvd else None,
                        reason=e.rcvd.reason if e.rcvd else None,
                    )
                    reason.__cause__ = e
                    break
                except (WebSocketException, OSError) as e:
                    logger.error(f"Error reading voice chat frame: {e!r}")
                    reason = TransportError(f"read failed: {e}")
                    reason.__cause__ = e
                    break

                if frame is None:
                    logger.info("Voice chat cancelled by caller")
                    reason = asyncio.CancelledError("voice chat cancelled")
                    break

                self.state = ReceiveState.DECODING
                logger.debug(f"Received {type(frame).__name__} frame, {len(frame)} long")
                try:
                    response = decode_response(frame, self.unknown_policy)
                except DecodeError as e:
                    logger.warning(f"Discarding malformed frame: {e}")
                    continue

                if response is None:
                    logger.debug("Dropping frame with unknown type")
                    continue
                if isinstance(response, ChatMetadata):
                    self.chat_id = response.chat_id
                elif isinstance(response, ErrorResponse):
                    logger.error(f"Voice chat error event: code={response.code} slug={response.slug} message={response.message}")

                self.state = ReceiveState.DISPATCHING
                await invoke_callback("on_response", handler.on_response, response)
        except asyncio.CancelledError as e:
            await self._finish(session, e)
            raise

        await self._finish(session, reason)

    def _on_receive_done(self, session: _Session, task: asyncio.Task) -> None:
        # Covers a loop cancelled before its first step or killed by an unexpected error
        error = None if task.cancelled() else task.exception()
        if session.finished:
            return
        if error is None:
            reason: BaseException = asyncio.CancelledError("voice chat cancelled")
        else:
            reason = error
            logger.error(f"Voice chat receive loop failed: {reason!r}", exc_info=reason)
        session.cleanup = asyncio.get_running_loop().create_task(
            self._finish(session, reason), name="hume-evi-cleanup"
        )

    async def _finish(self, session: _Session, reason: Optional[BaseException]) -> None:
        if session.finished:
            return
        session.finished = True
        try:
            async with self._lock:
                owned = self._ws is session.ws
                if owned:
                    self._ws = None
            if owned:
                await self._close_quietly(session.ws)
            self.state = ReceiveState.CLOSED
            logger.keyinfo(f"Voice chat disconnected: {reason!r}" if reason else "Voice chat disconnected")
            await invoke_callback("on_disconnect", session.handler.on_disconnect, reason)
        finally:
            session.closed.set()
