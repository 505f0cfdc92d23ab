# client.py wires the REST listings and the VoiceChatAPI session together
# behind one object bound to an API key.

import asyncio
from typing import Any, Dict, Optional, Type, TypeVar, Union

import aiohttp
import numpy as np
from pydantic import BaseModel, ValidationError

from src.hume_evi import settings
from src.hume_evi.api import VoiceChatAPI
from src.hume_evi.endpoint import ChatEndpoint
from src.hume_evi.enums import AuthScheme, UnknownMessagePolicy
from src.hume_evi.event_handler import VoiceChatHandler
from src.hume_evi.exceptions import DecodeError, HumeHTTPError, TransportError
from src.hume_evi.models import ChatsPage, ConfigsPage
from src.hume_evi.utils import audio_input_message
from utils.ml_logging import get_logger, log_function_call
from utils.trace_context import TraceContext

logger = get_logger(__name__)

PageT = TypeVar("PageT", bound=BaseModel)


class HumeClient:
    """
    Client for the Hume EVI API: configuration and chat listings over REST,
    plus one streaming voice chat session at a time.

    Example:
        async with HumeClient(api_key="...") as client:
            configs = await client.list_configs()
            await client.start_voice_chat(configs.configs_page[0].id, handler)
            await client.send_audio(pcm_chunk)
            await client.stop_voice_chat()
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        *,
        auth_scheme: Union[AuthScheme, str, None] = None,
        http_timeout: Optional[float] = None,
        handshake_timeout: Optional[float] = None,
        unknown_policy: Union[UnknownMessagePolicy, str, None] = None,
        http_session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.api_key = api_key or settings.HUME_API_KEY
        if not self.api_key:
            raise ValueError("Hume API key missing: pass api_key or set HUME_API_KEY")

        self.base_url = (base_url or settings.HUME_BASE_URL).rstrip("/")
        auth_scheme = auth_scheme or settings.HUME_AUTH_SCHEME
        self.auth_scheme = AuthScheme.from_string(auth_scheme) if isinstance(auth_scheme, str) else auth_scheme
        self.http_timeout = http_timeout if http_timeout is not None else settings.HUME_HTTP_TIMEOUT

        self.voice_chat = VoiceChatAPI(
            self.api_key,
            self.base_url,
            auth_scheme=self.auth_scheme,
            handshake_timeout=(
                handshake_timeout if handshake_timeout is not None else settings.HUME_HANDSHAKE_TIMEOUT
            ),
            unknown_policy=unknown_policy or settings.HUME_UNKNOWN_MESSAGE_POLICY,
        )

        self._http = http_session
        self._owns_http = http_session is None

    async def __aenter__(self) -> "HumeClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Stop any live voice chat and release the HTTP session if this client created it."""
        await self.voice_chat.stop()
        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()
        if self._owns_http:
            self._http = None

    # ------------------------------------------------------------------
    # REST
    # ------------------------------------------------------------------

    def _rest_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.auth_scheme is AuthScheme.BEARER:
            headers["Authorization"] = f"Bearer {self.api_key}"
        else:
            headers["X-Hume-Api-Key"] = self.api_key
        return headers

    def _http_session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.http_timeout)
            )
            self._owns_http = True
        return self._http

    async def _get_page(self, path: str, params: Dict[str, str], model: Type[PageT]) -> PageT:
        url = f"{self.base_url}{path}"
        async with TraceContext("hume.rest.get", endpoint=url) as span:
            try:
                async with self._http_session().get(
                    url, params=params, headers=self._rest_headers()
                ) as resp:
                    body = await resp.text()
                    span.set_attribute("custom.status_code", resp.status)
                    if resp.status != 200:
                        logger.error(f"GET {path} failed: status={resp.status} body={body!r}")
                        raise HumeHTTPError(resp.status, body, url=str(resp.url))
            except aiohttp.ClientError as e:
                raise TransportError(f"GET {url} failed: {e}") from e
            except asyncio.TimeoutError as e:
                raise TransportError(f"GET {url} timed out after {self.http_timeout}s") from e

        try:
            return model.model_validate_json(body)
        except ValidationError as e:
            raise DecodeError(f"Unexpected response body for GET {path}: {e.error_count()} field error(s)") from e

    @log_function_call("hume_evi.client")
    async def list_configs(
        self,
        page_number: int = 0,
        page_size: int = settings.DEFAULT_PAGE_SIZE,
    ) -> ConfigsPage:
        """
        List EVI configurations.

        Raises:
            HumeHTTPError: The API answered with a non-200 status.
            TransportError: The request could not be completed.
            DecodeError: The body was not a configs page.
        """
        params = {"page_number": str(page_number), "page_size": str(page_size)}
        return await self._get_page("/evi/configs", params, ConfigsPage)

    @log_function_call("hume_evi.client")
    async def list_chats(
        self,
        page_number: int = 0,
        page_size: int = settings.DEFAULT_PAGE_SIZE,
        ascending_order: bool = False,
    ) -> ChatsPage:
        """
        List past chats.

        Raises:
            HumeHTTPError: The API answered with a non-200 status.
            TransportError: The request could not be completed.
            DecodeError: The body was not a chats page.
        """
        params = {
            "page_number": str(page_number),
            "page_size": str(page_size),
            "ascending_order": "true" if ascending_order else "false",
        }
        return await self._get_page("/evi/chats", params, ChatsPage)

    # ------------------------------------------------------------------
    # Voice chat
    # ------------------------------------------------------------------

    def is_connected(self) -> bool:
        return self.voice_chat.is_connected()

    async def start_voice_chat(
        self,
        config: Union[str, ChatEndpoint, None] = None,
        handler: Optional[VoiceChatHandler] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        """
        Start a voice chat session; see :meth:`VoiceChatAPI.start`.

        Args:
            config: A configuration id, a full :class:`ChatEndpoint`, or None
                to use ``HUME_CONFIG_ID``.
        """
        if isinstance(config, ChatEndpoint):
            endpoint = config
        else:
            config_id = config or settings.HUME_CONFIG_ID
            if not config_id:
                raise ValueError("No config id given and HUME_CONFIG_ID is not set")
            endpoint = ChatEndpoint(config_id=config_id)
        logger.info(f"Starting voice chat with config: {endpoint.config_id or 'stream parameters'}")
        await self.voice_chat.start(endpoint, handler, cancel_event)

    async def send_audio_data(self, message: Any) -> None:
        """Send raw audio bytes (binary frame) or a JSON message (text frame)."""
        await self.voice_chat.send(message)

    async def send_audio(self, audio: Union[bytes, bytearray, np.ndarray]) -> None:
        """Send a chunk of PCM audio wrapped in an ``audio_input`` message."""
        if len(audio) > 0:
            await self.voice_chat.send(audio_input_message(audio))

    async def stop_voice_chat(self) -> None:
        await self.voice_chat.stop()
