"""
Shared fixtures: an in-process EVI socket server and a recording handler.
"""

import asyncio
import json
from http import HTTPStatus
from typing import List, Optional, Tuple, Union

import pytest
from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from src.hume_evi.event_handler import VoiceChatHandler

TEST_API_KEY = "test-api-key"

CHAT_METADATA = json.dumps(
    {"type": "chat_metadata", "chat_group_id": "test-group-123", "chat_id": "test-chat-456"}
)
ASSISTANT_MESSAGE = json.dumps(
    {
        "type": "assistant_message",
        "message": {"role": "assistant", "content": "Hello!"},
        "from_text": False,
    }
)
AUDIO_OUTPUT = json.dumps(
    {
        "type": "audio_output",
        "id": "audio-789",
        "index": 0,
        "data": "QUJD",
        "custom_session_id": "test-session",
    }
)
ASSISTANT_END = json.dumps({"type": "assistant_end"})


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it is true or fail after ``timeout`` seconds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


class FakeEVIServer:
    """
    Minimal stand-in for the EVI chat endpoint.

    Sends ``script`` on every new connection, then records whatever the
    client sends until the connection closes. With ``close_with`` set, the
    server closes right after the script instead. ``handshake_delay`` holds
    back the upgrade response.
    """

    def __init__(self) -> None:
        self.script: List[Union[str, bytes]] = []
        self.close_with: Optional[Tuple[int, str]] = None
        self.handshake_delay = 0.0
        self.received: List[Union[str, bytes]] = []
        self.request_headers = None
        self.request_path: Optional[str] = None
        self.connections = 0
        self.close_codes: List[Optional[int]] = []
        self.base_url = ""

    async def process_request(self, connection, request):
        if self.handshake_delay:
            await asyncio.sleep(self.handshake_delay)
        if request.headers.get("X-Hume-Api-Key") != TEST_API_KEY:
            return connection.respond(HTTPStatus.UNAUTHORIZED, "Unauthorized\n")
        return None

    async def handler(self, ws) -> None:
        self.connections += 1
        self.request_headers = ws.request.headers
        self.request_path = ws.request.path

        for frame in self.script:
            await ws.send(frame)

        if self.close_with is not None:
            code, reason = self.close_with
            await ws.close(code=code, reason=reason)
            return

        try:
            async for message in ws:
                self.received.append(message)
        except ConnectionClosed:
            pass
        finally:
            self.close_codes.append(ws.close_code)


@pytest.fixture
async def evi_server():
    fake = FakeEVIServer()
    async with serve(fake.handler, "127.0.0.1", 0, process_request=fake.process_request) as server:
        port = server.sockets[0].getsockname()[1]
        fake.base_url = f"http://127.0.0.1:{port}/v0"
        yield fake


class RecordingHandler(VoiceChatHandler):
    """Handler that records every callback."""

    def __init__(self) -> None:
        self.connects = 0
        self.responses = []
        self.disconnects: List[Optional[BaseException]] = []

    def on_connect(self) -> None:
        self.connects += 1

    def on_disconnect(self, error: Optional[BaseException]) -> None:
        self.disconnects.append(error)

    def on_response(self, response) -> None:
        self.responses.append(response)


@pytest.fixture
def recording_handler():
    return RecordingHandler()
