"""
Tests for the VoiceChatAPI session lifecycle and receive loop.

Runs against an in-process websockets server standing in for the EVI chat
endpoint (see conftest.FakeEVIServer).
"""

import asyncio
import json
from urllib.parse import parse_qs, urlsplit

import pytest

from src.hume_evi.api import VoiceChatAPI
from src.hume_evi.endpoint import ChatEndpoint, StreamParameters
from src.hume_evi.enums import ReceiveState, UnknownMessagePolicy
from src.hume_evi.event_handler import CallbackHandler
from src.hume_evi.exceptions import (
    AlreadyActiveError,
    EVIConnectionError,
    NotConnectedError,
    TransportError,
)
from src.hume_evi.models import (
    AssistantEnd,
    AssistantMessage,
    AudioOutput,
    ChatMetadata,
    UnknownResponse,
)
from src.hume_evi.utils import create_message

from conftest import (
    ASSISTANT_END,
    ASSISTANT_MESSAGE,
    AUDIO_OUTPUT,
    CHAT_METADATA,
    TEST_API_KEY,
    RecordingHandler,
    wait_until,
)

ENDPOINT = ChatEndpoint(config_id="test-config")


@pytest.fixture
def api(evi_server):
    return VoiceChatAPI(TEST_API_KEY, evi_server.base_url, handshake_timeout=2.0, close_timeout=1.0)


class TestStart:
    """Opening a session and receiving typed responses."""

    @pytest.mark.asyncio
    async def test_responses_delivered_in_order(self, api, evi_server, recording_handler):
        evi_server.script = [CHAT_METADATA, ASSISTANT_MESSAGE, AUDIO_OUTPUT]

        await api.start(ENDPOINT, recording_handler)
        await wait_until(lambda: len(recording_handler.responses) == 3)

        assert recording_handler.connects == 1
        metadata, message, audio = recording_handler.responses
        assert isinstance(metadata, ChatMetadata)
        assert metadata.chat_group_id == "test-group-123"
        assert metadata.chat_id == "test-chat-456"
        assert isinstance(message, AssistantMessage)
        assert message.message.role == "assistant"
        assert message.text == "Hello!"
        assert message.from_text is False
        assert isinstance(audio, AudioOutput)
        assert audio.id == "audio-789"
        assert audio.index == 0
        assert audio.data == "QUJD"
        assert audio.custom_session_id == "test-session"
        assert api.chat_id == "test-chat-456"

        await api.stop()

    @pytest.mark.asyncio
    async def test_request_carries_api_key_and_config_id(self, api, evi_server):
        await api.start(ENDPOINT)
        await wait_until(lambda: evi_server.request_path is not None)

        parts = urlsplit(evi_server.request_path)
        assert parts.path == "/v0/evi/chat"
        assert parse_qs(parts.query) == {"config_id": ["test-config"]}
        assert evi_server.request_headers["X-Hume-Api-Key"] == TEST_API_KEY
        assert "Authorization" not in evi_server.request_headers

        await api.stop()

    @pytest.mark.asyncio
    async def test_bearer_scheme_adds_authorization_header(self, evi_server):
        api = VoiceChatAPI(TEST_API_KEY, evi_server.base_url, auth_scheme="bearer")
        await api.start(ENDPOINT)
        await wait_until(lambda: evi_server.request_headers is not None)

        assert evi_server.request_headers["Authorization"] == f"Bearer {TEST_API_KEY}"
        assert evi_server.request_headers["X-Hume-Api-Key"] == TEST_API_KEY

        await api.stop()

    @pytest.mark.asyncio
    async def test_stream_parameters_endpoint(self, api, evi_server):
        endpoint = ChatEndpoint(stream=StreamParameters(model="evi-2", language="en"))
        await api.start(endpoint)
        await wait_until(lambda: evi_server.request_path is not None)

        query = parse_qs(urlsplit(evi_server.request_path).query)
        assert query == {
            "sample_rate": ["16000"],
            "channels": ["1"],
            "bits_per_sample": ["16"],
            "model": ["evi-2"],
            "language": ["en"],
        }

        await api.stop()

    @pytest.mark.asyncio
    async def test_second_start_fails_and_keeps_first_connection(self, api, evi_server, recording_handler):
        await api.start(ENDPOINT, recording_handler)

        with pytest.raises(AlreadyActiveError):
            await api.start(ENDPOINT, RecordingHandler())

        assert api.is_connected()
        assert evi_server.connections == 1

        # The original connection still works
        await api.send({"type": "user_input", "text": "still here"})
        await wait_until(lambda: len(evi_server.received) == 1)
        assert recording_handler.disconnects == []

        await api.stop()

    @pytest.mark.asyncio
    async def test_rejected_handshake_reports_status_and_body(self, evi_server):
        api = VoiceChatAPI("wrong-key", evi_server.base_url)

        with pytest.raises(EVIConnectionError) as exc_info:
            await api.start(ENDPOINT)

        assert exc_info.value.status == 401
        assert "Unauthorized" in exc_info.value.body
        assert not api.is_connected()
        assert evi_server.connections == 0

    @pytest.mark.asyncio
    async def test_unreachable_host_raises_connection_error(self):
        api = VoiceChatAPI(TEST_API_KEY, "http://127.0.0.1:1/v0", handshake_timeout=1.0)

        with pytest.raises(EVIConnectionError):
            await api.start(ENDPOINT)

        assert not api.is_connected()

    @pytest.mark.asyncio
    async def test_invalid_base_url_raises_connection_error(self):
        api = VoiceChatAPI(TEST_API_KEY, "ftp://example.com")

        with pytest.raises(EVIConnectionError):
            await api.start(ENDPOINT)

        assert api.state is ReceiveState.IDLE

    @pytest.mark.asyncio
    async def test_handshake_timeout_is_bounded(self):
        writers = []

        async def silent(reader, writer):
            # Accept the TCP connection, never answer the upgrade
            writers.append(writer)
            await reader.read()

        server = await asyncio.start_server(silent, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        api = VoiceChatAPI(TEST_API_KEY, f"http://127.0.0.1:{port}/v0", handshake_timeout=0.5)
        loop = asyncio.get_running_loop()

        started = loop.time()
        try:
            with pytest.raises(EVIConnectionError):
                await api.start(ENDPOINT)
            elapsed = loop.time() - started
        finally:
            for writer in writers:
                writer.close()
            server.close()
            await server.wait_closed()

        assert 0.4 <= elapsed < 2.0
        assert not api.is_connected()
        assert api.state is ReceiveState.IDLE

    @pytest.mark.asyncio
    async def test_cancelled_start_closes_session_and_reports_disconnect(self, api, evi_server):
        disconnects = []

        async def slow_on_connect():
            await asyncio.sleep(5)

        handler = CallbackHandler(on_connect=slow_on_connect, on_disconnect=disconnects.append)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(api.start(ENDPOINT, handler), 0.2)

        assert not api.is_connected()
        assert len(disconnects) == 1
        assert isinstance(disconnects[0], asyncio.CancelledError)
        await wait_until(lambda: evi_server.close_codes == [1000])

        # Nothing left behind that would block a new session
        await api.start(ENDPOINT, RecordingHandler())
        assert api.is_connected()
        await api.stop()

    @pytest.mark.asyncio
    async def test_calls_during_handshake_fail_fast(self, api, evi_server, recording_handler):
        evi_server.handshake_delay = 0.5
        start_task = asyncio.create_task(api.start(ENDPOINT, recording_handler))
        await wait_until(lambda: api.state is ReceiveState.CONNECTING)
        loop = asyncio.get_running_loop()

        started = loop.time()
        with pytest.raises(NotConnectedError):
            await api.send({"type": "user_input", "text": "too early"})
        with pytest.raises(AlreadyActiveError):
            await api.start(ENDPOINT)
        assert loop.time() - started < 0.25

        await start_task
        assert api.is_connected()
        assert recording_handler.connects == 1
        await api.stop()

    @pytest.mark.asyncio
    async def test_stop_during_handshake_fails_start(self, api, evi_server, recording_handler):
        evi_server.handshake_delay = 0.3
        start_task = asyncio.create_task(api.start(ENDPOINT, recording_handler))
        await wait_until(lambda: api.state is ReceiveState.CONNECTING)

        await api.stop()

        with pytest.raises(EVIConnectionError):
            await start_task
        assert not api.is_connected()
        assert recording_handler.connects == 0
        assert recording_handler.disconnects == []
        await wait_until(lambda: evi_server.close_codes == [1000])


class TestSend:
    """Outbound frames."""

    @pytest.mark.asyncio
    async def test_json_message_sent_as_text(self, api, evi_server):
        await api.start(ENDPOINT)
        message = {"type": "audio_input", "data": "test-input-data"}

        await api.send(message)
        await wait_until(lambda: len(evi_server.received) == 1)

        assert isinstance(evi_server.received[0], str)
        assert json.loads(evi_server.received[0]) == message

        await api.stop()

    @pytest.mark.asyncio
    async def test_raw_audio_sent_as_binary(self, api, evi_server):
        await api.start(ENDPOINT)

        await api.send(b"\x01\x02\x03\x04")
        await api.send(bytearray(b"\x05\x06"))
        await wait_until(lambda: len(evi_server.received) == 2)

        assert evi_server.received == [b"\x01\x02\x03\x04", b"\x05\x06"]

        await api.stop()

    @pytest.mark.asyncio
    async def test_websocket_message_sent_with_raw_payload(self, api, evi_server):
        await api.start(ENDPOINT)

        await api.send(create_message("session_settings", b'{"system_prompt": "hi"}'))
        await wait_until(lambda: len(evi_server.received) == 1)

        assert json.loads(evi_server.received[0]) == {
            "type": "session_settings",
            "payload": {"system_prompt": "hi"},
        }

        await api.stop()

    @pytest.mark.asyncio
    async def test_concurrent_sends_are_not_interleaved(self, api, evi_server):
        await api.start(ENDPOINT)

        await asyncio.gather(*(api.send({"type": "n", "i": i}) for i in range(50)))
        await wait_until(lambda: len(evi_server.received) == 50)

        indices = sorted(json.loads(m)["i"] for m in evi_server.received)
        assert indices == list(range(50))

        await api.stop()

    @pytest.mark.asyncio
    async def test_send_without_session_raises(self, api):
        with pytest.raises(NotConnectedError):
            await api.send({"type": "audio_input", "data": ""})

    @pytest.mark.asyncio
    async def test_unserializable_message_raises_type_error(self, api, evi_server):
        await api.start(ENDPOINT)

        with pytest.raises(TypeError):
            await api.send({"type": "bad", "value": object()})

        assert api.is_connected()
        await api.stop()


class TestStop:
    """Local teardown."""

    @pytest.mark.asyncio
    async def test_stop_without_session_is_noop(self, api):
        await api.stop()
        await api.stop()
        assert not api.is_connected()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent_and_disconnects_once(self, api, evi_server, recording_handler):
        await api.start(ENDPOINT, recording_handler)

        await api.stop()
        await api.stop()

        assert recording_handler.disconnects == [None]
        assert not api.is_connected()
        assert api.state is ReceiveState.CLOSED
        await wait_until(lambda: evi_server.close_codes == [1000])

    @pytest.mark.asyncio
    async def test_start_stop_start_opens_fresh_connection(self, api, evi_server):
        first, second = RecordingHandler(), RecordingHandler()

        await api.start(ENDPOINT, first)
        await api.stop()
        await api.start(ENDPOINT, second)

        assert api.is_connected()
        assert evi_server.connections == 2
        assert first.disconnects == [None]
        assert second.disconnects == []

        await api.stop()
        assert second.disconnects == [None]

    @pytest.mark.asyncio
    async def test_stop_from_inside_response_callback(self, api, evi_server):
        evi_server.script = [CHAT_METADATA, ASSISTANT_END]
        disconnects = []

        async def on_response(response):
            if isinstance(response, ChatMetadata):
                await api.stop()

        handler = CallbackHandler(on_response=on_response, on_disconnect=disconnects.append)
        await api.start(ENDPOINT, handler)

        await wait_until(lambda: len(disconnects) == 1)
        await api.wait_closed()

        assert disconnects == [None]
        assert not api.is_connected()


class TestReceiveLoop:
    """Decoding policy and terminal conditions of the receive loop."""

    @pytest.mark.asyncio
    async def test_malformed_frames_do_not_end_session(self, api, evi_server, recording_handler):
        evi_server.script = [
            "not json at all",
            b"\xff\xfe\x00",
            "[1, 2, 3]",
            json.dumps({"no_type": True}),
            json.dumps({"type": "audio_output", "id": "a1"}),
            json.dumps({"type": "chat_metadata", "chat_id": "only-one-id"}),
            ASSISTANT_END,
        ]

        await api.start(ENDPOINT, recording_handler)
        await wait_until(lambda: len(recording_handler.responses) == 1)

        assert isinstance(recording_handler.responses[0], AssistantEnd)
        assert api.is_connected()
        assert recording_handler.disconnects == []

        await api.stop()

    @pytest.mark.asyncio
    async def test_unknown_type_dropped_by_default(self, api, evi_server, recording_handler):
        evi_server.script = [json.dumps({"type": "something_new"}), ASSISTANT_END]

        await api.start(ENDPOINT, recording_handler)
        await wait_until(lambda: len(recording_handler.responses) == 1)
        await asyncio.sleep(0.05)

        assert [r.type for r in recording_handler.responses] == ["assistant_end"]

        await api.stop()

    @pytest.mark.asyncio
    async def test_unknown_type_forwarded_under_forward_policy(self, evi_server, recording_handler):
        api = VoiceChatAPI(
            TEST_API_KEY, evi_server.base_url, unknown_policy=UnknownMessagePolicy.FORWARD
        )
        evi_server.script = [json.dumps({"type": "something_new", "x": 1}), ASSISTANT_END]

        await api.start(ENDPOINT, recording_handler)
        await wait_until(lambda: len(recording_handler.responses) == 2)

        unknown = recording_handler.responses[0]
        assert isinstance(unknown, UnknownResponse)
        assert unknown.type == "unknown"
        assert unknown.original_type == "something_new"
        assert unknown.raw == {"type": "something_new", "x": 1}

        await api.stop()

    @pytest.mark.asyncio
    async def test_handler_exception_does_not_end_session(self, api, evi_server):
        evi_server.script = [CHAT_METADATA, ASSISTANT_END]
        seen = []

        def on_response(response):
            seen.append(response.type)
            if response.type == "chat_metadata":
                raise RuntimeError("handler bug")

        await api.start(ENDPOINT, CallbackHandler(on_response=on_response))
        await wait_until(lambda: len(seen) == 2)

        assert seen == ["chat_metadata", "assistant_end"]
        assert api.is_connected()

        await api.stop()

    @pytest.mark.asyncio
    async def test_peer_normal_close_disconnects_once_without_error(self, api, evi_server, recording_handler):
        evi_server.script = [CHAT_METADATA]
        evi_server.close_with = (1000, "bye")

        await api.start(ENDPOINT, recording_handler)
        await wait_until(lambda: len(recording_handler.disconnects) == 1)

        assert recording_handler.disconnects == [None]
        assert len(recording_handler.responses) == 1
        assert not api.is_connected()
        assert api.state is ReceiveState.CLOSED

        await api.stop()
        assert recording_handler.disconnects == [None]

    @pytest.mark.asyncio
    async def test_peer_abnormal_close_reports_transport_error(self, api, evi_server, recording_handler):
        evi_server.close_with = (1011, "internal error")

        await api.start(ENDPOINT, recording_handler)
        await wait_until(lambda: len(recording_handler.disconnects) == 1)

        error = recording_handler.disconnects[0]
        assert isinstance(error, TransportError)
        assert error.code == 1011
        assert error.reason == "internal error"
        assert not api.is_connected()

    @pytest.mark.asyncio
    async def test_session_can_restart_after_peer_close(self, api, evi_server, recording_handler):
        evi_server.close_with = (1000, "")

        await api.start(ENDPOINT, recording_handler)
        await wait_until(lambda: len(recording_handler.disconnects) == 1)

        evi_server.close_with = None
        await api.start(ENDPOINT, RecordingHandler())
        assert api.is_connected()
        assert evi_server.connections == 2

        await api.stop()

    @pytest.mark.asyncio
    async def test_cancel_event_aborts_pending_read(self, api, evi_server, recording_handler):
        cancel = asyncio.Event()
        await api.start(ENDPOINT, recording_handler, cancel_event=cancel)
        await wait_until(lambda: api.state is ReceiveState.WAITING_FRAME)

        cancel.set()
        await wait_until(lambda: len(recording_handler.disconnects) == 1)

        assert isinstance(recording_handler.disconnects[0], asyncio.CancelledError)
        assert not api.is_connected()
        await wait_until(lambda: evi_server.close_codes == [1000])

        await api.stop()
        assert len(recording_handler.disconnects) == 1

    @pytest.mark.asyncio
    async def test_task_cancellation_reports_disconnect(self, api, evi_server, recording_handler):
        await api.start(ENDPOINT, recording_handler)
        # start() returns only after the loop is parked on its first read
        assert api.state is ReceiveState.WAITING_FRAME

        api._receive_task.cancel()
        await api.wait_closed()

        assert len(recording_handler.disconnects) == 1
        assert isinstance(recording_handler.disconnects[0], asyncio.CancelledError)
        assert not api.is_connected()
        assert api.state is ReceiveState.CLOSED
        await wait_until(lambda: evi_server.close_codes == [1000])

    @pytest.mark.asyncio
    async def test_unexpected_loop_failure_still_disconnects(
        self, api, evi_server, recording_handler, monkeypatch
    ):
        async def broken_read(ws, cancel_event):
            raise RuntimeError("reader bug")

        monkeypatch.setattr(api, "_next_frame", broken_read)

        await api.start(ENDPOINT, recording_handler)
        await api.wait_closed()

        assert len(recording_handler.disconnects) == 1
        assert isinstance(recording_handler.disconnects[0], RuntimeError)
        assert not api.is_connected()
        await wait_until(lambda: evi_server.close_codes == [1000])

        monkeypatch.undo()
        await api.start(ENDPOINT, RecordingHandler())
        assert api.is_connected()
        await api.stop()
