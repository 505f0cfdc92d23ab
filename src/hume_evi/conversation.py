# hume_evi/conversation.py

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from src.hume_evi.event_handler import VoiceChatHandler, invoke_callback
from src.hume_evi.models import (
    AssistantEnd,
    AssistantMessage,
    AudioOutput,
    ChatMetadata,
    ErrorResponse,
    VoiceChatResponse,
)
from src.hume_evi.utils import convert_pcm_to_wav
from utils.ml_logging import get_logger

logger = get_logger(__name__)


@dataclass
class AssistantTurn:
    """Everything the assistant produced between two ``assistant_end`` frames."""

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    messages: List[AssistantMessage] = field(default_factory=list)
    audio_chunks: Dict[str, Dict[int, bytes]] = field(default_factory=dict)
    completed: bool = False

    @property
    def text(self) -> str:
        return " ".join(m.text for m in self.messages)

    def audio(self) -> bytes:
        """Concatenate audio chunks, utterances in arrival order, chunks by index."""
        return b"".join(
            chunks[index]
            for chunks in self.audio_chunks.values()
            for index in sorted(chunks)
        )

    def to_wav(self) -> bytes:
        """Render the turn's audio as 16 kHz mono WAV, assuming raw PCM chunks."""
        return convert_pcm_to_wav(self.audio())


class VoiceChatConversation(VoiceChatHandler):
    """
    In-memory record of one voice chat.
    Groups assistant messages and audio into turns and optionally forwards
    every callback to a downstream handler.
    """

    def __init__(self, downstream: Optional[VoiceChatHandler] = None) -> None:
        self.downstream = downstream
        self.clear()

    def clear(self) -> None:
        """
        Reset all internal state for a new conversation.
        """
        self.chat_id: Optional[str] = None
        self.chat_group_id: Optional[str] = None
        self.turns: List[AssistantTurn] = []
        self.errors: List[ErrorResponse] = []
        self.connected = False
        self.disconnect_error: Optional[BaseException] = None

    @property
    def current_turn(self) -> Optional[AssistantTurn]:
        """The turn still collecting output, if any."""
        if self.turns and not self.turns[-1].completed:
            return self.turns[-1]
        return None

    def _open_turn(self) -> AssistantTurn:
        turn = self.current_turn
        if turn is None:
            turn = AssistantTurn()
            self.turns.append(turn)
        return turn

    def completed_turns(self) -> List[AssistantTurn]:
        return [t for t in self.turns if t.completed]

    async def on_connect(self) -> None:
        self.connected = True
        if self.downstream:
            await invoke_callback("on_connect", self.downstream.on_connect)

    async def on_disconnect(self, error: Optional[BaseException]) -> None:
        self.connected = False
        self.disconnect_error = error
        if self.downstream:
            await invoke_callback("on_disconnect", self.downstream.on_disconnect, error)

    async def on_response(self, response: VoiceChatResponse) -> None:
        self.process_response(response)
        if self.downstream:
            await invoke_callback("on_response", self.downstream.on_response, response)

    def process_response(self, response: VoiceChatResponse) -> None:
        if isinstance(response, ChatMetadata):
            self.chat_id = response.chat_id
            self.chat_group_id = response.chat_group_id
        elif isinstance(response, AssistantMessage):
            self._open_turn().messages.append(response)
        elif isinstance(response, AudioOutput):
            chunks = self._open_turn().audio_chunks.setdefault(response.id, {})
            if response.index in chunks:
                logger.warning(f"Duplicate audio chunk {response.id}#{response.index}, keeping latest")
            chunks[response.index] = response.audio_bytes()
        elif isinstance(response, AssistantEnd):
            turn = self.current_turn
            if turn is None:
                logger.debug("assistant_end without an open turn, ignoring")
                return
            turn.completed = True
            logger.debug(f"Assistant turn completed with {len(turn.messages)} message(s)")
        elif isinstance(response, ErrorResponse):
            self.errors.append(response)
