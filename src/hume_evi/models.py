"""
EVI Message and Resource Schemas
================================

Pydantic models for everything the client decodes from the Hume API:

- Inbound voice chat frames, one model per ``type`` discriminant
- Paged REST resources returned by the configs and chats listings

Inbound models ignore fields they do not declare, so additions on the
server side never break decoding of the fields the client relies on.
"""

from __future__ import annotations

import base64
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _InboundModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class ChatMessage(_InboundModel):
    """Role and text of a single utterance."""

    role: str = Field(..., description="Speaker role", examples=["assistant"])
    content: str = Field(..., description="Utterance text", examples=["Hello!"])


class ChatMetadata(_InboundModel):
    """First frame of every chat; identifies the chat and its group."""

    type: Literal["chat_metadata"] = "chat_metadata"
    chat_group_id: str = Field(..., examples=["test-group-123"])
    chat_id: str = Field(..., examples=["test-chat-456"])


class AssistantMessage(_InboundModel):
    """Text of one assistant utterance."""

    type: Literal["assistant_message"] = "assistant_message"
    message: ChatMessage
    from_text: bool = Field(
        default=False,
        description="True when the utterance was triggered by a text input rather than speech",
    )

    @property
    def text(self) -> str:
        return self.message.content


class AssistantEnd(_InboundModel):
    """Marks the end of the assistant's turn."""

    type: Literal["assistant_end"] = "assistant_end"


class AudioOutput(_InboundModel):
    """One chunk of synthesized assistant audio."""

    type: Literal["audio_output"] = "audio_output"
    id: str = Field(..., description="Identifier shared by the chunks of one utterance")
    index: int = Field(..., description="Position of this chunk within the utterance", ge=0)
    data: str = Field(..., description="Base64 encoded audio")
    custom_session_id: Optional[str] = None

    def audio_bytes(self) -> bytes:
        """Decode the base64 payload."""
        return base64.b64decode(self.data)


class ErrorResponse(_InboundModel):
    """Error reported by the server over the socket."""

    type: Literal["error"] = "error"
    code: str = ""
    slug: str = ""
    message: str = ""
    custom_session_id: Optional[str] = None


class UnknownResponse(_InboundModel):
    """
    Frame with a discriminant this client does not model.

    Only produced under ``UnknownMessagePolicy.FORWARD``.
    """

    type: Literal["unknown"] = "unknown"
    original_type: str
    raw: Dict[str, Any] = Field(default_factory=dict)


VoiceChatResponse = Union[
    ChatMetadata,
    AssistantMessage,
    AssistantEnd,
    AudioOutput,
    ErrorResponse,
    UnknownResponse,
]


# ---------------------------------------------------------------------------
# REST resources
# ---------------------------------------------------------------------------


class _ResourceModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class ReturnConfig(_ResourceModel):
    """An EVI configuration as listed by ``GET /evi/configs``."""

    id: str
    version: Optional[int] = None
    name: Optional[str] = None
    version_description: Optional[str] = None
    created_on: Optional[int] = Field(default=None, description="Epoch milliseconds")
    modified_on: Optional[int] = Field(default=None, description="Epoch milliseconds")


class ConfigsPage(_ResourceModel):
    page_number: int = 0
    page_size: int = 0
    total_pages: int = 0
    configs_page: List[ReturnConfig] = Field(default_factory=list)


class ReturnChat(_ResourceModel):
    """A past chat as listed by ``GET /evi/chats``."""

    id: str
    chat_group_id: Optional[str] = None
    status: Optional[str] = None
    start_timestamp: Optional[int] = None
    end_timestamp: Optional[int] = None
    event_count: Optional[int] = None
    metadata: Optional[str] = None
    config: Optional[Dict[str, Any]] = None


class ChatsPage(_ResourceModel):
    page_number: int = 0
    page_size: int = 0
    total_pages: int = 0
    pagination_direction: Optional[str] = None
    chats_page: List[ReturnChat] = Field(default_factory=list)
