"""
Hume EVI Client Package

Provides classes and utilities for:
- Streaming voice chat sessions over WebSocket
- Typed decoding of inbound chat frames
- REST listings of EVI configurations and chats
- PCM/WAV and outbound message helpers
"""

from .api import VoiceChatAPI
from .client import HumeClient
from .conversation import AssistantTurn, VoiceChatConversation
from .endpoint import ChatEndpoint, StreamParameters
from .enums import AuthScheme, ReceiveState, UnknownMessagePolicy
from .event_handler import CallbackHandler, QueueHandler, VoiceChatHandler
from .exceptions import (
    AlreadyActiveError,
    DecodeError,
    EVIConnectionError,
    HumeClientError,
    HumeHTTPError,
    NotConnectedError,
    TransportError,
)
from .models import (
    AssistantEnd,
    AssistantMessage,
    AudioOutput,
    ChatMessage,
    ChatMetadata,
    ChatsPage,
    ConfigsPage,
    ErrorResponse,
    ReturnChat,
    ReturnConfig,
    UnknownResponse,
    VoiceChatResponse,
)
from .protocol import decode_response, peek_type
from .utils import (
    WebsocketMessage,
    audio_input_message,
    convert_pcm_to_wav,
    create_message,
    float_to_16bit_pcm,
)

__all__ = [
    "HumeClient",
    "VoiceChatAPI",
    "VoiceChatHandler",
    "CallbackHandler",
    "QueueHandler",
    "VoiceChatConversation",
    "AssistantTurn",
    "ChatEndpoint",
    "StreamParameters",
    "AuthScheme",
    "ReceiveState",
    "UnknownMessagePolicy",
    "HumeClientError",
    "EVIConnectionError",
    "AlreadyActiveError",
    "NotConnectedError",
    "DecodeError",
    "TransportError",
    "HumeHTTPError",
    "VoiceChatResponse",
    "ChatMetadata",
    "ChatMessage",
    "AssistantMessage",
    "AssistantEnd",
    "AudioOutput",
    "ErrorResponse",
    "UnknownResponse",
    "ConfigsPage",
    "ReturnConfig",
    "ChatsPage",
    "ReturnChat",
    "decode_response",
    "peek_type",
    "convert_pcm_to_wav",
    "create_message",
    "WebsocketMessage",
    "audio_input_message",
    "float_to_16bit_pcm",
]

__version__ = "0.1.0"
