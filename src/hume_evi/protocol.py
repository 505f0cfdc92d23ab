"""
Frame codec for the EVI voice chat socket.

Inbound frames are JSON objects discriminated by their top-level ``type``
field. Decoding happens in two steps: a tolerant pre-parse that only extracts
the discriminant, then a typed decode with the model registered for it.
"""

import json
from typing import Any, Dict, Optional, Tuple, Type, Union

from pydantic import BaseModel, ValidationError

from src.hume_evi.enums import UnknownMessagePolicy
from src.hume_evi.exceptions import DecodeError
from src.hume_evi.models import (
    AssistantEnd,
    AssistantMessage,
    AudioOutput,
    ChatMetadata,
    ErrorResponse,
    UnknownResponse,
    VoiceChatResponse,
)
from src.hume_evi.utils import WebsocketMessage

RESPONSE_TYPES: Dict[str, Type[BaseModel]] = {
    "chat_metadata": ChatMetadata,
    "assistant_message": AssistantMessage,
    "assistant_end": AssistantEnd,
    "audio_output": AudioOutput,
    "error": ErrorResponse,
}

Frame = Union[str, bytes]


def _load_object(frame: Frame) -> Dict[str, Any]:
    try:
        data = json.loads(frame)
    except (TypeError, ValueError) as e:
        # UnicodeDecodeError is a ValueError
        raise DecodeError(f"Frame is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise DecodeError(f"Frame is not a JSON object (got {type(data).__name__})")
    return data


def peek_type(frame: Frame) -> str:
    """
    Extract the ``type`` discriminant of a frame without decoding the rest.

    Raises:
        DecodeError: The frame is not a JSON object or has no string ``type``.
    """
    return _peek(frame)[0]


def decode_response(
    frame: Frame,
    unknown_policy: UnknownMessagePolicy = UnknownMessagePolicy.DROP,
) -> Optional[VoiceChatResponse]:
    """
    Decode one inbound frame into its typed response.

    Returns ``None`` for an unknown discriminant under ``DROP``; under
    ``FORWARD`` an :class:`UnknownResponse` keeps the original object.

    Raises:
        DecodeError: The frame is malformed, or its payload does not match the
            model registered for its discriminant.
    """
    msg_type, data = _peek(frame)
    model = RESPONSE_TYPES.get(msg_type)
    if model is None:
        if unknown_policy is UnknownMessagePolicy.FORWARD:
            return UnknownResponse(original_type=msg_type, raw=data)
        return None
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise DecodeError(f"Invalid '{msg_type}' frame: {e.error_count()} field error(s)") from e


def _peek(frame: Frame) -> Tuple[str, Dict[str, Any]]:
    data = _load_object(frame)
    msg_type = data.get("type")
    if not isinstance(msg_type, str):
        raise DecodeError("Frame has no string 'type' field")
    return msg_type, data


def encode_frame(message: Any) -> Frame:
    """
    Turn an outbound message into what goes on the wire.

    Raw audio (``bytes``, ``bytearray``, ``memoryview``) stays binary, ``str``
    is sent as a text frame untouched, a :class:`WebsocketMessage` uses its own
    JSON form, anything else is JSON encoded.

    Raises:
        TypeError: The message is not JSON serializable.
    """
    if isinstance(message, (bytes, bytearray, memoryview)):
        return bytes(message)
    if isinstance(message, str):
        return message
    if isinstance(message, WebsocketMessage):
        return message.to_json()
    if isinstance(message, BaseModel):
        return message.model_dump_json()
    try:
        return json.dumps(message, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise TypeError(f"Outbound message is not JSON serializable: {e}") from e
