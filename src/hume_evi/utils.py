import base64
import json
import struct
from dataclasses import dataclass
from typing import Any, Union

import numpy as np
from pydantic import BaseModel

WAV_HEADER_SIZE = 44
WAV_SAMPLE_RATE = 16000
WAV_CHANNELS = 1
WAV_BITS_PER_SAMPLE = 16


def convert_pcm_to_wav(pcm_data: bytes) -> bytes:
    """
    Wrap raw 16-bit little-endian PCM in a canonical 44-byte RIFF/WAVE header.

    The format is fixed at mono, 16 kHz, 16 bits per sample.

    Args:
        pcm_data (bytes): Raw PCM samples.

    Returns:
        bytes: Header followed by the unchanged samples.
    """
    data_size = len(pcm_data)
    block_align = WAV_CHANNELS * WAV_BITS_PER_SAMPLE // 8
    byte_rate = WAV_SAMPLE_RATE * block_align

    header = b"RIFF" + struct.pack("<I", data_size + WAV_HEADER_SIZE - 8) + b"WAVE"
    header += b"fmt " + struct.pack(
        "<IHHIIHH",
        16,  # fmt chunk size for PCM
        1,  # PCM format
        WAV_CHANNELS,
        WAV_SAMPLE_RATE,
        byte_rate,
        block_align,
        WAV_BITS_PER_SAMPLE,
    )
    header += b"data" + struct.pack("<I", data_size)
    return header + bytes(pcm_data)


@dataclass(frozen=True)
class WebsocketMessage:
    """
    A typed outbound message whose payload is already JSON text.

    Keeping the payload as raw JSON lets callers pass pre-encoded documents
    through without a decode/encode pass.
    """

    type: str
    payload: str = "null"

    def to_dict(self) -> dict:
        return {"type": self.type, "payload": json.loads(self.payload)}

    def to_json(self) -> str:
        return f'{{"type": {json.dumps(self.type)}, "payload": {self.payload}}}'


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not valid JSON")


def create_message(msg_type: str, payload: Any = None) -> WebsocketMessage:
    """
    Build a :class:`WebsocketMessage`, normalizing the payload to JSON text.

    - ``None`` becomes ``null``
    - ``str`` becomes a JSON string
    - ``bytes`` are used as-is when they hold strict JSON (UTF-8, no
      ``NaN``/``Infinity``), otherwise quoted with undecodable bytes kept as
      ``\\xNN`` escapes
    - anything else is JSON encoded

    Raises:
        TypeError: The payload cannot be JSON encoded.
    """
    if payload is None:
        raw = "null"
    elif isinstance(payload, str):
        raw = json.dumps(payload)
    elif isinstance(payload, (bytes, bytearray)):
        data = bytes(payload)
        try:
            text = data.decode("utf-8")
            json.loads(text, parse_constant=_reject_constant)
            raw = text
        except ValueError:
            raw = json.dumps(data.decode("utf-8", errors="backslashreplace"))
    elif isinstance(payload, BaseModel):
        raw = payload.model_dump_json()
    else:
        try:
            raw = json.dumps(payload, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise TypeError(f"failed to marshal payload: {e}") from e
    return WebsocketMessage(type=msg_type, payload=raw)


def float_to_16bit_pcm(float32_array: np.ndarray) -> np.ndarray:
    """
    Converts a numpy array of float32 amplitude data to a numpy array in int16 format.

    Args:
        float32_array (np.ndarray): Input float32 numpy array.

    Returns:
        np.ndarray: Output int16 numpy array.
    """
    int16_array = np.clip(float32_array, -1, 1) * 32767
    return int16_array.astype(np.int16)


def audio_to_base64(audio: Union[bytes, bytearray, np.ndarray]) -> str:
    """
    Base64 encode PCM audio. Float arrays are converted to 16-bit PCM first.

    Args:
        audio: Raw PCM bytes or a numpy sample array.

    Returns:
        str: Base64 encoded string.
    """
    if isinstance(audio, np.ndarray):
        if audio.dtype in (np.float32, np.float64):
            audio = float_to_16bit_pcm(audio)
        audio = audio.tobytes()
    return base64.b64encode(bytes(audio)).decode("utf-8")


def audio_input_message(audio: Union[bytes, bytearray, np.ndarray]) -> dict:
    """Build the JSON ``audio_input`` message carrying a chunk of microphone audio."""
    return {"type": "audio_input", "data": audio_to_base64(audio)}
