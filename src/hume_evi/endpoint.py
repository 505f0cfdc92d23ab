"""
Voice chat endpoint description.

A chat is opened either against a stored EVI configuration (``config_id``) or
with explicit audio stream parameters. :class:`ChatEndpoint` captures that
choice and turns it into the socket URL.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import yaml

from src.hume_evi import settings
from src.hume_evi.exceptions import EVIConnectionError
from utils.ml_logging import get_logger

logger = get_logger(__name__)

CHAT_PATH = "/evi/chat"

_SCHEME_MAP = {"https": "wss", "http": "ws", "wss": "wss", "ws": "ws"}


@dataclass
class StreamParameters:
    """Audio format and model selection for parameter-based chats."""

    sample_rate: int = settings.DEFAULT_SAMPLE_RATE
    channels: int = settings.DEFAULT_CHANNELS
    bits_per_sample: int = settings.DEFAULT_BITS_PER_SAMPLE
    model: Optional[str] = None
    language: Optional[str] = None

    def to_query(self) -> Dict[str, str]:
        return {k: str(v) for k, v in asdict(self).items() if v is not None}


@dataclass
class ChatEndpoint:
    """
    Which chat to open: a stored configuration or explicit stream parameters.

    Exactly one of ``config_id`` and ``stream`` must be set.

    Example:
        ChatEndpoint(config_id="cfg-123")
        ChatEndpoint(stream=StreamParameters(model="evi-2", language="en"))
    """

    config_id: Optional[str] = None
    config_version: Optional[int] = None
    stream: Optional[StreamParameters] = None
    extra_query: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if bool(self.config_id) == (self.stream is not None):
            raise ValueError("ChatEndpoint needs exactly one of config_id or stream")

    def query(self) -> Dict[str, str]:
        if self.config_id:
            params = {"config_id": self.config_id}
            if self.config_version is not None:
                params["config_version"] = str(self.config_version)
        else:
            params = self.stream.to_query()
        params.update(self.extra_query)
        return params

    def build_url(self, base_url: str) -> str:
        """
        Build the socket URL from an API base address.

        ``https``/``http`` bases are switched to ``wss``/``ws``.

        Raises:
            EVIConnectionError: The base address is not a usable URL.
        """
        try:
            parts = urlsplit(base_url.strip())
        except (AttributeError, ValueError) as e:
            raise EVIConnectionError(f"Invalid base URL {base_url!r}: {e}") from e

        scheme = _SCHEME_MAP.get(parts.scheme.lower())
        if scheme is None or not parts.netloc:
            raise EVIConnectionError(f"Invalid base URL {base_url!r}: expected http(s) or ws(s) address")

        path = parts.path.rstrip("/") + CHAT_PATH
        return urlunsplit((scheme, parts.netloc, path, urlencode(self.query()), ""))

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "ChatEndpoint":
        """Build an endpoint from a plain mapping (e.g. parsed YAML)."""
        if data.get("config_id"):
            return cls(
                config_id=str(data["config_id"]),
                config_version=data.get("config_version"),
                extra_query={k: str(v) for k, v in (data.get("extra_query") or {}).items()},
            )

        stream_data = data.get("stream")
        if not isinstance(stream_data, dict):
            raise ValueError("Chat endpoint mapping needs 'config_id' or a 'stream' mapping")

        merged = asdict(StreamParameters())
        unknown = set(stream_data) - set(merged)
        if unknown:
            raise ValueError(f"Unknown stream parameters: {sorted(unknown)}")
        merged.update(stream_data)
        return cls(
            stream=StreamParameters(**merged),
            extra_query={k: str(v) for k, v in (data.get("extra_query") or {}).items()},
        )

    @classmethod
    def from_yaml(cls, path: str) -> "ChatEndpoint":
        """
        Load an endpoint from a YAML session file.

        The file holds either ``config_id`` (and optionally ``config_version``)
        or a ``stream`` mapping; missing stream fields keep their defaults.
        """
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Session config YAML is not a mapping: {path}")
        logger.info(f"Loading chat endpoint from {path}")
        return cls.from_mapping(data)
