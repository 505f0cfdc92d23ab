"""
Exception hierarchy for the Hume EVI client.

Everything raised by this package derives from :class:`HumeClientError`, so a
caller can catch the whole family with one ``except`` clause.
"""

from typing import Optional


class HumeClientError(Exception):
    """Base class for all client errors."""


class EVIConnectionError(HumeClientError, ConnectionError):
    """
    The voice chat connection could not be established.

    ``status`` and ``body`` carry the HTTP response of a rejected handshake
    when the server sent one.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body

    def __str__(self) -> str:
        message = super().__str__()
        if self.status is not None:
            message = f"{message} (status={self.status})"
        return message


class AlreadyActiveError(EVIConnectionError):
    """``start`` was called while a voice chat session is still live."""


class NotConnectedError(HumeClientError):
    """An operation needed a live session and there is none."""


class DecodeError(HumeClientError, ValueError):
    """A frame or response body could not be decoded."""


class TransportError(HumeClientError):
    """Read or write failure on an established connection."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.reason = reason


class HumeHTTPError(HumeClientError):
    """Non-2xx answer from the REST API."""

    def __init__(self, status: int, body: str, url: Optional[str] = None) -> None:
        super().__init__(f"Hume API returned {status}: {body}")
        self.status = status
        self.body = body
        self.url = url
