from enum import Enum


class UnknownMessagePolicy(Enum):
    """What the receive loop does with a frame whose ``type`` it does not know"""

    DROP = "drop"  # Discard silently, no handler call
    FORWARD = "forward"  # Deliver an UnknownResponse with type "unknown"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_string(cls, value: str) -> "UnknownMessagePolicy":
        """Create UnknownMessagePolicy from string with validation"""
        for policy in cls:
            if policy.value == value.lower():
                return policy
        raise ValueError(
            f"Invalid unknown message policy: {value}. Valid options: {[p.value for p in cls]}"
        )


class ReceiveState(Enum):
    """Receive loop states of a voice chat session"""

    IDLE = "idle"  # No session started yet
    CONNECTING = "connecting"  # Handshake or on_connect in progress
    WAITING_FRAME = "waiting_frame"
    DECODING = "decoding"
    DISPATCHING = "dispatching"
    CLOSED = "closed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_running(self) -> bool:
        return self in (ReceiveState.WAITING_FRAME, ReceiveState.DECODING, ReceiveState.DISPATCHING)


class AuthScheme(Enum):
    """How the API key is presented to the Hume API"""

    API_KEY = "api_key"  # X-Hume-Api-Key header
    BEARER = "bearer"  # Authorization: Bearer header (plus X-Hume-Api-Key on the socket)

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_string(cls, value: str) -> "AuthScheme":
        """Create AuthScheme from string with validation"""
        for scheme in cls:
            if scheme.value == value.lower():
                return scheme
        raise ValueError(
            f"Invalid auth scheme: {value}. Valid options: {[s.value for s in cls]}"
        )
