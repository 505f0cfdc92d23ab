import time
from typing import Optional

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode

tracer = trace.get_tracer(__name__)


class TraceContext:
    """
    Context manager for tracing spans with custom attributes and latency bucketing.

    Usable both as ``with`` and ``async with`` so REST calls and the
    websocket handshake can share it.
    """

    def __init__(
        self,
        name: str,
        endpoint: Optional[str] = None,
        config_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ):
        self.name = name
        self.endpoint = endpoint
        self.config_id = config_id
        self.metadata = metadata or {}
        self._start_time = None
        self._span: Optional[Span] = None
        self._scope = None

    def __enter__(self) -> Span:
        self._start_time = time.time()
        self._span = tracer.start_span(name=self.name)

        if self.endpoint:
            self._span.set_attribute("custom.endpoint", self.endpoint)
        if self.config_id:
            self._span.set_attribute("custom.config_id", self.config_id)
        for k, v in self.metadata.items():
            if v is not None:
                self._span.set_attribute(f"custom.{k}", v)

        self._scope = trace.use_span(self._span, end_on_exit=True)
        self._scope.__enter__()
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = (time.time() - self._start_time) * 1000  # in ms
        if self._span:
            self._span.set_attribute("custom.latency_ms", duration)
            self._span.set_attribute("custom.latency_bucket", self._bucket_latency(duration))
            if exc_val is not None:
                self._span.set_status(Status(StatusCode.ERROR, str(exc_val)))
        if self._scope is not None:
            self._scope.__exit__(exc_type, exc_val, exc_tb)
        return False

    async def __aenter__(self) -> Span:
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return self.__exit__(exc_type, exc_val, exc_tb)

    @staticmethod
    def _bucket_latency(duration_ms: float) -> str:
        if duration_ms < 100:
            return "<100ms"
        elif duration_ms < 300:
            return "100–300ms"
        elif duration_ms < 1000:
            return "300ms–1s"
        elif duration_ms < 3000:
            return "1–3s"
        else:
            return ">3s"
