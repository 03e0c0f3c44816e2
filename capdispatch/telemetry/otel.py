"""OpenTelemetry tracing for the dispatch loop.

Spans follow the GenAI semantic conventions where one applies
(``gen_ai.request.model``, ``gen_ai.usage.*``, ``gen_ai.tool.name``).
A disabled tracer hands out non-recording spans, so call sites never need
to guard on whether tracing is configured.
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Iterator

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SpanExporter,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

@dataclass
class OTelConfig:
    endpoint: str = ""
    service_name: str = "capdispatch"
    enabled: bool = True

    @classmethod
    def from_settings(cls) -> OTelConfig:
        from capdispatch.config.settings import settings

        return cls(
            endpoint=settings.OTEL_EXPORTER_ENDPOINT,
            service_name=settings.OTEL_SERVICE_NAME,
        )


# ---------------------------------------------------------------------------
# Tracer
# ---------------------------------------------------------------------------

class DispatchTracer:
    """Thin wrapper that configures and exposes OTel tracing for capdispatch.

    Until :meth:`setup` installs an SDK provider, spans go to
    *tracer_provider* when given, else to the global provider (the API
    default is a no-op).
    """

    def __init__(
        self,
        config: OTelConfig | None = None,
        *,
        tracer_provider: trace.TracerProvider | None = None,
    ) -> None:
        self._config = config or OTelConfig()
        self._tracer: trace.Tracer | None = None
        self._provider: TracerProvider | None = None
        if tracer_provider is not None and self._config.enabled:
            self._tracer = tracer_provider.get_tracer(self._config.service_name)

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    # -- setup --------------------------------------------------------------

    def setup(self, exporter: SpanExporter | None = None) -> TracerProvider | None:
        """Install an SDK tracer provider with an OTLP or console exporter.

        Returns the provider, or None when tracing is disabled.
        """
        if not self._config.enabled:
            return None

        if exporter is None:
            exporter = self._default_exporter()

        resource = Resource.create({"service.name": self._config.service_name})
        provider = TracerProvider(resource=resource)
        provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)

        self._provider = provider
        self._tracer = provider.get_tracer(self._config.service_name)
        logger.info(
            "Tracing enabled (service=%s, exporter=%s)",
            self._config.service_name,
            type(exporter).__name__,
        )
        return provider

    def _default_exporter(self) -> SpanExporter:
        if self._config.endpoint:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                OTLPSpanExporter,
            )

            return OTLPSpanExporter(endpoint=self._config.endpoint)
        return ConsoleSpanExporter()

    def shutdown(self) -> None:
        if self._provider is not None:
            self._provider.shutdown()

    # -- span helpers -------------------------------------------------------

    def _get_tracer(self) -> trace.Tracer:
        if self._tracer is None:
            if self._config.enabled:
                self._tracer = trace.get_tracer(self._config.service_name)
            else:
                self._tracer = trace.NoOpTracer()
        return self._tracer

    @contextlib.contextmanager
    def start_span(
        self, name: str, attributes: dict[str, Any] | None = None
    ) -> Iterator[trace.Span]:
        """Start a span as the current span; exceptions are recorded on it."""
        clean = {k: v for k, v in (attributes or {}).items() if v is not None}
        with self._get_tracer().start_as_current_span(name, attributes=clean) as span:
            yield span

    def turn_span(self, model: str, max_steps: int, tenant_id: str = "") -> Any:
        return self.start_span(
            "dispatch.turn",
            attributes={
                "gen_ai.request.model": model or None,
                "dispatch.max_steps": max_steps,
                "dispatch.tenant_id": tenant_id or None,
            },
        )

    def provider_request_span(self, step: int, allow_function_calls: bool) -> Any:
        return self.start_span(
            "dispatch.provider_request",
            attributes={
                "dispatch.step": step,
                "dispatch.allow_function_calls": allow_function_calls,
            },
        )

    def skill_span(self, name: str, call_id: str, step: int) -> Any:
        return self.start_span(
            f"dispatch.skill.{name}",
            attributes={
                "gen_ai.tool.name": name,
                "gen_ai.tool.call.id": call_id,
                "dispatch.step": step,
            },
        )
