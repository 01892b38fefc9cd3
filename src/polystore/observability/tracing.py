"""OpenTelemetry tracing configuration for polystore.

Environment Variables:
    POLYSTORE_OTEL_ENABLED: Set to "1" to enable tracing (default: disabled)
    POLYSTORE_REQUIRE_OTEL: Set to "1" to fail startup if tracing cannot initialize
    POLYSTORE_OTEL_SERVICE_NAME: Service name for spans (default: "polystore")
    POLYSTORE_OTEL_EXPORTER: Exporter type - "otlp" or "console" (default: "otlp")
    POLYSTORE_OTEL_EXPORTER_OTLP_ENDPOINT: OTLP endpoint URL (optional)
    POLYSTORE_OTEL_EXPORTER_OTLP_PROTOCOL: "grpc" or "http" (default: "grpc")
    POLYSTORE_OTEL_RESOURCE_ATTRS: Comma-separated k=v pairs for resource attributes
    POLYSTORE_OTEL_TEST_CAPTURE: Set to "1" to use in-memory exporter for tests

Span attributes never carry storage credentials, content bytes, raw object
keys or absolute paths.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final

if TYPE_CHECKING:
    from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
    from opentelemetry.sdk.trace.export import SpanProcessor

logger = logging.getLogger(__name__)

ENV_ENABLED: Final[str] = "POLYSTORE_OTEL_ENABLED"
ENV_REQUIRE: Final[str] = "POLYSTORE_REQUIRE_OTEL"
ENV_TEST_CAPTURE: Final[str] = "POLYSTORE_OTEL_TEST_CAPTURE"
DEFAULT_SERVICE_NAME: Final[str] = "polystore"

_TRUE_VALUES: Final[frozenset[str]] = frozenset({"1", "true", "yes"})

_tracer_provider: TracerProvider | None = None
_is_configured: bool = False
_test_exporter: Any = None  # InMemorySpanExporter once test capture is configured


class TracingConfigError(Exception):
    """Raised when tracing cannot be configured and POLYSTORE_REQUIRE_OTEL=1."""


def get_env_bool(key: str, default: bool = False) -> bool:
    """True when the variable is 1/true/yes in any case; otherwise default."""
    if os.environ.get(key, "").strip().lower() in _TRUE_VALUES:
        return True
    return default


def _get_env_str(key: str, default: str = "") -> str:
    return os.environ.get(key, default).strip()


def is_tracing_enabled() -> bool:
    """Check if OpenTelemetry tracing is enabled."""
    return get_env_bool(ENV_ENABLED)


def _parse_resource_attrs(attrs_str: str) -> dict[str, str]:
    """Parse "k=v,k2=v2" into a dict, ignoring entries without "="."""
    attrs: dict[str, str] = {}
    for item in attrs_str.split(","):
        name, sep, value = item.partition("=")
        if sep:
            attrs[name.strip()] = value.strip()
    return attrs


@dataclass(frozen=True)
class TracingSettings:
    """Tracing options read once from the environment."""

    service_name: str = DEFAULT_SERVICE_NAME
    exporter: str = "otlp"
    otlp_endpoint: str | None = None
    otlp_protocol: str = "grpc"
    resource_attrs: dict[str, str] = field(default_factory=dict)
    test_capture: bool = False

    @classmethod
    def from_env(cls) -> TracingSettings:
        return cls(
            service_name=_get_env_str("POLYSTORE_OTEL_SERVICE_NAME", DEFAULT_SERVICE_NAME),
            exporter=_get_env_str("POLYSTORE_OTEL_EXPORTER", "otlp"),
            otlp_endpoint=_get_env_str("POLYSTORE_OTEL_EXPORTER_OTLP_ENDPOINT") or None,
            otlp_protocol=_get_env_str("POLYSTORE_OTEL_EXPORTER_OTLP_PROTOCOL", "grpc"),
            resource_attrs=_parse_resource_attrs(_get_env_str("POLYSTORE_OTEL_RESOURCE_ATTRS")),
            test_capture=get_env_bool(ENV_TEST_CAPTURE),
        )

    @property
    def exporter_label(self) -> str:
        return "in-memory" if self.test_capture else self.exporter


def _span_processor(settings: TracingSettings) -> SpanProcessor:
    """Build the span processor for the configured exporter.

    The in-memory and console exporters export synchronously; OTLP batches.
    """
    global _test_exporter

    from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor

    if settings.test_capture:
        from opentelemetry.sdk.trace.export.in_memory_span_exporter import (
            InMemorySpanExporter,
        )

        _test_exporter = InMemorySpanExporter()
        return SimpleSpanProcessor(_test_exporter)

    if settings.exporter == "console":
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter

        return SimpleSpanProcessor(ConsoleSpanExporter())

    kwargs: dict[str, Any] = {}
    if settings.otlp_endpoint:
        kwargs["endpoint"] = settings.otlp_endpoint
    if settings.otlp_protocol == "http":
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter as HTTPExporter,
        )

        return BatchSpanProcessor(HTTPExporter(**kwargs))

    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
        OTLPSpanExporter as GRPCExporter,
    )

    return BatchSpanProcessor(GRPCExporter(**kwargs))


def _install_provider(settings: TracingSettings) -> TracerProvider:
    from opentelemetry import trace
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider

    resource = Resource.create({"service.name": settings.service_name, **settings.resource_attrs})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(_span_processor(settings))
    trace.set_tracer_provider(provider)
    return provider


def configure_tracing() -> bool:
    """Configure OpenTelemetry tracing for polystore.

    Idempotent. The global tracer provider can only be installed once per
    process, so later calls reuse it.

    Returns:
        True if tracing is enabled and configured, False otherwise.

    Raises:
        TracingConfigError: If POLYSTORE_REQUIRE_OTEL=1 and configuration fails.
    """
    global _tracer_provider, _is_configured

    if not is_tracing_enabled():
        _is_configured = True
        logger.debug("OpenTelemetry tracing disabled (%s not set)", ENV_ENABLED)
        return False

    settings = TracingSettings.from_env()
    if settings.test_capture and _test_exporter is not None:
        return True
    if _is_configured and _tracer_provider is not None:
        return True
    _is_configured = True

    try:
        _tracer_provider = _install_provider(settings)
    except Exception as e:
        logger.error("Failed to configure OpenTelemetry tracing: %s", e)
        if get_env_bool(ENV_REQUIRE):
            raise TracingConfigError(
                f"OpenTelemetry tracing required but configuration failed: {e}"
            ) from e
        return False

    logger.info(
        "OpenTelemetry tracing configured: service=%s, exporter=%s",
        settings.service_name,
        settings.exporter_label,
    )
    return True


def get_current_trace_id() -> str | None:
    """Hex trace ID of the active span, for log correlation; None outside a span."""
    from opentelemetry import trace

    ctx = trace.get_current_span().get_span_context()
    return format(ctx.trace_id, "032x") if ctx.is_valid else None


def get_test_spans() -> list[ReadableSpan]:
    """Spans captured by the in-memory exporter; empty unless test capture is on."""
    if _test_exporter is None:
        return []
    return list(_test_exporter.get_finished_spans())


def clear_test_spans() -> None:
    if _test_exporter is not None:
        _test_exporter.clear()


def reset_tracing() -> None:
    """Reset tracing configuration (for testing).

    The installed provider and test exporter survive; only captured spans are
    dropped and the next configure_tracing() call re-reads the environment.
    """
    global _is_configured

    clear_test_spans()
    _is_configured = False
