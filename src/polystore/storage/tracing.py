"""polystore storage OpenTelemetry tracing integration.

Provides the tracing decorator applied to backend operations.

Span attributes are limited to safe identifiers:
    - Keys are exported only as their SHA-256 digest
    - Never absolute filesystem paths, endpoint URLs or credentials
"""

from __future__ import annotations

import functools
import hashlib
import logging
from collections.abc import Callable
from typing import Any, TypeVar, cast

from polystore.observability.tracing import is_tracing_enabled

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def key_digest(key: str) -> str:
    """SHA-256 hex digest of a storage key, used wherever the raw key must not appear."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def traced_storage_operation(operation: str) -> Callable[[F], F]:
    """Decorator to trace storage operations with OpenTelemetry.

    The first positional argument after ``self``, when it is a string, is
    treated as the object key.

    Args:
        operation: Operation name (e.g., "store", "retrieve", "copy").

    Returns:
        Decorated function that emits OTel spans when tracing is enabled.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
            if not is_tracing_enabled():
                return func(self, *args, **kwargs)

            from opentelemetry import trace

            tracer = trace.get_tracer("polystore.storage")
            with tracer.start_as_current_span(f"polystore.storage.{operation}") as span:
                span.set_attribute("storage.backend", getattr(self, "backend_name", "unknown"))
                if args and isinstance(args[0], str):
                    span.set_attribute("polystore.object_key_sha256", key_digest(args[0]))

                try:
                    result = func(self, *args, **kwargs)
                except Exception as e:
                    span.set_attribute("error", True)
                    span.set_attribute("error.type", type(e).__name__)
                    kind = getattr(e, "kind", None)
                    if kind is not None:
                        span.set_attribute("polystore.error_kind", str(kind.value))
                    raise

                if result is not None:
                    _add_result_attributes(span, result)
                return result

        return cast(F, wrapper)

    return decorator


def _add_result_attributes(span: Any, result: Any) -> None:
    """Add checksum, size and content type of a result to the span.

    Never adds storage paths.
    """
    from polystore.storage.models import StorageObjectMetadata, StorageOperationResult

    if isinstance(result, StorageObjectMetadata | StorageOperationResult):
        if result.checksum:
            span.set_attribute("polystore.object_checksum", result.checksum)
        span.set_attribute("polystore.object_size_bytes", result.size)
        if result.content_type:
            span.set_attribute("polystore.object_content_type", result.content_type)
    if isinstance(result, StorageOperationResult):
        span.set_attribute("polystore.operation_success", result.success)
    elif isinstance(result, bool):
        span.set_attribute("polystore.result", result)
