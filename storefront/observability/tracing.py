"""
Distributed Tracing with OpenTelemetry.

Spans cover inbound requests, ledger queries and webhook reconciliation.
"""

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span

from storefront.config import settings

TRACER_NAME = "storefront.operations"


def setup_tracing() -> None:
    """Export spans to the OTLP collector when tracing is enabled."""
    if not settings.tracing_enabled:
        return

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "service.version": settings.api_version,
            "deployment.environment": settings.environment,
            "payment.gateway": "sandbox" if settings.is_sandbox_gateway else "production",
        }
    )

    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    """Trace every inbound request. Call after the app is created."""
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace order ledger queries on an async engine."""
    if settings.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


class trace_operation:
    """
    Context manager for a traced unit of work.

    None-valued attributes are skipped; non-primitive values are stringified.

    Usage:
        with trace_operation("webhook_apply", trade_number=trade_number) as span:
            span.set_attribute("applied", True)
    """

    def __init__(self, operation_name: str, **attributes: Any) -> None:
        self.operation_name = operation_name
        self.attributes = attributes
        self._scope: Any = None

    def __enter__(self) -> Span:
        span = trace.get_tracer(TRACER_NAME).start_span(self.operation_name)
        for key, value in self.attributes.items():
            if value is None:
                continue
            span.set_attribute(key, value if isinstance(value, (str, int, float, bool)) else str(value))
        self._scope = trace.use_span(span, end_on_exit=True)
        return self._scope.__enter__()  # type: ignore[no-any-return]

    def __exit__(self, exc_type: Any, exc_val: BaseException | None, exc_tb: Any) -> None:
        # use_span records the exception and sets the error status before re-raising
        self._scope.__exit__(exc_type, exc_val, exc_tb)
