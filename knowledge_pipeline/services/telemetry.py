"""OpenTelemetry logging and tracing for knowledge operations"""

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from opentelemetry import trace
from opentelemetry._logs import SeverityNumber, set_logger_provider
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk._logs import LoggerProvider
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from knowledge_pipeline.config import config

logger = logging.getLogger(__name__)

# Parameters safe to export as attributes (bounded value sets)
_PARAM_ATTRIBUTES: dict[str, type] = {
    "limit": int,
    "query_type": str,
    "min_score": float,
    "force": bool,
    "provider": str,
}


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _endpoint(path: str) -> str:
    endpoint = config.otel_endpoint
    if not endpoint.endswith(path):
        endpoint = f"{endpoint.rstrip('/')}{path}"
    return endpoint


def _resource() -> Resource:
    return Resource(
        attributes={
            SERVICE_NAME: config.otel_service_name,
            SERVICE_VERSION: config.otel_service_version,
        }
    )


class TelemetryService:
    """Handle OpenTelemetry logging and tracing for knowledge operations"""

    def __init__(self):
        self.logging_enabled = config.otel_logging_enabled
        self.tracing_enabled = config.otel_tracing_enabled
        self.logger_provider = None
        self.tracer_provider = None
        self.otel_logger = None

        if self.logging_enabled:
            self.logging_enabled = self._try_initialize("logging", self._initialize_logging)
        if self.tracing_enabled:
            self.tracing_enabled = self._try_initialize("tracing", self._initialize_tracing)

    @staticmethod
    def _try_initialize(kind: str, initializer: Callable[[], None]) -> bool:
        try:
            initializer()
        except Exception as e:
            logger.warning(f"OTel {kind} disabled, exporter setup failed: {e}")
            return False
        return True

    def _initialize_logging(self) -> None:
        """Initialize OpenTelemetry logging with OTLP log exporter"""
        self.logger_provider = LoggerProvider(resource=_resource())

        log_endpoint = _endpoint("/v1/logs")
        self.logger_provider.add_log_record_processor(
            BatchLogRecordProcessor(OTLPLogExporter(endpoint=log_endpoint))
        )
        set_logger_provider(self.logger_provider)
        self.otel_logger = self.logger_provider.get_logger(__name__)

        logger.info(f"Exporting knowledge operation logs to {log_endpoint}")

    def _initialize_tracing(self) -> None:
        """Initialize OpenTelemetry tracing with OTLP trace exporter"""
        self.tracer_provider = TracerProvider(resource=_resource())

        trace_endpoint = _endpoint("/v1/traces")
        self.tracer_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=trace_endpoint))
        )
        # httpx instrumentation is set up by get_telemetry_service() before clients exist
        trace.set_tracer_provider(self.tracer_provider)

        logger.info(f"Exporting traces to {trace_endpoint}")

    def log_operation(
        self,
        operation: str,
        query: str | None,
        parameters: dict[str, Any],
        response: dict[str, Any] | None = None,
        error: Exception | None = None,
    ) -> None:
        """
        Log a knowledge operation and its outcome to OpenTelemetry

        Attributes carry only low-cardinality values; query text and ids go
        into the log body.

        Args:
            operation: Name of the API operation or MCP tool
            query: Retrieval query text, if any
            parameters: Parameters passed to the operation
            response: The response data (if successful)
            error: The error (if failed)
        """
        if not self.logging_enabled or not self.otel_logger:
            return

        try:
            attributes: dict[str, str | int | float | bool] = {
                "knowledge.operation": operation,
                "timestamp": datetime.now(UTC).isoformat(),
                "response.success": error is None,
            }

            for name, cast in _PARAM_ATTRIBUTES.items():
                if parameters.get(name) is not None:
                    attributes[f"param.{name}"] = cast(parameters[name])

            body_parts = [f"[{operation}]", "SUCCESS" if error is None else "FAILED"]

            if query:
                body_parts.append(f'query="{_truncate(query, 200)}"')
                if config.otel_log_full_results:
                    attributes["query.full_text"] = query

            for id_name in ("agent_id", "source_id"):
                if parameters.get(id_name):
                    body_parts.append(f"{id_name}={parameters[id_name]}")

            if response:
                attributes["response.size_bytes"] = len(json.dumps(response, default=str))
                body_parts.extend(self._response_summary(response, attributes))

            if error:
                attributes["error.type"] = type(error).__name__
                attributes["error.message"] = _truncate(str(error), 500)
                body_parts.append(f"error={type(error).__name__}")

            self.otel_logger.emit(
                body=" ".join(body_parts),
                severity_number=SeverityNumber.ERROR if error else SeverityNumber.INFO,
                attributes=attributes,
                timestamp=int(datetime.now(UTC).timestamp() * 1e9),
            )

        except Exception as e:
            # Don't let telemetry errors break the application
            logger.warning(f"Failed to log telemetry: {e}")

    @staticmethod
    def _response_summary(
        response: dict[str, Any], attributes: dict[str, str | int | float | bool]
    ) -> list[str]:
        """Add response metrics to attributes and return log body fragments"""
        parts: list[str] = []

        if "results" in response:
            results = response.get("results") or []
            attributes["response.result_count"] = len(results)
            if results and results[0].get("score") is not None:
                attributes["response.top_score"] = float(results[0]["score"])
            parts.append(f"results={len(results)}")
            if config.otel_log_full_results:
                attributes["response.results_json"] = json.dumps(results, default=str)

        if "outcome" in response:
            attributes["sync.outcome"] = str(response["outcome"])
            attributes["sync.chunks_created"] = int(response.get("chunks_created", 0))
            parts.append(f"outcome={response['outcome']}")

        return parts


_telemetry_service: TelemetryService | None = None
_instrumentation_initialized = False


def _ensure_instrumentation_initialized() -> None:
    """Instrument httpx once, before any HTTP client is created"""
    global _instrumentation_initialized
    if not _instrumentation_initialized and config.otel_tracing_enabled:
        try:
            HTTPXClientInstrumentor().instrument()
            _instrumentation_initialized = True
            logger.info("HTTP request tracing instrumentation initialized")
        except Exception as e:
            logger.warning(f"Failed to initialize HTTP tracing instrumentation: {e}")


def get_telemetry_service() -> TelemetryService:
    """Get or create the global telemetry service instance"""
    global _telemetry_service
    _ensure_instrumentation_initialized()
    if _telemetry_service is None:
        _telemetry_service = TelemetryService()
    return _telemetry_service
