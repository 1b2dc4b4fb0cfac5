"""OpenTelemetry logging and tracing service for rerank and embedding telemetry"""

import json
import logging
from datetime import datetime, timezone
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

from paper_rerank.config import config
from paper_rerank.errors import RerankEngineError

logger = logging.getLogger(__name__)


class TelemetryService:
    """Handle OpenTelemetry logging and tracing for rerank and embedding calls"""

    def __init__(self):
        self.logging_enabled = config.otel_logging_enabled
        self.tracing_enabled = config.otel_tracing_enabled
        self.logger_provider = None
        self.tracer_provider = None
        self.otel_logger = None

        if self.logging_enabled:
            try:
                self._initialize_logging()
            except Exception as e:
                logger.warning(f"Failed to initialize OTel logging: {e}. Logging disabled.")
                self.logging_enabled = False

        if self.tracing_enabled:
            try:
                self._initialize_tracing()
            except Exception as e:
                logger.warning(f"Failed to initialize OTel tracing: {e}. Tracing disabled.")
                self.tracing_enabled = False

    def _resource(self) -> Resource:
        return Resource(
            attributes={
                SERVICE_NAME: config.otel_service_name,
                SERVICE_VERSION: config.otel_service_version,
            }
        )

    def _initialize_logging(self) -> None:
        """Initialize OpenTelemetry logging with OTLP log exporter"""
        self.logger_provider = LoggerProvider(resource=self._resource())

        # The endpoint should point to the logs endpoint
        log_endpoint = config.otel_endpoint
        if not log_endpoint.endswith("/v1/logs"):
            log_endpoint = f"{log_endpoint.rstrip('/')}/v1/logs"

        log_exporter = OTLPLogExporter(endpoint=log_endpoint)
        self.logger_provider.add_log_record_processor(BatchLogRecordProcessor(log_exporter))

        set_logger_provider(self.logger_provider)
        self.otel_logger = self.logger_provider.get_logger(__name__)

        logger.info(f"OpenTelemetry logging initialized with endpoint: {log_endpoint}")

    def _initialize_tracing(self) -> None:
        """Initialize OpenTelemetry tracing with OTLP trace exporter"""
        self.tracer_provider = TracerProvider(resource=self._resource())

        trace_endpoint = config.otel_endpoint
        if not trace_endpoint.endswith("/v1/traces"):
            trace_endpoint = f"{trace_endpoint.rstrip('/')}/v1/traces"

        trace_exporter = OTLPSpanExporter(endpoint=trace_endpoint)
        self.tracer_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
        trace.set_tracer_provider(self.tracer_provider)

        # httpx instrumentation is initialized separately via
        # _ensure_instrumentation_initialized() so it happens before the
        # embedding client is created

        logger.info(f"OpenTelemetry tracing initialized with endpoint: {trace_endpoint}")

    def log_query(  # noqa: C901
        self,
        tool_name: str,
        query: str | None,
        parameters: dict[str, Any],
        response: dict[str, Any] | None = None,
        error: Exception | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """
        Log a tool or endpoint invocation to OpenTelemetry

        Args:
            tool_name: Name of the tool or endpoint (rerank_results, embed_query, ...)
            query: The query text, if any
            parameters: Request parameters (counts and flags)
            response: The response data (if successful)
            error: The error (if failed)
            metadata: Additional metadata (elapsed time, ...)
        """
        if not self.logging_enabled or not self.otel_logger:
            return

        try:
            # Build structured attributes (LOW CARDINALITY ONLY)
            attributes: dict[str, str | int | float | bool] = {
                "tool.name": tool_name,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

            if parameters.get("candidate_count") is not None:
                attributes["request.candidate_count"] = int(parameters["candidate_count"])
            if parameters.get("batch_size") is not None:
                attributes["request.batch_size"] = int(parameters["batch_size"])
            if parameters.get("precomputed_embedding") is not None:
                attributes["request.precomputed_embedding"] = bool(
                    parameters["precomputed_embedding"]
                )
            if parameters.get("format") is not None:
                attributes["request.format"] = str(parameters["format"])

            success = error is None
            attributes["response.success"] = success

            if metadata and metadata.get("elapsed_ms") is not None:
                attributes["response.elapsed_ms"] = float(metadata["elapsed_ms"])

            if response:
                response_json = json.dumps(response, default=str)
                attributes["response.size_bytes"] = len(response_json)

                if tool_name == "rerank_results" and "results" in response:
                    results = response.get("results", [])
                    attributes["response.result_count"] = len(results)
                    scores = [r.get("score") for r in results if r.get("score") is not None]
                    attributes["response.scored_count"] = len(scores)
                    if scores:
                        attributes["response.top_score"] = float(max(scores))

                elif tool_name == "embed_query" and "queryEmbedding" in response:
                    attributes["response.dimension"] = len(response["queryEmbedding"])

            if error:
                attributes["error.type"] = type(error).__name__
                if isinstance(error, RerankEngineError):
                    attributes["error.code"] = error.code
                    attributes["error.status_code"] = int(error.status_code)
                error_message = str(error)
                if len(error_message) > 500:
                    error_message = error_message[:500] + "..."
                attributes["error.message"] = error_message

            # Build log message (HIGH CARDINALITY DATA GOES HERE)
            log_body_parts = [f"[{tool_name}]", "SUCCESS" if success else "FAILED"]

            if query:
                truncated_query = query if len(query) <= 200 else query[:200] + "..."
                log_body_parts.append(f'query="{truncated_query}"')

                if config.otel_log_full_results:
                    attributes["query.full_text"] = query

            if response and tool_name == "rerank_results":
                results = response.get("results", [])
                log_body_parts.append(f"results={len(results)}")

                if config.otel_log_full_results:
                    ids = [r.get("id") for r in results]
                    attributes["response.result_ids_json"] = json.dumps(ids, default=str)

            if error:
                log_body_parts.append(f"error={type(error).__name__}")

            severity = logging.ERROR if error else logging.INFO

            self.otel_logger.emit(
                body=" ".join(log_body_parts),
                severity_number=SeverityNumber(self._severity_to_number(severity)),
                attributes=attributes,
                timestamp=int(datetime.now(timezone.utc).timestamp() * 1e9),
            )

        except Exception as e:
            # Don't let telemetry errors break the application
            logger.warning(f"Failed to log telemetry: {e}")

    def _severity_to_number(self, level: int) -> int:
        """Convert Python logging level to OpenTelemetry severity number"""
        if level >= logging.CRITICAL:
            return 21  # FATAL
        elif level >= logging.ERROR:
            return 17  # ERROR
        elif level >= logging.WARNING:
            return 13  # WARN
        elif level >= logging.INFO:
            return 9  # INFO
        else:
            return 5  # DEBUG

    def shutdown(self) -> None:
        """Flush and stop the OTel providers"""
        for provider in (self.logger_provider, self.tracer_provider):
            if provider is None:
                continue
            try:
                provider.shutdown()
            except Exception as e:
                logger.warning(f"Failed to shut down telemetry provider: {e}")


# Global telemetry service instance
_telemetry_service: TelemetryService | None = None
_instrumentation_initialized = False


def _ensure_instrumentation_initialized() -> None:
    """Ensure httpx instrumentation is initialized before any client exists"""
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
