"""
OpenTelemetry tracing for Chatter.

When tracing is enabled in the configuration an OTLP exporter is installed;
otherwise the OpenTelemetry API hands out no-op spans, so instrumented code
paths behave the same either way.
"""

import logging
from typing import Dict, Any, Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased


logger = logging.getLogger(__name__)

TRACER_NAME = "chatter"


class TelemetryManager:
    """Manages OpenTelemetry setup and lifecycle."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self._provider: Optional[TracerProvider] = None

    @property
    def enabled(self) -> bool:
        return bool(self.config.get("enabled", False))

    def initialize(self) -> None:
        """Install a tracer provider with OTLP export if tracing is enabled."""
        if not self.enabled:
            logger.debug("Tracing disabled, using no-op tracer")
            return

        if self._provider is not None:
            logger.warning("Telemetry already initialized")
            return

        resource = Resource.create({
            "service.name": self.config.get("service_name", "chatter"),
            "service.version": self.config.get("service_version", "1.0.0"),
            "deployment.environment": self.config.get("environment", "development")
        })

        provider = TracerProvider(
            resource=resource,
            sampler=TraceIdRatioBased(self.config.get("trace_sampling_ratio", 1.0))
        )
        exporter = OTLPSpanExporter(
            endpoint=self.config.get("otlp_endpoint", "http://localhost:4317"),
            timeout=self.config.get("export_timeout", 30)
        )
        provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)
        self._provider = provider

        logger.info(f"OpenTelemetry tracing initialized for service: {self.config.get('service_name', 'chatter')}")

    def shutdown(self) -> None:
        """Flush and shut down the tracer provider."""
        if self._provider is None:
            return
        try:
            self._provider.shutdown()
        except Exception as e:
            logger.error(f"Error shutting down telemetry: {e}")
        finally:
            self._provider = None


_telemetry_manager: Optional[TelemetryManager] = None


def initialize_telemetry(config: Dict[str, Any]) -> TelemetryManager:
    """Initialize global telemetry."""
    global _telemetry_manager
    _telemetry_manager = TelemetryManager(config)
    _telemetry_manager.initialize()
    return _telemetry_manager


def shutdown_telemetry() -> None:
    """Shutdown global telemetry."""
    global _telemetry_manager
    if _telemetry_manager is not None:
        _telemetry_manager.shutdown()
        _telemetry_manager = None


def get_tracer() -> trace.Tracer:
    """Tracer for Chatter spans; a no-op tracer until a provider is installed."""
    return trace.get_tracer(TRACER_NAME)


def turn_span_attributes(session_id: str, provider: str, model: str, agent_enabled: bool) -> Dict[str, Any]:
    """Attributes recorded on the span of a user turn."""
    return {
        "chatter.session_id": session_id,
        "chatter.provider": provider,
        "chatter.model": model,
        "chatter.agent_enabled": agent_enabled
    }
