"""
OpenTelemetry metrics definitions for codejudge.

This module provides metrics instrumentation using OpenTelemetry SDK,
with configurable exporter backends (Prometheus, OTLP, Console, etc.).
Every recording helper is a no-op until ``init_metrics`` has been called.
"""

from typing import Optional, List
from enum import Enum


class ExporterType(str, Enum):
    """Supported metrics exporter types."""
    PROMETHEUS = "prometheus"
    OTLP = "otlp"
    OTLP_HTTP = "otlp_http"
    CONSOLE = "console"
    NONE = "none"  # For testing or disabled metrics


# Global state
_meter = None
_meter_provider = None
_initialized = False

# Metric instruments
_job_counter = None
_job_duration = None
_job_in_progress = None
_admission_queue_size = None
_admission_rejected = None

_instance_counter = None
_live_instances = None

_api_request_counter = None
_api_request_duration = None

# State for observable gauges
_current_queue_size: int = 0
_current_live_instances: int = 0


def _queue_size_callback(options):
    """Callback for admission queue size observable gauge."""
    from opentelemetry.metrics import Observation
    yield Observation(_current_queue_size)


def _live_instances_callback(options):
    """Callback for live instance observable gauge."""
    from opentelemetry.metrics import Observation
    yield Observation(_current_live_instances)


def _create_exporter(
    exporter_type: ExporterType,
    **kwargs,
):
    """
    Create a metric reader based on the exporter type.

    Args:
        exporter_type: Type of exporter to create
        **kwargs: Additional arguments for the exporter
            - endpoint: OTLP endpoint URL
            - headers: OTLP headers dict
            - export_interval_millis: Export interval for periodic exporters

    Returns:
        A metric reader instance
    """
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader

    export_interval = kwargs.pop("export_interval_millis", 10000)

    if exporter_type == ExporterType.PROMETHEUS:
        from opentelemetry.exporter.prometheus import PrometheusMetricReader
        return PrometheusMetricReader()

    elif exporter_type == ExporterType.OTLP:
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
        exporter = OTLPMetricExporter(**kwargs)
        return PeriodicExportingMetricReader(
            exporter,
            export_interval_millis=export_interval,
        )

    elif exporter_type == ExporterType.OTLP_HTTP:
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        exporter = OTLPMetricExporter(**kwargs)
        return PeriodicExportingMetricReader(
            exporter,
            export_interval_millis=export_interval,
        )

    elif exporter_type == ExporterType.CONSOLE:
        from opentelemetry.sdk.metrics.export import ConsoleMetricExporter
        exporter = ConsoleMetricExporter()
        return PeriodicExportingMetricReader(
            exporter,
            export_interval_millis=export_interval,
        )

    elif exporter_type == ExporterType.NONE:
        return None

    else:
        raise ValueError(f"Unknown exporter type: {exporter_type}")


def init_metrics(
    service_name: str = "codejudge",
    exporter_type: str | ExporterType = ExporterType.PROMETHEUS,
    additional_exporters: Optional[List[tuple]] = None,
    **exporter_kwargs,
):
    """
    Initialize OpenTelemetry metrics with the specified exporter(s).

    Args:
        service_name: Name of the service for resource identification
        exporter_type: Primary exporter type ("prometheus", "otlp", "otlp_http", "console", "none")
        additional_exporters: List of (exporter_type, kwargs) tuples for additional exporters
        **exporter_kwargs: Additional arguments for the primary exporter

    Returns:
        The configured MeterProvider

    Example:
        # Prometheus only (default)
        init_metrics()

        # OTLP gRPC
        init_metrics(exporter_type="otlp", endpoint="http://localhost:4317")
    """
    global _meter, _meter_provider, _initialized
    global _job_counter, _job_duration, _job_in_progress
    global _admission_queue_size, _admission_rejected
    global _instance_counter, _live_instances
    global _api_request_counter, _api_request_duration

    if _initialized:
        return _meter_provider

    from opentelemetry import metrics
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.resources import Resource, SERVICE_NAME

    if isinstance(exporter_type, str):
        exporter_type = ExporterType(exporter_type)

    resource = Resource.create({SERVICE_NAME: service_name})

    readers = []
    primary_reader = _create_exporter(exporter_type, **exporter_kwargs)
    if primary_reader is not None:
        readers.append(primary_reader)

    if additional_exporters:
        for exp_type, exp_kwargs in additional_exporters:
            if isinstance(exp_type, str):
                exp_type = ExporterType(exp_type)
            reader = _create_exporter(exp_type, **exp_kwargs)
            if reader is not None:
                readers.append(reader)

    _meter_provider = MeterProvider(resource=resource, metric_readers=readers)
    metrics.set_meter_provider(_meter_provider)

    _meter = metrics.get_meter("codejudge.metrics", version="0.1.0")

    # Job metrics
    _job_counter = _meter.create_counter(
        name="codejudge_job_total",
        description="Total number of finished jobs by language and outcome",
        unit="1",
    )

    _job_duration = _meter.create_histogram(
        name="codejudge_job_duration_seconds",
        description="End-to-end job duration in seconds",
        unit="s",
    )

    _job_in_progress = _meter.create_up_down_counter(
        name="codejudge_job_in_progress",
        description="Number of jobs currently held by an execution controller",
        unit="1",
    )

    _admission_queue_size = _meter.create_observable_gauge(
        name="codejudge_admission_queue_size",
        description="Number of jobs waiting in the admission queue",
        unit="1",
        callbacks=[_queue_size_callback],
    )

    _admission_rejected = _meter.create_counter(
        name="codejudge_admission_rejected_total",
        description="Jobs rejected because the admission queue was full",
        unit="1",
    )

    # Instance metrics
    _instance_counter = _meter.create_counter(
        name="codejudge_instance_total",
        description="Sandbox instances provisioned and destroyed",
        unit="1",
    )

    _live_instances = _meter.create_observable_gauge(
        name="codejudge_live_instances",
        description="Number of live sandbox instances",
        unit="1",
        callbacks=[_live_instances_callback],
    )

    # API metrics
    _api_request_counter = _meter.create_counter(
        name="codejudge_api_request_total",
        description="Total number of API requests",
        unit="1",
    )

    _api_request_duration = _meter.create_histogram(
        name="codejudge_api_request_duration_seconds",
        description="API request duration in seconds",
        unit="s",
    )

    _initialized = True
    return _meter_provider


def shutdown_metrics() -> None:
    """Shutdown the meter provider and flush metrics."""
    global _meter_provider, _initialized
    if _meter_provider is not None:
        _meter_provider.shutdown()
        _meter_provider = None
        _initialized = False


def is_initialized() -> bool:
    """Check if metrics have been initialized."""
    return _initialized


def get_meter_provider():
    """Get the current meter provider."""
    return _meter_provider


def get_meter():
    """Get the current meter instance."""
    return _meter


# =============================================================================
# Job Metrics Helper Functions
# =============================================================================


def record_job_started(language: str) -> None:
    """Record a job entering an execution controller."""
    if _job_in_progress is not None:
        _job_in_progress.add(1, {"language": language})


def record_job_finished(language: str, outcome: str, duration: float) -> None:
    """Record a job's terminal outcome."""
    if _job_counter is not None:
        _job_counter.add(1, {"language": language, "outcome": outcome})
    if _job_duration is not None:
        _job_duration.record(duration, {"language": language, "outcome": outcome})
    if _job_in_progress is not None:
        _job_in_progress.add(-1, {"language": language})


def record_job_rejected(reason: str) -> None:
    """Record a job refused at admission."""
    if _admission_rejected is not None:
        _admission_rejected.add(1, {"reason": reason})


def update_queue_size(size: int) -> None:
    """Update the admission queue size."""
    global _current_queue_size
    _current_queue_size = size


# =============================================================================
# Instance Metrics Helper Functions
# =============================================================================


def record_instance_provisioned(language: str) -> None:
    if _instance_counter is not None:
        _instance_counter.add(1, {"language": language, "event": "provisioned"})


def record_instance_destroyed(language: str) -> None:
    if _instance_counter is not None:
        _instance_counter.add(1, {"language": language, "event": "destroyed"})


def update_live_instances(count: int) -> None:
    """Update the live instance count."""
    global _current_live_instances
    _current_live_instances = count


# =============================================================================
# API Metrics Helper Functions
# =============================================================================


def record_api_request(method: str, endpoint: str, status_code: int, duration: float) -> None:
    """Record an API request."""
    attributes = {
        "method": method,
        "endpoint": endpoint,
        "status_code": str(status_code),
    }
    if _api_request_counter is not None:
        _api_request_counter.add(1, attributes)
    if _api_request_duration is not None:
        _api_request_duration.record(duration, {"method": method, "endpoint": endpoint})
