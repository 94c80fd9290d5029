"""
codejudge Observability Module.

Provides OpenTelemetry-based metrics for monitoring jobs, sandbox instances
and the API. Supports multiple exporter backends (Prometheus, OTLP, Console).
"""

from codejudge.observability.metrics import (
    # Initialization
    init_metrics,
    shutdown_metrics,
    is_initialized,
    get_meter_provider,
    get_meter,
    ExporterType,
    # Job metrics
    record_job_started,
    record_job_finished,
    record_job_rejected,
    update_queue_size,
    # Instance metrics
    record_instance_provisioned,
    record_instance_destroyed,
    update_live_instances,
    # API metrics
    record_api_request,
)

from codejudge.observability.middleware import MetricsMiddleware

__all__ = [
    "init_metrics",
    "shutdown_metrics",
    "is_initialized",
    "get_meter_provider",
    "get_meter",
    "ExporterType",
    "record_job_started",
    "record_job_finished",
    "record_job_rejected",
    "update_queue_size",
    "record_instance_provisioned",
    "record_instance_destroyed",
    "update_live_instances",
    "record_api_request",
    "MetricsMiddleware",
]
