"""
FastAPI server for codejudge.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from codejudge.config.settings import JudgeConfig
from codejudge.core.orchestrator import Orchestrator
from codejudge.api.routes import execution
from codejudge.api.dependencies import set_orchestrator
from codejudge.observability import (
    init_metrics,
    shutdown_metrics,
    MetricsMiddleware,
)


class OrchestratorManager:
    _instance: Optional[Orchestrator] = None

    @classmethod
    def initialize(
        cls,
        config: Optional[JudgeConfig] = None,
        orchestrator: Optional[Orchestrator] = None,
    ) -> Orchestrator:
        if cls._instance is None:
            cls._instance = orchestrator or Orchestrator(config)
            cls._instance.initialize()
        return cls._instance

    @classmethod
    def get(cls) -> Orchestrator:
        if cls._instance is None:
            raise RuntimeError("Orchestrator not initialized")
        return cls._instance

    @classmethod
    def cleanup(cls) -> None:
        if cls._instance is not None:
            cls._instance.cleanup()
            cls._instance = None
        set_orchestrator(None)


def get_orchestrator() -> Orchestrator:
    return OrchestratorManager.get()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    OrchestratorManager.cleanup()
    shutdown_metrics()


def create_app(
    config: Optional[JudgeConfig] = None,
    orchestrator: Optional[Orchestrator] = None,
    metrics_enabled: bool = True,
    metrics_exporter: str = "prometheus",
    metrics_endpoint: Optional[str] = None,
) -> FastAPI:
    """
    Create and configure the codejudge FastAPI application.

    Args:
        config: Orchestrator configuration (ignored when ``orchestrator`` is given)
        orchestrator: Pre-built orchestrator to serve, mainly for tests
        metrics_enabled: Whether to enable metrics collection
        metrics_exporter: Metrics exporter type ("prometheus", "otlp", "otlp_http", "console")
        metrics_endpoint: OTLP endpoint URL (required for otlp/otlp_http exporters)

    Returns:
        Configured FastAPI application
    """
    orchestrator = OrchestratorManager.initialize(config, orchestrator)
    set_orchestrator(orchestrator)

    app = FastAPI(
        title="codejudge API",
        description="Sandboxed multi-language code execution",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(execution.router)

    if metrics_enabled:
        exporter_kwargs = {}
        if metrics_endpoint and metrics_exporter in ("otlp", "otlp_http"):
            exporter_kwargs["endpoint"] = metrics_endpoint

        init_metrics(
            service_name="codejudge",
            exporter_type=metrics_exporter,
            **exporter_kwargs,
        )

        app.add_middleware(MetricsMiddleware)

        # Add /metrics endpoint for Prometheus scraping
        if metrics_exporter == "prometheus":
            @app.get("/metrics", include_in_schema=False)
            async def metrics():
                """Expose Prometheus metrics via OpenTelemetry."""
                from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
                return Response(
                    content=generate_latest(),
                    media_type=CONTENT_TYPE_LATEST,
                )

    return app
