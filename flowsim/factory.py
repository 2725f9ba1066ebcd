"""Builds the FastAPI application around a configured simulator."""

from contextlib import asynccontextmanager
from typing import Any, Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import AppConfig, get_config, validate_config
from .core.handler_registry import NodeHandlerRegistry, get_default_registry
from .core.http_client import create_http_client
from .core.logging import setup_logging
from .core.middleware import (
    ErrorHandlingMiddleware,
    PerformanceMonitoringMiddleware,
    RequestLoggingMiddleware,
)
from .core.simulator import WorkflowSimulator
from .api.endpoints import router, init_dependencies


class ApplicationState:
    """Components created at startup, kept for the health endpoint and tests."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.registry: Optional[NodeHandlerRegistry] = None
        self.simulator: Optional[WorkflowSimulator] = None
        self.http_client: Any = None


app_state = ApplicationState()


def build_simulator(config: AppConfig) -> WorkflowSimulator:
    """Wire the default handler registry and the configured HTTP transport into a simulator."""
    simulator = WorkflowSimulator(
        registry=get_default_registry(),
        http_client=create_http_client(config.http_mode),
        config=config,
    )
    app_state.config = config
    app_state.registry = simulator.registry
    app_state.http_client = simulator.runtime.http_client
    app_state.simulator = simulator
    return simulator


def create_lifespan_handler(config: AppConfig):

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )

        try:
            simulator = build_simulator(config)
        except Exception as e:
            logger.error(f"Could not start {config.app_name}: {e}")
            raise
        init_dependencies(simulator=simulator, registry=simulator.registry)
        logger.info(
            f"{config.app_name} v{config.app_version} ready: "
            f"{len(simulator.registry.list_handlers())} handlers, http_mode={config.http_mode.value}, "
            f"step_ceiling={config.step_ceiling}"
        )

        yield

        close = getattr(simulator.runtime.http_client, "close", None)
        if close is not None:
            close()
        logger.info(f"{config.app_name} stopped")

    return lifespan


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create the API application.

    Args:
        config: Settings to use; read from the environment when omitted

    Raises:
        ValueError: If ``validate_config`` rejects the settings
    """
    config = config or get_config()
    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Simulates visual workflow graphs with mocked side effects and validates their structure",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    # added last runs first: error handling wraps the timing and debug middleware
    if config.enable_performance_monitoring:
        app.add_middleware(RequestLoggingMiddleware)
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
    app.add_middleware(ErrorHandlingMiddleware)

    app.include_router(router)
    add_health_endpoints(app, config)
    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:

    @app.get("/")
    async def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Liveness plus the HTTP transport and handler count in use."""
        return {
            "status": "healthy",
            "service": config.app_name.lower().replace(" ", "-"),
            "version": config.app_version,
            "http_mode": config.http_mode.value,
            "handlers": len(app_state.registry.list_handlers()) if app_state.registry else 0
        }


def get_app_state() -> ApplicationState:
    return app_state
