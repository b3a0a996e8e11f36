"""
Main FastAPI application for the handoff hub.
"""

import asyncio
import contextlib
import time
from contextlib import asynccontextmanager
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest
from starlette.responses import Response

from handoff_hub import __version__
from handoff_hub.api.dependencies import HandoffServices, build_services
from handoff_hub.api.routes import agents_router, realtime_router, sessions_router, transfers_router
from handoff_hub.config import Settings, get_settings
from handoff_hub.core.errors import (
    CapacityExceeded,
    HandoffError,
    NotFoundError,
    OrchestratorError,
    Unauthorized,
    ValidationError,
)
from handoff_hub.utils.metrics import REQUEST_COUNT, REQUEST_LATENCY

logger = structlog.get_logger(__name__)

ERROR_STATUS = {
    ValidationError: 422,
    NotFoundError: 404,
    CapacityExceeded: 409,
    Unauthorized: 401,
    OrchestratorError: 503,
}


def status_for(exc: HandoffError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    services: HandoffServices = app.state.services
    settings = services.settings
    
    logger.info(
        "application_starting",
        environment=settings.environment,
        debug=settings.api.debug
    )
    
    await services.directory.load()
    maintenance = asyncio.create_task(services.orchestrator.run_maintenance_loop())
    
    yield
    
    # Cleanup
    maintenance.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await maintenance
    await services.orchestrator.notifier.drain()
    logger.info("application_shutting_down")


def create_app(
    settings: Settings | None = None,
    services: HandoffServices | None = None,
) -> FastAPI:
    """Create and configure FastAPI application."""
    settings = settings or get_settings()
    
    app = FastAPI(
        title="Handoff Hub API",
        description="""
        Live handoff of support conversations between an AI assistant and human agents.
        
        ## Features
        - Skill and capacity aware agent matching
        - Accept / decline / reroute transfer workflow
        - Waiting queue with automatic reconciliation
        - Real-time agent and customer messaging (WebSocket)
        """,
        version=__version__,
        docs_url="/docs" if settings.api.debug else None,
        redoc_url="/redoc" if settings.api.debug else None,
        lifespan=lifespan
    )
    app.state.services = services or build_services(settings)
    
    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    
    # Request logging and metrics middleware
    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID", str(uuid4()))
        
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                request_id=request_id,
                method=request.method,
                path=request.url.path,
                error=str(e)
            )
            raise
        
        # Record metrics against the route template, not the raw path
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        latency = time.time() - start_time
        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code
        ).inc()
        REQUEST_LATENCY.labels(
            method=request.method,
            endpoint=endpoint
        ).observe(latency)
        
        logger.info(
            "request_completed",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            latency_ms=int(latency * 1000)
        )
        
        response.headers["X-Request-ID"] = request_id
        return response
    
    # Exception handlers
    @app.exception_handler(HandoffError)
    async def handoff_error_handler(request: Request, exc: HandoffError):
        status = status_for(exc)
        log = logger.error if status >= 500 else logger.info
        log("request_rejected", path=request.url.path, code=exc.code, error=exc.message)
        return JSONResponse(
            status_code=status,
            content={"detail": exc.message, "code": exc.code}
        )
    
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            error=str(exc),
            exc_info=True
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "code": "internal_error"}
        )
    
    # Health check endpoints
    @app.get("/health")
    async def health_check():
        """Basic health check."""
        return {"status": "healthy"}
    
    @app.get("/health/ready")
    async def readiness_check(request: Request):
        """Readiness check with dependency validation."""
        services: HandoffServices = request.app.state.services
        checks = {
            "api": True,
            "agent_directory": services.directory.stats()["agents"]["total"] > 0,
        }
        
        all_healthy = all(checks.values())
        return {
            "status": "ready" if all_healthy else "not_ready",
            "checks": checks
        }
    
    @app.get("/health/live")
    async def liveness_check():
        """Liveness check."""
        return {"status": "alive"}
    
    # Metrics endpoint
    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(
            content=generate_latest(),
            media_type="text/plain"
        )
    
    # Include routers
    app.include_router(sessions_router, prefix="/api/v1")
    app.include_router(transfers_router, prefix="/api/v1")
    app.include_router(agents_router, prefix="/api/v1")
    app.include_router(realtime_router)
    
    return app


# Application instance
app = create_app()
