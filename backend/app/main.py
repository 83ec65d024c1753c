import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.middleware.logging_config import configure_json_logging

# Configure logging so errors are visible in container logs
if settings.log_format == "json":
    configure_json_logging(settings.log_level)
else:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
from app.api.pipelines import router as pipelines_router
from app.api.algorithms import router as algorithms_router
from app.api.monitoring import router as monitoring_router
from app.api.abtests import router as abtests_router
from app.api.metrics import router as metrics_router
from app.middleware.request_context import get_request_id
from app.orchestration.errors import OrchestrationError
from app.orchestration.services import OrchestrationServices


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: tests may pre-install a container built around a fake executor
    services = getattr(app.state, "services", None)
    owned = services is None
    if owned:
        services = OrchestrationServices(settings)
        app.state.services = services
    services.start()
    yield
    # Shutdown
    await services.stop()
    if owned:
        del app.state.services


app = FastAPI(
    title="Algorithm Orchestration Service",
    description="Pipelines, registry, monitoring and A/B testing for platform algorithms",
    version="0.1.0",
    lifespan=lifespan,
)

# ── CORS (tightened) ─────────────────────────────────────────────────────────
origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-Correlation-ID"],
)

# ── Request context middleware (request ID + timing) ─────────────────────────
from app.middleware.request_context import RequestContextMiddleware  # noqa: E402

app.add_middleware(RequestContextMiddleware)

# ── Prometheus metrics middleware ────────────────────────────────────────────
from app.middleware.metrics import PrometheusMiddleware  # noqa: E402

app.add_middleware(PrometheusMiddleware)


@app.exception_handler(OrchestrationError)
async def orchestration_exception_handler(request: Request, exc: OrchestrationError):
    """Map the orchestration error hierarchy to status codes in one place."""
    level = logging.WARNING if exc.status_code >= 500 else logging.INFO
    logging.getLogger("app").log(
        level, "%s on %s %s: %s", exc.error_type, request.method, request.url.path, exc.message,
    )
    content = {
        "detail": exc.message,
        "error_type": exc.error_type,
        "correlation_id": get_request_id() or None,
    }
    if exc.details:
        content["context"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return detailed error info in development mode so 500s are debuggable."""
    tb = traceback.format_exc()
    logging.getLogger("app").error(
        "Unhandled %s on %s %s: %s\n%s",
        type(exc).__name__, request.method, request.url.path, exc, tb,
    )
    detail = f"{type(exc).__name__}: {exc}"
    if settings.environment == "development":
        return JSONResponse(
            status_code=500,
            content={"detail": detail, "traceback": tb.splitlines()[-5:]},
        )
    return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


# Register API routers
app.include_router(pipelines_router)
app.include_router(algorithms_router)
app.include_router(monitoring_router)
app.include_router(abtests_router)
app.include_router(metrics_router)


# ── Health check ─────────────────────────────────────────────────────────────

@app.get("/api/health")
async def health_check(request: Request):
    services: OrchestrationServices | None = getattr(request.app.state, "services", None)
    components: dict = {}

    if services is None:
        return {"status": "starting", "environment": settings.environment, "components": components}

    # Store backend
    if services.stores.backend == "redis":
        try:
            await services.stores.ping()
            components["store"] = {"status": "connected", "backend": "redis"}
        except Exception as exc:
            components["store"] = {"status": "disconnected", "backend": "redis", "error": str(exc)}
    else:
        components["store"] = {"status": "connected", "backend": "memory"}

    components["pipelines"] = {
        "active": len(services.pipelines.get_active_executions()),
        "queued": len(services.pipelines.get_queued_executions()),
        "max_concurrent": services.pipelines.max_concurrent,
    }
    components["monitoring"] = {
        "algorithms_tracked": len(services.monitoring.tracked_algorithms()),
        "active_alerts": len(await services.monitoring.get_active_alerts()),
    }

    overall = "healthy" if components["store"]["status"] == "connected" else "degraded"
    return {
        "status": overall,
        "environment": settings.environment,
        "components": components,
    }
