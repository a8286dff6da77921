import os
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
import structlog

from .config import settings
from .db import Base, engine
from .errors import WorkflowError
from .logging import setup_logging, RequestIdMiddleware
from .models import models  # noqa: F401  registers tables on Base.metadata
from .routes.projects import router as projects_router
from .routes.reclamations import router as reclamations_router
from .routes.invoices import router as invoices_router


log = structlog.get_logger(__name__)

ERROR_STATUS = {
    "NOT_FOUND": 404,
    "VALIDATION_ERROR": 400,
    "FORBIDDEN": 403,
    "INVALID_STATE_TRANSITION": 409,
    "CONCURRENT_MODIFICATION": 409,
    "UPSTREAM_ERROR": 502,
    "IMMUTABLE_RECORD": 409,
}


async def workflow_error_handler(request: Request, exc: WorkflowError):
    status_code = ERROR_STATUS.get(exc.code, 400)
    if status_code >= 500:
        log.warning("request.upstream_failed", path=request.url.path, code=exc.code, detail=exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_exception_handler(WorkflowError, workflow_error_handler)

    # Routers
    app.include_router(projects_router)
    app.include_router(reclamations_router)
    app.include_router(invoices_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.on_event("startup")
    def _startup():
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
        log.info("startup.complete", environment=settings.environment)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
