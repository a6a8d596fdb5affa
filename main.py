"""
Main FastAPI application (entrypoint).

Responsibilities:
- Build the collaborator container once at startup (no ambient singletons)
- Wire the internal router (manual reminder run, scheduler status)
- Register centralized exception handlers
- Provide middleware: request-id logging
- Add health / readiness endpoints
Notes:
- The scheduler loop itself runs in workers/reminder_worker.py; this app only
  triggers one-off runs. Overlap with the worker is safe: the history store
  reservation dedups across processes.
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text
import uvicorn

from api import routes_internal
from config.settings import settings
from core.container import build_container
from core.exception_handlers import register_exception_handlers
from core.logging import configure_logging, request_logging_middleware
from core.response import error, ok
from infra.redis_client import ping as redis_ping


def create_app(container=None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = container is None
        app.state.container = container or build_container(settings)
        try:
            yield
        finally:
            if owned:
                await app.state.container.close()

    app = FastAPI(title=settings.API_TITLE, version=settings.API_VERSION, lifespan=lifespan)
    if container is not None:
        app.state.container = container

    app.include_router(routes_internal.router, prefix="/internal", tags=["internal"])

    # Register centralized exception handlers
    register_exception_handlers(app)

    # Add request logging middleware (adds X-Request-ID header and logs)
    app.middleware("http")(request_logging_middleware)

    @app.get("/health")
    async def health():
        """Simple health endpoint used by load balancers and orchestrators."""
        return ok({"status": "ok"})

    @app.get("/ready")
    async def ready():
        """Readiness: check DB (and Redis history) connectivity if configured."""
        container = app.state.container
        try:
            if container.engine is not None:
                async with container.engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
        except Exception:
            return JSONResponse(status_code=503, content=error(code="db_unreachable", message="DB unavailable"))
        if container.redis is not None and not await redis_ping(container.redis):
            return JSONResponse(status_code=503, content=error(code="redis_unreachable", message="Redis unavailable"))
        return ok({"ready": True})

    return app


configure_logging(settings.LOG_LEVEL)
app = create_app()

if __name__ == "__main__":
    # Run with: python main.py for local dev. For production use uvicorn/gunicorn with workers.
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
