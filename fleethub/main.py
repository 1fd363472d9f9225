from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

import structlog

from .config import settings
from .db import Base, engine, SessionLocal
from .errors import AuthenticationFailure, PersistenceFailure
from .logging import setup_logging, RequestIdMiddleware
from .models import models  # noqa: F401  register tables on Base.metadata
from .routes.users import router as users_router
from .routes.work_orders import router as work_orders_router

logger = structlog.get_logger(__name__)


def ensure_tables(bind=engine) -> list:
    """Create the tables missing from the database and return their names."""
    existing = set(inspect(bind).get_table_names())
    missing = [t for t in Base.metadata.sorted_tables if t.name not in existing]
    if missing:
        Base.metadata.create_all(bind=bind, tables=missing)
    return [t.name for t in missing]


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
        expose_headers=["X-Request-ID"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # Store and resolver failures that escape a route
    @app.exception_handler(PersistenceFailure)
    async def _persistence_failure(request: Request, exc: PersistenceFailure):
        rejected = exc.as_rejection()
        return JSONResponse(status_code=rejected.status_code, content={"detail": rejected.as_dict()})

    @app.exception_handler(AuthenticationFailure)
    async def _authentication_failure(request: Request, exc: AuthenticationFailure):
        return JSONResponse(
            status_code=401,
            content={"detail": {"error": "authentication_failure", "reason": exc.reason}},
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Routers
    app.include_router(work_orders_router)
    app.include_router(users_router)

    # Metrics
    Instrumentator(excluded_handlers=["/healthz", "/metrics"]).instrument(app).expose(app)

    @app.get("/healthz")
    def healthz():
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
            database = "ok"
        except SQLAlchemyError as e:
            logger.warning("healthz_db_unavailable", error=str(e))
            database = "unavailable"
        finally:
            db.close()
        return {
            "status": "ok" if database == "ok" else "degraded",
            "database": database,
            "environment": settings.environment,
        }

    @app.on_event("startup")
    def _startup():
        if settings.auto_create_db:
            try:
                created = ensure_tables()
            except SQLAlchemyError as e:
                logger.error("startup_create_tables_failed", error=str(e))
                raise
            if created:
                logger.info("startup_tables_created", tables=created)
        logger.info("startup", app=settings.app_name, environment=settings.environment)

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
