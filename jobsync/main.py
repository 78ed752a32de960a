import os

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from .config import settings
from .db import Base, SessionLocal, engine
from .errors import register_exception_handlers
from .logging import RequestIdMiddleware, setup_logging
from .routes.activity import router as activity_router
from .routes.assignments import router as assignments_router
from .routes.chat import router as chat_router
from .routes.deadlines import router as deadlines_router
from .routes.events import router as events_router
from .routes.notifications import router as notifications_router
from .routes.status_requests import router as status_requests_router
from .services import alerts
from .services.deadlines import DeadlineScanner, DeadlineScheduler
from .services.fanout import bus


log = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    origins = [o.strip() for o in (settings.cors_origins or "*").split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
    register_exception_handlers(app)

    # Routers
    app.include_router(activity_router)
    app.include_router(notifications_router)
    app.include_router(status_requests_router)
    app.include_router(assignments_router)
    app.include_router(chat_router)
    app.include_router(deadlines_router)
    app.include_router(events_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health():
        return {"status": "ok", "subscribers": bus.subscriber_count}

    @app.on_event("startup")
    async def _startup():
        log.info("startup", environment=settings.environment)
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
        bus.alert_policy = alerts.make_alert_policy(SessionLocal)
        if settings.deadline_scheduler_enabled:
            scheduler = DeadlineScheduler(DeadlineScanner(SessionLocal))
            scheduler.start()
            app.state.deadline_scheduler = scheduler
            log.info("deadline_scheduler_started", interval_seconds=scheduler.interval_seconds)

    @app.on_event("shutdown")
    async def _shutdown():
        scheduler = getattr(app.state, "deadline_scheduler", None)
        if scheduler is not None:
            await scheduler.stop()
        bus.close_all()
        log.info("shutdown")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("jobsync.main:app", host=settings.host, port=settings.port)
