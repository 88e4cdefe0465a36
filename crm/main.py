import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from .config import settings
from .db import Base, SessionLocal, engine, utcnow
from .errors import register_exception_handlers
from .logging import RequestIdMiddleware, setup_logging
from .models import models  # noqa: F401  (registers tables on Base.metadata)
from .auth.router import router as auth_router
from .routes.calendar import router as calendar_router
from .routes.chat import router as chat_router
from .routes.companies import router as companies_router
from .routes.dashboard import router as dashboard_router
from .routes.files import router as files_router
from .routes.notifications import router as notifications_router
from .routes.projects import router as projects_router
from .routes.quotes import router as quotes_router
from .routes.realtime import router as realtime_router
from .routes.reports import router as reports_router
from .routes.settings import router as settings_router
from .routes.tasks import router as tasks_router
from .routes.teams import router as teams_router
from .routes.timesheets import router as timesheets_router
from .routes.users import router as users_router
from .seed import run_seed
from .services.realtime import hub


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()] or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    register_exception_handlers(app)

    # Routers
    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(companies_router)
    app.include_router(projects_router)
    app.include_router(tasks_router)
    app.include_router(timesheets_router)
    app.include_router(quotes_router)
    app.include_router(chat_router)
    app.include_router(files_router)
    app.include_router(calendar_router)
    app.include_router(teams_router)
    app.include_router(settings_router)
    app.include_router(notifications_router)
    app.include_router(dashboard_router)
    app.include_router(reports_router)
    app.include_router(realtime_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/api/health")
    def health():
        return {"status": "OK", "timestamp": utcnow().isoformat()}

    @app.on_event("startup")
    def _startup():
        print("[startup] Initializing application...")
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            db_dir = os.path.dirname(settings.database_url.replace("sqlite:///./", ""))
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
        os.makedirs(settings.upload_dir, exist_ok=True)
        if not settings.auto_create_db:
            print("[startup] AUTO_CREATE_DB disabled, skipping schema and seed")
            return
        print("[startup] Creating missing tables...")
        Base.metadata.create_all(bind=engine)
        print("[startup] Seeding permissions, admin and settings...")
        db = SessionLocal()
        try:
            result = run_seed(db)
            print(f"[startup] Seed done: {result}")
        except Exception as e:
            print(f"[startup] Could not seed database: {e}")
        finally:
            db.close()

    @app.on_event("shutdown")
    async def _shutdown():
        await hub.clear()

    return app


app = create_app()
