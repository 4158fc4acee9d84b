import logging
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from .config import settings
from .routers import admin, audit_logs, auth as auth_router, elections, results, students, voting
from .database import engine, Base, SessionLocal
from .auth import ensure_superadmin
from .changefeed import feed
from .services.background import SchedulerLoop
from .services.tally import LiveTallyMonitor
from . import models  # noqa: F401  registers the tables on Base

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("awaz")

app = FastAPI(title=settings.PROJECT_NAME, version="1.0.0")


# --- Middleware ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS or ["*"],  # configure properly in prod
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Routers ---
app.include_router(auth_router.router)
app.include_router(voting.router)
app.include_router(elections.router)
app.include_router(students.router)
app.include_router(admin.router)
app.include_router(results.router)
app.include_router(audit_logs.router)


# --- Store errors ---
@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Store error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "The voting service is temporarily unavailable, please retry"},
    )


# --- Root endpoint ---
@app.get("/", tags=["Health"])
def root():
    return {
        "message": "Awaz-e-Talba Voting API",
        "docs_url": "/docs",
        "redoc_url": "/redoc",
    }


# --- Lifecycle Events ---
@app.on_event("startup")
async def startup_event():
    Base.metadata.create_all(bind=engine)

    # Ensure default superadmin exists
    db = SessionLocal()
    try:
        ensure_superadmin(db)
    finally:
        db.close()

    app.state.tally_monitor = None
    if settings.LIVE_TALLY_ENABLED:
        app.state.tally_monitor = LiveTallyMonitor(
            SessionLocal,
            feed,
            poll_seconds=settings.LIVE_TALLY_POLL_SECONDS,
            debounce_seconds=settings.LIVE_TALLY_DEBOUNCE_SECONDS,
        )
        await app.state.tally_monitor.start()

    app.state.scheduler_loop = None
    if settings.SCHEDULER_ENABLED:
        app.state.scheduler_loop = SchedulerLoop(
            SessionLocal,
            interval_seconds=settings.SCHEDULER_INTERVAL_SECONDS,
            timeout_seconds=settings.SCHEDULER_SWEEP_TIMEOUT_SECONDS,
        )
        await app.state.scheduler_loop.start()

    logger.info("🚀 Application startup - %s ready", settings.PROJECT_NAME)


@app.on_event("shutdown")
async def shutdown_event():
    if app.state.scheduler_loop:
        await app.state.scheduler_loop.stop()
    if app.state.tally_monitor:
        await app.state.tally_monitor.stop()
    logger.info("🛑 Application shutdown")


# --- Run with uvicorn (dev only, not for gunicorn/production) ---
if __name__ == "__main__":
    uvicorn.run("awaz.main:app", host="0.0.0.0", port=8000, reload=True)
