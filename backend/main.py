from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn
import logging
from contextlib import asynccontextmanager
from typing import Optional

from gradesync.core.config import EngineConfig, settings
from gradesync.core.database import AsyncSessionLocal, init_db
from gradesync.api.v1 import grade_sync
from gradesync.integrations.canvas.client import CanvasClient
from gradesync.services.grade_sync.run_store import RunStore, scope_key_for_course
from gradesync.services.grade_sync.status import CompositeStatusReporter, LoggingStatusReporter
from gradesync.tasks.grade_sync_tasks import GradeSyncTaskManager
from gradesync.websocket.status_updates import BroadcastStatusReporter, manager

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)


def canvas_client_factory(token: Optional[str] = None) -> CanvasClient:
    # A caller's bearer token wins over the configured service token
    return CanvasClient(
        settings.CANVAS_BASE_URL,
        token or settings.CANVAS_API_TOKEN,
        timeout=settings.CANVAS_TIMEOUT,
        per_page=settings.CANVAS_PER_PAGE
    )


def status_reporter_factory(course_id: str) -> CompositeStatusReporter:
    return CompositeStatusReporter(
        LoggingStatusReporter(scope_key_for_course(course_id)),
        BroadcastStatusReporter(manager, course_id)
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Initialize database
    await init_db()

    task_manager = GradeSyncTaskManager(
        RunStore(AsyncSessionLocal),
        EngineConfig.from_settings(settings),
        client_factory=canvas_client_factory,
        reporter_factory=status_reporter_factory,
        resume_on_startup=settings.RESUME_ON_STARTUP
    )
    app.state.task_manager = task_manager
    await task_manager.start()

    yield

    await task_manager.stop()


app = FastAPI(
    title="Grade Sync Engine API",
    description="Synchronizes computed outcome averages to Canvas",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(grade_sync.router, prefix="/api/v1/grade-sync", tags=["grade-sync"])

# WebSocket endpoints
app.websocket("/ws/grade-sync/{course_id}")(manager.websocket_endpoint)


@app.get("/")
async def root():
    return {"message": "Grade Sync Engine API", "status": "running"}


@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": "1.0.0"}


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "status_code": exc.status_code}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.error(f"Unhandled error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "status_code": 500}
    )


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info" if not settings.DEBUG else "debug"
    )
