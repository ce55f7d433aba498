from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import get_settings, get_environment, set_log_level
from database import init_db
from log_utils import configure_logging
from routers import catalog, tasks as tasks_router
from task_engine import start_engine, stop_engine
import tasks  # noqa: F401 - registers scheduled tasks

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(get_environment().log_level)
    settings = get_settings()
    set_log_level(settings.backend_log_level)

    init_db()
    if settings.is_configured():
        await start_engine()
    else:
        logger.warning("No feed API key configured; catalog reconciliation will not be scheduled")

    yield

    await stop_engine()


app = FastAPI(
    title="Anime Catalog",
    description="Anime catalog built from tracked YouTube channels",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(catalog.router)
app.include_router(tasks_router.router)


# Health check
@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "anime-catalog"}
