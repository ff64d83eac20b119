from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import get_settings, get_log_level_from_env, set_log_level
from database import init_db
from job_runner import JobService
from job_sweeper import start_sweeper, stop_sweeper
from log_utils import configure_logging
from routers import epg, jobs

configure_logging(get_log_level_from_env())
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    set_log_level(get_settings().backend_log_level)
    try:
        JobService().kill_stuck_jobs_on_startup()
    except Exception as e:
        logger.error(f"Failed to clean up stuck jobs on startup: {e}")
    await start_sweeper()
    yield
    await stop_sweeper()


app = FastAPI(
    title="Feed Ingest",
    description="Resumable ingestion of provider playlists and XMLTV guides",
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

app.include_router(jobs.router)
app.include_router(epg.router)


# Health check
@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "feed-ingest"}
