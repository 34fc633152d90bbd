"""
REST API module for the JMA warning watcher.

Read-only monitoring endpoints for:
- Warnings currently in effect per region
- Report archive history
- Cycle results and scheduler health

The lifespan wires database, feed client, watcher and scheduler together.
"""

import logging
import os
from typing import List, Optional
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .client import FeedClient
from .config import Settings
from .database import Database
from .scheduler import FAILURE_WARNING_THRESHOLD, WarningScheduler
from .watcher import WarningWatcher

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


# =============================================================================
# Pydantic Models
# =============================================================================

class CityWarning(BaseModel):
    id: int
    region: str
    city: str
    kind: str
    kind_code: Optional[str]
    status: str
    raw_text: str
    report_file: Optional[str]
    created_at: str
    updated_at: str


class ArchiveEntry(BaseModel):
    id: int
    region: str
    filename: str
    report_url: Optional[str]
    content_hash: str
    retrieved_at: str
    checked_at: str
    parse_ok: bool
    error: Optional[str]


class CycleResultModel(BaseModel):
    region: str
    outcome: str
    success: bool
    notifications: int
    mutations: int
    error_message: Optional[str]
    report_file: Optional[str]
    fetch_time: str
    duration_ms: int


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    database: str
    scheduler: str
    risks: List[str]


# =============================================================================
# Global State
# =============================================================================

settings: Optional[Settings] = None
db: Optional[Database] = None
scheduler: Optional[WarningScheduler] = None
start_time: Optional[datetime] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global settings, db, scheduler, start_time

    logger.info("Starting JMA warning watcher...")
    start_time = datetime.now(timezone.utc)
    settings = Settings.from_env()

    db = Database(settings.db_path)
    client = FeedClient(db, feed_url=settings.feed_url, timeout=settings.http_timeout)
    watcher = WarningWatcher(db, client, retention_days=settings.retention_days)
    scheduler = WarningScheduler(
        watcher,
        settings.targets,
        poll_interval=settings.poll_interval_minutes,
        cleanup_hour=settings.cleanup_hour
    )

    logger.info("Performing initial check...")
    scheduler.check_all()

    scheduler.start()

    yield

    # Shutdown
    logger.info("Shutting down...")
    if scheduler:
        scheduler.stop()
    client.close()
    if db:
        db.close()
    logger.info("Shutdown complete")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="JMA Warning Watch API",
    description="Municipality-level weather warnings from the JMA XML feed",
    version=API_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Utility Functions
# =============================================================================

def detect_risks() -> List[str]:
    """Detect system risks."""
    if not db or not scheduler:
        return ["System not initialized"]

    risks = []
    if not scheduler.is_running:
        risks.append("Scheduler not running")

    for region, failures in scheduler.get_failure_counts().items():
        if failures >= FAILURE_WARNING_THRESHOLD:
            risks.append(f"Region failing repeatedly: {region}")

    cleanup = scheduler.get_last_cleanup()
    if cleanup and not cleanup.success:
        risks.append("Last cleanup failed")

    return risks


def get_uptime() -> str:
    """Get formatted uptime string."""
    if not start_time:
        return "N/A"
    delta = datetime.now(timezone.utc) - start_time
    hours, remainder = divmod(int(delta.total_seconds()), 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours}h {minutes}m {seconds}s"


# =============================================================================
# API Endpoints - Info
# =============================================================================

@app.get("/", tags=["Info"])
async def root():
    """API information."""
    return {
        "name": "JMA Warning Watch API",
        "version": API_VERSION,
        "regions": sorted(scheduler.targets) if scheduler else [],
    }


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint."""
    risks = detect_risks()

    return HealthResponse(
        status="healthy" if not risks else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat(),
        database="connected" if db else "disconnected",
        scheduler="running" if scheduler and scheduler.is_running else "stopped",
        risks=risks
    )


# =============================================================================
# API Endpoints - Warnings & Reports
# =============================================================================

@app.get("/warnings", response_model=List[CityWarning], tags=["Warnings"])
async def get_warnings(region: Optional[str] = Query(default=None, description="Observatory name")):
    """Get warnings currently in effect."""
    if not db:
        raise HTTPException(status_code=503, detail="Database not available")

    return [CityWarning(**w) for w in db.get_active_warnings(region)]


@app.get("/reports/{region}", response_model=List[ArchiveEntry], tags=["Reports"])
async def get_reports(region: str, limit: int = Query(default=20, ge=1, le=100)):
    """Get archived reports of a region, newest first."""
    if not db:
        raise HTTPException(status_code=503, detail="Database not available")

    entries = db.get_archive_entries(region, limit)
    if not entries and not (scheduler and region in scheduler.targets):
        raise HTTPException(status_code=404, detail=f"Unknown region: {region}")

    return [ArchiveEntry(**e) for e in entries]


# =============================================================================
# API Endpoints - Cycles
# =============================================================================

@app.get("/cycles", response_model=List[CycleResultModel], tags=["Cycles"])
async def get_cycle_results():
    """Get the last cycle result of each region."""
    if not scheduler:
        raise HTTPException(status_code=503, detail="Scheduler not available")

    return [CycleResultModel(**r.__dict__) for r in scheduler.get_last_results()]


@app.post("/cycles", response_model=List[CycleResultModel], tags=["Cycles"])
async def trigger_cycles():
    """Run a cycle for every configured region now."""
    if not scheduler:
        raise HTTPException(status_code=503, detail="Scheduler not available")

    results = scheduler.check_all()
    return [CycleResultModel(**r.__dict__) for r in results]


@app.get("/status", tags=["Status"])
async def get_status():
    """Get data summary and scheduler status."""
    if not db or not scheduler:
        raise HTTPException(status_code=503, detail="Service not initialized")

    return {
        "uptime": get_uptime(),
        "summary": db.get_data_summary(),
        "cursors": db.get_cursors(),
        "scheduler": scheduler.get_scheduler_status(),
        "risks": detect_risks(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "jma_watch.api:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("DEBUG", "false").lower() == "true"
    )
