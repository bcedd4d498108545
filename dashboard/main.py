"""FastAPI application entry point."""

import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI

from config import settings
from services.event_channel import SSEEventChannel
from services.job_service_client import JobServiceClient
from services.navigation import DashboardController, MemoryHistory
from services.session_manager import SessionManager


class JSONFormatter(logging.Formatter):
    """JSON log formatter for log aggregation."""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


# Configure logging - JSON when JSON_LOGS is set, plain text locally
log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
handler = logging.StreamHandler()

if os.environ.get("JSON_LOGS"):
    handler.setFormatter(JSONFormatter())
else:
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ))

logging.basicConfig(level=log_level, handlers=[handler])
logger = logging.getLogger(__name__)


def create_controller(client: JobServiceClient) -> DashboardController:
    """Wire the event channel, session manager and controller around `client`."""
    channel = SSEEventChannel(client)
    sessions = SessionManager(client, channel)
    return DashboardController(sessions, MemoryHistory())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    # Startup
    logger.info(f"Starting Job Dashboard against {settings.service_url}...")

    client = JobServiceClient()
    controller = create_controller(client)
    app.state.client = client
    app.state.controller = controller

    # A failed first snapshot leaves the jobs view Closed with its error set
    await controller.start()

    logger.info("Startup complete")
    yield

    # Shutdown
    logger.info("Shutting down...")
    await controller.stop()
    await client.close()
    app.state.controller = None
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Job Dashboard",
    description="Live view of jobs, runs and run logs of a job execution service",
    version="1.0.0",
    lifespan=lifespan,
)


# Health check endpoint
@app.get("/api/health")
async def health_check():
    """Health check with the state of the active session."""
    result = {"status": "healthy", "service": "job-dashboard"}

    controller = getattr(app.state, "controller", None)
    sync = controller.synchronizer if controller else None
    if sync is None:
        result["session"] = None
        return result

    result["session"] = {"resource": sync.resource, "state": sync.state.value}
    if sync.error is not None or sync.last_error is not None:
        result["status"] = "degraded"
        result["error"] = str(sync.error or sync.last_error)
    return result


# Include API routers
from api import dashboard

app.include_router(dashboard.router, prefix="/api", tags=["Dashboard"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
