"""
To launch:
uvicorn aeo_client.app:app --reload
"""
from aeo_client.utils import load_local_env

load_local_env()

import logging
import re
from contextlib import asynccontextmanager
from fastapi import FastAPI

from aeo_client.config import Settings
from aeo_client.routes import api_router
from aeo_client.services.registry import CoordinatorRegistry

_TASK_SNAPSHOT_RE = re.compile(r'"GET /api/v1/tasks/[\w-]+ HTTP')


# Configure uvicorn access logger to filter task snapshot polling
class TaskPollingFilter(logging.Filter):
    def filter(self, record):
        # The browser polls the snapshot endpoint every few seconds
        return not _TASK_SNAPSHOT_RE.search(str(record.getMessage()))


# Apply filter to uvicorn access logger
uvicorn_access_logger = logging.getLogger("uvicorn.access")
uvicorn_access_logger.addFilter(TaskPollingFilter())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown"""
    # Startup
    app.state.registry = CoordinatorRegistry.from_settings(Settings.from_env())
    yield
    # Shutdown: cancel poll sessions, then close the transport
    await app.state.registry.close()


app = FastAPI(
    title="AEO task orchestration",
    description="Submits and tracks long-running keyword, citation, backlink and FAQ analysis tasks",
    version="0.1.0",
    lifespan=lifespan
)

app.include_router(api_router)
