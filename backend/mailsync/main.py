"""FastAPI application entrypoint."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .database import init_db
from .routers import sync
from .scheduler import get_scheduler

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    scheduler = get_scheduler()
    if settings.scheduler_enabled:
        scheduler.start()
    else:
        logger.info("In-process scheduler disabled (SCHEDULER_ENABLED=false)")
    yield
    scheduler.shutdown()


app = FastAPI(
    title="Application Status Sync API",
    description="Keeps job application statuses in sync with recruiting email",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sync.router)


@app.get("/api/health")
def health():
    return {"status": "ok"}
