import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Configure structured JSON logging as early as possible so every subsequent
# log record (including import-time warnings) uses the JSON formatter.
from app.logging_config import RequestIdMiddleware, configure_logging

# Use LOG_LEVEL env var directly here because settings hasn't been imported yet
configure_logging(level=os.environ.get("LOG_LEVEL", "INFO"))

from app.config import settings  # noqa: E402
from app.api.batches import router as batches_router  # noqa: E402
from app.api.bulk import router as bulk_router  # noqa: E402
from app.api.calendar import router as calendar_router  # noqa: E402
from app.api.csv_upload import router as csv_upload_router  # noqa: E402
from app.api.files import router as files_router  # noqa: E402
from app.api.generate import router as generate_router  # noqa: E402
from app.api.images import router as images_router  # noqa: E402
from app.api.integrations import router as integrations_router  # noqa: E402
from app.api.templates import router as templates_router  # noqa: E402
from app.database import init_db  # noqa: E402
from app.services.batch_worker import resume_orphaned_batches  # noqa: E402

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up")
    init_db()
    logger.info("Database initialised")
    if settings.bulk_resume_on_startup:
        resume_orphaned_batches()
    yield
    logger.info("Application shutting down")


app = FastAPI(title="GeneraPix API", lifespan=lifespan)

# Request ID middleware must be added BEFORE CORS so every response carries
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestIdMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)

app.include_router(bulk_router)
app.include_router(csv_upload_router)
app.include_router(templates_router)
app.include_router(generate_router)
app.include_router(batches_router)
app.include_router(files_router)
app.include_router(images_router)
app.include_router(integrations_router)
app.include_router(calendar_router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
