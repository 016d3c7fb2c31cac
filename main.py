"""Main entrypoint and application factory for the Statement Importer API.

This module initializes the FastAPI application, configures logging, creates the database tables,
optionally runs the import and categorization worker pools inside the API process, and exposes the
Scalar API reference endpoint for interactive OpenAPI documentation. It also includes the main
entrypoint for running the app with Uvicorn.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import HTMLResponse
from scalar_fastapi import get_scalar_api_reference
from sqlalchemy.exc import OperationalError

from statement_importer import __version__
from statement_importer.api.dependencies import get_database, get_settings
from statement_importer.api.routes import router
from statement_importer.core.utils import ensure_dir, get_logger

LOG_DIR = "jobs"
LOGGER_NAMES = (
    "statement-importer.api",
    "statement-importer.worker",
    "statement-importer.pipeline",
    "statement-importer.parser",
    "statement-importer.agent",
    "statement-importer.imports",
    "statement-importer.queue",
    "statement-importer.storage",
    "statement-importer.categorization",
)


# --- Logging Setup ---
def setup_logging() -> None:
    """Configure logging to file and console, and ensure the jobs directory exists."""
    ensure_dir(LOG_DIR)
    file_handler = logging.FileHandler(f"{LOG_DIR}/imports.log")
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    for name in LOGGER_NAMES:
        logger = get_logger(name)
        logger.setLevel(logging.INFO)
        # Plain-text file handler next to the colorized console handler
        if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
            logger.addHandler(file_handler)


setup_logging()
logger = get_logger("statement-importer.api")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create the tables and, when enabled, run the worker pools for the lifetime of the app."""
    _ = app  # Silence unused argument warning
    settings = get_settings()
    db = get_database(settings)
    try:
        db.init_db()
    except OperationalError:
        logger.exception("Failed to create the import tables")
        raise
    pools = ()
    if settings.start_workers:
        from statement_importer.workers import build_pools

        pools = build_pools(db, settings)
        for pool in pools:
            pool.start()
    yield
    for pool in pools:
        pool.stop()


app = FastAPI(
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    title="Statement Importer API",
    description="""
    The Statement Importer API turns uploaded bank statements (CSV exports, PDF statements and photos) into
    candidate accounts and transactions that a user reviews before they are stored.

    **Endpoints:**
    - `POST /imports`: Register an uploaded file and start an import job. Returns a `job_id`.
    - `GET /imports/{{job_id}}`: Poll the status, progress and detected accounts of a job.
    - `POST /imports/{{job_id}}/confirm`: Confirm or reject the detected accounts.
    - `POST /imports/{{job_id}}/cancel`: Cancel a job.
    - `POST /imports/{{job_id}}/retry`: Retry a failed job.
    - `GET /queues`: Work item counts per queue.
    - `GET /health`: Health check endpoint.
    - `GET /scalar`: Interactive Scalar OpenAPI documentation.
    """,
    version=__version__,
)
app.include_router(router)


@app.get("/scalar", include_in_schema=False)
async def scalar_docs() -> HTMLResponse:
    """Return Scalar API reference."""
    return get_scalar_api_reference(openapi_url=app.openapi_url, title=app.title)


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("main:app", host=settings.server_host, port=settings.server_port, reload=True)
