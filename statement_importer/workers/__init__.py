"""Workers package: durable queue, worker pools, the import job runner and the categorization consumer."""

from groq import Groq

from statement_importer.agents.vision_agent import StatementVisionAgent
from statement_importer.core.db import Database
from statement_importer.core.settings import Settings
from statement_importer.services.file_service import FileService
from statement_importer.services.s3_file_service import S3FileService

from .categorization import CategorizationConsumer, CategorySuggester, log_categorization_give_up
from .job_runner import ImportJobRunner
from .pool import RetryPolicy, WorkerPool
from .queue import CATEGORIZATION_QUEUE, IMPORT_QUEUE, WorkQueue


def build_agent(settings: Settings) -> StatementVisionAgent | None:
    """Provide the vision agent, or None when no groq API key is configured."""
    if not settings.groq_api_key:
        return None
    return StatementVisionAgent(Groq(api_key=settings.groq_api_key), settings)


def build_pools(
    db: Database,
    settings: Settings,
    file_service: FileService | None = None,
    agent: StatementVisionAgent | None = None,
    suggester: CategorySuggester | None = None,
) -> tuple[WorkerPool, WorkerPool]:
    """Wire the import and categorization pools from settings."""
    import_queue = WorkQueue(db, IMPORT_QUEUE, settings.queue_lease_seconds)
    categorization_queue = WorkQueue(db, CATEGORIZATION_QUEUE, settings.queue_lease_seconds)
    runner = ImportJobRunner(
        db,
        file_service or FileService(S3FileService(settings)),
        settings,
        categorization_queue,
        agent if agent is not None else build_agent(settings),
    )
    import_pool = WorkerPool(
        import_queue,
        runner.handle,
        concurrency=settings.import_concurrency,
        retry_policy=RetryPolicy(settings.import_max_attempts, settings.import_backoff_seconds),
        poll_interval=settings.queue_poll_interval,
        on_give_up=runner.fail_job,
        name="import",
    )
    categorization_pool = WorkerPool(
        categorization_queue,
        CategorizationConsumer(db, suggester).handle,
        concurrency=settings.categorization_concurrency,
        retry_policy=RetryPolicy(settings.categorization_max_attempts, settings.categorization_backoff_seconds),
        poll_interval=settings.queue_poll_interval,
        on_give_up=log_categorization_give_up,
        name="categorization",
    )
    return import_pool, categorization_pool
