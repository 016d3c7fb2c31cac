"""Run the import and categorization worker pools until interrupted.

Usage: ``python -m statement_importer.workers``
"""

import threading

from statement_importer.core.db import Database
from statement_importer.core.settings import get_settings
from statement_importer.core.utils import get_logger
from statement_importer.workers import build_pools

logger = get_logger("statement-importer.worker")


def main() -> None:
    """Start both pools and block until Ctrl+C."""
    settings = get_settings()
    db = Database(settings.database_url)
    db.init_db()
    pools = build_pools(db, settings)
    for pool in pools:
        pool.start()
    logger.info("Workers running; press Ctrl+C to stop")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("Stopping workers")
    finally:
        for pool in pools:
            pool.stop()


if __name__ == "__main__":
    main()
