"""Initialize database tables."""

import logging

from sheetwise.core.database import get_db_debug_info, init_db

logger = logging.getLogger(__name__)


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    logger.info("Initializing database tables on %s", get_db_debug_info().get("url"))
    init_db()
    logger.info("Database initialization complete!")


if __name__ == "__main__":
    main()
