# bulk_export/core/db.py

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from bulk_export.core.config import Settings
from bulk_export.utils.logger import get_logger

logger = get_logger(__name__)


def create_db_engine(settings: Settings) -> Engine:
    """
    Engine for the backing store that collections are exported from.

    SQLite connections are shared with the threadpool that runs queries.
    """
    connect_args = {}
    if settings.is_sqlite:
        connect_args["check_same_thread"] = False

    engine = create_engine(
        settings.database_url,
        pool_pre_ping=True,
        connect_args=connect_args,
    )
    logger.info("Database engine created", dialect=engine.dialect.name)
    return engine
