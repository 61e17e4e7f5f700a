# bulk_export/main.py

from typing import Optional

from fastapi import FastAPI
from sqlalchemy.engine import Engine

from bulk_export.core.config import Settings, get_settings
from bulk_export.core.db import create_db_engine
from bulk_export.exports.progress import ProgressBroadcaster
from bulk_export.exports.router import router as exports_router
from bulk_export.exports.sources import SqlAlchemySource
from bulk_export.utils.logger import configure_logging, get_logger

logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None, engine: Optional[Engine] = None) -> FastAPI:
    """
    Build the API application.

    The source, the progress broadcaster and the set of running export tasks
    live on ``app.state`` and are handed to endpoints through dependencies.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_json)

    app = FastAPI(title="Bulk Export API")
    app.state.settings = settings
    app.state.source = SqlAlchemySource(engine or create_db_engine(settings))
    app.state.progress = ProgressBroadcaster(max_pending=settings.progress_queue_size)
    app.state.export_tasks = set()

    app.include_router(exports_router, prefix="/api")

    logger.info("Bulk export API ready", environment=settings.environment)
    return app
