"""
Logging configuration

Every record carries the id of the HTTP request and of the sync run it was
emitted under ("-" outside of either).
"""

import logging
import sys
from contextvars import ContextVar
from core.config import settings

request_id_var: ContextVar[str] = ContextVar("request_id", default="-")
sync_run_var: ContextVar[str] = ContextVar("sync_run", default="-")

LOG_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)s | "
    "req=%(request_id)s run=%(sync_run)s | %(message)s"
)

# Chatty libraries kept at WARNING
QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "httpx", "apscheduler")


class SyncContextFilter(logging.Filter):
    """Stamp the current request id and sync run id on each record"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        record.sync_run = sync_run_var.get()
        return True


def setup_logging():
    """Configure application logging"""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(SyncContextFilter())

    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[handler]
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {settings.LOG_LEVEL} level")
