"""
Logging configuration for the Box Office pipeline.

Every record carries the request id of the webhook or scanner request that
produced it, so one delivery can be followed across the gate, the retry
controller and the escalation path.
"""
import logging
import sys
import uuid
from contextvars import ContextVar
from pathlib import Path

from boxoffice.core.config import settings

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"


def set_request_id(request_id: str | None = None) -> str:
    rid = request_id or uuid.uuid4().hex
    _request_id.set(rid)
    return rid


def get_request_id() -> str | None:
    return _request_id.get()


class RequestIdFilter(logging.Filter):
    """Adds request_id to every record passing through a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        return True


def setup_logging() -> None:
    """
    Set up logging configuration
    """
    log_dir = Path(settings.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    log_level = logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    handlers = [
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(log_dir / "boxoffice.log"),
    ]
    for handler in handlers:
        handler.addFilter(RequestIdFilter())

    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        handlers=handlers,
    )

    logging.getLogger("uvicorn.access").disabled = True
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    Get logger instance for a specific module

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
