"""
Structured logging with JSON formatting and correlation IDs.
"""
import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog
from pythonjsonlogger import jsonlogger

from comment_sync.core.config import settings

# Context variable for correlation ID
correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)


class CorrelationIdProcessor:
    """Add correlation ID to structlog event dictionaries."""

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        corr_id = correlation_id.get()
        if corr_id and 'correlation_id' not in event_dict:
            event_dict['correlation_id'] = corr_id
        return event_dict


class CorrelationIdFilter(logging.Filter):
    """Attach the current correlation ID to stdlib log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, 'correlation_id'):
            record.correlation_id = correlation_id.get() or '-'
        return True


def setup_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """
    Configure structlog on top of stdlib logging.

    Args:
        level: Log level name, defaults to settings.LOG_LEVEL
        log_format: "json" or "console", defaults to settings.LOG_FORMAT
    """
    level = (level or settings.LOG_LEVEL).upper()
    log_format = (log_format or settings.LOG_FORMAT).lower()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            CorrelationIdProcessor(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.render_to_log_kwargs,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if log_format == 'json':
        formatter = jsonlogger.JsonFormatter(
            '%(asctime)s %(name)s %(levelname)s %(message)s %(correlation_id)s'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(correlation_id)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(CorrelationIdFilter())

    root = logging.getLogger()
    root.handlers = [console_handler]
    root.setLevel(getattr(logging, level, logging.INFO))

    logging.getLogger('aiohttp.access').setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        BoundLogger: Configured structlog logger
    """
    return structlog.get_logger(name)


def set_correlation_id(corr_id: Optional[str] = None) -> str:
    """
    Set correlation ID for tracing one subscription or mutation.

    Args:
        corr_id: Correlation ID to set. If None, generates a new UUID.

    Returns:
        str: The correlation ID that was set
    """
    if corr_id is None:
        corr_id = str(uuid.uuid4())

    correlation_id.set(corr_id)
    return corr_id


def get_correlation_id() -> Optional[str]:
    """Get current correlation ID."""
    return correlation_id.get()


class ReconciliationLogHandler:
    """Handler for reconciliation loop logging."""

    def __init__(self, thread_id: str, subscription_id: str):
        self.logger = get_logger('comment_sync.reconciliation').bind(
            thread_id=thread_id,
            correlation_id=subscription_id,
        )

    def log_initial_load(self, top_level_count: int, reply_count: int, failed_parents: int) -> None:
        """Log the snapshot that seeded a subscription."""
        self.logger.info(
            "Initial comment load completed",
            top_level_count=top_level_count,
            reply_count=reply_count,
            failed_parents=failed_parents,
        )

    def log_tick(self, duration: float, inserted: int, updated: int, deleted: int, like_changed: int) -> None:
        """Log one completed reconciliation cycle."""
        self.logger.debug(
            "Reconciliation cycle completed",
            duration_ms=round(duration * 1000, 2),
            inserted=inserted,
            updated=updated,
            deleted=deleted,
            like_changed=like_changed,
        )

    def log_tick_skipped(self, reason: str) -> None:
        """Log a tick that did not run."""
        self.logger.debug("Reconciliation cycle skipped", reason=reason)

    def log_fetch_failure(self, error: Exception, consecutive_failures: int, next_delay: float) -> None:
        """Log a failed snapshot fetch inside a tick."""
        self.logger.warning(
            "Snapshot fetch failed",
            error=str(error),
            error_type=type(error).__name__,
            consecutive_failures=consecutive_failures,
            next_delay_s=round(next_delay, 2),
        )

    def log_status_change(self, previous: str, current: str) -> None:
        """Log connection status transitions."""
        self.logger.info("Connection status changed", previous=previous, current=current)

    def log_callback_error(self, callback: str, error: Exception) -> None:
        """Log an exception raised by a subscriber callback."""
        self.logger.error(
            "Subscriber callback failed",
            callback=callback,
            error=str(error),
            error_type=type(error).__name__,
        )

    def log_cancelled(self) -> None:
        """Log subscription cancellation."""
        self.logger.info("Subscription cancelled")
