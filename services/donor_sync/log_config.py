"""
Structured logging configuration using structlog.

Provides JSON logging with ISO timestamps and stdlib compatibility.
DonorPerfect API keys travel in the query string, so every record (ours
and httpx request logs alike) is passed through an apikey mask.
"""

import logging
import re
import sys
from typing import Any, Optional

import structlog
from structlog.typing import FilteringBoundLogger

from .models import SyncResult, SyncStatus
from .settings import settings

_API_KEY_RE = re.compile(r"(apikey=)[^&\s'\"]+", re.IGNORECASE)


def mask_api_key(text: str) -> str:
    """Replace the value of any apikey= query parameter with ***."""
    if not text:
        return text
    return _API_KEY_RE.sub(r"\1***", text)


def redact_api_key(_, __, event_dict):
    """structlog processor masking API keys in string values."""
    return {
        key: mask_api_key(value) if isinstance(value, str) else value
        for key, value in event_dict.items()
    }


class MaskAPIKeyFilter(logging.Filter):
    """Logging filter masking API keys in formatted stdlib records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = mask_api_key(record.getMessage())
        record.args = ()
        return True


def configure_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """
    Configure structlog with JSON output and stdlib compatibility.

    Args:
        log_level: Override log level from settings
        log_format: Override log format from settings
    """
    config = settings()
    level = log_level or config.log_level
    format_type = log_format or config.log_format

    # Configure stdlib logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level),
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, MaskAPIKeyFilter) for f in handler.filters):
            handler.addFilter(MaskAPIKeyFilter())

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),

        # Add service metadata
        lambda _, __, event_dict: {
            **event_dict,
            "service": config.service_name,
            "environment": config.environment,
        },
        redact_api_key,
    ]

    if format_type == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level)
        ),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> FilteringBoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (defaults to caller's module)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


class StructlogMiddleware:
    """
    ASGI middleware binding request context to all log messages.

    Example usage with FastAPI:
        app.add_middleware(StructlogMiddleware)
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers") or [])
        request_id = headers.get(b"x-request-id", b"unknown").decode("latin-1")

        with structlog.contextvars.bound_contextvars(
            request_id=request_id,
            method=scope.get("method", "UNKNOWN"),
            path=scope.get("path", "/"),
        ):
            await self.app(scope, receive, send)


def log_api_call(
    logger: FilteringBoundLogger,
    action: str,
    duration_ms: Optional[float] = None,
    error: Optional[str] = None,
    **extra_context: Any
) -> None:
    """
    Log a DonorPerfect API call with structured information.

    Args:
        logger: Logger instance
        action: Stored procedure name or "query"
        duration_ms: Request duration in milliseconds
        error: Error message when the call failed
        **extra_context: Additional context to include
    """
    context = {"action": action, **extra_context}

    if duration_ms is not None:
        context["duration_ms"] = round(duration_ms, 2)

    if error:
        logger.warning("API call failed", error=error, **context)
    else:
        logger.info("API call completed", **context)


def log_sync_result(logger: FilteringBoundLogger, result: SyncResult) -> None:
    """Log the outcome of a live donation sync at info (success) or warning."""
    if result.status is SyncStatus.SUCCESS:
        logger.info(
            "Donation synced",
            donor_action=result.donor_action.value if result.donor_action else None,
            dp_donor_id=result.target_donor_id,
            gift_id=result.gift_id,
            pledge_id=result.pledge_id,
        )
    else:
        logger.warning("Donation sync failed", status=result.status.value, error=result.error)


def log_processing_batch(
    logger: FilteringBoundLogger,
    batch_id: str,
    items_processed: int,
    items_failed: int = 0,
    duration_ms: Optional[float] = None,
    **extra_context: Any
) -> None:
    """
    Log batch processing results.

    Args:
        logger: Logger instance
        batch_id: Unique batch identifier
        items_processed: Number of items processed
        items_failed: Number of items that failed processing
        duration_ms: Processing duration in milliseconds
        **extra_context: Additional context to include
    """
    total = items_processed + items_failed
    context = {
        "batch_id": batch_id,
        "items_processed": items_processed,
        "items_failed": items_failed,
        "success_rate": round(items_processed / total * 100, 2) if total > 0 else 0,
        **extra_context
    }

    if duration_ms is not None:
        context["duration_ms"] = round(duration_ms, 2)

    if items_failed > 0:
        logger.warning("Batch processing completed with failures", **context)
    else:
        logger.info("Batch processing completed successfully", **context)


def _initialize_logging():
    """Initialize logging configuration on module import."""
    try:
        # Skip initialization during pytest
        if "pytest" not in sys.modules:
            configure_logging()
    except Exception as e:
        # Fallback to basic logging if configuration fails
        logging.basicConfig(level=logging.INFO)
        logging.getLogger(__name__).error(
            "Failed to configure structured logging: %s", e
        )


# Auto-initialize when module is imported
_initialize_logging()
