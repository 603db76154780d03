"""Structured logging with correlation IDs so one sync operation can be traced
across the client, cache and orchestrator log lines"""
import logging
import json
import sys
import uuid
import contextvars
from datetime import datetime, timezone
from typing import Any, Dict, Optional

correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'correlation_id', default=None
)


class CorrelationIDFilter(logging.Filter):
    """Add correlation ID to log records"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or 'no-correlation-id'
        return True


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for structured logging"""

    EXTRA_FIELDS = ('operation', 'project', 'duration_ms', 'success', 'error')

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': getattr(record, 'correlation_id', 'unknown'),
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        for name in self.EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        return json.dumps(log_data)


def get_correlation_id() -> str:
    """Get current correlation ID or generate new one"""
    cid = correlation_id_var.get()
    if cid is None:
        cid = str(uuid.uuid4())
        correlation_id_var.set(cid)
    return cid


def new_correlation_id() -> str:
    """Generate and set new correlation ID"""
    cid = str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def setup_structured_logging(
    level: str = "INFO",
    use_json: bool = False,
    add_correlation_id: bool = True
) -> None:
    """
    Setup logging for the application.

    Logs go to stderr; stdout belongs to the MCP stdio transport.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: Use JSON formatter for structured logs
        add_correlation_id: Add correlation ID filter
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)

    if use_json:
        formatter = JSONFormatter()
    elif add_correlation_id:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - [%(correlation_id)s] - %(levelname)s - %(message)s'
        )
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    handler.setFormatter(formatter)

    if add_correlation_id or use_json:
        handler.addFilter(CorrelationIDFilter())

    root_logger.addHandler(handler)


def log_operation(
    logger: logging.Logger,
    operation: str,
    duration_ms: float,
    success: bool,
    project: Optional[str] = None,
    error: Optional[str] = None
) -> None:
    """
    Log the outcome of one API operation with structured data.

    Args:
        logger: Logger instance
        operation: Name of the operation, e.g. ``describeSobject``
        duration_ms: Execution duration in milliseconds
        success: Whether execution succeeded
        project: Project the operation ran against
        error: Error message if failed
    """
    extra = {
        'operation': operation,
        'duration_ms': round(duration_ms, 2),
        'success': success,
    }

    if project:
        extra['project'] = project
    if error:
        extra['error'] = error

    message = f"Operation '{operation}' {'succeeded' if success else 'failed'} in {duration_ms:.2f}ms"

    if success:
        logger.info(message, extra=extra)
    else:
        logger.error(message, extra=extra)
