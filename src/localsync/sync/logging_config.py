"""Logging configuration for synchronization events."""

import logging
import sys
import time
from datetime import datetime
from typing import Optional


class SyncEventFormatter(logging.Formatter):
    """Custom formatter for synchronization events."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with sync-specific information."""
        if not hasattr(record, 'timestamp'):
            record.timestamp = datetime.now().isoformat()

        sync_fields = []
        for field in ['key', 'operation_id', 'event_type', 'attempts']:
            if hasattr(record, field):
                sync_fields.append(f"{field}={getattr(record, field)}")

        base_msg = super().format(record)

        if sync_fields:
            return f"{base_msg} [{', '.join(sync_fields)}]"

        return base_msg


def setup_sync_logging(log_level: str = "INFO") -> logging.Logger:
    """Set up logging for synchronization components.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)

    Returns:
        Configured logger for sync operations
    """
    logger = logging.getLogger("localsync")

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, log_level.upper()))

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(getattr(logging, log_level.upper()))

    formatter = SyncEventFormatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    handler.setFormatter(formatter)

    logger.addHandler(handler)

    return logger


def log_sync_event(logger: logging.Logger, event_type: str, key: Optional[str],
                   message: str, level: int = logging.INFO, **kwargs) -> None:
    """Log a synchronization event with structured data.

    Args:
        logger: Logger instance
        event_type: Type of sync event
        key: Application key involved, if any
        message: Human-readable message
        level: Logging level to emit at
        **kwargs: Additional fields to include in log
    """
    extra = {
        'event_type': event_type,
        'key': key,
        'timestamp': datetime.now().isoformat(),
        **kwargs
    }

    logger.log(level, message, extra=extra)


def log_performance_metrics(logger: logging.Logger, operation: str,
                            latency_ms: float, **kwargs) -> None:
    """Log performance metrics for engine operations.

    Args:
        logger: Logger instance
        operation: Name of the operation being measured
        latency_ms: Operation latency in milliseconds
        **kwargs: Additional performance metrics
    """
    extra = {
        'event_type': 'performance_metrics',
        'operation': operation,
        'latency_ms': round(latency_ms, 2),
        'timestamp': datetime.now().isoformat(),
        **kwargs
    }

    if latency_ms > 1000:
        logger.warning(f"Slow operation detected: {operation} took {latency_ms:.2f}ms", extra=extra)
    else:
        logger.debug(f"Performance: {operation} took {latency_ms:.2f}ms", extra=extra)


class PerformanceTimer:
    """Context manager for measuring operation performance."""

    def __init__(self, logger: logging.Logger, operation: str, **kwargs):
        self.logger = logger
        self.operation = operation
        self.kwargs = kwargs
        self.start_time = None
        self.latency_ms = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time:
            self.latency_ms = (time.perf_counter() - self.start_time) * 1000

            if exc_type:
                self.kwargs['error'] = str(exc_val)
                self.kwargs['error_type'] = exc_type.__name__

            log_performance_metrics(
                self.logger, self.operation, self.latency_ms, **self.kwargs
            )


def get_logger(name: str, log_level: str = "INFO") -> logging.Logger:
    """Get a configured logger for sync components.

    Args:
        name: Logger name (usually __name__)
        log_level: Logging level

    Returns:
        Configured logger instance
    """
    setup_sync_logging(log_level)

    return logging.getLogger(name)
