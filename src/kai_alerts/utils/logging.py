"""
Enhanced logging utilities for KAI Alerts.
"""

import logging
import logging.handlers
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
import structlog
from structlog.stdlib import LoggerFactory

from ..core.config import LoggingConfig

ROOT_LOGGER = "kai_alerts"

_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'getMessage', 'exc_info',
    'exc_text', 'stack_info', 'taskName'
}


class KaiAlertsFormatter(logging.Formatter):
    """JSON formatter for KAI Alerts logs."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with structured data."""
        extra_data = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }

        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if extra_data:
            log_entry['data'] = extra_data

        if record.exc_info:
            log_entry['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info),
            }

        return json.dumps(log_entry, default=str)


class PerformanceLogger:
    """Logger for operation timings."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self._metrics: Dict[str, Any] = {}

    def start_timer(self, operation: str) -> str:
        """Start timing an operation."""
        started = datetime.now(timezone.utc)
        timer_id = f"{operation}_{started.timestamp()}_{len(self._metrics)}"
        self._metrics[timer_id] = {
            'operation': operation,
            'start_time': started,
        }
        return timer_id

    def end_timer(self, timer_id: str, success: bool = True, **extra_data) -> Optional[float]:
        """End timing an operation, log it, and return the duration in ms."""
        metric = self._metrics.pop(timer_id, None)
        if metric is None:
            self.logger.warning(f"Timer {timer_id} not found")
            return None

        end_time = datetime.now(timezone.utc)
        duration_ms = round((end_time - metric['start_time']).total_seconds() * 1000, 2)

        self.logger.info(
            f"Operation completed: {metric['operation']}",
            extra={
                'operation': metric['operation'],
                'duration_ms': duration_ms,
                'success': success,
                'end_time': end_time.isoformat(),
                **extra_data
            }
        )
        return duration_ms


class AlertLogger:
    """Specialized logger for alert and delivery events."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def log_alert_generated(self, alert_id: str, alert_type: str, region: str,
                            severity: str, confidence: int, **extra_data) -> None:
        self.logger.info(
            f"Alert generated: {alert_type} in {region} ({severity})",
            extra={
                'event_type': 'alert_generated',
                'alert_id': alert_id,
                'alert_type': alert_type,
                'alert_region': region,
                'severity': severity,
                'confidence': confidence,
                **extra_data
            }
        )

    def log_delivery(self, alert_id: str, subscriber_id: str, method: str,
                     success: bool, provider: Optional[str] = None, **extra_data) -> None:
        level = logging.INFO if success else logging.WARNING
        self.logger.log(
            level,
            f"Delivery {'succeeded' if success else 'failed'}: {method} to {subscriber_id}",
            extra={
                'event_type': 'delivery',
                'alert_id': alert_id,
                'subscriber_id': subscriber_id,
                'method': method,
                'success': success,
                'provider': provider,
                **extra_data
            }
        )

    def log_delivery_skipped(self, alert_id: str, subscriber_id: str, reason: str, **extra_data) -> None:
        self.logger.info(
            f"Delivery skipped for {subscriber_id}: {reason}",
            extra={
                'event_type': 'delivery_skipped',
                'alert_id': alert_id,
                'subscriber_id': subscriber_id,
                'reason': reason,
                **extra_data
            }
        )

    def log_dead_letter(self, kind: str, payload: Dict[str, Any], error: str, **extra_data) -> None:
        """Log a unit of work that was dropped after a persistence failure."""
        self.logger.error(
            f"Dropped {kind} after persistence failure: {error}",
            extra={
                'event_type': 'dead_letter',
                'kind': kind,
                'payload': payload,
                'error': error,
                **extra_data
            }
        )


def setup_logging(config: LoggingConfig) -> tuple[logging.Logger, PerformanceLogger, AlertLogger]:
    """
    Setup logging for KAI Alerts.

    Args:
        config: Logging configuration

    Returns:
        Tuple of (main_logger, performance_logger, alert_logger)
    """
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, config.level.upper()))
    logger.handlers.clear()

    if config.format == 'json':
        formatter = KaiAlertsFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if config.file:
        file_path = Path(config.file)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            file_path,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    performance_logger = PerformanceLogger(logger)
    alert_logger = AlertLogger(logger)

    logger.info("Logging system initialized", extra={
        'log_level': config.level,
        'log_format': config.format,
        'log_file': str(config.file) if config.file else None
    })

    return logger, performance_logger, alert_logger


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger under the application namespace."""
    return structlog.get_logger(f'{ROOT_LOGGER}.{name}')


def default_loggers() -> tuple[PerformanceLogger, AlertLogger]:
    """Specialized loggers bound to the application logger without reconfiguring handlers."""
    logger = logging.getLogger(ROOT_LOGGER)
    return PerformanceLogger(logger), AlertLogger(logger)
