# logging_config.py - Structured logging for the ingest worker
import structlog
import logging
import os
import sys
from typing import Optional

def setup_logging(service_name: Optional[str] = None) -> None:
    """
    Configure structured logging for production

    Args:
        service_name: Name of the service (e.g., "killmail-ingest", "killmail-backfill")
    """

    # Clear existing handlers to avoid duplicates
    logging.root.handlers.clear()

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if service_name:
        processors.insert(0, lambda logger, method_name, event_dict:
                         dict(event_dict, service=service_name))

    # Choose output format based on environment
    use_json = os.getenv("STRUCTURED_LOGGING", "false").lower() == "true"

    if use_json:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level, logging.INFO),
        handlers=[logging.StreamHandler()],
        force=True
    )

    # Reduce noise from verbose libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)

def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance

    Args:
        name: Logger name (usually module name)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)

class MetricsLogger:
    """Helper class for consistent metrics logging"""

    def __init__(self, logger: structlog.stdlib.BoundLogger):
        self.logger = logger

    def feed_window(self, feed: str, window_sec: float, received: int, relevant: int,
                    reconciled: int, skipped: int, failed: int, **kwargs):
        """Log a throughput summary for one feed window"""
        self.logger.info(
            f"{feed}_throughput",
            window_sec=window_sec,
            received=received,
            relevant=relevant,
            reconciled=reconciled,
            skipped=skipped,
            failed=failed,
            **kwargs
        )

    def enrichment_call(self, killmail_id: int, success: bool, duration_ms: int, **kwargs):
        """Log enrichment lookup metrics"""
        self.logger.info(
            "enrichment_call",
            killmail_id=killmail_id,
            success=success,
            duration_ms=duration_ms,
            **kwargs
        )

    def database_operation(self, operation: str, table: str, duration_ms: int,
                          rows_affected: int = None, **kwargs):
        """Log database operation metrics"""
        self.logger.info(
            "database_operation",
            operation=operation,
            table=table,
            duration_ms=duration_ms,
            rows_affected=rows_affected,
            **kwargs
        )

def get_metrics_logger(name: str) -> MetricsLogger:
    """Get a metrics logger instance"""
    logger = get_logger(name)
    return MetricsLogger(logger)
