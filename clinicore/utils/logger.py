"""
Logging for the API process and the report worker.

Every module logs through ``get_logger(__name__)``, which returns a
``StructuredLogger`` under the ``clinicore`` namespace. Keyword arguments become
fields of the record (``job_id``, ``lane``, ``organization_id`` ...), rendered as
JSON in the log file and as plain text on the console.

Two shared channels sit next to the module loggers:
  - ``clinicore.audit``       - report jobs queued, reminder sweeps finished
  - ``clinicore.performance`` - endpoint timings
"""
import logging
import logging.config
import json
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

# Loggers that get the configured handlers; anything else falls through to root.
ROUTED_LOGGERS = ("clinicore", "uvicorn", "sqlalchemy.engine")


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line, with the caller's keyword fields merged in.
    Worker threads are told apart by ``thread_name`` (``report-worker-N``).
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra_data = getattr(record, 'extra_data', None)
        if extra_data:
            log_entry.update(extra_data)

        log_entry.update({
            "process_id": record.process,
            "thread_name": record.threadName,
        })

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class StructuredLogger:
    """
    ``logger.info("Report job completed", job_id=job.id, duration=...)``

    Fields whose value is None are dropped so optional context (an absent
    ``organization_id``, say) does not clutter the record.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log_with_extra(self, level: int, message: str, exc_info: bool = False, **kwargs):
        extra_data = {k: v for k, v in kwargs.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={'extra_data': extra_data})

    def info(self, message: str, **kwargs):
        self._log_with_extra(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log_with_extra(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log_with_extra(logging.ERROR, message, **kwargs)

    def debug(self, message: str, **kwargs):
        self._log_with_extra(logging.DEBUG, message, **kwargs)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    Configure handlers once per process.

    ``clinicore.main`` calls this on import and the standalone worker from
    ``clinicore.jobs.runner.main``; each passes its own ``log_file``
    (``logs/app.log`` / ``logs/worker.log``) so their output stays apart.

    Args:
        log_level: Level for clinicore loggers and root (DEBUG, INFO, WARNING, ERROR)
        log_file: Rotating JSON log file; created along with its directory
        enable_console: Also write human-readable lines to stdout
    """

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": JSONFormatter,
            },
            "standard": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S"
            }
        },
        "handlers": {},
        "loggers": {
            "clinicore": {
                "level": log_level,
                "handlers": [],
                "propagate": False
            },
            "uvicorn": {
                "level": "INFO",
                "handlers": [],
                "propagate": False
            },
            "sqlalchemy.engine": {
                "level": "WARNING",  # per-query INFO lines drown out job logs
                "handlers": [],
                "propagate": False
            }
        },
        "root": {
            "level": log_level,
            "handlers": []
        }
    }

    if enable_console:
        config["handlers"]["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "standard",
            "level": log_level
        }
        for name in ROUTED_LOGGERS:
            config["loggers"][name]["handlers"].append("console")
        config["root"]["handlers"].append("console")

    if log_file:
        config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "formatter": "json",
            "level": log_level
        }
        for name in ROUTED_LOGGERS:
            config["loggers"][name]["handlers"].append("file")
        config["root"]["handlers"].append("file")

    logging.config.dictConfig(config)


def get_logger(name: str) -> StructuredLogger:
    """Logger for ``name``, prefixed with ``clinicore.`` unless already under it."""
    if name.startswith("clinicore"):
        return StructuredLogger(name)
    return StructuredLogger(f"clinicore.{name}")


def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    organization_id: Optional[str] = None,
    request_id: Optional[str] = None
) -> None:
    """
    Record an auditable action on ``clinicore.audit``.

    Args:
        event_type: e.g. ``report_job_enqueued`` or ``reminder_sweep_completed``
        details: Flat fields merged into the record (job id, sent / failed counts ...)
        organization_id: Clinic the action concerns; omitted for fan-out and sweeps
        request_id: ``X-Request-ID`` of the triggering call
    """
    audit_logger = get_logger("audit")
    audit_logger.info(
        f"Business event: {event_type}",
        event_type=event_type,
        organization_id=organization_id,
        request_id=request_id,
        **details
    )


def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    """Record how long ``operation`` took on ``clinicore.performance``."""
    perf_logger = get_logger("performance")
    data = {"duration_ms": duration_ms}
    if additional_data:
        data.update(additional_data)

    perf_logger.info(
        f"Performance: {operation}",
        operation=operation,
        **data
    )
