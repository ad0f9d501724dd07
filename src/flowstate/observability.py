"""Logging setup and operation timing for Flowstate.

Schema migration, search and the legacy import run inside
``timed_operation``; their counts and durations accumulate in ``metrics``
and are written to the log when the services shut down.
"""
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = Path.home() / ".flowstate" / "logs"
LOG_FILE_NAME = "flowstate.log"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    console: bool = True,
) -> Path:
    """Attach a size-rotated log file (and optionally stderr) to ``flowstate``.

    Safe to call more than once: a handler already writing to the same
    file, or an existing console handler, is not added again.

    Returns:
        The directory holding ``flowstate.log``.
    """
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = (log_path / LOG_FILE_NAME).resolve()

    package_logger = logging.getLogger("flowstate")
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers = package_logger.handlers
    if not any(
        isinstance(h, RotatingFileHandler) and Path(h.baseFilename) == log_file
        for h in handlers
    ):
        file_handler = RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    if console and not any(
        type(h) is logging.StreamHandler for h in handlers
    ):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        package_logger.addHandler(console_handler)

    package_logger.info(f"Writing logs to {log_file}")
    return log_path


@dataclass
class OperationMetrics:
    """Running totals for one named operation."""
    count: int = 0
    error_count: int = 0
    total_ms: float = 0.0
    slowest_ms: float = 0.0
    last_error: Optional[str] = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "success_count": self.count - self.error_count,
            "error_count": self.error_count,
            "avg_duration_ms": round(self.total_ms / self.count, 2) if self.count else 0.0,
            "max_duration_ms": round(self.slowest_ms, 2),
            "last_error": self.last_error,
        }


class MetricsCollector:
    """Thread-safe totals keyed by operation name."""

    def __init__(self) -> None:
        self._operations: Dict[str, OperationMetrics] = {}
        self._lock = Lock()

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            entry = self._operations.setdefault(operation, OperationMetrics())
            entry.count += 1
            entry.total_ms += duration_ms
            entry.slowest_ms = max(entry.slowest_ms, duration_ms)
            if not success:
                entry.error_count += 1
                entry.last_error = error

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Return a plain-dict copy of the totals for every operation seen."""
        with self._lock:
            return {op: m.snapshot() for op, m in self._operations.items()}


metrics = MetricsCollector()


def log_metrics(level: int = logging.DEBUG) -> None:
    """Write one line per recorded operation to the log."""
    for operation, totals in sorted(metrics.get_metrics().items()):
        logger.log(
            level,
            f"{operation}: {totals['count']} calls, {totals['error_count']} failed, "
            f"avg {totals['avg_duration_ms']}ms, max {totals['max_duration_ms']}ms",
        )


@contextmanager
def timed_operation(operation: str, **context):
    """Time the enclosed block and record it under ``operation``.

    Yields a dict the caller may fill with result details (for example
    ``result_count``); they are included in the completion log line.
    An exception raised by the block is recorded as a failure and re-raised.
    """
    tag = uuid.uuid4().hex[:8]
    details: Dict[str, Any] = {"correlation_id": tag}
    described = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{tag}] {operation} started ({described})")

    started = time.perf_counter()
    error: Optional[str] = None
    try:
        yield details
    except Exception as e:
        error = str(e)
        raise
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        metrics.record_operation(operation, elapsed_ms, error is None, error)
        outcome = "ok" if error is None else f"failed: {error}"
        extra = ", ".join(f"{k}={v}" for k, v in details.items() if k != "correlation_id")
        logger.debug(f"[{tag}] {operation} {outcome} in {elapsed_ms:.2f}ms {extra}")
