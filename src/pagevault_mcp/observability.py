"""Observability utilities for the Page Vault MCP server.

Provides rotating file logging for the ``pagevault_mcp`` logger hierarchy,
per-operation timing metrics with optional persistence, and the
``timed_operation`` context manager every MCP tool runs inside.
"""
import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, Optional, Union

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

# All package modules log below this name
ROOT_LOGGER_NAME = "pagevault_mcp"
LOG_FILE_NAME = "pagevault.log"

DEFAULT_LOG_DIR = Path.home() / ".pagevault" / "logs"
DEFAULT_METRICS_FILE = Path.home() / ".pagevault" / "metrics.json"

# ISO 8601 timestamps
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def _writes_to(handler: logging.Handler, log_file: Path) -> bool:
    return (
        isinstance(handler, RotatingFileHandler)
        and Path(handler.baseFilename).resolve() == log_file.resolve()
    )


def _is_console(handler: logging.Handler) -> bool:
    return isinstance(handler, logging.StreamHandler) and not isinstance(
        handler, logging.FileHandler
    )


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Send the package's log records to a rotating file (and stderr).

    Calling it again with the same directory does not add a second file
    handler.

    Args:
        log_dir: Directory for ``pagevault.log``. Defaults to ~/.pagevault/logs/
        level: Level for the package logger and its handlers
        max_bytes: Size at which the log file rotates
        backup_count: Rotated files to keep
        console: Also log to stderr (stdout carries the MCP stdio protocol)

    Returns:
        The log directory.
    """
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / LOG_FILE_NAME

    package_logger = logging.getLogger(ROOT_LOGGER_NAME)
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    new_handlers = []
    if not any(_writes_to(h, log_file) for h in package_logger.handlers):
        new_handlers.append(
            RotatingFileHandler(
                log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        )
    if console and not any(_is_console(h) for h in package_logger.handlers):
        new_handlers.append(logging.StreamHandler())
    for handler in new_handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    package_logger.info(f"Logging to {log_file} (rotate at {max_bytes} bytes, keep {backup_count})")
    return log_path


class OperationStats(BaseModel):
    """Running totals for one operation name."""

    count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: Optional[float] = None
    max_duration_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None

    def add(self, duration_ms: float, error: Optional[str] = None, failed: bool = False) -> None:
        self.count += 1
        self.total_duration_ms += duration_ms
        if self.min_duration_ms is None or duration_ms < self.min_duration_ms:
            self.min_duration_ms = duration_ms
        self.max_duration_ms = max(self.max_duration_ms, duration_ms)
        if failed:
            self.error_count += 1
            self.last_error = error
            self.last_error_time = datetime.now(timezone.utc)
        else:
            self.success_count += 1

    def absorb(self, other: "OperationStats") -> None:
        """Fold totals loaded from disk into these."""
        self.count += other.count
        self.success_count += other.success_count
        self.error_count += other.error_count
        self.total_duration_ms += other.total_duration_ms
        if other.min_duration_ms is not None:
            self.min_duration_ms = (
                other.min_duration_ms
                if self.min_duration_ms is None
                else min(self.min_duration_ms, other.min_duration_ms)
            )
        self.max_duration_ms = max(self.max_duration_ms, other.max_duration_ms)
        if self.last_error is None:
            self.last_error = other.last_error
            self.last_error_time = other.last_error_time

    def snapshot(self) -> Dict[str, Any]:
        if not self.count:
            return {**self.model_dump(mode="json"), "success_rate": 0, "avg_duration_ms": 0}
        return {
            "count": self.count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "success_rate": self.success_count / self.count,
            "avg_duration_ms": round(self.total_duration_ms / self.count, 2),
            "min_duration_ms": round(self.min_duration_ms or 0.0, 2),
            "max_duration_ms": round(self.max_duration_ms, 2),
            "last_error": self.last_error,
            "last_error_time": self.last_error_time.isoformat() if self.last_error_time else None,
        }


class MetricsFile(BaseModel):
    """On-disk shape of persisted metrics."""

    start_time: datetime
    saved_at: datetime
    operations: Dict[str, OperationStats] = Field(default_factory=dict)


class MetricsCollector:
    """Thread-safe metrics for vault operations (vault_search, vault_create_block, ...).

    Nothing is written to disk until a metrics file is set, either at
    construction or through ``enable_persistence``.
    """

    def __init__(
        self,
        metrics_file: Optional[Union[str, Path]] = None,
        auto_save_interval: int = 100,
    ):
        """Initialize the metrics collector.

        Args:
            metrics_file: Where to persist metrics; None keeps them in memory.
            auto_save_interval: Save after this many operations (0 disables).
        """
        self._stats: Dict[str, OperationStats] = {}
        self._lock = Lock()
        self._started = datetime.now(timezone.utc)
        self._metrics_file = Path(metrics_file) if metrics_file else None
        self._auto_save_interval = auto_save_interval
        self._unsaved = 0
        if self._metrics_file:
            self._merge_from_disk()

    def enable_persistence(self, metrics_file: Union[str, Path] = DEFAULT_METRICS_FILE) -> None:
        """Start persisting to ``metrics_file``, merging what it already holds."""
        with self._lock:
            self._metrics_file = Path(metrics_file)
        self._merge_from_disk()

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        """Record one finished operation."""
        with self._lock:
            stats = self._stats.setdefault(operation, OperationStats())
            stats.add(duration_ms, error=error, failed=not success)
            self._unsaved += 1
            if (
                self._metrics_file
                and self._auto_save_interval > 0
                and self._unsaved >= self._auto_save_interval
            ):
                self._write()

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Per-operation snapshot."""
        with self._lock:
            return {name: stats.snapshot() for name, stats in self._stats.items()}

    def get_summary(self) -> Dict[str, Any]:
        """Totals across all operations."""
        with self._lock:
            total = sum(s.count for s in self._stats.values())
            succeeded = sum(s.success_count for s in self._stats.values())
            return {
                "uptime_seconds": (datetime.now(timezone.utc) - self._started).total_seconds(),
                "total_operations": total,
                "total_success": succeeded,
                "total_errors": total - succeeded,
                "overall_success_rate": succeeded / total if total else 1.0,
                "operations_tracked": sorted(self._stats),
            }

    def reset(self) -> None:
        """Forget everything recorded so far."""
        with self._lock:
            self._stats.clear()
            self._started = datetime.now(timezone.utc)
            self._unsaved = 0

    def _merge_from_disk(self) -> bool:
        if not self._metrics_file or not self._metrics_file.exists():
            return False
        try:
            stored = MetricsFile.model_validate_json(
                self._metrics_file.read_text(encoding="utf-8")
            )
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable metrics file {self._metrics_file}: {e}")
            return False
        with self._lock:
            for name, stats in stored.operations.items():
                self._stats.setdefault(name, OperationStats()).absorb(stats)
        logger.debug(f"Merged {len(stored.operations)} operation(s) from {self._metrics_file}")
        return True

    def _write(self) -> bool:
        """Persist atomically through a temp file. Caller holds the lock."""
        payload = MetricsFile(
            start_time=self._started,
            saved_at=datetime.now(timezone.utc),
            operations=self._stats,
        )
        temp_file = self._metrics_file.with_suffix(".tmp")
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file.write_text(payload.model_dump_json(indent=2), encoding="utf-8")
            temp_file.replace(self._metrics_file)
        except OSError as e:
            logger.error(f"Failed to save metrics to {self._metrics_file}: {e}")
            return False
        self._unsaved = 0
        return True

    def save_metrics(self) -> bool:
        """Persist now; returns False when no metrics file is set."""
        with self._lock:
            if not self._metrics_file:
                return False
            return self._write()

    def get_metrics_file(self) -> Optional[Path]:
        return self._metrics_file


metrics = MetricsCollector()


def _fields(values: Dict[str, Any]) -> str:
    return ", ".join(f"{k}={v}" for k, v in values.items())


@contextmanager
def timed_operation(operation: str, **context) -> Iterator[Dict[str, Any]]:
    """Time a block, record it in ``metrics`` and log its start and end.

    The yielded dict carries a short ``correlation_id``; the caller may add
    result details to it, which are logged at the end.

    Example:
        with timed_operation("vault_search", query="dragon") as op:
            results = service.search("dragon")
            op["result_count"] = len(results)
    """
    info: Dict[str, Any] = {"correlation_id": uuid.uuid4().hex[:8]}
    tag = info["correlation_id"]
    logger.debug(f"[{tag}] START {operation} ({_fields(context)})")
    started = time.perf_counter()
    error: Optional[str] = None
    try:
        yield info
    except Exception as e:
        error = str(e)
        raise
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        metrics.record_operation(operation, elapsed_ms, error is None, error)
        details = _fields({k: v for k, v in info.items() if k != "correlation_id"})
        outcome = "OK" if error is None else f"ERROR: {error}"
        logger.debug(f"[{tag}] END {operation} ({elapsed_ms:.2f}ms) [{outcome}] {details}")
