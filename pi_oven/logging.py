from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "PI_OVEN_LOG_DIR",
        Path.home() / ".local" / "state" / "pi-oven" / "logs",
    )
)


def _should_log_boot_request(record) -> bool:
    """Boot file requests arrive for every file of every booting Pi; keep them at DEBUG."""
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "boot" in tags and "request" in tags:
        return record["level"].no >= logger.level("DEBUG").no

    return True


def _should_log_poll(record) -> bool:
    """Device polling chatter is TRACE only."""
    tags = record["extra"].get("tags", [])

    if "poll" in tags:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _combined_filter(record) -> bool:
    """Combined filter for all log suppression rules."""
    return _should_log_boot_request(record) and _should_log_poll(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Provisioning failures, unrecoverable errors
    - SUCCESS/INFO: Bakes, unbakes, node transitions, export regenerations
    - DEBUG: External command execution, lock activity
    - TRACE: Ultra-verbose (device polling, every boot file request)

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - trace.log: TRACE+ events when --trace is enabled (1 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/pi-oven/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr)
    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "<blue>{extra[job_id]: <15}</blue> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <15} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Trace Log
    if trace:
        logger.add(
            log_dir / "trace.log",
            level="TRACE",
            rotation="50 MB",
            retention="1 day",
            compression="zip",
            enqueue=True,
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <15} | "
                "{message}"
            ),
        )

    # SINK 5: Structured JSON Log (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["bake", "node"])
        source: Source component (e.g., "bake", "disks", "web")
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


def new_job_id(operation: str) -> str:
    return f"{operation}-{uuid.uuid4().hex[:8]}"


@contextmanager
def operation_context(operation: str, job_id: str | None = None, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "bake", "unbake", "extract")
        job_id: Correlation id; generated from the operation name when omitted
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("bake", node_id="pi-01", template="raspbian") as log:
            log.debug("Cloning bakeform")
    """
    job_id = job_id or new_job_id(operation)

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed",
                duration_seconds=round(duration, 2),
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_bake(job_id: str | None = None, **details) -> Logger:
        """Logger for a single bake attempt."""
        if job_id is None:
            job_id = new_job_id("bake")
        return logger.bind(job_id=job_id, source="bake", tags=["bake", "node"], **details)

    @staticmethod
    def for_nodes() -> Logger:
        """Logger for node inventory and state transitions."""
        return logger.bind(source="nodes", tags=["node"])

    @staticmethod
    def for_disks() -> Logger:
        """Logger for disk registry operations."""
        return logger.bind(source="disks", tags=["disk", "storage"])

    @staticmethod
    def for_templates() -> Logger:
        """Logger for bakeform mounting, extraction and inventory."""
        return logger.bind(source="bakeforms", tags=["bakeform", "storage"])

    @staticmethod
    def for_exports() -> Logger:
        """Logger for NFS export regeneration."""
        return logger.bind(source="exports", tags=["nfs", "exports"])

    @staticmethod
    def for_power() -> Logger:
        """Logger for power actions."""
        return logger.bind(source="power", tags=["power", "hardware"])

    @staticmethod
    def for_web(request_id: str | None = None) -> Logger:
        """Logger for API requests."""
        if request_id is None:
            request_id = "-"
        return logger.bind(source="web", tags=["web", "api"], request_id=request_id)

    @staticmethod
    def for_boot() -> Logger:
        """Logger for boot file requests."""
        return logger.bind(source="boot", tags=["boot", "request"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, shutdown, config)."""
        return logger.bind(source="system", tags=["system"])


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides methods for logging common events with consistent structure and fields.
    """

    @staticmethod
    def log_node_transition(
        log: Logger, node_id: str, old_status: str, new_status: str, **extra
    ) -> None:
        """Log a node status change."""
        log.info(
            f"Node {node_id}: {old_status} -> {new_status}",
            event_type="node_transition",
            node_id=node_id,
            old_status=old_status,
            new_status=new_status,
            **extra,
        )

    @staticmethod
    def log_disk_lifecycle(log: Logger, action: str, disk_id: str, **extra) -> None:
        """Log disk creation/destruction."""
        log.info(
            f"Disk {action}: {disk_id}",
            event_type="disk_lifecycle",
            action=action,  # "created", "cloned" or "destroyed"
            disk_id=disk_id,
            **extra,
        )

    @staticmethod
    def log_operation_metric(
        log: Logger, operation: str, metric_name: str, value: float, unit: str = "", **extra
    ) -> None:
        """Log operation performance metric."""
        log.debug(
            f"{operation} metric: {metric_name}",
            event_type="operation_metric",
            operation=operation,
            metric=metric_name,
            value=round(value, 2),
            unit=unit,
            **extra,
        )
