"""Logging configuration for netwarden.

Provides configurable logging with:
- File-based logging with rotation
- Console output for real-time debugging
- Step timing for the apply pipeline (separate ``netwarden.perf`` logger)

Environment Variables:
    NETWARDEN_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    NETWARDEN_LOG_FILE: Path to log file (default: /var/log/netwarden/netwarden.log)
    NETWARDEN_LOG_MAX_SIZE: Max log file size in MB (default: 10)
    NETWARDEN_LOG_BACKUPS: Number of backup files to keep (default: 5)

Usage:
    from netwarden.utils.logging_config import setup_logging, timed

    setup_logging()  # Call once at startup

    @timed("dry_run")
    async def check(self, content):
        ...

    async with timed_section("applying", subject=txn.id):
        ...
"""
import asyncio
import functools
import logging
import os
import time
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Callable, Any

# Performance logger - separate from main logger for easy filtering
perf_logger = logging.getLogger("netwarden.perf")
main_logger = logging.getLogger("netwarden")

DEFAULT_LOG_FILE = Path("/var/log/netwarden/netwarden.log")


def get_log_level() -> int:
    """Get log level from environment."""
    level_str = os.environ.get("NETWARDEN_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_str, logging.INFO)


def get_log_file() -> Path:
    """Get log file path from environment."""
    path_str = os.environ.get("NETWARDEN_LOG_FILE", str(DEFAULT_LOG_FILE))
    return Path(path_str)


def setup_logging(log_file: Optional[Path] = None) -> None:
    """Configure logging for the application.

    Sets up:
    - Console handler (respects NETWARDEN_LOG_LEVEL)
    - File handler with rotation (DEBUG level - captures everything)
    - Performance handler writing step timings next to the main log

    Args:
        log_file: Overrides NETWARDEN_LOG_FILE when given
    """
    log_level = get_log_level()
    log_file = Path(log_file) if log_file else get_log_file()
    max_size_mb = int(os.environ.get("NETWARDEN_LOG_MAX_SIZE", "10"))
    backup_count = int(os.environ.get("NETWARDEN_LOG_BACKUPS", "5"))

    log_file.parent.mkdir(parents=True, exist_ok=True)

    main_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(name)-32s | %(levelname)-8s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    perf_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | PERF | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(main_format)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(main_format)

    perf_log_file = log_file.parent / "netwarden-perf.log"
    perf_handler = RotatingFileHandler(
        perf_log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    perf_handler.setLevel(logging.DEBUG)
    perf_handler.setFormatter(perf_format)

    # Module loggers are children of "netwarden", so one root covers them all.
    # The perf logger gets its own file and does not propagate.
    root_logger = logging.getLogger("netwarden")
    root_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    perf_logger.setLevel(logging.DEBUG)
    perf_logger.addHandler(perf_handler)
    perf_logger.propagate = False

    root_logger.info(f"Logging initialized: level={logging.getLevelName(log_level)}, file={log_file}")
    perf_logger.info(f"Performance logging to: {perf_log_file}")


def _format_timing(operation: str, subject: Optional[str], elapsed: float, status: str, extra: dict) -> str:
    msg = f"{operation:20s} | {subject or 'N/A':24s} | {elapsed:8.2f}ms | {status}"
    if extra:
        msg += " | " + " | ".join(f"{k}={v}" for k, v in extra.items())
    return msg


def timed(operation: str):
    """Decorator to log execution time of sync/async functions.

    The subject column is taken from ``self.name`` when the decorated
    callable is a method on an object that has one.

    Args:
        operation: Name of the operation (e.g., "dry_run", "apply", "query")
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs) -> Any:
            subject = getattr(args[0], "name", None) if args else None
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_format_timing(operation, subject, elapsed, f"FAIL: {e}", {}))
                raise
            elapsed = (time.perf_counter() - start) * 1000
            perf_logger.info(_format_timing(operation, subject, elapsed, "OK", {}))
            return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs) -> Any:
            subject = getattr(args[0], "name", None) if args else None
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_format_timing(operation, subject, elapsed, f"FAIL: {e}", {}))
                raise
            elapsed = (time.perf_counter() - start) * 1000
            perf_logger.info(_format_timing(operation, subject, elapsed, "OK", {}))
            return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


@asynccontextmanager
async def timed_section(operation: str, subject: Optional[str] = None, **extra):
    """Async context manager for timing code sections.

    Args:
        operation: Name of the operation
        subject: What is being timed (a transaction id, an interface)
        **extra: Additional context to log

    Usage:
        async with timed_section("verifying", subject=txn.id, interfaces=3):
            await self._verify(...)
    """
    start = time.perf_counter()
    try:
        yield
    except BaseException as e:
        elapsed = (time.perf_counter() - start) * 1000
        perf_logger.warning(_format_timing(operation, subject, elapsed, f"FAIL: {e!r}", extra))
        raise
    elapsed = (time.perf_counter() - start) * 1000
    perf_logger.info(_format_timing(operation, subject, elapsed, "OK", extra))
