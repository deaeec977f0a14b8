"""
Shared helpers: logging setup, submission retries, atomic writes,
collection identifiers and console output.

Both sides of batchgrid log through the ``batchgrid`` logger: the controller
(CLI or a notebook) and the driver inside a worker. Worker output ends up in
the registry's ``logs/`` directory, so workers log in the plain format.
"""

import json
import logging
import os
import secrets
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from rich.console import Console
from rich.logging import RichHandler


console = Console()

PLAIN_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

# Record attributes passed through ``extra=`` that end up in structured logs
LOG_CONTEXT_FIELDS = ("job_id", "job_hash", "batch_id", "backend")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def setup_logging(
    log_file: Optional[Path] = None,
    log_level: str = "INFO",
    log_format: str = "structured",
    console_output: bool = True,
) -> logging.Logger:
    """
    Configure the ``batchgrid`` logger.

    Any handlers from an earlier call are dropped, so the CLI and tests can
    call this repeatedly.

    Args:
        log_file: Also append records to this file (JSON lines when
            log_format is "structured")
        log_level: Level name, e.g. "DEBUG" or "WARNING"
        log_format: "structured" (JSON), "pretty" (rich) or "plain"
        console_output: Attach a handler writing to stderr

    Returns:
        The ``batchgrid`` logger
    """
    logger = logging.getLogger("batchgrid")
    logger.setLevel(log_level.upper())
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        if log_format == "structured":
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(PLAIN_FORMAT))
        logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            stream_handler: logging.Handler = RichHandler(
                console=Console(stderr=True), show_time=False, rich_tracebacks=True
            )
        else:
            stream_handler = logging.StreamHandler()
            stream_handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        logger.addHandler(stream_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, carrying job context fields when present."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in LOG_CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def retry_with_backoff(
    func: Callable[[], Any],
    max_attempts: int = 3,
    backoff_seconds: float = 60,
    backoff_multiplier: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    logger: Optional[logging.Logger] = None,
) -> Any:
    """
    Call func until it succeeds, sleeping between attempts.

    The sleep starts at backoff_seconds and grows by backoff_multiplier
    after every failed attempt. Only exceptions in retry_on are retried;
    anything else propagates from the first attempt.

    Raises:
        ValueError: If max_attempts is less than 1
        Exception: The last error once all attempts failed
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")

    delay = backoff_seconds
    for attempt in range(1, max_attempts + 1):
        try:
            return func()
        except retry_on as e:
            if attempt == max_attempts:
                if logger:
                    logger.error(f"Giving up after {max_attempts} attempt(s): {e}")
                raise
            if logger:
                logger.warning(f"Attempt {attempt}/{max_attempts} failed ({e}); next try in {delay:g}s")
            time.sleep(delay)
            delay *= backoff_multiplier


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """
    Write bytes to path so readers see either the old file or the new one.

    The data goes to a temporary file in the same directory which is then
    renamed over the target.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def atomic_write_json(path: Path, data: Any) -> None:
    """Serialize data as JSON and write it atomically."""
    atomic_write_bytes(path, json.dumps(data, indent=2, sort_keys=True).encode())


_CROCKFORD32 = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def generate_ulid() -> str:
    """
    Return a new ULID: 26 Crockford base32 characters, sortable by creation time.

    The first 10 characters encode the millisecond timestamp, the remaining
    16 characters 80 random bits.
    """
    value = (int(time.time() * 1000) << 80) | secrets.randbits(80)
    chars = []
    for _ in range(26):
        value, index = divmod(value, 32)
        chars.append(_CROCKFORD32[index])
    return "".join(reversed(chars))


def format_duration(seconds: float) -> str:
    """Render seconds as e.g. "45s", "3m 07s" or "2h 05m 00s"."""
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_error(message: str) -> None:
    console.print(f"[bold red]✗ {message}[/bold red]")
