"""Logging configuration for the MaaS CLI runtime.

Console output goes to stderr. A daily file under <config dir>/logs/
rotates at 10 MB, keeps 7 days and zips older files.

Levels:
- MAAS_LOG_LEVEL: Global log level (default: INFO)
- CLI_VERBOSE: Forces DEBUG on the console when "true"
- MAAS_LOG_TRANSPORT: Transport/connector log level
- MAAS_LOG_AUTH: Auth manager log level
"""

import os
import sys
from contextlib import contextmanager
from pathlib import Path
from time import perf_counter

from loguru import logger

_verbose = os.getenv("CLI_VERBOSE", "").lower() in ("true", "1", "yes")

# CLI_VERBOSE wins over MAAS_LOG_LEVEL
_global_log_level = "DEBUG" if _verbose else os.getenv("MAAS_LOG_LEVEL", "INFO").upper()

# Prefix of the bound logger name -> level
_component_log_levels: dict[str, str] = {
    "mcp": os.getenv("MAAS_LOG_TRANSPORT", "").upper(),
    "auth": os.getenv("MAAS_LOG_AUTH", "").upper(),
}


def _log_filter(record) -> bool:
    """Apply the component override for this record, else the global level."""
    name = record["extra"].get("name", "")

    for component, level in _component_log_levels.items():
        if level and name.startswith(component):
            try:
                return record["level"].no >= logger.level(level).no
            except ValueError:
                pass

    try:
        return record["level"].no >= logger.level(_global_log_level).no
    except ValueError:
        return True


logger.remove()
logger.configure(extra={"name": "maas"})

_log_dir = Path(os.getenv("MAAS_CONFIG_DIR", str(Path.home() / ".maas"))).expanduser() / "logs"

logger.add(
    sys.stderr,
    level=0,
    filter=_log_filter,
    format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{extra[name]}</cyan> - <level>{message}</level>",
    colorize=True,
)

try:
    _log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        _log_dir / "maas_{time:YYYY-MM-DD}.log",
        level="DEBUG",
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[name]}:{function}:{line} | {message}",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
    )
except OSError as e:
    # Read-only home directories still get console logging
    logger.bind(name="log_config").warning(f"File logging disabled: {e}")


def get_logger(name: str):
    """Logger bound to `name`; component filters match on its prefix."""
    return logger.bind(name=name)


def mask_secret(value: str | None) -> str:
    """Render a credential for logs without leaking it."""
    if not value:
        return "<none>"
    return f"{value[:4]}…"


@contextmanager
def log_timing(operation: str, log_instance=None, level: str = "debug"):
    """Log how long the block took.

    Yields a dict whose "elapsed_ms" is filled in on exit.
    """
    log_fn = log_instance or logger
    timing = {"elapsed_ms": 0.0}
    start = perf_counter()
    try:
        yield timing
    finally:
        timing["elapsed_ms"] = (perf_counter() - start) * 1000
        getattr(log_fn, level)(f"{operation}: {timing['elapsed_ms']:.1f}ms")


__all__ = ["logger", "get_logger", "log_timing", "mask_secret"]
