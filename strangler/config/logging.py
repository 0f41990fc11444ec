"""Loguru sinks for the resilience core.

Installs the console, a rotating main log, an errors-only log with
backtraces and a ``positions.log`` audit trail that only receives records
bound with ``type="position"`` (manual closes, recoveries, phantom cleanup,
fills and timeouts).
"""

import sys
from pathlib import Path

from loguru import logger

from strangler.config.base import get_config

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{line} - {message}"
AUDIT_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {extra[position_id]} | {message}"


def _is_position_event(record) -> bool:
    return record["extra"].get("type") == "position"


def setup_logging(
    log_level: str | None = None,
    log_file: str | None = None,
    enable_console: bool = True,
    console_level: str | None = None,
) -> list[int]:
    """Replace all loguru handlers with the strangler sinks.

    Args:
        log_level: Level for the main file (``Config.log_level`` when None)
        log_file: Main log path (``Config.log_file`` when None); the errors
            and positions logs are written next to it
        enable_console: Whether to write to stderr as well
        console_level: Console level (defaults to log_level)

    Returns:
        The loguru handler ids that were added
    """
    config = get_config()
    log_level = log_level or config.log_level
    log_path = Path(log_file or config.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger.remove()
    handler_ids = []

    if enable_console:
        handler_ids.append(
            logger.add(
                sys.stderr,
                level=console_level or log_level,
                format=CONSOLE_FORMAT,
                colorize=True,
            )
        )

    handler_ids.append(
        logger.add(
            log_path,
            level=log_level,
            format=FILE_FORMAT,
            rotation="100 MB",
            retention="30 days",
            compression="zip",
            enqueue=True,
        )
    )

    handler_ids.append(
        logger.add(
            log_path.parent / "errors.log",
            level="ERROR",
            format=FILE_FORMAT,
            rotation="50 MB",
            retention="60 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
        )
    )

    handler_ids.append(
        logger.add(
            log_path.parent / "positions.log",
            level="INFO",
            format=AUDIT_FORMAT,
            rotation="50 MB",
            retention="1 year",
            compression="zip",
            enqueue=True,
            filter=_is_position_event,
        )
    )

    logger.info(f"Logging initialized: level={log_level}, file={log_path}")
    return handler_ids


def log_position_event(message: str, position_id: str = "-", **kwargs) -> None:
    """Write a position lifecycle event to the audit trail.

    Example:
        >>> log_position_event("Position closed", position_id="3f2a9c1e", reason="manual_close")
    """
    logger.bind(type="position", position_id=position_id, **kwargs).info(message)
