"""
Logging for peerdm.

All subsystem loggers hang off the "peerdm" logger: colored console output on
stderr through colorlog, plus an optional plain-text file. Reconfiguring
replaces only the handlers installed here, so handlers added by the host
application (or by pytest) stay in place.
"""

import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Union

import colorlog

if TYPE_CHECKING:
    from peerdm.core.config import NodeConfig


ROOT_LOGGER = "peerdm"
LOG_FILE = "peerdm.log"

CONSOLE_FORMAT = "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(blue)s%(name)s%(reset)s %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s %(message)s"
DATE_FORMAT = "%H:%M:%S"

LEVEL_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}

# Marks handlers owned by setup_logging()
_OWNED = "_peerdm_handler"

_configured = False


def _own(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    setattr(handler, _OWNED, True)
    return handler


def _console_handler(level: int) -> logging.Handler:
    handler = colorlog.StreamHandler(sys.stderr)
    handler.setFormatter(
        colorlog.ColoredFormatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT, log_colors=LEVEL_COLORS)
    )
    return _own(handler, level)


def _file_handler(log_dir: Path, level: int) -> logging.Handler:
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_dir / LOG_FILE, encoding="utf-8")
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d " + DATE_FORMAT))
    return _own(handler, level)


def _level(level: Union[int, str]) -> int:
    if isinstance(level, str):
        return logging.getLevelName(level.upper())
    return level


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_dir: Optional[Union[str, Path]] = None,
    log_to_file: bool = False,
) -> logging.Logger:
    """
    (Re)configure the peerdm logger.

    Args:
        level: Level name or number
        log_dir: Directory for peerdm.log; defaults to ./logs
        log_to_file: Also write to log_dir/peerdm.log

    Returns:
        The "peerdm" logger
    """
    global _configured

    numeric = _level(level)
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(numeric)

    for handler in [h for h in root.handlers if getattr(h, _OWNED, False)]:
        root.removeHandler(handler)
        handler.close()

    root.addHandler(_console_handler(numeric))
    if log_to_file:
        root.addHandler(_file_handler(Path(log_dir) if log_dir else Path("logs"), numeric))

    _configured = True
    return root


def configure_logging(config: "NodeConfig") -> logging.Logger:
    """Apply the log_level and log_dir of a NodeConfig."""
    return setup_logging(
        level=config.log_level,
        log_dir=config.log_dir,
        log_to_file=config.log_dir is not None,
    )


def get_logger(name: str) -> logging.Logger:
    """Logger for a subsystem, e.g. get_logger("tcp") -> "peerdm.tcp"."""
    if not _configured:
        setup_logging()
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
