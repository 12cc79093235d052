import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler

from edumarket.config import get_settings

ROOT_LOGGER = "edumarket"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

CONSOLE_FORMAT = logging.Formatter(
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
FILE_FORMAT = logging.Formatter(
    "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


def _rotating(path: Path, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS)
    handler.setLevel(level)
    handler.setFormatter(FILE_FORMAT)
    return handler


def setup_logging() -> logging.Logger:
    """Attach console, app.log and errors.log handlers to the package logger.

    Safe to call repeatedly; handlers are only installed once per process.
    """
    root = logging.getLogger(ROOT_LOGGER)
    if getattr(root, "_edumarket_configured", False):
        return root

    settings = get_settings()
    level = logging.DEBUG if settings.APP_DEBUG else logging.INFO
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(CONSOLE_FORMAT)
    root.addHandler(console)

    logs_dir = Path(settings.LOG_DIR)
    logs_dir.mkdir(parents=True, exist_ok=True)
    root.addHandler(_rotating(logs_dir / "app.log", logging.INFO))
    root.addHandler(_rotating(logs_dir / "errors.log", logging.ERROR))

    root._edumarket_configured = True
    return root


def get_logger(name: str = None) -> logging.Logger:
    """Package logger, or a child of it when `name` is given."""
    root = setup_logging()
    return root.getChild(name) if name else root
