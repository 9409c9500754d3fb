import logging
import sys
from typing import Optional

APP_LOGGER_NAME = "spotify_remote"

_console = logging.getLogger(f"{APP_LOGGER_NAME}.console")


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure the application loggers once.

    Console output goes to stdout without decoration (menus print through it);
    an optional log file receives timestamped records from every module.
    """
    numeric_level = getattr(logging, str(level or "INFO").upper(), logging.INFO)

    app_logger = logging.getLogger(APP_LOGGER_NAME)
    app_logger.setLevel(logging.DEBUG)
    app_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    app_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        app_logger.addHandler(file_handler)

    # httpx logs every request at INFO; keep it out of the console.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def log_info(message: str) -> None:
    _console.info(message)


def log_success(message: str) -> None:
    _console.info(f"✅ {message}")


def log_warning(message: str) -> None:
    _console.warning(f"⚠️ {message}")


def log_error(message: str) -> None:
    _console.error(f"❌ {message}")
