import logging
import sys
from pathlib import Path

import appdirs

from achievement_watcher.constants import APP_AUTHOR, APP_NAME


LOGGER_NAME = "AchievementWatcher"


def setup_logger(log_file_name="achievement_watcher.log"):
    """
    Setups the initial logger.
    param: log_file_name: filename to be used for the logfile.
    return: logger instance created.
    """
    logger = logging.getLogger(LOGGER_NAME)

    # Check if the logger has already been configured
    if not logger.handlers:
        logger.setLevel(logging.DEBUG)

        if getattr(sys, "frozen", False):
            log_file_path = Path(sys.executable).parent / log_file_name
        else:
            log_file_path = Path(appdirs.user_log_dir(APP_NAME, APP_AUTHOR)) / log_file_name

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        log_format = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
        console_handler.setFormatter(log_format)
        logger.addHandler(console_handler)

        # Read-only installs still get console logging
        try:
            log_file_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
            file_handler.setFormatter(log_format)
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(f"File logging disabled ({log_file_path}): {e}")

        # Prevent propagation to avoid duplicate logs
        logger.propagate = False

    return logger


def set_console_level(level):
    """
    Change the verbosity of the stdout handler only.
    @param: level: logging level name or number.
    """
    logger = setup_logger()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and not isinstance(
            handler, logging.FileHandler
        ):
            handler.setLevel(level)
