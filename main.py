"""
Achievement Watcher - console entry point
Watches emulator/launcher save files and announces newly earned achievements
"""

import sys

from achievement_watcher.app import main
from achievement_watcher.config import config_manager, get_configs_dir
from achievement_watcher.logger import set_console_level, setup_logger


def check_prerequisites():
    """Prepare logging and the config locations before watching"""
    logger = setup_logger()

    if "--debug" in sys.argv[1:]:
        set_console_level("DEBUG")
        logger.debug("Debug logging enabled")

    logger.info(f"Preferences: {config_manager.config_path}")
    logger.info(f"Game configs: {get_configs_dir()}")
    return logger


if __name__ == "__main__":
    check_prerequisites()
    main()
