"""
Application runner: attaches every configured game and keeps the
notification lanes running until cancelled.
"""

import asyncio
from pathlib import Path
from typing import Optional

from achievement_watcher.config import get_configs_dir
from achievement_watcher.game_configs import load_game_configs
from achievement_watcher.logger import setup_logger
from achievement_watcher.notification_queue import NotificationQueue, Presenter
from achievement_watcher.task_registry import cancel_all_tasks
from achievement_watcher.version import __version__
from achievement_watcher.watcher import WatchOrchestrator

logger = setup_logger()


async def run(configs_dir: Optional[Path] = None, presenter: Optional[Presenter] = None,
              stop_event: Optional[asyncio.Event] = None) -> int:
    """
    Watch all configured games until ``stop_event`` is set or the task is cancelled.

    Returns:
        Number of games that were attached
    """
    logger.info(f"Achievement Watcher v{__version__} starting...")
    configs_dir = Path(configs_dir or get_configs_dir())
    orchestrator = WatchOrchestrator(
        notifications=NotificationQueue(presenter),
        configs_dir=configs_dir,
    )

    attached = 0
    try:
        for config in await load_game_configs(configs_dir):
            try:
                if await orchestrator.attach(config):
                    attached += 1
            except Exception as e:
                logger.error(f"Failed to attach {config.name}: {e}", exc_info=True)

        if not attached:
            logger.warning(f"No games to watch, add game configs to {configs_dir}")
        else:
            logger.info(f"Watching {attached} game(s)")

        await (stop_event or asyncio.Event()).wait()
    finally:
        await orchestrator.stop()
        await cancel_all_tasks()
        logger.info("Achievement Watcher stopped")
    return attached


def main():
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
