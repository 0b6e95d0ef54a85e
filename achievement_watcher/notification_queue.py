"""
Notification queue.

Earned and progress notifications run in two independent lanes. Each lane
is a FIFO with a single consumer that shows one notification at a time and
waits out its display duration before taking the next one.
"""

import asyncio
import os
from pathlib import Path
from collections import deque
from typing import Deque, Dict, List, Optional, Protocol

from achievement_watcher.canonical import get_safe_localized_text
from achievement_watcher.config import PreferenceName, config_manager, resource_path
from achievement_watcher.constants import ICON_SUBFOLDERS
from achievement_watcher.logger import setup_logger
from achievement_watcher.models import AchievementState, GameConfig, NotificationPayload, SchemaEntry
from achievement_watcher.task_registry import cancel_owner_tasks, register_task

logger = setup_logger()

DELIVERED_HISTORY = 200
FALLBACK_ICON = resource_path(os.path.join("icons", "achievement.png"))

KIND_EARNED = "earned"
KIND_PROGRESS = "progress"
KIND_PLATINUM = "platinum"

LANE_EARNED = "earned"
LANE_PROGRESS = "progress"


class Presenter(Protocol):
    """Shows one notification and returns once it has left the screen."""

    async def present(self, payload: NotificationPayload, duration: float) -> None:
        ...


class LoggingPresenter:
    """Writes notifications to the application log and holds the lane for the display duration."""

    async def present(self, payload: NotificationPayload, duration: float) -> None:
        if payload.kind == KIND_PROGRESS:
            logger.info(
                f"[{payload.game}] {payload.display_name}: "
                f"{payload.progress or 0:g}/{payload.max_progress or 0:g}"
            )
        else:
            logger.info(f"[{payload.game}] Achievement unlocked: {payload.display_name} - {payload.description}")
        if duration > 0:
            await asyncio.sleep(duration)


def resolve_icon(config_path: Optional[str], icon: Optional[str]) -> str:
    """
    Absolute icon path for a schema icon value.

    The relative path itself is tried first, then its base name inside the
    conventional image folders of the game's config directory. Falls back
    to the generic icon.
    """
    if not icon:
        return FALLBACK_ICON
    icon_path = Path(icon)
    if icon_path.is_absolute():
        return str(icon_path) if icon_path.is_file() else FALLBACK_ICON
    if not config_path:
        return FALLBACK_ICON
    base = Path(config_path)
    candidates = [base / icon_path]
    candidates.extend(base / folder / icon_path.name for folder in ICON_SUBFOLDERS)
    for candidate in candidates:
        if candidate.is_file():
            return str(candidate)
    return FALLBACK_ICON


def build_payload(config: GameConfig, name: str, entry: Optional[SchemaEntry],
                  state: Optional[AchievementState] = None, kind: str = KIND_EARNED,
                  language: Optional[str] = None) -> NotificationPayload:
    """
    Assemble the payload for one transition.

    Args:
        config: Game config the achievement belongs to
        name: Canonical achievement name
        entry: Schema entry, None when the schema does not know the name
        state: Current state (progress fields are copied for progress payloads)
        kind: earned, progress or platinum
        language: Display language, defaults to the Language preference

    Returns:
        NotificationPayload with localized text and a resolved icon path
    """
    language = language or config_manager.get_language()
    display_name = get_safe_localized_text(entry.display_name, language) if entry else name
    description = get_safe_localized_text(entry.description, language) if entry else ""
    icon = entry.icon if entry else ""
    icon_gray = entry.icon_gray if entry else ""
    payload = NotificationPayload(
        display_name=display_name,
        description=description,
        icon=icon,
        icon_gray=icon_gray,
        icon_path=resolve_icon(config.config_path, icon),
        config_path=config.config_path,
        preset=config_manager.get_preference(PreferenceName.PRESET),
        position=config_manager.get_preference(PreferenceName.POSITION),
        sound=config_manager.get_preference(PreferenceName.SOUND),
        kind=kind,
        game=config.name,
        achievement=name,
    )
    if kind == KIND_PROGRESS and state is not None:
        payload.progress = state.progress
        payload.max_progress = state.max_progress
    return payload


class NotificationLane:
    """Single-consumer FIFO; the consumer task is started lazily on the running loop."""

    def __init__(self, name: str, presenter: Presenter, duration: float):
        self.name = name
        self.presenter = presenter
        self.duration = duration
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self.delivered: Deque[NotificationPayload] = deque(maxlen=DELIVERED_HISTORY)

    @property
    def owner(self) -> str:
        return f"notifications:{self.name}"

    def _ensure_started(self):
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._consumer is None or self._consumer.done():
            self._consumer = register_task(
                asyncio.create_task(self._consume(), name=f"notification-lane-{self.name}"),
                self.owner,
            )

    def enqueue(self, payload: NotificationPayload):
        self._ensure_started()
        self._queue.put_nowait(payload)

    async def _consume(self):
        while True:
            payload = await self._queue.get()
            try:
                await self.presenter.present(payload, self.duration)
                self.delivered.append(payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Failed to present notification {payload.achievement}: {e}")
            finally:
                self._queue.task_done()

    async def join(self):
        if self._queue is not None:
            await self._queue.join()

    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def stop(self):
        cancel_owner_tasks(self.owner)
        self._consumer = None
        self._queue = None


class NotificationQueue:
    """
    Routes payloads to the earned or progress lane.

    Platinum payloads share the earned lane.
    """

    def __init__(self, presenter: Optional[Presenter] = None,
                 earned_duration: Optional[float] = None, progress_duration: Optional[float] = None):
        presenter = presenter or LoggingPresenter()
        if earned_duration is None:
            earned_duration = config_manager.get_duration_seconds(PreferenceName.NOTIFICATION_DURATION)
        if progress_duration is None:
            progress_duration = config_manager.get_duration_seconds(PreferenceName.PROGRESS_DURATION)
        self.lanes: Dict[str, NotificationLane] = {
            LANE_EARNED: NotificationLane(LANE_EARNED, presenter, earned_duration),
            LANE_PROGRESS: NotificationLane(LANE_PROGRESS, presenter, progress_duration),
        }

    def enqueue(self, payload: NotificationPayload):
        lane = LANE_PROGRESS if payload.kind == KIND_PROGRESS else LANE_EARNED
        self.lanes[lane].enqueue(payload)

    async def join(self):
        """Wait until both lanes have shown everything queued so far"""
        for lane in self.lanes.values():
            await lane.join()

    def delivered(self, lane: str = LANE_EARNED) -> List[NotificationPayload]:
        return self.lanes[lane].delivered

    def stop(self):
        for lane in self.lanes.values():
            lane.stop()
