"""
Watch orchestrator.

Each attached game config gets a WatchState owned by the orchestrator. File
events arrive from a watchdog observer thread and are handed to the event
loop, where a small timer state machine (Idle -> Pending -> Evaluating)
debounces bursts, enforces a per-path cooldown and runs one evaluation at a
time per game. An evaluation parses the current save file with the previous
snapshot as fallback, diffs, queues notifications and persists the result.

Registry-backed (LumaPlay) configs are polled on a timer instead.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from achievement_watcher.canonical import find_schema_entry
from achievement_watcher.config import WatcherSetting, config_manager
from achievement_watcher.diff_engine import diff, is_complete, snapshot_changed
from achievement_watcher.game_configs import mark_platinum
from achievement_watcher.logger import setup_logger
from achievement_watcher.models import GameConfig, Snapshot
from achievement_watcher.notification_queue import (
    KIND_EARNED,
    KIND_PLATINUM,
    KIND_PROGRESS,
    NotificationQueue,
    build_payload,
)
from achievement_watcher.parsers import ParseContext, parse_lumaplay_save, parse_source
from achievement_watcher.snapshot_cache import SnapshotCache
from achievement_watcher.task_registry import cancel_owner_tasks, register_task
from achievement_watcher.watch_targets import WatchTarget, build_watch_target

logger = setup_logger()

RELEVANT_EVENT_TYPES = frozenset({"created", "modified", "moved", "closed"})


class TimerState(Enum):
    IDLE = "idle"
    PENDING = "pending"
    EVALUATING = "evaluating"


@dataclass
class WatchState:
    """Everything the orchestrator tracks for one attached game"""
    config: GameConfig
    target: WatchTarget
    ctx: ParseContext
    snapshot: Snapshot = field(default_factory=dict)
    seed_only: bool = False
    initial: bool = True
    timer: TimerState = TimerState.IDLE
    debounce: Dict[str, asyncio.TimerHandle] = field(default_factory=dict)
    retry: Optional[asyncio.TimerHandle] = None
    last_check: Dict[str, float] = field(default_factory=dict)
    rerun: bool = False
    roots: List[Tuple[str, bool]] = field(default_factory=list)
    detached: bool = False

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def owner(self) -> str:
        return f"watch:{self.config.name}"

    def cancel_timers(self):
        for handle in self.debounce.values():
            handle.cancel()
        self.debounce.clear()
        if self.retry is not None:
            self.retry.cancel()
            self.retry = None


class SaveEventHandler(FileSystemEventHandler):
    """Forwards file events from the observer thread to the event loop"""

    def __init__(self, loop: asyncio.AbstractEventLoop, callback: Callable[[str], None]):
        super().__init__()
        self.loop = loop
        self.callback = callback

    def on_any_event(self, event):
        if event.is_directory or event.event_type not in RELEVANT_EVENT_TYPES:
            return
        path = getattr(event, "dest_path", "") or event.src_path
        if isinstance(path, bytes):
            path = path.decode(errors="replace")
        try:
            self.loop.call_soon_threadsafe(self.callback, path)
        except RuntimeError:
            # loop already closed during shutdown
            logger.debug(f"Dropped file event after shutdown: {path}")


class WatchOrchestrator:
    """
    Attaches game configs and turns save-file changes into notifications.

    Args:
        notifications: Queue receiving the payloads
        cache: Snapshot cache (defaults to the per-user cache dir)
        suppress_active: Do not emit notifications for the active config
            (snapshots are still persisted)
        configs_dir: Where game config JSON files live (platinum flag)
        observer_factory: Callable returning a watchdog observer
    """

    def __init__(self, notifications: Optional[NotificationQueue] = None, cache: Optional[SnapshotCache] = None,
                 suppress_active: bool = True, configs_dir: Optional[Path] = None,
                 observer_factory: Callable = Observer):
        self.notifications = notifications or NotificationQueue()
        self.cache = cache or SnapshotCache()
        self.suppress_active = suppress_active
        self.active_config: Optional[str] = None
        self.configs_dir = configs_dir
        self.states: Dict[str, WatchState] = {}

        self.debounce_delay = config_manager.get_watcher_seconds(WatcherSetting.DEBOUNCE)
        self.cooldown = config_manager.get_watcher_seconds(WatcherSetting.COOLDOWN)
        self.retry_delay = config_manager.get_watcher_seconds(WatcherSetting.RETRY_DELAY)
        self.poll_interval = config_manager.get_watcher_seconds(WatcherSetting.REGISTRY_POLL)

        self._observer_factory = observer_factory
        self._observer = None
        self._handler: Optional[SaveEventHandler] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        # (directory, recursive) -> [ObservedWatch, attached game count]
        self._root_watches: Dict[Tuple[str, bool], list] = {}

    # ------------------------------------------------------------------
    # Attach / detach
    # ------------------------------------------------------------------

    def set_active_config(self, name: Optional[str]):
        self.active_config = name

    def is_suppressed(self, state: WatchState) -> bool:
        return self.suppress_active and self.active_config == state.name

    async def attach(self, config: GameConfig) -> bool:
        """
        Start tracking a game.

        The cached snapshot becomes the baseline; an empty cache means the
        attach-time parse only seeds it. A save file that first appears
        later is diffed normally. The initial evaluation runs before this
        returns.

        Returns:
            False when the game has nothing that can be watched
        """
        if config.name in self.states:
            self.detach(config.name)
        self._loop = asyncio.get_running_loop()

        target = build_watch_target(config)
        if not target.uses_registry and not target.roots:
            logger.error(f"No save location configured for {config.name}, not watching")
            return False

        state = WatchState(
            config=config,
            target=target,
            ctx=ParseContext(config, language=config_manager.get_language()),
        )
        state.snapshot = await self.cache.load(config.name)
        state.seed_only = not state.snapshot

        if not target.uses_registry:
            for root, recursive in target.roots:
                if not root.is_dir():
                    logger.warning(f"Save directory for {config.name} does not exist yet: {root}")
                    continue
                self._watch_root(str(root), recursive)
                state.roots.append((str(root), recursive))
            if not state.roots:
                logger.error(f"No existing save directory for {config.name}, not watching")
                return False

        self.states[config.name] = state
        logger.info(f"Watching {config.name} ({config.platform}, {len(state.snapshot)} cached entries)")

        await self._run_evaluation(state, retry_eligible=True)
        if target.uses_registry and not state.detached:
            register_task(asyncio.create_task(self._poll_registry(state), name=f"poll-{config.name}"), state.owner)
        return True

    def detach(self, name: str) -> bool:
        """Stop watching a game; pending debounce/retry timers never fire afterwards"""
        state = self.states.pop(name, None)
        if state is None:
            return False
        state.detached = True
        state.cancel_timers()
        state.timer = TimerState.IDLE
        for root in state.roots:
            self._unwatch_root(root)
        state.roots.clear()
        cancel_owner_tasks(state.owner)
        logger.info(f"Stopped watching {name}")
        return True

    async def rename_config(self, old_name: str, config: GameConfig) -> bool:
        """Move a game's cache along with its renamed config and re-attach it"""
        self.detach(old_name)
        await self.cache.rename(old_name, config.name)
        return await self.attach(config)

    async def remove_config(self, name: str):
        self.detach(name)
        await self.cache.delete(name)

    async def stop(self):
        for name in list(self.states):
            self.detach(name)
        self.notifications.stop()
        if self._observer is not None:
            observer, self._observer = self._observer, None
            observer.stop()
            await asyncio.to_thread(observer.join, 5)
        self._root_watches.clear()

    # ------------------------------------------------------------------
    # Filesystem subscriptions
    # ------------------------------------------------------------------

    def _ensure_observer(self):
        if self._observer is None:
            self._handler = SaveEventHandler(self._loop, self.on_file_event)
            self._observer = self._observer_factory()
            self._observer.start()
        return self._observer

    def _watch_root(self, path: str, recursive: bool):
        key = (path, recursive)
        entry = self._root_watches.get(key)
        if entry is not None:
            entry[1] += 1
            return
        observer = self._ensure_observer()
        watch = observer.schedule(self._handler, path, recursive=recursive)
        self._root_watches[key] = [watch, 1]
        logger.debug(f"Observing {path} (recursive={recursive})")

    def _unwatch_root(self, key: Tuple[str, bool]):
        entry = self._root_watches.get(key)
        if entry is None:
            return
        entry[1] -= 1
        if entry[1] > 0:
            return
        del self._root_watches[key]
        if self._observer is not None:
            try:
                self._observer.unschedule(entry[0])
            except KeyError:
                logger.debug(f"Watch for {key[0]} was already gone")

    # ------------------------------------------------------------------
    # Timer state machine
    # ------------------------------------------------------------------

    def on_file_event(self, path: str):
        """Called on the loop for every add/change event from the observer"""
        for state in list(self.states.values()):
            try:
                if state.target.uses_registry or not state.target.is_relevant(path):
                    continue
                self._schedule_debounce(state, path, self.debounce_delay)
            except Exception as e:
                logger.error(f"Error handling file event {path} for {state.name}: {e}")

    def _schedule_debounce(self, state: WatchState, path: str, delay: float):
        handle = state.debounce.pop(path, None)
        if handle is not None:
            handle.cancel()
        state.debounce[path] = self._loop.call_later(delay, self._debounce_fired, state, path)
        if state.timer is TimerState.IDLE:
            state.timer = TimerState.PENDING

    def _debounce_fired(self, state: WatchState, path: str):
        state.debounce.pop(path, None)
        if state.detached:
            return
        elapsed = self._loop.time() - state.last_check.get(path, float("-inf"))
        if elapsed < self.cooldown:
            logger.debug(f"Cooldown active for {path}, re-checking in {self.cooldown - elapsed:.3f}s")
            self._schedule_debounce(state, path, self.cooldown - elapsed)
            return
        self._start_evaluation(state, retry_eligible=True)

    def _retry_fired(self, state: WatchState):
        state.retry = None
        if not state.detached:
            self._start_evaluation(state, retry_eligible=False)

    def _start_evaluation(self, state: WatchState, retry_eligible: bool):
        if state.timer is TimerState.EVALUATING:
            state.rerun = True
            return
        state.timer = TimerState.EVALUATING
        task = asyncio.create_task(self._run_evaluation(state, retry_eligible), name=f"evaluate-{state.name}")
        register_task(task, state.owner)

    async def _run_evaluation(self, state: WatchState, retry_eligible: bool):
        state.timer = TimerState.EVALUATING
        try:
            await self.evaluate(state, retry_eligible=retry_eligible)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Evaluation failed for {state.name}: {e}", exc_info=True)
        finally:
            # only the attach-time evaluation may seed
            state.initial = False
            state.seed_only = False
            if state.detached:
                state.timer = TimerState.IDLE
            elif state.rerun:
                state.rerun = False
                state.timer = TimerState.IDLE
                self._start_evaluation(state, retry_eligible=True)
            else:
                state.timer = TimerState.PENDING if state.debounce or state.retry else TimerState.IDLE

    async def _poll_registry(self, state: WatchState):
        while not state.detached:
            await asyncio.sleep(self.poll_interval)
            if state.timer is TimerState.EVALUATING:
                continue
            await self._run_evaluation(state, retry_eligible=False)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def read_current(self, state: WatchState) -> Tuple[Optional[Snapshot], Optional[Path]]:
        """
        Parse the game's current source with the previous snapshot as fallback.

        Returns:
            (snapshot, source path); snapshot is None when nothing was read
        """
        previous = state.snapshot
        if state.target.uses_registry:
            current = await parse_lumaplay_save(state.config.appid, previous, state.ctx,
                                                preferred_user=state.config.user or "")
            return current, None

        source = await asyncio.to_thread(state.target.resolve)
        if source is None:
            logger.debug(f"No save file present yet for {state.name}")
            return None, None
        if state.initial and previous and await self.cache.source_unchanged(state.name, source):
            logger.debug(f"{source} unchanged since last run, skipping initial parse")
            return None, source
        state.last_check[str(source)] = self._loop.time()
        current = await asyncio.to_thread(parse_source, source, previous, state.ctx)
        return current, source

    async def evaluate(self, state: WatchState, retry_eligible: bool = False) -> bool:
        """
        Run one evaluation for a game.

        Returns:
            True when a changed snapshot was persisted
        """
        previous = state.snapshot
        current, source = await self.read_current(state)
        if state.detached:
            return False

        if current is None or not snapshot_changed(previous, current):
            if current is not None and retry_eligible and state.retry is None and not state.target.uses_registry:
                state.retry = self._loop.call_later(self.retry_delay, self._retry_fired, state)
            return False

        result = diff(previous, current)
        state.snapshot = current
        seeding = state.seed_only
        state.seed_only = False

        if seeding:
            logger.info(f"Seeded {state.name} with {len(current)} entries")
        elif result:
            logger.info(
                f"{state.name}: {len(result.earned_transitions)} unlocked, "
                f"{len(result.progress_transitions)} progress update(s)"
            )
            if self.is_suppressed(state):
                logger.debug(f"{state.name} is the active config, notifications suppressed")
            else:
                self.emit(state, result.earned_transitions, result.progress_transitions)

        await self.check_complete(state, emit=not seeding)

        await self.cache.save(state.name, current)
        if source is not None:
            await self.cache.update_file_meta(state.name, source)
        return True

    def emit(self, state: WatchState, earned: List[str], progress: List[str]):
        schema = state.ctx.schema
        language = state.ctx.language
        for kind, names in ((KIND_EARNED, earned), (KIND_PROGRESS, progress)):
            for name in names:
                entry = find_schema_entry(schema, name)
                if entry is None and schema:
                    logger.warning(f"{state.name}: no schema entry for {name}, not notifying")
                    continue
                self.notifications.enqueue(
                    build_payload(state.config, name, entry, state.snapshot.get(name), kind, language)
                )

    async def check_complete(self, state: WatchState, emit: bool = True):
        """Queue the completion notification once and persist the platinum flag"""
        if state.config.platinum or not is_complete(state.snapshot, state.ctx.schema):
            return
        logger.info(f"All achievements earned for {state.name}")
        if emit and not self.is_suppressed(state):
            self.notifications.enqueue(build_payload(
                state.config, state.name, None, kind=KIND_PLATINUM, language=state.ctx.language,
            ))
        await mark_platinum(state.config, self.configs_dir)
        state.config.platinum = True
