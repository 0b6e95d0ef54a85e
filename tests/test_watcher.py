"""
Tests for the watch orchestrator. A fake observer stands in for watchdog and
file events are injected directly.
"""

import asyncio
import json
from unittest.mock import patch

from watchdog.events import DirModifiedEvent, FileModifiedEvent, FileMovedEvent

from achievement_watcher.models import AchievementState, GameConfig
from achievement_watcher.notification_queue import KIND_PLATINUM, NotificationQueue
from achievement_watcher.parsers import parse_source
from achievement_watcher.snapshot_cache import SnapshotCache
from achievement_watcher.watcher import SaveEventHandler, TimerState, WatchOrchestrator

EARNED_A1 = {"name": "A1", "achieved": True, "UnlockTime": 1700000000}
LOCKED_A2 = {"name": "A2", "achieved": False}
EARNED_A2 = {"name": "A2", "achieved": True, "UnlockTime": 1700000100}


class FakeObserver:
    def __init__(self):
        self.scheduled = []
        self.started = False
        self.stopped = False

    def start(self):
        self.started = True

    def schedule(self, handler, path, recursive=False):
        watch = (path, recursive)
        self.scheduled.append(watch)
        return watch

    def unschedule(self, watch):
        self.scheduled.remove(watch)

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        pass


class RecordingPresenter:
    def __init__(self):
        self.shown = []

    async def present(self, payload, duration):
        self.shown.append(payload)


def write_save(save_dir, rows):
    (save_dir / "achievements.json").write_text(json.dumps(rows))


def make_orchestrator(tmp_path, suppress_active=True):
    presenter = RecordingPresenter()
    orchestrator = WatchOrchestrator(
        notifications=NotificationQueue(presenter, earned_duration=0, progress_duration=0),
        cache=SnapshotCache(tmp_path / "cache"),
        suppress_active=suppress_active,
        configs_dir=tmp_path / "configs",
        observer_factory=FakeObserver,
    )
    orchestrator.debounce_delay = 0.01
    orchestrator.cooldown = 0
    orchestrator.retry_delay = 0.05
    orchestrator.poll_interval = 0.01
    return orchestrator, presenter


def game(tmp_path, **overrides):
    save_dir = tmp_path / "save"
    save_dir.mkdir(exist_ok=True)
    values = dict(name="Spacewar", appid="480", platform="steam", save_path=str(save_dir))
    values.update(overrides)
    return GameConfig(**values), save_dir


async def settle(orchestrator, delay=0.3):
    await asyncio.sleep(delay)
    await orchestrator.notifications.join()


class TestSeedingAndChanges:
    """Test the attach and change flow"""

    def test_first_parse_only_seeds(self, tmp_path):
        """An empty cache is seeded silently; later unlocks are announced"""
        config, save_dir = game(tmp_path)
        write_save(save_dir, [EARNED_A1, LOCKED_A2])
        orchestrator, presenter = make_orchestrator(tmp_path)

        async def scenario():
            assert await orchestrator.attach(config) is True
            await settle(orchestrator)
            seeded = [p.achievement for p in presenter.shown]

            write_save(save_dir, [EARNED_A1, EARNED_A2])
            orchestrator.on_file_event(str(save_dir / "achievements.json"))
            await settle(orchestrator)
            state = orchestrator.states["Spacewar"]
            await orchestrator.stop()
            return seeded, state

        seeded, state = asyncio.run(scenario())
        assert seeded == []
        assert [p.achievement for p in presenter.shown] == ["A2"]
        assert state.snapshot["A2"] == AchievementState(earned=True, earned_time=1700000100000)
        cached = json.loads((tmp_path / "cache" / "Spacewar.json").read_text())
        assert cached["A2"] == {"earned": True, "earned_time": 1700000100000}

    def test_unlocks_while_closed_are_announced(self, tmp_path):
        """With a cached baseline the first parse is diffed normally"""
        config, save_dir = game(tmp_path)
        write_save(save_dir, [EARNED_A1])
        orchestrator, presenter = make_orchestrator(tmp_path)

        async def scenario():
            await orchestrator.cache.save("Spacewar", {"A1": AchievementState(earned=False, earned_time=0)})
            await orchestrator.attach(config)
            await settle(orchestrator, 0.05)
            await orchestrator.stop()

        asyncio.run(scenario())
        assert [p.achievement for p in presenter.shown] == ["A1"]

    def test_save_created_after_attach_is_announced(self, tmp_path):
        """Only the attach-time read seeds; a save file written later is diffed"""
        config, save_dir = game(tmp_path)
        orchestrator, presenter = make_orchestrator(tmp_path)

        async def scenario():
            assert await orchestrator.attach(config) is True
            write_save(save_dir, [EARNED_A1])
            orchestrator.on_file_event(str(save_dir / "achievements.json"))
            await settle(orchestrator)
            state = orchestrator.states["Spacewar"]
            await orchestrator.stop()
            return state

        state = asyncio.run(scenario())
        assert state.seed_only is False
        assert state.snapshot == {"A1": AchievementState(earned=True, earned_time=1700000000000)}
        assert [p.achievement for p in presenter.shown] == ["A1"]

    def test_unknown_keys_are_not_announced(self, tmp_path):
        """Transitions without a schema entry are skipped when a schema exists"""
        schema_dir = tmp_path / "schema"
        schema_dir.mkdir()
        (schema_dir / "achievements.json").write_text(json.dumps([{"name": "A1"}, {"name": "A2"}]))
        config, save_dir = game(tmp_path, config_path=str(schema_dir))
        write_save(save_dir, [EARNED_A1, {"name": "deadbeef", "achieved": True}])
        orchestrator, presenter = make_orchestrator(tmp_path)

        async def scenario():
            await orchestrator.cache.save("Spacewar", {"A1": AchievementState(earned=False, earned_time=0)})
            await orchestrator.attach(config)
            await settle(orchestrator, 0.05)
            state = orchestrator.states["Spacewar"]
            await orchestrator.stop()
            return state

        state = asyncio.run(scenario())
        assert state.snapshot["deadbeef"].earned is True
        assert [p.achievement for p in presenter.shown] == ["A1"]

    def test_unchanged_file_skips_initial_parse(self, tmp_path):
        """A source with the recorded mtime and size is not parsed on attach"""
        config, save_dir = game(tmp_path)
        write_save(save_dir, [EARNED_A1])
        orchestrator, _ = make_orchestrator(tmp_path)

        async def scenario():
            await orchestrator.cache.save("Spacewar", {"A1": AchievementState(earned=True, earned_time=1)})
            await orchestrator.cache.update_file_meta("Spacewar", save_dir / "achievements.json")
            with patch("achievement_watcher.watcher.parse_source", wraps=parse_source) as parser:
                await orchestrator.attach(config)
                calls = parser.call_count
            await orchestrator.stop()
            return calls

        assert asyncio.run(scenario()) == 0

    def test_retry_after_unchanged_parse(self, tmp_path):
        """An unchanged read schedules one retry that picks up the finished write"""
        config, save_dir = game(tmp_path)
        write_save(save_dir, [EARNED_A1])
        orchestrator, presenter = make_orchestrator(tmp_path)

        async def scenario():
            await orchestrator.attach(config)
            state = orchestrator.states["Spacewar"]
            assert await orchestrator.evaluate(state, retry_eligible=True) is False
            assert state.retry is not None
            write_save(save_dir, [EARNED_A1, EARNED_A2])
            await settle(orchestrator)
            retry_after = state.retry
            await orchestrator.stop()
            return retry_after

        assert asyncio.run(scenario()) is None
        assert [p.achievement for p in presenter.shown] == ["A2"]

    def test_broken_file_does_not_crash(self, tmp_path):
        """A corrupt save keeps the previous state and the game stays attached"""
        config, save_dir = game(tmp_path)
        (save_dir / "achievements.json").write_text("{")
        orchestrator, presenter = make_orchestrator(tmp_path)

        async def scenario():
            with patch("achievement_watcher.parsers.json_save.time.sleep"):
                attached = await orchestrator.attach(config)
            state = orchestrator.states["Spacewar"]
            orchestrator.detach("Spacewar")
            await orchestrator.stop()
            return attached, state

        attached, state = asyncio.run(scenario())
        assert attached is True
        assert state.snapshot == {}
        assert state.retry is None
        assert presenter.shown == []


class TestSuppressionAndCompletion:
    """Test the active-config rule and the completion event"""

    def test_active_config_is_suppressed(self, tmp_path):
        """The active config still persists its snapshot but emits nothing"""
        config, save_dir = game(tmp_path)
        write_save(save_dir, [EARNED_A1])
        orchestrator, presenter = make_orchestrator(tmp_path)
        orchestrator.set_active_config("Spacewar")

        async def scenario():
            await orchestrator.cache.save("Spacewar", {"A0": AchievementState(earned=False, earned_time=0)})
            await orchestrator.attach(config)
            await settle(orchestrator, 0.05)
            await orchestrator.stop()
            return await orchestrator.cache.load("Spacewar")

        cached = asyncio.run(scenario())
        assert presenter.shown == []
        assert cached["A1"].earned is True

    def test_completion_event(self, tmp_path):
        """Earning the last schema achievement queues one completion and persists the flag"""
        schema_dir = tmp_path / "schema"
        schema_dir.mkdir()
        (schema_dir / "achievements.json").write_text(json.dumps([{"name": "A1"}, {"name": "A2"}]))
        configs_dir = tmp_path / "configs"
        configs_dir.mkdir()
        (configs_dir / "Spacewar.json").write_text(json.dumps({"name": "Spacewar", "appid": "480", "extra": 1}))
        config, save_dir = game(tmp_path, config_path=str(schema_dir))
        write_save(save_dir, [EARNED_A1, EARNED_A2])
        orchestrator, presenter = make_orchestrator(tmp_path)

        async def scenario():
            await orchestrator.cache.save("Spacewar", {"A1": AchievementState(earned=True, earned_time=1)})
            await orchestrator.attach(config)
            await settle(orchestrator, 0.05)
            state = orchestrator.states["Spacewar"]
            await orchestrator.check_complete(state)
            await settle(orchestrator, 0.05)
            await orchestrator.stop()

        asyncio.run(scenario())
        assert [(p.kind, p.achievement) for p in presenter.shown] == [
            ("earned", "A2"),
            (KIND_PLATINUM, "Spacewar"),
        ]
        assert config.platinum is True
        saved = json.loads((configs_dir / "Spacewar.json").read_text())
        assert saved == {"name": "Spacewar", "appid": "480", "extra": 1, "platinum": True}


class TestSubscriptions:
    """Test observer subscriptions, timers and detach"""

    def test_missing_save_dir(self, tmp_path):
        """A game without an existing save directory is not attached"""
        orchestrator, _ = make_orchestrator(tmp_path)
        config = GameConfig(name="Ghost", platform="steam", save_path=str(tmp_path / "nope"))

        async def scenario():
            attached = await orchestrator.attach(config)
            await orchestrator.stop()
            return attached

        assert asyncio.run(scenario()) is False
        assert "Ghost" not in orchestrator.states

    def test_shared_root_is_reference_counted(self, tmp_path):
        """Two games on one folder share a watch until both detach"""
        config, save_dir = game(tmp_path)
        other = GameConfig(name="Other", appid="481", platform="steam", save_path=str(save_dir))
        orchestrator, _ = make_orchestrator(tmp_path)

        async def scenario():
            await orchestrator.attach(config)
            await orchestrator.attach(other)
            observer = orchestrator._observer
            counts = [len(observer.scheduled)]
            orchestrator.detach("Spacewar")
            counts.append(len(observer.scheduled))
            orchestrator.detach("Other")
            counts.append(len(observer.scheduled))
            await orchestrator.stop()
            return counts, observer

        counts, observer = asyncio.run(scenario())
        assert counts == [1, 1, 0]
        assert observer.started and observer.stopped

    def test_rename_moves_cache(self, tmp_path):
        """Renaming a config carries its snapshot over and re-attaches it"""
        config, save_dir = game(tmp_path)
        write_save(save_dir, [EARNED_A1])
        orchestrator, presenter = make_orchestrator(tmp_path)
        renamed = GameConfig(name="Spacewar GOTY", appid="480", platform="steam", save_path=str(save_dir))

        async def scenario():
            await orchestrator.attach(config)
            attached = await orchestrator.rename_config("Spacewar", renamed)
            names = sorted(orchestrator.states)
            await orchestrator.stop()
            return attached, names

        attached, names = asyncio.run(scenario())
        assert attached is True
        assert names == ["Spacewar GOTY"]
        assert not (tmp_path / "cache" / "Spacewar.json").exists()
        assert (tmp_path / "cache" / "Spacewar GOTY.json").exists()
        assert presenter.shown == []

    def test_remove_deletes_cache(self, tmp_path):
        """Removing a config detaches it and forgets its snapshot"""
        config, save_dir = game(tmp_path)
        write_save(save_dir, [EARNED_A1])
        orchestrator, _ = make_orchestrator(tmp_path)

        async def scenario():
            await orchestrator.attach(config)
            await orchestrator.remove_config("Spacewar")
            await orchestrator.stop()

        asyncio.run(scenario())
        assert orchestrator.states == {}
        assert not (tmp_path / "cache" / "Spacewar.json").exists()

    def test_detach_cancels_pending_debounce(self, tmp_path):
        """No evaluation runs after detach even if an event was pending"""
        config, save_dir = game(tmp_path)
        write_save(save_dir, [EARNED_A1])
        orchestrator, _ = make_orchestrator(tmp_path)

        async def scenario():
            await orchestrator.attach(config)
            state = orchestrator.states["Spacewar"]
            orchestrator.on_file_event(str(save_dir / "achievements.json"))
            pending = state.timer
            with patch("achievement_watcher.watcher.parse_source", wraps=parse_source) as parser:
                orchestrator.detach("Spacewar")
                await asyncio.sleep(0.1)
                calls = parser.call_count
            await orchestrator.stop()
            return pending, state, calls

        pending, state, calls = asyncio.run(scenario())
        assert pending is TimerState.PENDING
        assert state.debounce == {}
        assert state.timer is TimerState.IDLE
        assert calls == 0

    def test_burst_is_coalesced(self, tmp_path):
        """Rapid events on one path lead to a single evaluation"""
        config, save_dir = game(tmp_path)
        write_save(save_dir, [EARNED_A1])
        orchestrator, _ = make_orchestrator(tmp_path)
        path = str(save_dir / "achievements.json")
        orchestrator.retry_delay = 10

        async def scenario():
            await orchestrator.attach(config)
            with patch.object(orchestrator, "evaluate", wraps=orchestrator.evaluate) as evaluate:
                for _ in range(5):
                    orchestrator.on_file_event(path)
                await asyncio.sleep(0.1)
                calls = evaluate.call_count
            await orchestrator.stop()
            return calls

        assert asyncio.run(scenario()) == 1

    def test_event_inside_cooldown_is_rearmed(self, tmp_path):
        """Events right after a read wait out the cooldown and then run once"""
        config, save_dir = game(tmp_path)
        write_save(save_dir, [EARNED_A1])
        orchestrator, presenter = make_orchestrator(tmp_path)
        orchestrator.cooldown = 0.5
        orchestrator.retry_delay = 10
        path = str(save_dir / "achievements.json")

        async def scenario():
            await orchestrator.attach(config)
            state = orchestrator.states["Spacewar"]
            with patch.object(orchestrator, "evaluate", wraps=orchestrator.evaluate) as evaluate:
                write_save(save_dir, [EARNED_A1, EARNED_A2])
                orchestrator.on_file_event(path)
                await asyncio.sleep(0.05)
                orchestrator.on_file_event(path)
                await asyncio.sleep(0.05)
                during = (evaluate.call_count, state.timer, path in state.debounce)
                await asyncio.sleep(0.7)
                after = evaluate.call_count
            await orchestrator.notifications.join()
            await orchestrator.stop()
            return during, after

        during, after = asyncio.run(scenario())
        assert during == (0, TimerState.PENDING, True)
        assert after == 1
        assert [p.achievement for p in presenter.shown] == ["A2"]

    def test_irrelevant_events_are_ignored(self, tmp_path):
        """Files that no parser reads never schedule work"""
        config, save_dir = game(tmp_path)
        orchestrator, _ = make_orchestrator(tmp_path)

        async def scenario():
            await orchestrator.attach(config)
            orchestrator.on_file_event(str(save_dir / "screenshot.png"))
            debounce = dict(orchestrator.states["Spacewar"].debounce)
            await orchestrator.stop()
            return debounce

        assert asyncio.run(scenario()) == {}

    def test_event_handler_bridges_to_loop(self, tmp_path):
        """Observer events are delivered on the loop; directories are ignored"""
        async def scenario():
            received = []
            handler = SaveEventHandler(asyncio.get_running_loop(), received.append)
            handler.on_any_event(FileModifiedEvent(str(tmp_path / "achievements.json")))
            handler.on_any_event(DirModifiedEvent(str(tmp_path)))
            handler.on_any_event(FileMovedEvent(str(tmp_path / "tmp.json"), str(tmp_path / "stats.bin")))
            await asyncio.sleep(0)
            return received

        assert asyncio.run(scenario()) == [
            str(tmp_path / "achievements.json"),
            str(tmp_path / "stats.bin"),
        ]


class TestRegistryPolling:
    """Test LumaPlay polling"""

    def test_poll_detects_unlock(self, tmp_path):
        """Registry games are re-read on a timer"""
        config = GameConfig(name="Luma", appid="1A2B", platform="lumaplay")
        orchestrator, presenter = make_orchestrator(tmp_path)
        first = {"A": AchievementState(earned=False, earned_time=0)}
        second = {"A": AchievementState(earned=True, earned_time=0)}
        calls = []

        async def fake_read(appid, fallback, ctx, preferred_user=""):
            calls.append(appid)
            return first if len(calls) == 1 else second

        async def scenario():
            with patch("achievement_watcher.watcher.parse_lumaplay_save", side_effect=fake_read):
                assert await orchestrator.attach(config) is True
                await settle(orchestrator, 0.2)
            await orchestrator.stop()

        asyncio.run(scenario())
        assert len(calls) > 2
        assert [p.achievement for p in presenter.shown] == ["A"]
