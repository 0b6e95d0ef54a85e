import os
import re
import sys
import threading
import configparser
from enum import StrEnum
from pathlib import Path

import appdirs

from .constants import APP_AUTHOR, APP_NAME
from .logger import setup_logger

logger = setup_logger()


def get_config_path():
    """Get the path for storing configuration files"""
    config_dir = appdirs.user_config_dir(APP_NAME, APP_AUTHOR)
    os.makedirs(config_dir, exist_ok=True)
    return os.path.join(config_dir, "config.ini")


def get_configs_dir() -> Path:
    """Directory holding one JSON file per tracked game"""
    configs_dir = Path(appdirs.user_config_dir(APP_NAME, APP_AUTHOR)) / "configs"
    configs_dir.mkdir(parents=True, exist_ok=True)
    return configs_dir


def get_cache_dir() -> Path:
    """Directory holding the persisted per-game snapshots"""
    cache_dir = Path(appdirs.user_cache_dir(APP_NAME, APP_AUTHOR)) / "snapshots"
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir


def resource_path(relative_path):
    """Get absolute path to resource, works for dev and for PyInstaller"""
    try:
        base_path = sys._MEIPASS
    except Exception:
        base_path = os.path.dirname(os.path.abspath(__file__))
    return os.path.join(base_path, relative_path)


_ILLEGAL_NAME_CHARS = re.compile(r'[/\\:*?"<>|]')
_RESERVED_NAMES = re.compile(r"^(con|prn|aux|nul|com[1-9]|lpt[1-9])$", re.IGNORECASE)


def sanitize_config_name(raw) -> str:
    """Make a game config name safe to use as a file name on every platform."""
    name = _ILLEGAL_NAME_CHARS.sub("", str(raw or ""))
    name = re.sub(r"\s+", " ", name).strip()
    name = re.sub(r"[. ]+$", "", name)
    name = name or "config"
    return f"_{name}" if _RESERVED_NAMES.match(name) else name


class PreferenceName(StrEnum):
    LANGUAGE = "Language"
    PRESET = "Preset"
    POSITION = "Position"
    SOUND = "Sound"
    NOTIFICATION_DURATION = "NotificationDurationMs"
    PROGRESS_DURATION = "ProgressDurationMs"


class WatcherSetting(StrEnum):
    DEBOUNCE = "DebounceMs"
    COOLDOWN = "CooldownMs"
    RETRY_DELAY = "RetryDelayMs"
    REGISTRY_POLL = "RegistryPollMs"


DEFAULT_PREFERENCES = {
    PreferenceName.LANGUAGE: "english",
    PreferenceName.PRESET: "default",
    PreferenceName.POSITION: "center-bottom",
    PreferenceName.SOUND: "mute",
    PreferenceName.NOTIFICATION_DURATION: "5000",
    PreferenceName.PROGRESS_DURATION: "3000",
}

DEFAULT_WATCHER_SETTINGS = {
    WatcherSetting.DEBOUNCE: "150",
    WatcherSetting.COOLDOWN: "200",
    WatcherSetting.RETRY_DELAY: "220",
    WatcherSetting.REGISTRY_POLL: "2000",
}


class ConfigManager(configparser.ConfigParser):
    _instance = None
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        with cls._lock:
            if cls._instance is None:
                cls._instance = super(ConfigManager, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        if not hasattr(self, "initialized"):
            super().__init__(interpolation=None)
            self.logger = setup_logger()
            self.config_path = get_config_path()
            self.read(self.config_path, encoding="utf-8")

            changed = False
            if not self.has_section("Preferences"):
                self.add_section("Preferences")
            for key, value in DEFAULT_PREFERENCES.items():
                if key not in self["Preferences"]:
                    self["Preferences"][key] = value
                    changed = True

            if not self.has_section("Watcher"):
                self.add_section("Watcher")
            for key, value in DEFAULT_WATCHER_SETTINGS.items():
                if key not in self["Watcher"]:
                    self["Watcher"][key] = value
                    changed = True

            if changed:
                self.save()
            self.initialized = True

    def get_preference(self, name: PreferenceName) -> str:
        return self["Preferences"].get(name, DEFAULT_PREFERENCES[name])

    def set_preference(self, name: PreferenceName, value):
        self.logger.debug(f"Updating preference {name} -> {value}")
        self["Preferences"][name] = str(value)
        self.save()

    def get_language(self) -> str:
        return self.get_preference(PreferenceName.LANGUAGE) or "english"

    def get_duration_seconds(self, name: PreferenceName) -> float:
        """Display durations are stored in milliseconds"""
        try:
            return max(0, int(self.get_preference(name))) / 1000.0
        except ValueError:
            return int(DEFAULT_PREFERENCES[name]) / 1000.0

    def get_watcher_seconds(self, setting: WatcherSetting) -> float:
        try:
            return max(0, int(self["Watcher"].get(setting, DEFAULT_WATCHER_SETTINGS[setting]))) / 1000.0
        except ValueError:
            return int(DEFAULT_WATCHER_SETTINGS[setting]) / 1000.0

    def set_watcher_ms(self, setting: WatcherSetting, value: int):
        self["Watcher"][setting] = str(int(value))
        self.save()

    def save(self):
        """Save configuration to disk"""
        with open(self.config_path, "w", encoding="utf-8") as configfile:
            self.write(configfile)


config_manager = ConfigManager()
