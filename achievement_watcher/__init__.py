from .version import __version__
from .logger import setup_logger
from .models import AchievementState, DiffResult, GameConfig, NotificationPayload, SchemaEntry, Snapshot
from .diff_engine import diff

__all__ = [
    "__version__",
    "setup_logger",
    "AchievementState",
    "DiffResult",
    "GameConfig",
    "NotificationPayload",
    "SchemaEntry",
    "Snapshot",
    "diff",
]
