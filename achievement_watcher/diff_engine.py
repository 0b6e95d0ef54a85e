"""
Snapshot diff engine.

Compares the previous and the freshly parsed snapshot of one game and
reports which achievements became earned and which changed progress.
Names that disappear from the current snapshot are not transitions.
"""

from typing import List, Optional

from achievement_watcher.models import AchievementState, DiffResult, SchemaEntry, Snapshot


def is_earned_transition(current: AchievementState, previous: Optional[AchievementState]) -> bool:
    return current.earned is True and (previous is None or previous.earned is not True)


def is_progress_transition(current: AchievementState, previous: Optional[AchievementState]) -> bool:
    if current.earned or current.progress is None:
        return False
    if previous is None:
        return True
    return current.progress != previous.progress or current.max_progress != previous.max_progress


def diff(previous: Optional[Snapshot], current: Snapshot) -> DiffResult:
    """
    Find transitions between two snapshots.

    Args:
        previous: Last persisted snapshot (may be empty)
        current: Freshly parsed snapshot

    Returns:
        DiffResult with names in the insertion order of ``current``
    """
    previous = previous or {}
    result = DiffResult()
    for name, state in current.items():
        prev = previous.get(name)
        if is_earned_transition(state, prev):
            result.earned_transitions.append(name)
        elif is_progress_transition(state, prev):
            result.progress_transitions.append(name)
    return result


def snapshot_changed(previous: Optional[Snapshot], current: Optional[Snapshot]) -> bool:
    """False when the parser handed back the previous object or an equal copy"""
    if current is None or current is previous:
        return False
    return current != (previous or {})


def is_earned_name(snapshot: Snapshot, name: str) -> bool:
    """Earned under its own name or its ach_-prefixed / unprefixed twin"""
    state = snapshot.get(name)
    if state is not None and state.earned:
        return True
    if name.lower().startswith("ach_"):
        twin = snapshot.get(name[4:])
    else:
        twin = snapshot.get(f"ach_{name}")
    return twin is not None and twin.earned


def is_complete(snapshot: Snapshot, schema: List[SchemaEntry]) -> bool:
    """Every schema achievement is earned (False without a schema)"""
    if not schema:
        return False
    return all(is_earned_name(snapshot, entry.name) for entry in schema)
