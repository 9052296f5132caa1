"""
Offline level view.

Builds the level list the UI renders when the backend is unreachable, from
cached metadata, cached progress and the cached subscription. Levels unlock
sequentially; without an active subscription only the first
``free_level_count`` levels can be unlocked.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .models import DifficultyProgress, LevelMeta, LevelProgress, SubscriptionSnapshot

DEFAULT_FREE_LEVELS = 3


class LevelState(Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    COMPLETED = "completed"
    COMING_SOON = "coming_soon"


@dataclass
class LevelView:
    level_id: str
    level_number: int
    name: str
    state: LevelState
    difficulty_progress: list[DifficultyProgress] = field(default_factory=list)
    is_completed: bool = False
    description: Optional[str] = None


def build_level_views(
    levels_meta: list[LevelMeta],
    progress: list[LevelProgress],
    subscription: SubscriptionSnapshot,
    free_level_count: int = DEFAULT_FREE_LEVELS,
) -> list[LevelView]:
    progress_by_level = {lp.level_id: lp for lp in progress}
    views = []
    previous_completed = True

    for index, level in enumerate(sorted(levels_meta, key=lambda m: m.level_number)):
        lp = progress_by_level.get(level.id)

        difficulty_progress = []
        for difficulty in level.difficulties:
            dp = lp.difficulty(difficulty.name) if lp else None
            difficulty_progress.append(DifficultyProgress(
                difficulty_name=difficulty.name,
                high_score=dp.high_score if dp else 0,
                passed=dp.passed if dp else False,
                attempts=dp.attempts if dp else 0,
            ))

        is_completed = bool(difficulty_progress) and all(dp.passed for dp in difficulty_progress)

        if not level.is_enabled:
            state = LevelState.COMING_SOON
        elif is_completed:
            state = LevelState.COMPLETED
        elif index == 0 or previous_completed:
            if not subscription.is_active and index >= free_level_count:
                state = LevelState.LOCKED
            else:
                state = LevelState.UNLOCKED
        else:
            state = LevelState.LOCKED

        previous_completed = is_completed
        views.append(LevelView(
            level_id=level.id,
            level_number=level.level_number,
            name=level.name,
            state=state,
            difficulty_progress=difficulty_progress,
            is_completed=is_completed,
            description=level.description,
        ))

    return views
