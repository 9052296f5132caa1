"""
Progress merging.

Remote progress is merged into cached progress, never written over it: a
level or difficulty known only locally (an optimistic update whose mutation
has not reached the server yet) survives every merge.

Per-field rules:

    high_score      max
    passed          OR
    attempts        max
    is_completed    OR
    completed_at    earliest non-null
    updated_at      max
    other fields    server value overlays local

Attempts use max rather than sum because the offline queue is drained before
progress is fetched, so the server count already includes replayed local
attempts. All rules are idempotent, so merging the same snapshot twice is a
no-op.
"""

from typing import Optional

from .models import DifficultyProgress, LevelMeta, LevelProgress


def _max_optional(a: Optional[int], b: Optional[int]) -> Optional[int]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def _min_optional(a: Optional[int], b: Optional[int]) -> Optional[int]:
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b)


def merge_difficulty(local: DifficultyProgress, server: DifficultyProgress) -> DifficultyProgress:
    merged = {**local.to_wire(), **server.to_wire()}
    merged.update(
        highScore=max(local.high_score, server.high_score),
        passed=local.passed or server.passed,
        attempts=max(local.attempts, server.attempts),
    )
    return DifficultyProgress.model_validate(merged)


def merge_level(local: LevelProgress, server: LevelProgress) -> LevelProgress:
    difficulties = list(local.difficulty_progress)
    index = {dp.difficulty_name: i for i, dp in enumerate(difficulties)}

    for sd in server.difficulty_progress:
        i = index.get(sd.difficulty_name)
        if i is None:
            index[sd.difficulty_name] = len(difficulties)
            difficulties.append(sd)
        else:
            difficulties[i] = merge_difficulty(difficulties[i], sd)

    merged = {**local.to_wire(), **server.to_wire()}
    merged.update(
        difficultyProgress=[dp.to_wire() for dp in difficulties],
        isCompleted=local.is_completed or server.is_completed,
        completedAt=_min_optional(local.completed_at, server.completed_at),
        updatedAt=_max_optional(local.updated_at, server.updated_at),
    )
    return LevelProgress.model_validate(merged)


def merge_progress(
    local: list[LevelProgress],
    server: list[LevelProgress],
) -> list[LevelProgress]:
    """Combine cached and fetched progress so neither side's advancement is lost."""
    merged: dict[str, LevelProgress] = {lp.level_id: lp for lp in local}

    for sp in server:
        lp = merged.get(sp.level_id)
        merged[sp.level_id] = sp if lp is None else merge_level(lp, sp)

    return list(merged.values())


def apply_attempt(
    progress: list[LevelProgress],
    level_id: str,
    difficulty_name: str,
    score: float,
    now_ms: int,
    level_meta: Optional[LevelMeta] = None,
) -> list[LevelProgress]:
    """
    Optimistically apply a level attempt to cached progress.

    Mirrors what the backend does on submission so the UI reflects the
    attempt before the queued mutation is confirmed.
    """
    required = level_meta.required_score(difficulty_name) if level_meta else None
    passed = required is not None and score >= required

    result = list(progress)
    position = next((i for i, lp in enumerate(result) if lp.level_id == level_id), None)
    level = (
        result[position].model_copy(deep=True)
        if position is not None
        else LevelProgress(level_id=level_id)
    )

    dp = level.difficulty(difficulty_name)
    if dp is None:
        dp = DifficultyProgress(difficulty_name=difficulty_name)
        level.difficulty_progress.append(dp)
    dp.high_score = max(dp.high_score, score)
    dp.passed = dp.passed or passed
    dp.attempts += 1

    if level_meta and level_meta.difficulties:
        all_passed = all(
            (level.difficulty(d.name) is not None and level.difficulty(d.name).passed)
            for d in level_meta.difficulties
        )
        if all_passed and not level.is_completed:
            level.is_completed = True
            level.completed_at = now_ms
    level.updated_at = now_ms

    if position is None:
        result.append(level)
    else:
        result[position] = level
    return result
