"""Pydantic schemas for learner snapshots, sync events and parsing helpers."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Literal, Optional, Sequence, Tuple, Type, TypeVar

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError

__all__ = [
    "TIERS",
    "MasteryRecord",
    "ConceptRecord",
    "MistakeEntry",
    "LearnerStats",
    "LearnerState",
    "SyncEvent",
    "TierWeekResult",
    "heal_model",
    "parse_snapshot",
]

LOGGER = logging.getLogger(__name__)

SNAPSHOT_VERSION = 2

LeagueTier = Literal["Bronze", "Silver", "Gold"]
TIERS: Tuple[str, ...] = ("Bronze", "Silver", "Gold")


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons never mix aware and naive values."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class _Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class MasteryRecord(_Snapshot):
    level: int = Field(default=0, ge=0, le=5)
    last_seen_at: Optional[UtcDatetime] = None
    next_review_at: Optional[UtcDatetime] = None


class ConceptRecord(_Snapshot):
    mastered: bool = False
    correct_streak: int = Field(default=0, ge=0)
    wrong_since_mastered: int = Field(default=0, ge=0)
    last_seen_at: Optional[UtcDatetime] = None


class MistakeEntry(_Snapshot):
    item_id: str = Field(min_length=1)
    kind: str = Field(min_length=1)
    occurred_at: UtcDatetime
    session_id: str = ""


class LearnerStats(_Snapshot):
    xp_total: int = Field(default=0, ge=0)
    xp_this_week: int = Field(default=0, ge=0)
    level: int = Field(default=1, ge=1)
    streak_current: int = Field(default=0, ge=0)
    streak_best: int = Field(default=0, ge=0)
    last_active_at: Optional[UtcDatetime] = None
    attempts_remaining: int = Field(default=5, ge=0)
    attempts_max: int = Field(default=5, ge=1)
    next_attempt_regen_at: Optional[UtcDatetime] = None
    currency: int = Field(default=50, ge=0)
    streak_saves_held: int = Field(default=0, ge=0)
    tier: LeagueTier = "Bronze"
    tier_week_start: str = ""
    lessons_completed: int = Field(default=0, ge=0)
    accuracy_correct: int = Field(default=0, ge=0)
    accuracy_total: int = Field(default=0, ge=0)
    quest_day: str = ""
    quest_lessons_done: int = Field(default=0, ge=0)
    quest_highest_combo: int = Field(default=0, ge=0)
    quest_practice_done: int = Field(default=0, ge=0)
    quest_claimed: Tuple[int, ...] = ()
    double_reward_next: bool = False


class LearnerState(_Snapshot):
    """Unit of persistence for one learner.

    Every engine operation takes a ``LearnerState`` and returns a new one;
    instances are frozen so a snapshot handed to a caller never changes.
    """

    version: int = SNAPSHOT_VERSION
    stats: LearnerStats = Field(default_factory=LearnerStats)
    completed_lessons: Dict[str, int] = Field(default_factory=dict)
    lesson_stars: Dict[str, int] = Field(default_factory=dict)
    mastery: Dict[str, MasteryRecord] = Field(default_factory=dict)
    concepts: Dict[str, ConceptRecord] = Field(default_factory=dict)
    mistakes: Tuple[MistakeEntry, ...] = ()
    teaching_seen: Dict[str, bool] = Field(default_factory=dict)

    def with_stats(self, **changes: Any) -> "LearnerState":
        return self.model_copy(update={"stats": self.stats.model_copy(update=changes)})

    def to_json(self) -> str:
        return self.model_dump_json()


class SyncEvent(_Snapshot):
    event_id: str = Field(min_length=1)
    amount: int = Field(ge=1, le=99)
    source: str = Field(min_length=1)
    created_at: UtcDatetime

    def to_payload(self) -> Dict[str, Any]:
        return {
            "eventId": self.event_id,
            "amount": self.amount,
            "source": self.source,
            "createdAt": self.created_at.isoformat(),
        }


class TierWeekResult(_Snapshot):
    """One-shot outcome of a tier-week rollover; shown once, never persisted."""

    previous_tier: LeagueTier
    new_tier: LeagueTier
    rank: int
    xp_earned: int
    promoted: bool
    demoted: bool
    stayed: bool


# ---------------------------------------------------------------------------
# self-healing parsing
# ---------------------------------------------------------------------------

_DROP = object()

M = TypeVar("M", bound=BaseModel)


def _drop_path(data: Any, path: Sequence[Any]) -> bool:
    """Remove the value at ``path`` so the model default takes its place."""

    container = data
    for key in path[:-1]:
        if isinstance(container, dict) and key in container:
            container = container[key]
        elif isinstance(container, list) and isinstance(key, int) and 0 <= key < len(container):
            container = container[key]
        else:
            return False
    last = path[-1]
    if isinstance(container, dict) and last in container:
        del container[last]
        return True
    if isinstance(container, list) and isinstance(last, int) and 0 <= last < len(container):
        if container[last] is _DROP:
            return False
        container[last] = _DROP
        return True
    return False


def _strip_dropped(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _strip_dropped(val) for key, val in value.items()}
    if isinstance(value, list):
        return [_strip_dropped(val) for val in value if val is not _DROP]
    return value


def heal_model(model_cls: Type[M], data: Dict[str, Any], *, max_passes: int = 20) -> M:
    """Validate ``data`` dropping only the offending fields or entries.

    Nested records (one mastery entry, one mistake) are discarded as a whole,
    top-level scalars fall back to their defaults.
    """

    working = json.loads(json.dumps(data, default=str))
    for _ in range(max_passes):
        try:
            return model_cls.model_validate(working)
        except ValidationError as exc:
            dropped = False
            for error in exc.errors():
                loc = tuple(error.get("loc") or ())
                if not loc:
                    continue
                path = loc[:2]
                if _drop_path(working, path):
                    LOGGER.warning("Dropping invalid snapshot field %s: %s", ".".join(map(str, path)), error.get("msg"))
                    dropped = True
            working = _strip_dropped(working)
            if not dropped:
                break
    LOGGER.warning("Snapshot could not be healed; falling back to defaults")
    return model_cls()


def _migrate_legacy(data: Dict[str, Any]) -> Dict[str, Any]:
    """Map the flat v1 layout (``xp``, ``streak``, ``coins`` at the root) onto v2."""

    if "stats" in data or not any(key in data for key in ("xp", "streak", "coins")):
        return data
    LOGGER.info("Migrating legacy v1 snapshot")
    completed = data.get("completed_lessons") or {}
    passed = 0
    if isinstance(completed, dict):
        passed = sum(1 for score in completed.values() if isinstance(score, (int, float)) and score >= 70)
    return {
        "version": SNAPSHOT_VERSION,
        "stats": {
            "xp_total": data.get("xp", 0),
            "streak_current": data.get("streak", 0),
            "streak_best": data.get("streak", 0),
            "last_active_at": data.get("last_active_date"),
            "attempts_remaining": data.get("hearts_remaining", 5),
            "currency": data.get("coins", 50),
            "lessons_completed": passed,
            "accuracy_correct": data.get("correct_answers", 0),
            "accuracy_total": data.get("total_questions_answered", 0),
        },
        "completed_lessons": completed,
    }


def parse_snapshot(raw: Optional[str | bytes]) -> LearnerState:
    """Parse a stored snapshot, substituting defaults for anything unusable."""

    if not raw:
        return LearnerState()
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        LOGGER.warning("Discarding unparseable snapshot: %s", exc)
        return LearnerState()
    if not isinstance(data, dict):
        LOGGER.warning("Discarding snapshot with non-object root (%s)", type(data).__name__)
        return LearnerState()
    return heal_model(LearnerState, _migrate_legacy(data))
