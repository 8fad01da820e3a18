"""Learner progression: attempts, streak, XP and currency, quests, mistakes and rewards.

Every function here is a pure reducer over ``LearnerState``: it takes the
current snapshot and the wall-clock time and returns a new snapshot. Timers
are never authoritative; ``recompute_attempts`` re-derives regeneration from
absolute timestamps, so it is safe to call redundantly or after the process
was suspended for hours. Operations that can be refused (purchases, claims,
streak saves) return ``(state, False)`` with the state unchanged instead of
raising.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from schemas import LearnerState, MistakeEntry

_LOGGER = logging.getLogger(__name__)

PASS_SCORE = 70
XP_PER_LEVEL = 500
MAX_SESSION_XP = 99
XP_PER_CORRECT = 6
PERFECT_XP_BONUS = 20
PERFECT_CURRENCY_BONUS = 16
MAX_STARS = 3

ATTEMPT_REGEN_INTERVAL = timedelta(minutes=60)
ATTEMPT_PRICE = 30
FULL_REFILL_PRICE = 100
STREAK_SAVE_PRICE = 200

COMBO_MILESTONES = {5: 5, 10: 10}
MISTAKE_WINDOW_DAYS = 7
MISTAKE_RETENTION_DAYS = 30


# ---------------------------------------------------------------------------
# calendar helpers
# ---------------------------------------------------------------------------

def calendar_day(moment: datetime, reference: datetime) -> date:
    """Calendar date of ``moment`` in the time zone of ``reference``."""

    if reference.tzinfo is not None and moment.tzinfo is not None:
        moment = moment.astimezone(reference.tzinfo)
    return moment.date()


def _days_since(last: Optional[datetime], now: datetime) -> Optional[int]:
    if last is None:
        return None
    return (now.date() - calendar_day(last, now)).days


# ---------------------------------------------------------------------------
# attempts
# ---------------------------------------------------------------------------

def recompute_attempts(
    state: LearnerState,
    now: datetime,
    interval: timedelta = ATTEMPT_REGEN_INTERVAL,
) -> LearnerState:
    """Grant every attempt that regenerated since the timer fired.

    After ``k`` full intervals past the scheduled time ``k + 1`` attempts are
    granted (capped). If still below the cap the timer keeps its phase, so
    repeated calls never shift the cadence.
    """

    stats = state.stats
    if stats.attempts_remaining >= stats.attempts_max:
        if stats.next_attempt_regen_at is not None or stats.attempts_remaining > stats.attempts_max:
            return state.with_stats(attempts_remaining=stats.attempts_max, next_attempt_regen_at=None)
        return state
    if stats.next_attempt_regen_at is None:
        return state
    elapsed = now - stats.next_attempt_regen_at
    if elapsed < timedelta(0):
        return state

    gained = 1 + elapsed // interval
    remaining = min(stats.attempts_max, stats.attempts_remaining + gained)
    if remaining >= stats.attempts_max:
        _LOGGER.info("[Hearts] Regenerated to full (%s)", remaining)
        return state.with_stats(attempts_remaining=remaining, next_attempt_regen_at=None)
    next_at = now - (elapsed % interval) + interval
    _LOGGER.info("[Hearts] Regenerated %s -> %s, next at %s", stats.attempts_remaining, remaining, next_at.isoformat())
    return state.with_stats(attempts_remaining=remaining, next_attempt_regen_at=next_at)


def lose_attempt(
    state: LearnerState,
    now: datetime,
    interval: timedelta = ATTEMPT_REGEN_INTERVAL,
) -> LearnerState:
    stats = state.stats
    remaining = max(0, stats.attempts_remaining - 1)
    next_at = stats.next_attempt_regen_at
    if next_at is None and remaining < stats.attempts_max:
        next_at = now + interval
    _LOGGER.debug("[Hearts] Lost attempt, %s left", remaining)
    return state.with_stats(attempts_remaining=remaining, next_attempt_regen_at=next_at)


def add_attempt(state: LearnerState) -> LearnerState:
    stats = state.stats
    remaining = min(stats.attempts_max, stats.attempts_remaining + 1)
    next_at = None if remaining >= stats.attempts_max else stats.next_attempt_regen_at
    return state.with_stats(attempts_remaining=remaining, next_attempt_regen_at=next_at)


def refill_attempts(state: LearnerState) -> LearnerState:
    return state.with_stats(attempts_remaining=state.stats.attempts_max, next_attempt_regen_at=None)


def set_attempts_max(state: LearnerState, attempts_max: int) -> LearnerState:
    """Apply a configured pool size, trimming the current count if it shrank."""

    if attempts_max == state.stats.attempts_max:
        return state
    remaining = min(state.stats.attempts_remaining, attempts_max)
    next_at = None if remaining >= attempts_max else state.stats.next_attempt_regen_at
    return state.with_stats(attempts_max=attempts_max, attempts_remaining=remaining, next_attempt_regen_at=next_at)


def buy_attempt(state: LearnerState) -> Tuple[LearnerState, bool]:
    if state.stats.attempts_remaining >= state.stats.attempts_max:
        _LOGGER.info("[Hearts] Already full; purchase refused")
        return state, False
    paid, ok = spend_currency(state, ATTEMPT_PRICE)
    if not ok:
        return state, False
    return add_attempt(paid), True


def buy_full_refill(state: LearnerState) -> Tuple[LearnerState, bool]:
    if state.stats.attempts_remaining >= state.stats.attempts_max:
        return state, False
    paid, ok = spend_currency(state, FULL_REFILL_PRICE)
    if not ok:
        return state, False
    return refill_attempts(paid), True


def seconds_until_next_attempt(state: LearnerState, now: datetime) -> Optional[int]:
    next_at = state.stats.next_attempt_regen_at
    if next_at is None or state.stats.attempts_remaining >= state.stats.attempts_max:
        return None
    return max(0, int((next_at - now).total_seconds()))


# ---------------------------------------------------------------------------
# XP and currency
# ---------------------------------------------------------------------------

def level_for(xp_total: int) -> int:
    return xp_total // XP_PER_LEVEL + 1


def add_xp(state: LearnerState, amount: int) -> LearnerState:
    if amount <= 0:
        return state
    total = state.stats.xp_total + amount
    return state.with_stats(
        xp_total=total,
        xp_this_week=state.stats.xp_this_week + amount,
        level=level_for(total),
    )


def add_currency(state: LearnerState, amount: int) -> LearnerState:
    if amount <= 0:
        return state
    return state.with_stats(currency=state.stats.currency + amount)


def spend_currency(state: LearnerState, amount: int) -> Tuple[LearnerState, bool]:
    if amount < 0 or state.stats.currency < amount:
        _LOGGER.info("Not enough currency (%s < %s)", state.stats.currency, amount)
        return state, False
    return state.with_stats(currency=state.stats.currency - amount), True


# ---------------------------------------------------------------------------
# streak
# ---------------------------------------------------------------------------

def streak_status(state: LearnerState, now: datetime) -> str:
    """How an activity at ``now`` would affect the streak: kept, incremented or new."""

    days = _days_since(state.stats.last_active_at, now)
    if days is not None and days <= 0:
        return "kept"
    if days == 1:
        return "incremented"
    return "new"


def record_activity(state: LearnerState, now: datetime) -> LearnerState:
    stats = state.stats
    status = streak_status(state, now)
    if status == "kept":
        # An accepted streak break leaves 0 for today; activity restarts it.
        current = max(1, stats.streak_current)
    elif status == "incremented":
        current = stats.streak_current + 1
    else:
        current = 1
    if current != stats.streak_current:
        _LOGGER.info("[Streak] %s -> %s (%s)", stats.streak_current, current, status)
    return state.with_stats(
        streak_current=current,
        streak_best=max(stats.streak_best, current),
        last_active_at=now,
    )


def max_streak_saves(streak: int) -> int:
    if streak >= 365:
        return 3
    if streak >= 100:
        return 2
    return 1


def buy_streak_save(state: LearnerState) -> Tuple[LearnerState, bool]:
    stats = state.stats
    cap = max_streak_saves(stats.streak_current)
    if stats.streak_saves_held >= cap:
        _LOGGER.info("[Streak] Already at max streak saves (%s/%s)", stats.streak_saves_held, cap)
        return state, False
    paid, ok = spend_currency(state, STREAK_SAVE_PRICE)
    if not ok:
        return state, False
    return paid.with_stats(streak_saves_held=stats.streak_saves_held + 1), True


def use_streak_save(state: LearnerState, now: datetime) -> Tuple[LearnerState, bool]:
    """Forgive the missed days: the streak count stays, last activity becomes ``now``."""

    saves = state.stats.streak_saves_held
    if saves <= 0:
        return state, False
    _LOGGER.info("[Streak] Using streak save, %s left", saves - 1)
    return state.with_stats(streak_saves_held=saves - 1, last_active_at=now), True


def accept_streak_break(state: LearnerState, now: datetime) -> LearnerState:
    _LOGGER.info("[Streak] Accepting streak break at %s", state.stats.streak_current)
    return state.with_stats(streak_current=0, last_active_at=now)


def streak_at_risk(state: LearnerState, now: datetime) -> bool:
    """True when the last activity was before yesterday and there is a streak to lose."""

    stats = state.stats
    if stats.last_active_at is None or stats.streak_current == 0:
        return False
    days = _days_since(stats.last_active_at, now)
    return days is not None and days >= 2


# ---------------------------------------------------------------------------
# daily quests
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QuestDefinition:
    id: int
    title: str
    description: str
    reward: int
    target: int
    counter: str


QUESTS: Tuple[QuestDefinition, ...] = (
    QuestDefinition(1, "Complete 1 Lesson", "Finish any lesson or practice", 20, 1, "quest_lessons_done"),
    QuestDefinition(2, "5 Combo Streak", "Get 5 correct in a row", 10, 5, "quest_highest_combo"),
    QuestDefinition(3, "Practice Session", "Complete a practice or review", 15, 1, "quest_practice_done"),
)


@dataclass(frozen=True)
class DailyQuest:
    id: int
    title: str
    description: str
    reward: int
    target: int
    current: int
    claimed: bool

    @property
    def completed(self) -> bool:
        return self.current >= self.target


def quest_day(now: datetime) -> str:
    return now.date().isoformat()


def _quest_baseline(state: LearnerState, now: datetime) -> dict:
    """Quest counters for today; a stale day key means everything starts at zero."""

    stats = state.stats
    if stats.quest_day == quest_day(now):
        return {
            "quest_lessons_done": stats.quest_lessons_done,
            "quest_highest_combo": stats.quest_highest_combo,
            "quest_practice_done": stats.quest_practice_done,
            "quest_claimed": stats.quest_claimed,
        }
    return {
        "quest_lessons_done": 0,
        "quest_highest_combo": 0,
        "quest_practice_done": 0,
        "quest_claimed": (),
    }


def track_lesson(state: LearnerState, now: datetime) -> LearnerState:
    counters = _quest_baseline(state, now)
    counters["quest_lessons_done"] += 1
    return state.with_stats(quest_day=quest_day(now), **counters)


def track_practice(state: LearnerState, now: datetime) -> LearnerState:
    """A practice session also counts toward the lesson quest."""

    counters = _quest_baseline(state, now)
    counters["quest_lessons_done"] += 1
    counters["quest_practice_done"] += 1
    _LOGGER.info("[Quests] Tracking practice session")
    return state.with_stats(quest_day=quest_day(now), **counters)


def track_combo(state: LearnerState, combo: int, now: datetime) -> LearnerState:
    counters = _quest_baseline(state, now)
    if combo <= counters["quest_highest_combo"]:
        return state
    _LOGGER.info("[Quests] New highest combo today: %s", combo)
    counters["quest_highest_combo"] = combo
    return state.with_stats(quest_day=quest_day(now), **counters)


def daily_quests(state: LearnerState, now: datetime) -> List[DailyQuest]:
    counters = _quest_baseline(state, now)
    return [
        DailyQuest(
            id=quest.id,
            title=quest.title,
            description=quest.description,
            reward=quest.reward,
            target=quest.target,
            current=min(counters[quest.counter], quest.target),
            claimed=quest.id in counters["quest_claimed"],
        )
        for quest in QUESTS
    ]


def claim_quest(state: LearnerState, quest_id: int, now: datetime) -> Tuple[LearnerState, bool]:
    quest = next((q for q in daily_quests(state, now) if q.id == quest_id), None)
    if quest is None or quest.claimed or not quest.completed:
        _LOGGER.info("[Quests] Cannot claim quest %s", quest_id)
        return state, False
    _LOGGER.info("[Quests] Claiming quest %s: +%s", quest_id, quest.reward)
    counters = _quest_baseline(state, now)
    counters["quest_claimed"] = tuple(sorted((*counters["quest_claimed"], quest_id)))
    paid = add_currency(state, quest.reward)
    return paid.with_stats(quest_day=quest_day(now), **counters), True


# ---------------------------------------------------------------------------
# mistake queue
# ---------------------------------------------------------------------------

def add_mistakes(state: LearnerState, entries: Sequence[MistakeEntry]) -> LearnerState:
    if not entries:
        return state
    _LOGGER.info("[MistakeBank] Adding %s mistakes", len(entries))
    return state.model_copy(update={"mistakes": (*state.mistakes, *entries)})


def remove_mistake(state: LearnerState, item_id: str, kind: str) -> LearnerState:
    """Drop the first entry matching ``item_id`` and ``kind``."""

    for index, entry in enumerate(state.mistakes):
        if entry.item_id == item_id and entry.kind == kind:
            _LOGGER.info("[MistakeBank] Removing mistake: item=%s, kind=%s", item_id, kind)
            remaining = state.mistakes[:index] + state.mistakes[index + 1:]
            return state.model_copy(update={"mistakes": remaining})
    return state


def recent_mistakes(state: LearnerState, now: datetime, days: int = MISTAKE_WINDOW_DAYS) -> List[MistakeEntry]:
    cutoff = now - timedelta(days=days)
    return [entry for entry in state.mistakes if entry.occurred_at >= cutoff]


def recent_mistake_item_ids(state: LearnerState, now: datetime, days: int = MISTAKE_WINDOW_DAYS) -> List[str]:
    return list(dict.fromkeys(entry.item_id for entry in recent_mistakes(state, now, days)))


def prune_mistakes(state: LearnerState, now: datetime, days: int) -> LearnerState:
    kept = tuple(recent_mistakes(state, now, days))
    if len(kept) == len(state.mistakes):
        return state
    _LOGGER.info("[MistakeBank] Pruned %s mistakes older than %s days", len(state.mistakes) - len(kept), days)
    return state.model_copy(update={"mistakes": kept})


# ---------------------------------------------------------------------------
# reward roll
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LootReward:
    kind: str
    amount: int
    label: str


def roll_reward(state: LearnerState, rng: random.Random) -> Tuple[LearnerState, LootReward]:
    """Draw exactly one reward and apply it."""

    roll = rng.random()
    stats = state.stats
    can_get_save = stats.streak_saves_held < max_streak_saves(stats.streak_current)

    if roll < 0.1 and can_get_save:
        _LOGGER.info("[Loot] Reward: streak save")
        return state.with_stats(streak_saves_held=stats.streak_saves_held + 1), LootReward("streak_save", 1, "Streak Save")
    if roll < 0.3:
        _LOGGER.info("[Loot] Reward: double reward next session")
        return state.with_stats(double_reward_next=True), LootReward("double_reward", 1, "2x XP Next Lesson")
    if roll < 0.45:
        amount = rng.randint(50, 100)
        _LOGGER.info("[Loot] Reward: big currency (%s)", amount)
        return add_currency(state, amount), LootReward("big_currency", amount, f"{amount} Coins")
    amount = rng.randint(10, 30)
    _LOGGER.info("[Loot] Reward: currency (%s)", amount)
    return add_currency(state, amount), LootReward("currency", amount, f"{amount} Coins")


# ---------------------------------------------------------------------------
# session scoring and lesson completion
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SessionScore:
    correct: int
    total: int
    score_percent: int
    perfect: bool
    xp: int
    currency: int
    perfect_bonus: int
    multiplier: int

    @property
    def passed(self) -> bool:
        return self.score_percent >= PASS_SCORE


def reward_multiplier(mode: str, endgame: bool = False) -> int:
    if mode == "blitz":
        return 0
    if mode == "capstone" or endgame:
        return 2
    return 1


def combo_bonus(combo: int, multiplier: int = 1) -> int:
    """Currency paid when a running combo reaches a milestone."""
    return COMBO_MILESTONES.get(combo, 0) * multiplier


def score_session(correct: int, total: int, multiplier: int = 1) -> SessionScore:
    if total < 0 or correct < 0 or correct > total:
        raise ValueError(f"invalid session result {correct}/{total}")
    perfect = total > 0 and correct == total
    score_percent = round(correct * 100 / total) if total else 0
    base_xp = min(MAX_SESSION_XP, XP_PER_CORRECT * correct + (PERFECT_XP_BONUS if perfect else 0))
    xp = base_xp * multiplier
    return SessionScore(
        correct=correct,
        total=total,
        score_percent=score_percent,
        perfect=perfect,
        xp=xp,
        currency=xp // 3,
        perfect_bonus=PERFECT_CURRENCY_BONUS * multiplier if perfect else 0,
        multiplier=multiplier,
    )


@dataclass(frozen=True)
class LessonCompletion:
    lesson_id: str
    xp_awarded: int
    currency_awarded: int
    double_applied: bool
    best_score: int
    stars_before: int
    stars_after: int
    streak_status: str
    streak_current: int

    @property
    def star_earned(self) -> bool:
        return self.stars_after > self.stars_before


def complete_lesson(
    state: LearnerState,
    lesson_id: str,
    score: SessionScore,
    now: datetime,
    *,
    star_eligible: bool = True,
    highest_combo: int = 0,
) -> Tuple[LearnerState, LessonCompletion]:
    """Apply a finished lesson: rewards, streak, quests, best score and stars."""

    double = state.stats.double_reward_next
    xp = score.xp * 2 if double else score.xp
    if double:
        _LOGGER.info("Double reward active: %s -> %s XP", score.xp, xp)
    currency = xp // 3 + score.perfect_bonus

    status = streak_status(state, now)
    updated = record_activity(state, now)
    updated = add_xp(updated, xp)
    updated = add_currency(updated, currency)
    updated = track_lesson(updated, now)
    if highest_combo:
        updated = track_combo(updated, highest_combo, now)

    best = max(state.completed_lessons.get(lesson_id, 0), score.score_percent)
    completed = {**state.completed_lessons, lesson_id: best}
    stars_before = state.lesson_stars.get(lesson_id, 0)
    stars_after = stars_before
    if star_eligible and score.passed:
        stars_after = min(MAX_STARS, stars_before + 1)
    stars = {**state.lesson_stars, lesson_id: stars_after} if stars_after != stars_before else dict(state.lesson_stars)

    updated = updated.model_copy(update={"completed_lessons": completed, "lesson_stars": stars})
    updated = updated.with_stats(
        double_reward_next=False,
        lessons_completed=sum(1 for value in completed.values() if value >= PASS_SCORE),
        accuracy_correct=updated.stats.accuracy_correct + score.correct,
        accuracy_total=updated.stats.accuracy_total + score.total,
    )
    _LOGGER.info("Completed %s: %s%%, +%s XP, +%s currency", lesson_id, score.score_percent, xp, currency)
    return updated, LessonCompletion(
        lesson_id=lesson_id,
        xp_awarded=xp,
        currency_awarded=currency,
        double_applied=double,
        best_score=best,
        stars_before=stars_before,
        stars_after=stars_after,
        streak_status=status,
        streak_current=updated.stats.streak_current,
    )


def complete_practice(
    state: LearnerState,
    score: SessionScore,
    now: datetime,
    *,
    highest_combo: int = 0,
) -> LearnerState:
    """Practice and review sessions earn XP and currency without touching lesson scores."""

    updated = record_activity(state, now)
    updated = add_xp(updated, score.xp)
    updated = add_currency(updated, score.currency + score.perfect_bonus)
    if score.xp > 0:
        updated = track_practice(updated, now)
    if highest_combo:
        updated = track_combo(updated, highest_combo, now)
    return updated.with_stats(
        accuracy_correct=updated.stats.accuracy_correct + score.correct,
        accuracy_total=updated.stats.accuracy_total + score.total,
    )
