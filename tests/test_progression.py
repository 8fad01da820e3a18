from datetime import timedelta

import pytest

from engines import progression
from schemas import LearnerState, MistakeEntry


class StubRng:
    """Fixed draws so each reward band can be hit on purpose."""

    def __init__(self, roll):
        self.roll = roll

    def random(self):
        return self.roll

    def randint(self, low, high):
        return low


def _state(**stats):
    return LearnerState().with_stats(**stats)


# ---------------------------------------------------------------------------
# attempts
# ---------------------------------------------------------------------------

def test_losing_an_attempt_starts_the_regen_timer(now):
    state = progression.lose_attempt(LearnerState(), now)
    assert state.stats.attempts_remaining == 4
    assert state.stats.next_attempt_regen_at == now + timedelta(minutes=60)

    again = progression.lose_attempt(state, now + timedelta(minutes=1))
    assert again.stats.attempts_remaining == 3
    assert again.stats.next_attempt_regen_at == now + timedelta(minutes=60)


def test_regen_keeps_phase_between_recomputes(now):
    state = progression.lose_attempt(LearnerState(), now)
    state = progression.lose_attempt(state, now + timedelta(minutes=1))

    regen = progression.recompute_attempts(state, now + timedelta(minutes=95))
    assert regen.stats.attempts_remaining == 4
    assert regen.stats.next_attempt_regen_at == now + timedelta(minutes=120)

    # Recomputing again at the same instant changes nothing.
    assert progression.recompute_attempts(regen, now + timedelta(minutes=95)) == regen


def test_regen_after_long_absence_fills_and_clears_timer(now):
    state = _state(attempts_remaining=0, next_attempt_regen_at=now)
    full = progression.recompute_attempts(state, now + timedelta(hours=10))
    assert full.stats.attempts_remaining == 5
    assert full.stats.next_attempt_regen_at is None


def test_regen_before_timer_is_a_no_op(now):
    state = _state(attempts_remaining=2, next_attempt_regen_at=now + timedelta(minutes=10))
    assert progression.recompute_attempts(state, now) is state


def test_attempts_never_go_negative(now):
    state = _state(attempts_remaining=0, next_attempt_regen_at=now + timedelta(minutes=5))
    assert progression.lose_attempt(state, now).stats.attempts_remaining == 0


def test_seconds_until_next_attempt(now):
    state = progression.lose_attempt(LearnerState(), now)
    assert progression.seconds_until_next_attempt(state, now + timedelta(minutes=30)) == 1800
    assert progression.seconds_until_next_attempt(LearnerState(), now) is None


def test_set_attempts_max_trims_pool():
    state = progression.set_attempts_max(LearnerState(), 3)
    assert state.stats.attempts_max == 3
    assert state.stats.attempts_remaining == 3


# ---------------------------------------------------------------------------
# shop
# ---------------------------------------------------------------------------

def test_buy_attempt_refused_when_full():
    state, ok = progression.buy_attempt(LearnerState())
    assert not ok
    assert state.stats.currency == 50


def test_buy_attempt_spends_currency(now):
    state = _state(attempts_remaining=3, next_attempt_regen_at=now)
    bought, ok = progression.buy_attempt(state)
    assert ok
    assert bought.stats.attempts_remaining == 4
    assert bought.stats.currency == 20


def test_full_refill_needs_enough_currency(now):
    state = _state(attempts_remaining=1, next_attempt_regen_at=now)
    same, ok = progression.buy_full_refill(state)
    assert not ok and same is state

    rich = state.with_stats(currency=150)
    refilled, ok = progression.buy_full_refill(rich)
    assert ok
    assert refilled.stats.attempts_remaining == 5
    assert refilled.stats.next_attempt_regen_at is None
    assert refilled.stats.currency == 50


def test_spend_currency_never_goes_negative():
    state, ok = progression.spend_currency(LearnerState(), 51)
    assert not ok
    assert state.stats.currency == 50


# ---------------------------------------------------------------------------
# streak
# ---------------------------------------------------------------------------

def test_streak_progression(now):
    state = progression.record_activity(LearnerState(), now)
    assert state.stats.streak_current == 1

    same_day = progression.record_activity(state, now + timedelta(hours=3))
    assert same_day.stats.streak_current == 1
    assert progression.streak_status(state, now + timedelta(hours=3)) == "kept"

    next_day = progression.record_activity(state, now + timedelta(days=1))
    assert next_day.stats.streak_current == 2
    assert next_day.stats.streak_best == 2

    gap = progression.record_activity(next_day, now + timedelta(days=4))
    assert gap.stats.streak_current == 1
    assert gap.stats.streak_best == 2


def test_streak_at_risk_after_missed_day(now):
    state = _state(streak_current=4, last_active_at=now - timedelta(days=2))
    assert progression.streak_at_risk(state, now)
    assert not progression.streak_at_risk(state.with_stats(last_active_at=now - timedelta(days=1)), now)
    assert not progression.streak_at_risk(state.with_stats(streak_current=0), now)


def test_streak_save_forgives_missed_days(now):
    state = _state(streak_current=9, streak_saves_held=1, last_active_at=now - timedelta(days=3))
    saved, ok = progression.use_streak_save(state, now)
    assert ok
    assert saved.stats.streak_saves_held == 0
    assert saved.stats.streak_current == 9
    assert progression.record_activity(saved, now).stats.streak_current == 9

    _, ok = progression.use_streak_save(saved, now)
    assert not ok


def test_accepted_break_restarts_on_next_activity(now):
    state = _state(streak_current=9, last_active_at=now - timedelta(days=3))
    broken = progression.accept_streak_break(state, now)
    assert broken.stats.streak_current == 0
    assert not progression.streak_at_risk(broken, now)
    assert progression.record_activity(broken, now).stats.streak_current == 1


def test_streak_save_cap_grows_with_streak():
    assert progression.max_streak_saves(0) == 1
    assert progression.max_streak_saves(100) == 2
    assert progression.max_streak_saves(365) == 3


def test_buy_streak_save_respects_cap_and_price():
    state = _state(currency=450)
    bought, ok = progression.buy_streak_save(state)
    assert ok
    assert bought.stats.streak_saves_held == 1
    assert bought.stats.currency == 250

    refused, ok = progression.buy_streak_save(bought)
    assert not ok and refused is bought

    poor, ok = progression.buy_streak_save(LearnerState())
    assert not ok


# ---------------------------------------------------------------------------
# quests
# ---------------------------------------------------------------------------

def test_lesson_quest_can_be_claimed_once(now):
    state = progression.track_lesson(LearnerState(), now)
    quests = {q.id: q for q in progression.daily_quests(state, now)}
    assert quests[1].completed and not quests[1].claimed
    assert not quests[3].completed

    claimed, ok = progression.claim_quest(state, 1, now)
    assert ok
    assert claimed.stats.currency == 70

    again, ok = progression.claim_quest(claimed, 1, now)
    assert not ok and again is claimed


def test_unfinished_or_unknown_quest_cannot_be_claimed(now):
    _, ok = progression.claim_quest(LearnerState(), 2, now)
    assert not ok
    _, ok = progression.claim_quest(LearnerState(), 99, now)
    assert not ok


def test_quests_reset_on_a_new_day(now):
    state = progression.track_practice(LearnerState(), now)
    state = progression.track_combo(state, 7, now)
    quests = progression.daily_quests(state, now)
    assert all(q.completed for q in quests)
    assert quests[1].current == 5

    tomorrow = progression.daily_quests(state, now + timedelta(days=1))
    assert not any(q.completed for q in tomorrow)


def test_combo_tracking_keeps_the_highest(now):
    state = progression.track_combo(LearnerState(), 4, now)
    assert progression.track_combo(state, 3, now) is state
    assert progression.track_combo(state, 6, now).stats.quest_highest_combo == 6


# ---------------------------------------------------------------------------
# mistakes
# ---------------------------------------------------------------------------

def test_mistake_queue_add_remove_and_window(now):
    old = MistakeEntry(item_id="losartan", kind="drug_class", occurred_at=now - timedelta(days=10))
    fresh = MistakeEntry(item_id="losartan", kind="drug_class", occurred_at=now)
    other = MistakeEntry(item_id="atenolol", kind="dosing", occurred_at=now)
    state = progression.add_mistakes(LearnerState(), [old, fresh, other])
    assert progression.recent_mistakes(state, now) == [fresh, other]
    assert progression.recent_mistake_item_ids(state, now) == ["losartan", "atenolol"]

    removed = progression.remove_mistake(state, "losartan", "drug_class")
    assert removed.mistakes == (fresh, other)
    assert progression.remove_mistake(removed, "losartan", "dosing") is removed

    pruned = progression.prune_mistakes(state, now, 7)
    assert pruned.mistakes == (fresh, other)


# ---------------------------------------------------------------------------
# rewards
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "roll, kind",
    [(0.05, "streak_save"), (0.2, "double_reward"), (0.4, "big_currency"), (0.9, "currency")],
)
def test_reward_bands(roll, kind):
    state, reward = progression.roll_reward(LearnerState(), StubRng(roll))
    assert reward.kind == kind
    if kind == "streak_save":
        assert state.stats.streak_saves_held == 1
    elif kind == "double_reward":
        assert state.stats.double_reward_next
    elif kind == "big_currency":
        assert state.stats.currency == 100
    else:
        assert state.stats.currency == 60


def test_streak_save_band_falls_through_at_cap():
    state = _state(streak_saves_held=1)
    _, reward = progression.roll_reward(state, StubRng(0.05))
    assert reward.kind == "double_reward"


def test_seeded_rolls_are_reproducible():
    import random

    first = [progression.roll_reward(LearnerState(), random.Random(99))[1] for _ in range(3)]
    second = [progression.roll_reward(LearnerState(), random.Random(99))[1] for _ in range(3)]
    assert first == second


# ---------------------------------------------------------------------------
# scoring and completion
# ---------------------------------------------------------------------------

def test_score_session_rules():
    perfect = progression.score_session(10, 10)
    assert (perfect.xp, perfect.currency, perfect.perfect_bonus, perfect.score_percent) == (80, 26, 16, 100)
    assert perfect.passed

    capped = progression.score_session(20, 20)
    assert capped.xp == 99

    endgame = progression.score_session(5, 10, multiplier=2)
    assert (endgame.xp, endgame.currency, endgame.perfect_bonus) == (60, 20, 0)
    assert not endgame.passed

    blitz = progression.score_session(15, 15, multiplier=progression.reward_multiplier("blitz"))
    assert blitz.xp == 0 and blitz.perfect_bonus == 0

    with pytest.raises(ValueError):
        progression.score_session(3, 2)


def test_reward_multiplier_and_combo_bonus():
    assert progression.reward_multiplier("lesson") == 1
    assert progression.reward_multiplier("lesson", endgame=True) == 2
    assert progression.reward_multiplier("capstone") == 2
    assert progression.combo_bonus(5) == 5
    assert progression.combo_bonus(10, 2) == 20
    assert progression.combo_bonus(6) == 0


def test_complete_lesson_awards_and_records(now):
    score = progression.score_session(10, 10)
    state, completion = progression.complete_lesson(LearnerState(), "u1-l1", score, now)
    assert completion.xp_awarded == 80
    assert completion.currency_awarded == 42
    assert completion.star_earned
    assert completion.streak_status == "new"
    assert state.stats.currency == 92
    assert state.stats.xp_total == 80
    assert state.stats.xp_this_week == 80
    assert state.stats.streak_current == 1
    assert state.stats.lessons_completed == 1
    assert state.completed_lessons == {"u1-l1": 100}
    assert state.lesson_stars == {"u1-l1": 1}
    assert state.stats.quest_lessons_done == 1


def test_complete_lesson_keeps_best_score_and_caps_stars(now):
    state = LearnerState(completed_lessons={"u1-l1": 90}, lesson_stars={"u1-l1": 3})
    state, completion = progression.complete_lesson(state, "u1-l1", progression.score_session(7, 10), now)
    assert state.completed_lessons["u1-l1"] == 90
    assert completion.stars_after == 3 and not completion.star_earned


def test_failed_or_ineligible_lessons_earn_no_star(now):
    _, failed = progression.complete_lesson(LearnerState(), "u1-l1", progression.score_session(6, 10), now)
    assert not failed.star_earned
    _, capstone = progression.complete_lesson(
        LearnerState(), "capstone-final", progression.score_session(10, 10), now, star_eligible=False
    )
    assert not capstone.star_earned


def test_double_reward_applies_once(now):
    state = _state(double_reward_next=True)
    state, completion = progression.complete_lesson(state, "u1-l1", progression.score_session(10, 10), now)
    assert completion.double_applied
    assert completion.xp_awarded == 160
    assert completion.currency_awarded == 53 + 16
    assert not state.stats.double_reward_next


def test_complete_practice_tracks_quests(now):
    score = progression.score_session(4, 5)
    state = progression.complete_practice(LearnerState(), score, now, highest_combo=3)
    assert state.stats.xp_total == 24
    assert state.stats.currency == 58
    assert state.stats.quest_practice_done == 1
    assert state.stats.quest_highest_combo == 3
    assert state.completed_lessons == {}


def test_level_for():
    assert progression.level_for(0) == 1
    assert progression.level_for(499) == 1
    assert progression.level_for(500) == 2
