"""Weekly competitive tier rollover.

The rollover algorithm is fixed: at the first check in a new calendar week the
learner's weekly XP is ranked inside a 30-player bracket, the top ten move up
a tier, places 25 and below move down, and weekly XP starts again from zero.
Where the rank comes from is pluggable through ``RankSource``; the default
``SeededRankSource`` derives a deterministic offline bracket from the tier.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, timedelta
from typing import List, Optional, Protocol, Tuple

from schemas import TIERS, LearnerState, TierWeekResult

LOGGER = logging.getLogger(__name__)

BRACKET_SIZE = 30
PROMOTE_MAX_RANK = 10
DEMOTE_MIN_RANK = 25

_TIER_MULTIPLIER = {"Bronze": 1.0, "Silver": 1.5, "Gold": 2.0}


def week_key(moment: datetime | date) -> str:
    """ISO date of the Monday starting the week that contains ``moment``."""

    day = moment.date() if isinstance(moment, datetime) else moment
    return (day - timedelta(days=day.weekday())).isoformat()


class RankSource(Protocol):
    def rank(self, tier: str, weekly_xp: int) -> int:
        """1-based rank of ``weekly_xp`` in a bracket of ``BRACKET_SIZE`` players."""
        ...


class SeededRankSource:
    """Deterministic simulated opponents, seeded by tier.

    Stands in for a server-side leaderboard; the same tier and XP always
    produce the same rank.
    """

    def opponents(self, tier: str) -> List[int]:
        seed = len(tier) * 31 + 30
        multiplier = _TIER_MULTIPLIER.get(tier, 1.0)
        return [
            math.floor((((seed * (index + 1) * 7 + 13) % 400) + 30) * multiplier)
            for index in range(BRACKET_SIZE - 1)
        ]

    def rank(self, tier: str, weekly_xp: int) -> int:
        return 1 + sum(1 for xp in self.opponents(tier) if xp > weekly_xp)


def _shift_tier(tier: str, steps: int) -> str:
    index = TIERS.index(tier) if tier in TIERS else 0
    return TIERS[max(0, min(len(TIERS) - 1, index + steps))]


def check_tier_rollover(
    state: LearnerState,
    now: datetime,
    rank_source: Optional[RankSource] = None,
) -> Tuple[LearnerState, Optional[TierWeekResult]]:
    """Run the weekly rollover once per new week.

    A learner without a stored week key only gets the current key recorded;
    there is no finished week to rank yet.
    """

    current_week = week_key(now)
    stats = state.stats
    if stats.tier_week_start == current_week:
        return state, None
    if not stats.tier_week_start:
        LOGGER.info("[League] Starting first tier week %s", current_week)
        return state.with_stats(tier_week_start=current_week), None

    source = rank_source or SeededRankSource()
    rank = source.rank(stats.tier, stats.xp_this_week)
    previous = stats.tier
    if rank <= PROMOTE_MAX_RANK:
        new_tier = _shift_tier(previous, 1)
    elif rank >= DEMOTE_MIN_RANK:
        new_tier = _shift_tier(previous, -1)
    else:
        new_tier = previous

    promoted = TIERS.index(new_tier) > TIERS.index(previous)
    demoted = TIERS.index(new_tier) < TIERS.index(previous)
    result = TierWeekResult(
        previous_tier=previous,
        new_tier=new_tier,
        rank=rank,
        xp_earned=stats.xp_this_week,
        promoted=promoted,
        demoted=demoted,
        stayed=not promoted and not demoted,
    )
    LOGGER.info(
        "[League] Week %s closed: rank %s with %s XP, %s -> %s",
        stats.tier_week_start,
        rank,
        stats.xp_this_week,
        previous,
        new_tier,
    )
    updated = state.with_stats(tier=new_tier, xp_this_week=0, tier_week_start=current_week)
    return updated, result
