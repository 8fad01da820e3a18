"""Spaced repetition scheduling of catalog items by mastery level."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from schemas import MasteryRecord

INTERVAL_DAYS: tuple[float, ...] = (0.5, 1, 2, 4, 8, 16)
MAX_LEVEL = 5
LOW_MASTERY_LEVEL = 3


class SpacedRepetitionScheduler:
    """Mastery levels 0-5 per item with a fixed interval table.

    Records are immutable; every update returns a new mapping so callers can
    store the result in the learner snapshot as-is.
    """

    def __init__(self, intervals: Sequence[float] = INTERVAL_DAYS):
        if not intervals:
            raise ValueError("intervals must not be empty")
        self.intervals = tuple(intervals)

    def interval_for(self, level: int) -> timedelta:
        index = max(0, min(level, len(self.intervals) - 1))
        return timedelta(days=self.intervals[index])

    def next_review_at(self, level: int, now: datetime) -> datetime:
        return now + self.interval_for(level)

    def update(
        self,
        records: Mapping[str, MasteryRecord],
        item_id: str,
        correct: bool,
        now: datetime,
    ) -> Dict[str, MasteryRecord]:
        """Raise or lower the level by one and reschedule the item."""

        current = records.get(item_id) or MasteryRecord()
        if correct:
            level = min(MAX_LEVEL, current.level + 1)
        else:
            level = max(0, current.level - 1)
        updated = dict(records)
        updated[item_id] = MasteryRecord(
            level=level,
            last_seen_at=now,
            next_review_at=self.next_review_at(level, now),
        )
        return updated

    @staticmethod
    def _weakest_first(records: Mapping[str, MasteryRecord], item_ids: Iterable[str]) -> List[str]:
        return sorted(item_ids, key=lambda item_id: (records[item_id].level, item_id))

    def due_items(self, records: Mapping[str, MasteryRecord], now: datetime) -> List[str]:
        """Items whose review time has passed, weakest first."""

        due = [
            item_id
            for item_id, record in records.items()
            if record.next_review_at is None or record.next_review_at <= now
        ]
        return self._weakest_first(records, due)

    def low_mastery_items(self, records: Mapping[str, MasteryRecord]) -> List[str]:
        low = [item_id for item_id, record in records.items() if record.level < LOW_MASTERY_LEVEL]
        return self._weakest_first(records, low)

    def due_count(self, records: Mapping[str, MasteryRecord], now: datetime) -> int:
        return len(self.due_items(records, now))

    @staticmethod
    def seen_item_ids(records: Mapping[str, MasteryRecord]) -> List[str]:
        return [item_id for item_id, record in records.items() if record.last_seen_at is not None]

    def review_insights(self, records: Mapping[str, MasteryRecord], now: Optional[datetime] = None) -> Dict[str, Any]:
        """Summarise mastery distribution and upcoming review load."""
        if not records:
            return {"status": "No review data available"}
        now = now or datetime.now().astimezone()

        total_items = len(records)
        avg_level = sum(record.level for record in records.values()) / total_items
        scheduled = [record.next_review_at for record in records.values() if record.next_review_at is not None]
        week_end = (now + timedelta(days=7)).date()

        return {
            "total_items": total_items,
            "average_level": round(avg_level, 2),
            "due_now": self.due_count(records, now),
            "due_today": len([at for at in scheduled if at.date() <= now.date()]),
            "due_this_week": len([at for at in scheduled if at.date() <= week_end]),
            "mastery_distribution": self._level_distribution(records),
            "review_load": self._review_load(scheduled, now),
        }

    @staticmethod
    def _level_distribution(records: Mapping[str, MasteryRecord]) -> Dict[str, int]:
        distribution = {
            "new": 0,       # 0
            "learning": 0,  # 1-2
            "familiar": 0,  # 3-4
            "mastered": 0,  # 5
        }
        for record in records.values():
            if record.level == 0:
                distribution["new"] += 1
            elif record.level < LOW_MASTERY_LEVEL:
                distribution["learning"] += 1
            elif record.level < MAX_LEVEL:
                distribution["familiar"] += 1
            else:
                distribution["mastered"] += 1
        return distribution

    @staticmethod
    def _review_load(scheduled: List[datetime], now: datetime) -> Dict[str, int]:
        """Review load for the next 7 days."""
        review_load = {}
        for i in range(7):
            date = (now + timedelta(days=i)).date()
            review_load[date.isoformat()] = len([at for at in scheduled if at.date() == date])
        return review_load
