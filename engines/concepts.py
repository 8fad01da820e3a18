"""Teaching-concept mastery with forgetting after repeated misses."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Mapping

from schemas import ConceptRecord

FORGET_AFTER_MISSES = 3


def update(
    records: Mapping[str, ConceptRecord],
    concept_id: str,
    correct: bool,
    now: datetime,
) -> Dict[str, ConceptRecord]:
    """Record one answer for ``concept_id``.

    A correct answer marks the concept mastered. Misses only count against a
    mastered concept; the third one since mastery un-masters it.
    """
    current = records.get(concept_id) or ConceptRecord()
    if correct:
        record = ConceptRecord(
            mastered=True,
            correct_streak=current.correct_streak + 1,
            wrong_since_mastered=0,
            last_seen_at=now,
        )
    elif current.mastered:
        misses = current.wrong_since_mastered + 1
        if misses >= FORGET_AFTER_MISSES:
            record = ConceptRecord(mastered=False, correct_streak=0, wrong_since_mastered=0, last_seen_at=now)
        else:
            record = ConceptRecord(mastered=True, correct_streak=0, wrong_since_mastered=misses, last_seen_at=now)
    else:
        record = ConceptRecord(mastered=False, correct_streak=0, wrong_since_mastered=0, last_seen_at=now)

    updated = dict(records)
    updated[concept_id] = record
    return updated


def is_mastered(records: Mapping[str, ConceptRecord], concept_id: str) -> bool:
    record = records.get(concept_id)
    return bool(record and record.mastered)


def pending_concepts(records: Mapping[str, ConceptRecord], concept_ids: Iterable[str]) -> List[str]:
    """Concept ids not yet mastered, in the given order."""
    return [concept_id for concept_id in concept_ids if not is_mastered(records, concept_id)]
