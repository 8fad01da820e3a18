"""Distractor selection for multiple-choice options."""

from __future__ import annotations

import random
from typing import Iterable, List, Optional, Sequence

from catalog import Catalog, Item


def _norm(value: str) -> str:
    return str(value).strip()


def select_distractors(
    correct: str | Sequence[str],
    similar: Iterable[str],
    fallback: Iterable[str],
    k: int = 3,
    rng: Optional[random.Random] = None,
) -> List[str]:
    """Return up to ``k`` unique wrong answers.

    Values from ``similar`` are preferred; the remainder comes from
    ``fallback``. ``correct`` may be a single value or a collection of values
    that must all be excluded. Short pools yield fewer than ``k`` values, the
    function never raises. The result has no guaranteed order.
    """

    if k <= 0:
        return []
    rng = rng or random.Random()
    if isinstance(correct, str):
        excluded = {_norm(correct)}
    else:
        excluded = {_norm(value) for value in correct}

    chosen: List[str] = []
    seen = set(excluded)
    for pool in (similar, fallback):
        candidates: List[str] = []
        for value in pool:
            cleaned = _norm(value)
            if not cleaned or cleaned in seen:
                continue
            seen.add(cleaned)
            candidates.append(cleaned)
        rng.shuffle(candidates)
        for value in candidates:
            if len(chosen) >= k:
                return chosen
            chosen.append(value)
    return chosen[:k]


class DistractorSelector:
    """Build similar/fallback pools from a catalog for one item attribute."""

    def __init__(self, catalog: Catalog, rng: Optional[random.Random] = None):
        self.catalog = catalog
        self.rng = rng or random.Random()

    def similar_items(self, item: Item) -> List[Item]:
        """Same category first, then items sharing the naming family."""

        similar = [other for other in self.catalog.items_in_category(item.category) if other.id != item.id]
        for other in self.catalog.naming_family(item):
            if other.id != item.id and other not in similar:
                similar.append(other)
        return similar

    def for_attribute(
        self,
        item: Item,
        attribute: str,
        correct: str | Sequence[str],
        k: int = 3,
        *,
        exclude_own: bool = True,
    ) -> List[str]:
        """Distractors for ``attribute`` drawn from look-alike items, then the catalog.

        With ``exclude_own`` every value the item itself carries is excluded,
        so a distractor can never be a second correct answer.
        """

        excluded = [correct] if isinstance(correct, str) else list(correct)
        if exclude_own:
            excluded.extend(item.values(attribute))
        similar = self.catalog.all_values(attribute, self.similar_items(item))
        fallback = self.catalog.all_values(attribute)
        return select_distractors(excluded, similar, fallback, k, self.rng)
