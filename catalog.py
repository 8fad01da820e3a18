"""Read-only content catalog: learning items, lessons and units.

The catalog is supplied externally as JSON and is never mutated by the
engine. Loading validates the structure once; every accessor afterwards is a
pure lookup.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

PASS_SCORE = 70
SUFFIX_LENGTH = 4

_LIST_ATTRIBUTES = ("uses", "effects")
_SCALAR_ATTRIBUTES = ("primary_name", "alternate_name", "category", "dosing_note", "fact_text")


class CatalogValidationError(ValueError):
    """Raised when the catalog JSON fails validation."""


def name_suffix(name: str, length: int = SUFFIX_LENGTH) -> str:
    """Return the lower-cased naming stem used to group look-alike names."""

    cleaned = "".join(ch for ch in (name or "").lower() if ch.isalpha())
    if len(cleaned) <= length:
        return ""
    return cleaned[-length:]


def slugify(text: str) -> str:
    parts = ["".join(ch for ch in chunk.lower() if ch.isalnum()) for chunk in str(text).split()]
    return "-".join(part for part in parts if part)


@dataclass(frozen=True)
class Item:
    id: str
    primary_name: str
    alternate_name: str
    category: str
    uses: Tuple[str, ...] = ()
    effects: Tuple[str, ...] = ()
    dosing_note: str = ""
    fact_text: str = ""

    def values(self, attribute: str) -> Tuple[str, ...]:
        """Return the values of ``attribute`` as a tuple, empty strings removed."""

        if attribute in _LIST_ATTRIBUTES:
            return tuple(value for value in getattr(self, attribute) if value)
        if attribute in _SCALAR_ATTRIBUTES:
            value = getattr(self, attribute)
            return (value,) if value else ()
        raise KeyError(f"Unknown item attribute: {attribute}")

    @property
    def suffix(self) -> str:
        return name_suffix(self.alternate_name)


@dataclass(frozen=True)
class IntroPrompt:
    """Teaching prompt shown before a lesson until its concept is mastered."""

    concept_id: str
    kind: str
    prompt: str
    options: Tuple[str, ...]
    correct: Tuple[str, ...]
    explanation: str = ""
    cloze_parts: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Lesson:
    id: str
    title: str
    item_ids: Tuple[str, ...]
    question_count: int = 12
    intro: Tuple[IntroPrompt, ...] = ()


@dataclass(frozen=True)
class Unit:
    id: str
    title: str
    lesson_ids: Tuple[str, ...]
    is_capstone: bool = False

    @property
    def mastery_lesson_id(self) -> str:
        return f"mastery-{self.id}"


@dataclass
class Catalog:
    """Validated, immutable view over items, lessons and units."""

    items: Tuple[Item, ...]
    lessons: Tuple[Lesson, ...] = ()
    units: Tuple[Unit, ...] = ()
    _items_by_id: Dict[str, Item] = field(init=False, repr=False)
    _lessons_by_id: Dict[str, Lesson] = field(init=False, repr=False)
    _units_by_id: Dict[str, Unit] = field(init=False, repr=False)
    _lesson_unit: Dict[str, str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.items = tuple(self.items)
        self.lessons = tuple(self.lessons)
        self.units = tuple(self.units)
        self._items_by_id = {}
        for item in self.items:
            if item.id in self._items_by_id:
                raise CatalogValidationError(f"Duplicate item id detected: {item.id}")
            self._items_by_id[item.id] = item

        self._lessons_by_id = {}
        for lesson in self.lessons:
            if lesson.id in self._lessons_by_id:
                raise CatalogValidationError(f"Duplicate lesson id detected: {lesson.id}")
            unknown = [item_id for item_id in lesson.item_ids if item_id not in self._items_by_id]
            if unknown:
                raise CatalogValidationError(
                    f"Lesson {lesson.id} references unknown items: {', '.join(unknown)}"
                )
            self._lessons_by_id[lesson.id] = lesson

        self._units_by_id = {}
        self._lesson_unit = {}
        for unit in self.units:
            if unit.id in self._units_by_id:
                raise CatalogValidationError(f"Duplicate unit id detected: {unit.id}")
            for lesson_id in unit.lesson_ids:
                if lesson_id not in self._lessons_by_id:
                    raise CatalogValidationError(
                        f"Unit {unit.id} references unknown lesson: {lesson_id}"
                    )
                self._lesson_unit[lesson_id] = unit.id
            self._units_by_id[unit.id] = unit

    # ------------------------------------------------------------------
    # loading & validation
    # ------------------------------------------------------------------
    @classmethod
    def from_path(cls, path: str | Path) -> "Catalog":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Catalog file not found: {path}")
        with path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)
        return cls.from_dict(raw)

    @classmethod
    def from_dict(cls, raw: Any) -> "Catalog":
        if isinstance(raw, list):
            raw = {"items": raw}
        if not isinstance(raw, dict):
            raise CatalogValidationError("Catalog root must be a JSON object or list")
        entries = raw.get("items")
        if not isinstance(entries, list) or not entries:
            raise CatalogValidationError("Catalog must contain a non-empty 'items' list")

        items = [_parse_item(entry) for entry in entries]
        lessons = [_parse_lesson(entry) for entry in raw.get("lessons") or []]
        units = [_parse_unit(entry) for entry in raw.get("units") or []]
        return cls(items=tuple(items), lessons=tuple(lessons), units=tuple(units))

    # ------------------------------------------------------------------
    # item lookups
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self.items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items_by_id

    def get_item(self, item_id: str) -> Optional[Item]:
        return self._items_by_id.get(item_id)

    def items_by_ids(self, item_ids: Iterable[str]) -> List[Item]:
        """Return items for ``item_ids`` in order, skipping unknown and repeated ids."""

        seen: set[str] = set()
        found: List[Item] = []
        for item_id in item_ids:
            if item_id in seen:
                continue
            item = self._items_by_id.get(item_id)
            if item is not None:
                seen.add(item_id)
                found.append(item)
        return found

    def items_in_category(self, category: str) -> List[Item]:
        return [item for item in self.items if item.category == category]

    def naming_family(self, item: Item) -> List[Item]:
        suffix = item.suffix
        if not suffix:
            return []
        return [other for other in self.items if other.suffix == suffix]

    def all_values(self, attribute: str, items: Optional[Sequence[Item]] = None) -> List[str]:
        """Unique values of ``attribute`` across ``items`` (default: whole catalog), in order."""

        values: List[str] = []
        seen: set[str] = set()
        for item in self.items if items is None else items:
            for value in item.values(attribute):
                if value not in seen:
                    seen.add(value)
                    values.append(value)
        return values

    # ------------------------------------------------------------------
    # curriculum lookups
    # ------------------------------------------------------------------
    def lesson(self, lesson_id: str) -> Lesson:
        try:
            return self._lessons_by_id[lesson_id]
        except KeyError:
            raise KeyError(f"Unknown lesson: {lesson_id}") from None

    def unit(self, unit_id: str) -> Unit:
        try:
            return self._units_by_id[unit_id]
        except KeyError:
            raise KeyError(f"Unknown unit: {unit_id}") from None

    def unit_for_lesson(self, lesson_id: str) -> Optional[Unit]:
        unit_id = self._lesson_unit.get(lesson_id)
        return self._units_by_id.get(unit_id) if unit_id else None

    def unit_item_ids(self, unit_id: str) -> List[str]:
        unit = self.unit(unit_id)
        ids: List[str] = []
        for lesson_id in unit.lesson_ids:
            for item_id in self._lessons_by_id[lesson_id].item_ids:
                if item_id not in ids:
                    ids.append(item_id)
        return ids

    def is_star_eligible(self, lesson_id: str) -> bool:
        """Stars are only earned on regular lessons outside the capstone unit."""

        unit = self.unit_for_lesson(lesson_id)
        return unit is not None and not unit.is_capstone

    def is_lesson_unlocked(self, unit_id: str, index: int, completed: Mapping[str, int]) -> bool:
        unit = self._units_by_id.get(unit_id)
        if unit is None or not 0 <= index < len(unit.lesson_ids):
            return False

        if unit.is_capstone:
            core = [u for u in self.units if not u.is_capstone]
            lessons_passed = all(
                completed.get(lesson_id, 0) >= PASS_SCORE for u in core for lesson_id in u.lesson_ids
            )
            exams_passed = all(completed.get(u.mastery_lesson_id, 0) >= PASS_SCORE for u in core)
            return lessons_passed and exams_passed

        if index > 0:
            return completed.get(unit.lesson_ids[index - 1], 0) >= PASS_SCORE

        position = self.units.index(unit)
        if position == 0:
            return True
        previous = self.units[position - 1]
        passed = sum(1 for lesson_id in previous.lesson_ids if completed.get(lesson_id, 0) >= PASS_SCORE)
        return passed * 2 >= len(previous.lesson_ids)

    def is_mastery_unlocked(self, unit_id: str, completed: Mapping[str, int]) -> bool:
        """A unit's mastery exam opens once every lesson of the unit is passed."""
        unit = self.unit(unit_id)
        return all(completed.get(lesson_id, 0) >= PASS_SCORE for lesson_id in unit.lesson_ids)

    def capstone_unit(self) -> Optional[Unit]:
        return next((unit for unit in self.units if unit.is_capstone), None)

    def unlocked_item_ids(self, completed: Mapping[str, int]) -> List[str]:
        ids: List[str] = []
        for unit in self.units:
            if unit.is_capstone:
                continue
            for index, lesson_id in enumerate(unit.lesson_ids):
                if not self.is_lesson_unlocked(unit.id, index, completed):
                    continue
                for item_id in self._lessons_by_id[lesson_id].item_ids:
                    if item_id not in ids:
                        ids.append(item_id)
        return ids

    def unit_progress(self, completed: Mapping[str, int]) -> Dict[str, int]:
        progress: Dict[str, int] = {}
        for unit in self.units:
            if not unit.lesson_ids:
                progress[unit.id] = 0
                continue
            passed = sum(1 for lesson_id in unit.lesson_ids if completed.get(lesson_id, 0) >= PASS_SCORE)
            progress[unit.id] = round(passed * 100 / len(unit.lesson_ids))
        return progress


# ----------------------------------------------------------------------
# parsing helpers
# ----------------------------------------------------------------------
def _require_text(entry: Mapping[str, Any], key: str, owner: str) -> str:
    value = entry.get(key)
    if value is None or not str(value).strip():
        raise CatalogValidationError(f"{owner} missing required field '{key}'")
    return str(value).strip()


def _text_list(entry: Mapping[str, Any], key: str, owner: str) -> Tuple[str, ...]:
    value = entry.get(key) or []
    if not isinstance(value, list):
        raise CatalogValidationError(f"{owner} field '{key}' must be a list")
    return tuple(str(v).strip() for v in value if v is not None and str(v).strip())


def _parse_item(entry: Any) -> Item:
    if not isinstance(entry, dict):
        raise CatalogValidationError("Each item must be an object")
    item_id = _require_text(entry, "id", "Item")
    owner = f"Item {item_id}"
    return Item(
        id=item_id,
        primary_name=_require_text(entry, "primary_name", owner),
        alternate_name=_require_text(entry, "alternate_name", owner),
        category=_require_text(entry, "category", owner),
        uses=_text_list(entry, "uses", owner),
        effects=_text_list(entry, "effects", owner),
        dosing_note=str(entry.get("dosing_note") or "").strip(),
        fact_text=str(entry.get("fact_text") or "").strip(),
    )


def _parse_intro(entry: Any, lesson_id: str) -> IntroPrompt:
    owner = f"Intro prompt in lesson {lesson_id}"
    if not isinstance(entry, dict):
        raise CatalogValidationError(f"{owner} must be an object")
    options = _text_list(entry, "options", owner)
    correct = _text_list(entry, "correct", owner)
    if not correct:
        raise CatalogValidationError(f"{owner} must provide at least one correct answer")
    missing = [value for value in correct if value not in options]
    if missing:
        raise CatalogValidationError(f"{owner} correct answers missing from options: {', '.join(missing)}")
    return IntroPrompt(
        concept_id=_require_text(entry, "concept_id", owner),
        kind=_require_text(entry, "kind", owner),
        prompt=_require_text(entry, "prompt", owner),
        options=options,
        correct=correct,
        explanation=str(entry.get("explanation") or ""),
        cloze_parts=_text_list(entry, "cloze_parts", owner),
    )


def _parse_lesson(entry: Any) -> Lesson:
    if not isinstance(entry, dict):
        raise CatalogValidationError("Each lesson must be an object")
    lesson_id = _require_text(entry, "id", "Lesson")
    owner = f"Lesson {lesson_id}"
    item_ids = _text_list(entry, "item_ids", owner)
    if not item_ids:
        raise CatalogValidationError(f"{owner} must reference at least one item")
    try:
        question_count = int(entry.get("question_count", 12))
    except (TypeError, ValueError) as exc:
        raise CatalogValidationError(f"{owner} question_count must be an integer") from exc
    if question_count <= 0:
        raise CatalogValidationError(f"{owner} question_count must be positive")
    intro_raw = entry.get("intro") or []
    if not isinstance(intro_raw, list):
        raise CatalogValidationError(f"{owner} intro must be a list")
    return Lesson(
        id=lesson_id,
        title=str(entry.get("title") or lesson_id),
        item_ids=item_ids,
        question_count=question_count,
        intro=tuple(_parse_intro(prompt, lesson_id) for prompt in intro_raw),
    )


def _parse_unit(entry: Any) -> Unit:
    if not isinstance(entry, dict):
        raise CatalogValidationError("Each unit must be an object")
    unit_id = _require_text(entry, "id", "Unit")
    return Unit(
        id=unit_id,
        title=str(entry.get("title") or unit_id),
        lesson_ids=_text_list(entry, "lesson_ids", f"Unit {unit_id}"),
        is_capstone=bool(entry.get("is_capstone", False)),
    )


def load_catalog(path: str | Path) -> Catalog:
    """Return a validated catalog read from ``path``."""
    return Catalog.from_path(path)
