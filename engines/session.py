"""Session assembly: which questions a learner sees, and in what order.

Every mode returns exactly the requested number of questions when its item
pool is non-empty (cycling through the pool where needed) and an empty list
when it is empty. Assembly never mutates learner state.
"""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from catalog import Catalog, Item
from engines import concepts
from engines.progression import recent_mistakes
from engines.question_generator import NAME_ARCHETYPES, QuestionGenerator
from engines.questions import MultiSelectQuestion, Question, QuestionValidationError, make_choice
from engines.spaced_repetition import SpacedRepetitionScheduler
from schemas import LearnerState, MistakeEntry

LOGGER = logging.getLogger(__name__)

MODES: tuple[str, ...] = (
    "lesson",
    "practice",
    "spaced_review",
    "mistake_review",
    "item_review",
    "mastery",
    "capstone",
    "blitz",
)

DEFAULT_COUNTS: Dict[str, int] = {
    "practice": 10,
    "spaced_review": 10,
    "mistake_review": 10,
    "item_review": 10,
    "mastery": 30,
    "capstone": 15,
    "blitz": 15,
}

MIN_LESSON_QUESTIONS = 10
MAX_LESSON_QUESTIONS = 16
MAX_INTRO_QUESTIONS = 4
REVIEW_RANGE = (2, 4)
MULTI_SELECT_TAIL = 4

DIFFICULTY: Dict[str, int] = {
    "brand_to_generic": 1,
    "generic_to_brand": 1,
    "true_false": 1,
    "suffix": 2,
    "cloze": 2,
    "drug_class": 2,
    "indication": 2,
    "side_effect": 2,
    "key_fact": 2,
    "dosing": 3,
    "not_indication": 3,
    "not_side_effect": 3,
    "clinical_pearl": 3,
    "class_comparison": 3,
    "matching": 3,
    "multi_select": 4,
}

_PHASE_PRIORITY = {"quiz": 3, "mastery": 3, "review": 2, "intro": 1}


@dataclass
class SessionPlan:
    mode: str
    questions: List[Question] = field(default_factory=list)
    lesson_id: Optional[str] = None
    unit_id: Optional[str] = None
    # question id -> archetype kind of the mistake it reviews
    mistake_kinds: Dict[str, str] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.questions)


def lesson_target(question_count: int, override: Optional[int] = None) -> int:
    if override is not None:
        return max(0, int(override))
    return max(MIN_LESSON_QUESTIONS, min(MAX_LESSON_QUESTIONS, question_count))


class SessionAssembler:
    def __init__(
        self,
        catalog: Catalog,
        rng: Optional[random.Random] = None,
        scheduler: Optional[SpacedRepetitionScheduler] = None,
    ):
        self.catalog = catalog
        self.rng = rng or random.Random()
        self.generator = QuestionGenerator(catalog, self.rng)
        self.scheduler = scheduler or SpacedRepetitionScheduler()

    # ------------------------------------------------------------------
    # dispatcher
    # ------------------------------------------------------------------
    def assemble(
        self,
        mode: str,
        state: LearnerState,
        now: datetime,
        *,
        lesson_id: Optional[str] = None,
        unit_id: Optional[str] = None,
        item_ids: Optional[Sequence[str]] = None,
        count: Optional[int] = None,
    ) -> SessionPlan:
        if mode not in MODES:
            raise ValueError(f"Unknown session mode: {mode}")
        if count is not None and count < 0:
            raise ValueError("count must not be negative")

        mistake_kinds: Dict[str, str] = {}
        if mode == "lesson":
            if not lesson_id:
                raise ValueError("lesson mode needs a lesson_id")
            questions = self.lesson_session(lesson_id, state, now, count)
        elif mode == "practice":
            questions = self.practice_session(self._count(mode, count), item_ids)
        elif mode == "spaced_review":
            pool = item_ids if item_ids is not None else self.catalog.unlocked_item_ids(state.completed_lessons)
            questions = self.spaced_review_session(state, now, self._count(mode, count), pool)
        elif mode == "mistake_review":
            entries = recent_mistakes(state, now)
            questions, mistake_kinds = self._mistake_questions(entries, count)
        elif mode == "item_review":
            questions = self.item_review_session(item_ids or (), self._count(mode, count))
        elif mode == "mastery":
            if not unit_id:
                raise ValueError("mastery mode needs a unit_id")
            questions = self.mastery_session(self.catalog.unit_item_ids(unit_id), self._count(mode, count))
        elif mode == "capstone":
            questions = self.mastery_session([item.id for item in self.catalog.items], self._count(mode, count))
        else:
            pool = item_ids if item_ids is not None else self.catalog.unlocked_item_ids(state.completed_lessons)
            questions = self.blitz_session(self._count(mode, count), pool or None)

        LOGGER.info("Assembled %s session with %s questions", mode, len(questions))
        return SessionPlan(
            mode=mode, questions=questions, lesson_id=lesson_id, unit_id=unit_id, mistake_kinds=mistake_kinds
        )

    @staticmethod
    def _count(mode: str, count: Optional[int]) -> int:
        return DEFAULT_COUNTS[mode] if count is None else count

    # ------------------------------------------------------------------
    # modes
    # ------------------------------------------------------------------
    def lesson_session(
        self,
        lesson_id: str,
        state: LearnerState,
        now: datetime,
        count: Optional[int] = None,
    ) -> List[Question]:
        """Intro questions first, then a shuffled, difficulty-ramped quiz and review block."""

        lesson = self.catalog.lesson(lesson_id)
        items = self.catalog.items_by_ids(lesson.item_ids)
        target = lesson_target(lesson.question_count, count)
        if not items or target == 0:
            return []

        intros = [
            question
            for question in self.generator.intro_questions(lesson)
            if not concepts.is_mastered(state.concepts, question.concept_id or "")
        ][: min(MAX_INTRO_QUESTIONS, target)]
        remaining = target - len(intros)

        review_pool = self._review_pool(state, now, exclude=lesson.item_ids)
        review_count = min(self.rng.randint(*REVIEW_RANGE), len(review_pool), max(0, remaining - 1))
        quiz_count = remaining - review_count

        quiz = self._cycle_questions(items, quiz_count, "quiz", matching_at=quiz_count // 2)
        review = [
            self.generator.generate(item, index, phase="review", qid=f"review-{index}-{item.id}")
            for index, item in enumerate(review_pool[:review_count])
        ]
        block = quiz + review
        self.rng.shuffle(block)
        return intros + self.arrange_for_ramp(block)

    def practice_session(self, count: int, item_ids: Optional[Sequence[str]] = None) -> List[Question]:
        items = self.catalog.items_by_ids(item_ids) if item_ids is not None else list(self.catalog.items)
        if not items or count <= 0:
            return []
        self.rng.shuffle(items)
        questions = self._cycle_questions(items, count, "quiz", matching_at=count // 3)
        self.rng.shuffle(questions)
        return self.arrange_for_ramp(questions)

    def spaced_review_session(
        self,
        state: LearnerState,
        now: datetime,
        count: int,
        item_ids: Optional[Sequence[str]] = None,
    ) -> List[Question]:
        """Due items (weakest first), then low-mastery ones, then random backfill."""

        pool = self.catalog.items_by_ids(item_ids) if item_ids is not None else list(self.catalog.items)
        if not pool or count <= 0:
            return []
        allowed = {item.id for item in pool}
        ordered: List[str] = []
        for item_id in self.scheduler.due_items(state.mastery, now) + self.scheduler.low_mastery_items(state.mastery):
            if item_id in allowed and item_id not in ordered:
                ordered.append(item_id)
        backfill = [item.id for item in pool if item.id not in ordered]
        self.rng.shuffle(backfill)
        selected = self.catalog.items_by_ids((ordered + backfill)[:count])

        questions = [
            self.generator.generate(item, index, phase="review", qid=f"review-{index}-{item.id}")
            for index, item in enumerate(self._cycle(selected, count))
        ]
        self.rng.shuffle(questions)
        return self.arrange_for_ramp(questions)

    def mistake_review_session(
        self,
        entries: Sequence[MistakeEntry],
        count: Optional[int] = None,
    ) -> List[Question]:
        """One question per mistake in the archetype that produced it."""

        return self._mistake_questions(entries, count)[0]

    def _mistake_questions(
        self,
        entries: Sequence[MistakeEntry],
        count: Optional[int],
    ) -> Tuple[List[Question], Dict[str, str]]:
        usable = [entry for entry in entries if entry.item_id in self.catalog]
        skipped = len(entries) - len(usable)
        if skipped:
            LOGGER.warning("[MistakeBank] Skipping %s mistakes for unknown items", skipped)
        if not usable:
            return [], {}
        target = min(len(usable), DEFAULT_COUNTS["mistake_review"]) if count is None else count

        questions: List[Question] = []
        kinds: Dict[str, str] = {}
        for index, entry in enumerate(self._cycle(usable, target)):
            item = self.catalog.get_item(entry.item_id)
            # Matching spans several items; its single-item counterpart is name recall.
            kind = "brand_to_generic" if entry.kind == "matching" else entry.kind
            question = self.generator.build(item, kind, qid=f"mistake-{index}-{item.id}", phase="review")
            kinds[question.id] = entry.kind
            questions.append(question)
        self.rng.shuffle(questions)
        return self.arrange_for_ramp(questions), kinds

    def item_review_session(self, item_ids: Iterable[str], count: int) -> List[Question]:
        items = self.catalog.items_by_ids(item_ids)
        if not items or count <= 0:
            return []
        questions = [
            self.generator.generate(item, index, phase="review", qid=f"review-{index}-{item.id}")
            for index, item in enumerate(self._cycle(items, count))
        ]
        self.rng.shuffle(questions)
        return self.arrange_for_ramp(questions)

    def mastery_session(self, item_ids: Sequence[str], count: int) -> List[Question]:
        """Cumulative exam restricted to ``item_ids``, multi-select sprinkled throughout."""

        items = self.catalog.items_by_ids(item_ids)
        if not items or count <= 0:
            return []
        self.rng.shuffle(items)
        questions = self._cycle_questions(items, count, "mastery", matching_at=count // 2)
        return self.arrange_for_sprinkle(questions)

    def blitz_session(self, count: int, item_ids: Optional[Sequence[str]] = None) -> List[Question]:
        """Timed name recall; brand and generic names only."""

        items = self.catalog.items_by_ids(item_ids) if item_ids is not None else list(self.catalog.items)
        if not items or count <= 0:
            return []
        self.rng.shuffle(items)
        questions = [
            self.generator.generate(item, index, archetypes=NAME_ARCHETYPES, qid=f"blitz-{index}-{item.id}")
            for index, item in enumerate(self._cycle(items, count))
        ]
        self.rng.shuffle(questions)
        return questions

    # ------------------------------------------------------------------
    # pools
    # ------------------------------------------------------------------
    def _review_pool(self, state: LearnerState, now: datetime, exclude: Iterable[str]) -> List[Item]:
        """Previously seen, unlocked items outside ``exclude``: due, then low mastery, then the rest."""

        excluded = set(exclude)
        seen = set(self.scheduler.seen_item_ids(state.mastery))
        candidates = [
            item_id
            for item_id in self.catalog.unlocked_item_ids(state.completed_lessons)
            if item_id in seen and item_id not in excluded
        ]
        due = [item_id for item_id in self.scheduler.due_items(state.mastery, now) if item_id in candidates]
        low = [
            item_id
            for item_id in self.scheduler.low_mastery_items(state.mastery)
            if item_id in candidates and item_id not in due
        ]
        rest = [item_id for item_id in candidates if item_id not in due and item_id not in low]
        self.rng.shuffle(rest)
        return self.catalog.items_by_ids(due + low + rest)

    @staticmethod
    def _cycle(pool: Sequence, count: int) -> List:
        if not pool:
            return []
        return [pool[index % len(pool)] for index in range(count)]

    def _cycle_questions(self, items: Sequence[Item], count: int, phase: str, matching_at: int) -> List[Question]:
        questions: List[Question] = []
        matching_added = False
        for index in range(count):
            if not matching_added and index == matching_at and len(items) >= 4:
                matching = self.generator.build_matching(items, qid=f"{phase}-{index}-matching", phase=phase)
                if matching is not None:
                    questions.append(matching)
                    matching_added = True
                    continue
            item = items[index % len(items)]
            questions.append(self.generator.generate(item, index, phase=phase))
        return questions

    # ------------------------------------------------------------------
    # ordering
    # ------------------------------------------------------------------
    def _ramp_sorted(self, questions: Iterable[Question]) -> List[Question]:
        keyed = [(DIFFICULTY.get(question.kind, 2), self.rng.random(), question) for question in questions]
        keyed.sort(key=lambda entry: (entry[0], entry[1]))
        return [question for _, _, question in keyed]

    def arrange_for_ramp(self, questions: Sequence[Question]) -> List[Question]:
        """Easy to hard, with at most four multi-select questions kept in the last four slots."""

        if len(questions) <= 1:
            return list(questions)
        tail_slots = min(MULTI_SELECT_TAIL, len(questions))
        multi = [question for question in questions if isinstance(question, MultiSelectQuestion)]
        others = [question for question in questions if not isinstance(question, MultiSelectQuestion)]

        keyed = [(-_PHASE_PRIORITY.get(question.phase, 0), self.rng.random(), question) for question in multi]
        keyed.sort(key=lambda entry: (entry[0], entry[1]))
        ordered_multi = [question for _, _, question in keyed]
        kept = ordered_multi[:tail_slots]
        overflow = [self.single_answer_from_multi(question) for question in ordered_multi[tail_slots:]]
        return self._ramp_sorted(others + overflow) + kept

    def arrange_for_sprinkle(self, questions: Sequence[Question]) -> List[Question]:
        """Easy to hard, with multi-select spread evenly after the first two slots."""

        total = len(questions)
        if total <= 1:
            return list(questions)
        multi = [question for question in questions if isinstance(question, MultiSelectQuestion)]
        self.rng.shuffle(multi)
        others = self._ramp_sorted(question for question in questions if not isinstance(question, MultiSelectQuestion))
        if not multi:
            return others

        min_index = 2 if total > 6 else 0
        step = max(1, total - min_index) / len(multi)
        positions: List[int] = []
        for index in range(len(multi)):
            pos = int(min_index + index * step + step / 2)
            pos = max(min_index, min(total - 1, pos))
            while pos in positions and pos < total - 1:
                pos += 1
            while pos in positions and pos > min_index:
                pos -= 1
            if pos in positions:
                pos = next(slot for slot in range(total) if slot not in positions)
            positions.append(pos)

        final: List[Optional[Question]] = [None] * total
        for pos, question in zip(positions, multi):
            final[pos] = question
        cursor = iter(others)
        return [slot if slot is not None else next(cursor) for slot in final]

    def single_answer_from_multi(self, question: MultiSelectQuestion) -> Question:
        lower = question.prompt.lower()
        if "side effect" in lower or "adverse" in lower:
            kind = "side_effect"
        elif "indication" in lower or "used for" in lower:
            kind = "indication"
        else:
            kind = "clinical_pearl"

        if "select all" in lower:
            prompt = re.sub(r"select\s+all", "Pick ONE", question.prompt, flags=re.IGNORECASE)
            prompt = re.sub(r"side\s+effects", "side effect", prompt, flags=re.IGNORECASE)
            prompt = re.sub(r"indications", "indication", prompt, flags=re.IGNORECASE)
        else:
            prompt = "Pick ONE correct answer:"

        correct = self.rng.choice(list(question.correct))
        wrong = [option for option in question.options if option not in question.correct]
        self.rng.shuffle(wrong)
        options = [correct, *wrong[:3]]
        self.rng.shuffle(options)
        try:
            return make_choice(
                "pearl" if kind == "clinical_pearl" else "recall",
                id=question.id,
                kind=kind,
                prompt=prompt,
                options=options,
                correct=correct,
                item_id=question.item_id,
                phase=question.phase,
                explanation=question.explanation,
                concept_id=question.concept_id,
            )
        except QuestionValidationError as exc:
            LOGGER.debug("Keeping multi-select %s unconverted: %s", question.id, exc)
            return question
