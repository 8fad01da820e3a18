"""Typed question variants and the factories that build them.

Each variant carries only the fields its screen needs. Factories check that
the answer can actually be given (the correct option is present, enough
options or pairs exist) and raise ``QuestionValidationError`` otherwise, so a
malformed question never reaches a learner.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, ClassVar, Dict, Iterable, Mapping, Optional, Sequence, Tuple

PHASES: Tuple[str, ...] = ("intro", "quiz", "review", "mastery")

ARCHETYPES: Tuple[str, ...] = (
    "brand_to_generic",
    "generic_to_brand",
    "drug_class",
    "indication",
    "side_effect",
    "dosing",
    "suffix",
    "key_fact",
    "cloze",
    "not_indication",
    "not_side_effect",
    "multi_select",
    "true_false",
    "class_comparison",
    "clinical_pearl",
    "matching",
)

BLANK = "___"


class QuestionValidationError(ValueError):
    """Raised when a question cannot be answered as constructed."""


def _clean(values: Iterable[Any]) -> Tuple[str, ...]:
    return tuple(str(value).strip() for value in values if value is not None and str(value).strip())


@dataclass(frozen=True, kw_only=True)
class Question:
    id: str
    kind: str
    prompt: str
    item_id: Optional[str] = None
    phase: str = "quiz"
    explanation: str = ""
    concept_id: Optional[str] = None

    variant: ClassVar[str] = "question"

    def is_correct(self, answer: Any) -> bool:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, tuple):
                data[key] = [list(v) if isinstance(v, tuple) else v for v in value]
        data["variant"] = self.variant
        return data


@dataclass(frozen=True, kw_only=True)
class _SingleChoice(Question):
    options: Tuple[str, ...]
    correct: str

    def is_correct(self, answer: Any) -> bool:
        return isinstance(answer, str) and answer.strip() == self.correct


@dataclass(frozen=True, kw_only=True)
class RecallQuestion(_SingleChoice):
    variant: ClassVar[str] = "recall"


@dataclass(frozen=True, kw_only=True)
class ReverseRecallQuestion(_SingleChoice):
    variant: ClassVar[str] = "reverse_recall"


@dataclass(frozen=True, kw_only=True)
class NegationQuestion(_SingleChoice):
    variant: ClassVar[str] = "negation"


@dataclass(frozen=True, kw_only=True)
class ClassComparisonQuestion(_SingleChoice):
    variant: ClassVar[str] = "class_comparison"


@dataclass(frozen=True, kw_only=True)
class PearlQuestion(_SingleChoice):
    variant: ClassVar[str] = "pearl"


@dataclass(frozen=True, kw_only=True)
class TrueFalseQuestion(Question):
    answer: bool

    variant: ClassVar[str] = "true_false"

    @property
    def options(self) -> Tuple[str, str]:
        return ("True", "False")

    def is_correct(self, answer: Any) -> bool:
        if isinstance(answer, str):
            answer = answer.strip().lower() in {"true", "yes", "1"}
        return bool(answer) is self.answer

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["options"] = list(self.options)
        return data


@dataclass(frozen=True, kw_only=True)
class ClozeQuestion(Question):
    """Sentence split around blanks; ``parts`` has one more entry than ``correct``."""

    parts: Tuple[str, ...]
    word_bank: Tuple[str, ...]
    correct: Tuple[str, ...]

    variant: ClassVar[str] = "cloze"

    def is_correct(self, answer: Any) -> bool:
        if isinstance(answer, str):
            answer = [answer]
        return tuple(_clean(answer or ())) == self.correct


@dataclass(frozen=True, kw_only=True)
class MultiSelectQuestion(Question):
    options: Tuple[str, ...]
    correct: Tuple[str, ...]

    variant: ClassVar[str] = "multi_select"

    def is_correct(self, answer: Any) -> bool:
        if isinstance(answer, str):
            answer = [answer]
        return set(_clean(answer or ())) == set(self.correct)


@dataclass(frozen=True, kw_only=True)
class MatchingQuestion(Question):
    """Brand/generic pairs; ``item_ids`` names the catalog item behind each pair."""

    pairs: Tuple[Tuple[str, str], ...]
    right_options: Tuple[str, ...]
    item_ids: Tuple[str, ...] = ()

    variant: ClassVar[str] = "matching"

    @staticmethod
    def _given(answer: Any) -> Optional[Dict[str, str]]:
        if isinstance(answer, Mapping):
            return {str(k).strip(): str(v).strip() for k, v in answer.items()}
        try:
            return {str(left).strip(): str(right).strip() for left, right in answer or ()}
        except (TypeError, ValueError):
            return None

    def is_correct(self, answer: Any) -> bool:
        return self._given(answer) == dict(self.pairs)

    def pair_results(self, answer: Any) -> Tuple[Tuple[str, bool], ...]:
        """``(item_id, matched)`` for every pair that names an item."""

        given = self._given(answer) or {}
        return tuple(
            (item_id, given.get(left) == right)
            for item_id, (left, right) in zip(self.item_ids, self.pairs)
        )


# ---------------------------------------------------------------------------
# factories
# ---------------------------------------------------------------------------

_CHOICE_VARIANTS = {
    "recall": RecallQuestion,
    "reverse_recall": ReverseRecallQuestion,
    "negation": NegationQuestion,
    "class_comparison": ClassComparisonQuestion,
    "pearl": PearlQuestion,
}


def _check_common(id: str, kind: str, prompt: str, phase: str) -> None:
    if not id:
        raise QuestionValidationError("question id is required")
    if kind not in ARCHETYPES:
        raise QuestionValidationError(f"unknown archetype kind: {kind}")
    if not prompt or not prompt.strip():
        raise QuestionValidationError(f"{kind} question needs a prompt")
    if phase not in PHASES:
        raise QuestionValidationError(f"unknown phase: {phase}")


def make_choice(
    variant: str,
    *,
    id: str,
    kind: str,
    prompt: str,
    options: Sequence[str],
    correct: str,
    item_id: Optional[str] = None,
    phase: str = "quiz",
    explanation: str = "",
    concept_id: Optional[str] = None,
) -> _SingleChoice:
    """Build a single-answer question of ``variant`` with unique options."""

    cls = _CHOICE_VARIANTS.get(variant)
    if cls is None:
        raise QuestionValidationError(f"unknown single-choice variant: {variant}")
    _check_common(id, kind, prompt, phase)
    cleaned = tuple(dict.fromkeys(_clean(options)))
    correct = str(correct or "").strip()
    if not correct or correct not in cleaned:
        raise QuestionValidationError(f"{kind}: correct answer {correct!r} missing from options")
    if len(cleaned) < 2:
        raise QuestionValidationError(f"{kind}: at least two options are required")
    return cls(
        id=id,
        kind=kind,
        prompt=prompt,
        options=cleaned,
        correct=correct,
        item_id=item_id,
        phase=phase,
        explanation=explanation,
        concept_id=concept_id,
    )


def make_true_false(
    *,
    id: str,
    prompt: str,
    answer: bool,
    item_id: Optional[str] = None,
    phase: str = "quiz",
    explanation: str = "",
    concept_id: Optional[str] = None,
    kind: str = "true_false",
) -> TrueFalseQuestion:
    _check_common(id, kind, prompt, phase)
    return TrueFalseQuestion(
        id=id,
        kind=kind,
        prompt=prompt,
        answer=bool(answer),
        item_id=item_id,
        phase=phase,
        explanation=explanation,
        concept_id=concept_id,
    )


def make_cloze(
    *,
    id: str,
    kind: str,
    prompt: str,
    parts: Sequence[str],
    correct: Sequence[str],
    word_bank: Sequence[str],
    item_id: Optional[str] = None,
    phase: str = "quiz",
    explanation: str = "",
    concept_id: Optional[str] = None,
) -> ClozeQuestion:
    _check_common(id, kind, prompt, phase)
    answers = _clean(correct)
    if not answers:
        raise QuestionValidationError(f"{kind}: cloze needs at least one blank")
    if len(parts) != len(answers) + 1:
        raise QuestionValidationError(f"{kind}: {len(answers)} blanks need {len(answers) + 1} parts")
    bank = tuple(dict.fromkeys(_clean(word_bank)))
    missing = [word for word in answers if word not in bank]
    if missing:
        raise QuestionValidationError(f"{kind}: word bank lacks {', '.join(missing)}")
    if len(bank) <= len(set(answers)):
        raise QuestionValidationError(f"{kind}: word bank needs at least one distractor")
    return ClozeQuestion(
        id=id,
        kind=kind,
        prompt=prompt,
        parts=tuple(str(part) for part in parts),
        word_bank=bank,
        correct=answers,
        item_id=item_id,
        phase=phase,
        explanation=explanation,
        concept_id=concept_id,
    )


def make_multi_select(
    *,
    id: str,
    kind: str,
    prompt: str,
    options: Sequence[str],
    correct: Sequence[str],
    item_id: Optional[str] = None,
    phase: str = "quiz",
    explanation: str = "",
    concept_id: Optional[str] = None,
) -> MultiSelectQuestion:
    _check_common(id, kind, prompt, phase)
    cleaned = tuple(dict.fromkeys(_clean(options)))
    answers = tuple(dict.fromkeys(_clean(correct)))
    if len(answers) < 2:
        raise QuestionValidationError(f"{kind}: multi-select needs at least two correct answers")
    if any(answer not in cleaned for answer in answers):
        raise QuestionValidationError(f"{kind}: every correct answer must be an option")
    if len(cleaned) <= len(answers):
        raise QuestionValidationError(f"{kind}: multi-select needs at least one wrong option")
    return MultiSelectQuestion(
        id=id,
        kind=kind,
        prompt=prompt,
        options=cleaned,
        correct=answers,
        item_id=item_id,
        phase=phase,
        explanation=explanation,
        concept_id=concept_id,
    )


def make_matching(
    *,
    id: str,
    prompt: str,
    pairs: Sequence[Tuple[str, str]],
    right_options: Sequence[str],
    phase: str = "quiz",
    explanation: str = "",
    min_pairs: int = 4,
    item_ids: Sequence[str] = (),
) -> MatchingQuestion:
    _check_common(id, "matching", prompt, phase)
    cleaned = tuple((str(left).strip(), str(right).strip()) for left, right in pairs)
    lefts = {left for left, _ in cleaned}
    rights = {right for _, right in cleaned}
    if len(cleaned) < min_pairs:
        raise QuestionValidationError(f"matching needs at least {min_pairs} pairs")
    if len(lefts) != len(cleaned) or len(rights) != len(cleaned):
        raise QuestionValidationError("matching pairs must be unique on both sides")
    shuffled = tuple(_clean(right_options))
    if set(shuffled) != rights or len(shuffled) != len(rights):
        raise QuestionValidationError("matching right column must be a permutation of the pairs")
    if item_ids and len(item_ids) != len(cleaned):
        raise QuestionValidationError("matching needs one item id per pair")
    return MatchingQuestion(
        id=id,
        kind="matching",
        prompt=prompt,
        pairs=cleaned,
        right_options=shuffled,
        item_ids=tuple(item_ids),
        phase=phase,
        explanation=explanation,
    )
