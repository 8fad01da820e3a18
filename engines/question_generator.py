"""Archetype selection and question building for catalog items.

The generator turns one ``Item`` into one fully formed question. Selection
mostly round-robins through the archetype list so consecutive questions vary,
with a 30% chance of picking any archetype at random. Builders that cannot
produce a valid question for an item fall back to a simpler archetype for the
same item, so callers always receive a question.
"""

from __future__ import annotations

import logging
import random
from typing import Callable, Dict, List, Optional, Sequence

from catalog import Catalog, Item, Lesson, IntroPrompt, slugify
from engines.distractors import DistractorSelector, select_distractors
from engines.questions import (
    ARCHETYPES,
    Question,
    QuestionValidationError,
    MatchingQuestion,
    make_choice,
    make_cloze,
    make_matching,
    make_multi_select,
    make_true_false,
)

LOGGER = logging.getLogger(__name__)

RANDOM_ARCHETYPE_CHANCE = 0.3
DISTRACTOR_COUNT = 3
MATCHING_PAIRS = 4

# Matching spans several items and is placed by the session assembler.
ITEM_ARCHETYPES: tuple[str, ...] = tuple(kind for kind in ARCHETYPES if kind != "matching")
NAME_ARCHETYPES: tuple[str, ...] = ("brand_to_generic", "generic_to_brand")

_FALLBACKS: Dict[str, str] = {
    "not_indication": "indication",
    "not_side_effect": "side_effect",
    "class_comparison": "drug_class",
    "cloze": "drug_class",
    "suffix": "drug_class",
    "clinical_pearl": "key_fact",
}


def _article(word: str) -> str:
    return "an" if word[:1].lower() in "aeiou" else "a"


class QuestionGenerator:
    """Build questions for catalog items using an injected random source."""

    def __init__(self, catalog: Catalog, rng: Optional[random.Random] = None):
        self.catalog = catalog
        self.rng = rng or random.Random()
        self.distractors = DistractorSelector(catalog, self.rng)
        self._builders: Dict[str, Callable[[Item, str, str], Question]] = {
            "brand_to_generic": self._brand_to_generic,
            "generic_to_brand": self._generic_to_brand,
            "drug_class": self._drug_class,
            "indication": lambda item, qid, phase: self._attribute_recall(item, qid, phase, "indication"),
            "side_effect": lambda item, qid, phase: self._attribute_recall(item, qid, phase, "side_effect"),
            "dosing": self._dosing,
            "suffix": self._suffix,
            "key_fact": self._key_fact,
            "cloze": self._cloze,
            "not_indication": lambda item, qid, phase: self._negation(item, qid, phase, "not_indication"),
            "not_side_effect": lambda item, qid, phase: self._negation(item, qid, phase, "not_side_effect"),
            "multi_select": self._multi_select,
            "true_false": self._true_false,
            "class_comparison": self._class_comparison,
            "clinical_pearl": self._clinical_pearl,
        }

    # ------------------------------------------------------------------
    # selection
    # ------------------------------------------------------------------
    def choose_archetype(self, index: int, archetypes: Sequence[str] = ITEM_ARCHETYPES) -> str:
        if not archetypes:
            raise ValueError("archetypes must not be empty")
        if self.rng.random() < RANDOM_ARCHETYPE_CHANCE:
            return self.rng.choice(list(archetypes))
        return archetypes[index % len(archetypes)]

    def generate(
        self,
        item: Item,
        index: int,
        phase: str = "quiz",
        archetypes: Sequence[str] = ITEM_ARCHETYPES,
        qid: Optional[str] = None,
    ) -> Question:
        kind = self.choose_archetype(index, archetypes)
        return self.build(item, kind, qid=qid or f"{phase}-{index}-{item.id}", phase=phase)

    def build(self, item: Item, kind: str, *, qid: str, phase: str = "quiz") -> Question:
        """Build ``kind`` for ``item``, walking the fallback chain on failure."""

        tried: List[str] = []
        current: Optional[str] = kind
        while current is not None and current not in tried:
            tried.append(current)
            builder = self._builders.get(current)
            if builder is None:
                LOGGER.warning("Unknown archetype %r for %s; using a random one", current, item.id)
                current = self.rng.choice(list(ITEM_ARCHETYPES))
                continue
            try:
                return builder(item, qid, phase)
            except QuestionValidationError as exc:
                LOGGER.debug("Archetype %s unavailable for %s: %s", current, item.id, exc)
            current = self._fallback_for(current, item)
        # A true/false statement about the class can always be built.
        return self._true_false(item, qid, phase)

    def _fallback_for(self, kind: str, item: Item) -> str:
        if kind == "multi_select":
            return "indication" if item.uses else "side_effect"
        return _FALLBACKS.get(kind, "brand_to_generic")

    # ------------------------------------------------------------------
    # explanations
    # ------------------------------------------------------------------
    def explain(self, item: Item) -> str:
        parts = [
            f"{item.primary_name} is the brand name for {item.alternate_name}, "
            f"{_article(item.category)} {item.category}."
        ]
        if item.uses:
            parts.append(f"It is used for {item.uses[0].lower()}.")
        if item.effects:
            parts.append(f"Watch for {item.effects[0].lower()}.")
        if item.dosing_note:
            parts.append(f"Typical dosing: {item.dosing_note}.")
        if item.fact_text:
            parts.append(item.fact_text)
        return " ".join(parts)

    # ------------------------------------------------------------------
    # single-item builders
    # ------------------------------------------------------------------
    def _options(self, correct: str, distractors: Sequence[str]) -> List[str]:
        options = [correct, *distractors]
        self.rng.shuffle(options)
        return options

    def _choice(self, variant: str, kind: str, item: Item, qid: str, phase: str, prompt: str,
                correct: str, distractors: Sequence[str]) -> Question:
        return make_choice(
            variant,
            id=qid,
            kind=kind,
            prompt=prompt,
            options=self._options(correct, distractors),
            correct=correct,
            item_id=item.id,
            phase=phase,
            explanation=self.explain(item),
        )

    def _brand_to_generic(self, item: Item, qid: str, phase: str) -> Question:
        wrong = self.distractors.for_attribute(item, "alternate_name", item.alternate_name, DISTRACTOR_COUNT)
        return self._choice(
            "recall", "brand_to_generic", item, qid, phase,
            f"What is the generic name for {item.primary_name}?", item.alternate_name, wrong,
        )

    def _generic_to_brand(self, item: Item, qid: str, phase: str) -> Question:
        wrong = self.distractors.for_attribute(item, "primary_name", item.primary_name, DISTRACTOR_COUNT)
        return self._choice(
            "reverse_recall", "generic_to_brand", item, qid, phase,
            f"What is the brand name for {item.alternate_name}?", item.primary_name, wrong,
        )

    def _drug_class(self, item: Item, qid: str, phase: str) -> Question:
        wrong = self.distractors.for_attribute(item, "category", item.category, DISTRACTOR_COUNT)
        return self._choice(
            "recall", "drug_class", item, qid, phase,
            f"{item.primary_name} ({item.alternate_name}) belongs to which drug class?", item.category, wrong,
        )

    def _attribute_recall(self, item: Item, qid: str, phase: str, kind: str) -> Question:
        attribute = "uses" if kind == "indication" else "effects"
        values = item.values(attribute)
        if not values:
            raise QuestionValidationError(f"{item.id} has no {attribute}")
        correct = self.rng.choice(values)
        wrong = self.distractors.for_attribute(item, attribute, correct, DISTRACTOR_COUNT)
        if kind == "indication":
            prompt = f"{item.primary_name} ({item.alternate_name}) is primarily indicated for:"
        else:
            prompt = f"Which is a common side effect of {item.primary_name} ({item.alternate_name})?"
        return self._choice("recall", kind, item, qid, phase, prompt, correct, wrong)

    def _dosing(self, item: Item, qid: str, phase: str) -> Question:
        if not item.dosing_note:
            raise QuestionValidationError(f"{item.id} has no dosing note")
        wrong = self.distractors.for_attribute(item, "dosing_note", item.dosing_note, DISTRACTOR_COUNT)
        return self._choice(
            "recall", "dosing", item, qid, phase,
            f"What is the common dosing for {item.primary_name} ({item.alternate_name})?", item.dosing_note, wrong,
        )

    def _usable_suffix(self, item: Item) -> str:
        suffix = item.suffix
        if not suffix or len(self.catalog.naming_family(item)) < 2:
            raise QuestionValidationError(f"{item.id} has no shared naming stem")
        return suffix

    def _suffix(self, item: Item, qid: str, phase: str) -> Question:
        suffix = self._usable_suffix(item)
        wrong = self.distractors.for_attribute(item, "category", item.category, DISTRACTOR_COUNT)
        return self._choice(
            "recall", "suffix", item, qid, phase,
            f"Drugs ending in -{suffix}, like {item.alternate_name}, belong to which class?", item.category, wrong,
        )

    def _cloze(self, item: Item, qid: str, phase: str) -> Question:
        suffix = self._usable_suffix(item)
        stem = item.alternate_name[: len(item.alternate_name) - len(suffix)]
        other_suffixes = [other.suffix for other in self.catalog.items if other.suffix and other.suffix != suffix]
        wrong = select_distractors(suffix, [], other_suffixes, DISTRACTOR_COUNT, self.rng)
        bank = self._options(suffix, wrong)
        return make_cloze(
            id=qid,
            kind="cloze",
            prompt="Complete the generic name",
            parts=(stem, f" is the generic name for {item.primary_name}."),
            correct=(suffix,),
            word_bank=bank,
            item_id=item.id,
            phase=phase,
            explanation=self.explain(item),
        )

    def _key_fact(self, item: Item, qid: str, phase: str) -> Question:
        if not item.fact_text:
            raise QuestionValidationError(f"{item.id} has no fact text")
        wrong = self.distractors.for_attribute(item, "fact_text", item.fact_text, DISTRACTOR_COUNT)
        return self._choice(
            "recall", "key_fact", item, qid, phase,
            f"Which statement is true about {item.alternate_name}?", item.fact_text, wrong,
        )

    def _negation(self, item: Item, qid: str, phase: str, kind: str) -> Question:
        attribute = "uses" if kind == "not_indication" else "effects"
        own = list(item.values(attribute))
        if not own:
            raise QuestionValidationError(f"{item.id} has no {attribute} to contrast")
        absent = self.distractors.for_attribute(item, attribute, own, 1)
        if not absent:
            raise QuestionValidationError(f"no value outside {item.id}'s {attribute}")
        self.rng.shuffle(own)
        label = "an indication" if kind == "not_indication" else "a side effect"
        return make_choice(
            "negation",
            id=qid,
            kind=kind,
            prompt=f"Which of the following is NOT {label} of {item.alternate_name}?",
            options=self._options(absent[0], own[:DISTRACTOR_COUNT]),
            correct=absent[0],
            item_id=item.id,
            phase=phase,
            explanation=self.explain(item),
        )

    def _multi_select(self, item: Item, qid: str, phase: str) -> Question:
        attributes = [attr for attr in ("uses", "effects") if len(item.values(attr)) >= 2]
        if not attributes:
            raise QuestionValidationError(f"{item.id} needs two values for a multi-select")
        attribute = self.rng.choice(attributes)
        correct = list(item.values(attribute))[:3]
        wrong = self.distractors.for_attribute(item, attribute, correct, max(2, 5 - len(correct)))
        options = [*correct, *wrong]
        self.rng.shuffle(options)
        label = "indications" if attribute == "uses" else "side effects"
        return make_multi_select(
            id=qid,
            kind="multi_select",
            prompt=f"Select all {label} of {item.alternate_name}:",
            options=options,
            correct=correct,
            item_id=item.id,
            phase=phase,
            explanation=self.explain(item),
        )

    def _true_false(self, item: Item, qid: str, phase: str) -> Question:
        wrong = self.distractors.for_attribute(item, "category", item.category, 1)
        truthful = not wrong or self.rng.random() < 0.5
        category = item.category if truthful else wrong[0]
        return make_true_false(
            id=qid,
            prompt=f"True or false: {item.alternate_name} is {_article(category)} {category}.",
            answer=truthful,
            item_id=item.id,
            phase=phase,
            explanation=self.explain(item),
        )

    def _class_comparison(self, item: Item, qid: str, phase: str) -> Question:
        peers = [other for other in self.catalog.items_in_category(item.category) if other.id != item.id]
        if not peers:
            raise QuestionValidationError(f"{item.id} has no same-class peer")
        peer = self.rng.choice(peers)
        same_class = [other.alternate_name for other in self.catalog.items_in_category(item.category)]
        outsiders = [other.alternate_name for other in self.catalog.items if other.category != item.category]
        wrong = select_distractors(same_class, [], outsiders, DISTRACTOR_COUNT, self.rng)
        return self._choice(
            "class_comparison", "class_comparison", item, qid, phase,
            f"Which drug is in the same class as {item.alternate_name}?", peer.alternate_name, wrong,
        )

    def _clinical_pearl(self, item: Item, qid: str, phase: str) -> Question:
        if not item.fact_text:
            raise QuestionValidationError(f"{item.id} has no clinical pearl")
        wrong = self.distractors.for_attribute(item, "alternate_name", item.alternate_name, DISTRACTOR_COUNT)
        return self._choice(
            "pearl", "clinical_pearl", item, qid, phase,
            f"Clinical pearl: \"{item.fact_text}\" Which drug does this describe?", item.alternate_name, wrong,
        )

    # ------------------------------------------------------------------
    # multi-item and teaching questions
    # ------------------------------------------------------------------
    def build_matching(self, items: Sequence[Item], qid: str, phase: str = "quiz") -> Optional[MatchingQuestion]:
        """Brand/generic matching over four distinct items, or ``None`` if the pool is too small."""

        distinct = list({item.id: item for item in items}.values())
        if len(distinct) < MATCHING_PAIRS:
            return None
        selected = self.rng.sample(distinct, MATCHING_PAIRS)
        pairs = [(item.primary_name, item.alternate_name) for item in selected]
        right = [generic for _, generic in pairs]
        self.rng.shuffle(right)
        try:
            return make_matching(
                id=qid,
                prompt="Match each brand name to its generic name",
                pairs=pairs,
                right_options=right,
                phase=phase,
                item_ids=[item.id for item in selected],
            )
        except QuestionValidationError as exc:
            LOGGER.debug("Matching unavailable: %s", exc)
            return None

    def intro_question(self, prompt: IntroPrompt) -> Question:
        qid = f"intro-{prompt.concept_id}"
        common = dict(id=qid, phase="intro", explanation=prompt.explanation, concept_id=prompt.concept_id)
        if prompt.kind == "cloze" and prompt.cloze_parts:
            return make_cloze(kind="cloze", prompt=prompt.prompt, parts=prompt.cloze_parts,
                              correct=prompt.correct, word_bank=prompt.options, **common)
        if prompt.kind == "multi_select" and len(prompt.correct) >= 2:
            return make_multi_select(kind="multi_select", prompt=prompt.prompt, options=prompt.options,
                                     correct=prompt.correct, **common)
        if prompt.kind == "true_false":
            return make_true_false(prompt=prompt.prompt, answer=prompt.correct[0].lower() == "true", **common)
        return make_choice("recall", kind=prompt.kind, prompt=prompt.prompt, options=prompt.options,
                           correct=prompt.correct[0], **common)

    def intro_questions(self, lesson: Lesson) -> List[Question]:
        """Teaching questions for ``lesson`` in definition order."""

        if not lesson.intro:
            return self._derived_intro_questions(lesson)
        questions: List[Question] = []
        for prompt in lesson.intro:
            try:
                questions.append(self.intro_question(prompt))
            except QuestionValidationError as exc:
                LOGGER.warning("Skipping intro prompt %s: %s", prompt.concept_id, exc)
        return questions

    def _derived_intro_questions(self, lesson: Lesson) -> List[Question]:
        items = self.catalog.items_by_ids(lesson.item_ids)
        categories: List[str] = []
        for item in items:
            if item.category not in categories:
                categories.append(item.category)
        questions: List[Question] = []
        for category in categories:
            members = [item.alternate_name for item in items if item.category == category]
            wrong = select_distractors(category, [], self.catalog.all_values("category"), DISTRACTOR_COUNT, self.rng)
            concept_id = f"{lesson.id}:{slugify(category)}"
            try:
                questions.append(
                    make_cloze(
                        id=f"intro-{concept_id}",
                        kind="cloze",
                        prompt="Fill in the blank",
                        parts=(f"{', '.join(members)} belong to the class ", "."),
                        correct=(category,),
                        word_bank=self._options(category, wrong),
                        phase="intro",
                        explanation=f"{', '.join(members)}: {category}.",
                        concept_id=concept_id,
                    )
                )
            except QuestionValidationError as exc:
                LOGGER.debug("No derived intro for %s: %s", concept_id, exc)
        return questions
