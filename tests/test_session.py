import random
from datetime import timedelta

import pytest

from engines.questions import MultiSelectQuestion, make_multi_select, make_true_false
from engines.session import DEFAULT_COUNTS, DIFFICULTY, MODES, SessionAssembler, lesson_target
from schemas import LearnerState, MasteryRecord, MistakeEntry


@pytest.fixture
def assembler(catalog):
    return SessionAssembler(catalog, random.Random(42))


def _multi(index, phase="quiz"):
    return make_multi_select(
        id=f"ms-{index}",
        kind="multi_select",
        prompt="Select all side effects of lisinopril:",
        options=["Dry cough", "Hyperkalemia", "Angioedema", "Myopathy", "Ototoxicity"],
        correct=["Dry cough", "Hyperkalemia", "Angioedema"],
        item_id="lisinopril",
        phase=phase,
    )


def _tf(index):
    return make_true_false(id=f"tf-{index}", prompt="True or false: statement", answer=True, item_id="lisinopril")


def test_lesson_target_bounds():
    assert lesson_target(3) == 10
    assert lesson_target(12) == 12
    assert lesson_target(40) == 16
    assert lesson_target(40, override=5) == 5


@pytest.mark.parametrize("mode", [m for m in MODES if m not in {"lesson", "mistake_review", "mastery"}])
@pytest.mark.parametrize("count", [1, 7, 23])
def test_modes_return_exactly_the_requested_count(assembler, now, mode, count):
    plan = assembler.assemble(
        mode, LearnerState(), now, item_ids=["lisinopril", "losartan"] if mode == "item_review" else None, count=count
    )
    assert len(plan.questions) == count
    assert len({q.id for q in plan.questions}) == count


def test_mastery_session_is_restricted_to_unit_items(assembler, catalog, now):
    plan = assembler.assemble("mastery", LearnerState(), now, unit_id="u2", count=12)
    assert len(plan.questions) == 12
    allowed = set(catalog.unit_item_ids("u2"))
    assert all(q.item_id in allowed for q in plan.questions if q.item_id)
    assert all(q.phase == "mastery" for q in plan.questions)


def test_default_counts_apply(assembler, now):
    plan = assembler.assemble("practice", LearnerState(), now)
    assert len(plan.questions) == DEFAULT_COUNTS["practice"]


def test_lesson_session_starts_with_intros_and_hits_target(assembler, catalog, now):
    questions = assembler.lesson_session("u1-l1", LearnerState(), now)
    assert len(questions) == 12
    assert [q.phase for q in questions[:4]] == ["intro"] * 4
    assert all(q.phase != "intro" for q in questions[4:])
    lesson_items = set(catalog.lesson("u1-l1").item_ids)
    assert all(q.item_id in lesson_items for q in questions[4:] if q.item_id)


def test_mastered_concepts_skip_their_intro(catalog, now):
    from engines import concepts

    records = {}
    for concept_id in ("u1-l1-ace-suffix", "u1-l1-arb-suffix"):
        records = concepts.update(records, concept_id, True, now)
    state = LearnerState(concepts=records)
    questions = SessionAssembler(catalog, random.Random(1)).lesson_session("u1-l1", state, now)
    intro_ids = [q.concept_id for q in questions if q.phase == "intro"]
    assert intro_ids == ["u1-l1-ace-cough", "u1-l1-monitoring", "u1-l1-indication"]
    assert len(questions) == 12


def test_lesson_mixes_in_review_items_from_earlier_lessons(catalog, now):
    seen = now - timedelta(days=3)
    mastery = {
        item_id: MasteryRecord(level=1, last_seen_at=seen, next_review_at=seen)
        for item_id in ("lisinopril", "enalapril", "ramipril")
    }
    state = LearnerState(completed_lessons={"u1-l1": 90}, mastery=mastery)
    questions = SessionAssembler(catalog, random.Random(2)).lesson_session("u1-l2", state, now)
    review = [q for q in questions if q.phase == "review"]
    assert 2 <= len(review) <= 3
    assert {q.item_id for q in review} <= set(mastery)
    assert len(questions) == 12


def test_empty_pools_yield_empty_sessions(assembler, now):
    state = LearnerState()
    assert assembler.assemble("mistake_review", state, now).questions == []
    assert assembler.assemble("item_review", state, now, item_ids=["unknown"]).questions == []
    assert assembler.assemble("practice", state, now, count=0).questions == []


def test_unknown_mode_and_missing_ids_raise(assembler, now):
    with pytest.raises(ValueError):
        assembler.assemble("speedrun", LearnerState(), now)
    with pytest.raises(ValueError):
        assembler.assemble("lesson", LearnerState(), now)
    with pytest.raises(ValueError):
        assembler.assemble("mastery", LearnerState(), now)


def test_spaced_review_puts_due_items_first(catalog, now):
    mastery = {
        "lisinopril": MasteryRecord(level=4, last_seen_at=now, next_review_at=now + timedelta(days=8)),
        "enalapril": MasteryRecord(level=0, last_seen_at=now, next_review_at=now - timedelta(hours=1)),
        "ramipril": MasteryRecord(level=5, last_seen_at=now, next_review_at=now + timedelta(days=16)),
    }
    state = LearnerState(mastery=mastery)
    questions = SessionAssembler(catalog, random.Random(3)).spaced_review_session(
        state, now, 1, ["lisinopril", "enalapril", "ramipril"]
    )
    assert [q.item_id for q in questions] == ["enalapril"]


def test_mistake_review_rebuilds_the_failed_archetype(assembler, now):
    mistakes = (
        MistakeEntry(item_id="losartan", kind="generic_to_brand", occurred_at=now),
        MistakeEntry(item_id="atenolol", kind="matching", occurred_at=now),
        MistakeEntry(item_id="ghost", kind="drug_class", occurred_at=now),
    )
    questions = assembler.mistake_review_session(mistakes)
    assert sorted(q.kind for q in questions) == ["brand_to_generic", "generic_to_brand"]

    cycled = assembler.mistake_review_session(mistakes, count=5)
    assert len(cycled) == 5


def test_mistake_review_plan_uses_recent_mistakes(assembler, now):
    mistakes = (
        MistakeEntry(item_id="losartan", kind="drug_class", occurred_at=now - timedelta(days=30)),
        MistakeEntry(item_id="atenolol", kind="matching", occurred_at=now - timedelta(days=1)),
    )
    plan = assembler.assemble("mistake_review", LearnerState(mistakes=mistakes), now)
    assert [q.item_id for q in plan.questions] == ["atenolol"]
    assert plan.mistake_kinds == {plan.questions[0].id: "matching"}


def test_blitz_uses_name_archetypes_only(assembler, now):
    plan = assembler.assemble("blitz", LearnerState(), now, count=20)
    assert {q.kind for q in plan.questions} <= {"brand_to_generic", "generic_to_brand"}


def test_ramp_keeps_multi_select_in_the_tail(assembler):
    questions = [_tf(i) for i in range(6)] + [_multi(i) for i in range(2)]
    arranged = assembler.arrange_for_ramp(questions)
    assert len(arranged) == 8
    assert all(isinstance(q, MultiSelectQuestion) for q in arranged[-2:])
    assert not any(isinstance(q, MultiSelectQuestion) for q in arranged[:-2])


def test_ramp_converts_overflow_multi_select(assembler):
    questions = [_tf(i) for i in range(4)] + [_multi(i) for i in range(6)]
    arranged = assembler.arrange_for_ramp(questions)
    assert len(arranged) == 10
    assert sum(isinstance(q, MultiSelectQuestion) for q in arranged) == 4
    assert all(isinstance(q, MultiSelectQuestion) for q in arranged[-4:])
    converted = [q for q in arranged[:-4] if q.kind == "side_effect"]
    assert len(converted) == 2
    assert all(q.prompt.startswith("Pick ONE") for q in converted)
    assert all(q.is_correct(q.correct) for q in converted)


def test_ramp_orders_easy_before_hard(assembler):
    questions = assembler.practice_session(12, ["lisinopril", "losartan", "amlodipine", "atorvastatin"])
    non_multi = [q for q in questions if not isinstance(q, MultiSelectQuestion)]
    levels = [DIFFICULTY.get(q.kind, 2) for q in non_multi]
    assert levels == sorted(levels)


def test_sprinkle_spreads_multi_select_after_opening(assembler):
    questions = [_tf(i) for i in range(9)] + [_multi(i) for i in range(3)]
    arranged = assembler.arrange_for_sprinkle(questions)
    assert len(arranged) == 12
    assert {q.id for q in arranged} == {q.id for q in questions}
    positions = [index for index, q in enumerate(arranged) if isinstance(q, MultiSelectQuestion)]
    assert len(positions) == 3
    assert min(positions) >= 2


def test_sprinkle_handles_mostly_multi_select(assembler):
    questions = [_tf(0)] + [_multi(i) for i in range(7)]
    arranged = assembler.arrange_for_sprinkle(questions)
    assert sorted(q.id for q in arranged) == sorted(q.id for q in questions)
