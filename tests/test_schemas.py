import json
from datetime import datetime, timezone

from schemas import LearnerState, MasteryRecord, SyncEvent, heal_model, parse_snapshot


def test_empty_or_garbage_snapshot_gives_defaults():
    assert parse_snapshot(None) == LearnerState()
    assert parse_snapshot("") == LearnerState()
    assert parse_snapshot("{not json") == LearnerState()
    assert parse_snapshot("[1, 2]") == LearnerState()


def test_round_trip_preserves_state():
    state = LearnerState(
        completed_lessons={"u1-l1": 90},
        mastery={"lisinopril": MasteryRecord(level=2, next_review_at=datetime(2024, 5, 16, tzinfo=timezone.utc))},
    ).with_stats(currency=120, streak_current=3, quest_claimed=(1, 3))
    assert parse_snapshot(state.to_json()) == state


def test_invalid_fields_fall_back_individually():
    raw = {
        "stats": {"currency": -5, "xp_total": 40, "tier": "Diamond"},
        "mastery": {
            "lisinopril": {"level": 9},
            "losartan": {"level": 2},
        },
        "mistakes": [
            {"item_id": "losartan", "kind": "drug_class", "occurred_at": "2024-05-15T10:00:00+00:00"},
            {"item_id": "", "kind": "drug_class", "occurred_at": "2024-05-15T10:00:00+00:00"},
        ],
    }
    state = parse_snapshot(json.dumps(raw))
    assert state.stats.xp_total == 40
    assert state.stats.currency == 50
    assert state.stats.tier == "Bronze"
    assert set(state.mastery) == {"losartan"}
    assert [entry.item_id for entry in state.mistakes] == ["losartan"]


def test_unknown_keys_are_ignored():
    state = parse_snapshot(json.dumps({"stats": {"xp_total": 10}, "theme": "dark"}))
    assert state.stats.xp_total == 10


def test_legacy_flat_snapshot_is_migrated():
    raw = {"xp": 250, "streak": 4, "coins": 80, "completed_lessons": {"u1-l1": 85, "u1-l2": 40}}
    state = parse_snapshot(json.dumps(raw))
    assert state.stats.xp_total == 250
    assert state.stats.streak_current == 4
    assert state.stats.currency == 80
    assert state.stats.lessons_completed == 1
    assert state.completed_lessons == {"u1-l1": 85, "u1-l2": 40}


def test_naive_datetimes_are_treated_as_utc():
    record = MasteryRecord(level=1, next_review_at=datetime(2024, 5, 16, 8, 0))
    assert record.next_review_at.tzinfo == timezone.utc


def test_heal_model_drops_bad_scalar():
    healed = heal_model(MasteryRecord, {"level": "high"})
    assert healed == MasteryRecord()


def test_sync_event_payload():
    event = SyncEvent(
        event_id="e1", amount=12, source="lesson_complete", created_at=datetime(2024, 5, 15, tzinfo=timezone.utc)
    )
    assert event.to_payload() == {
        "eventId": "e1",
        "amount": 12,
        "source": "lesson_complete",
        "createdAt": "2024-05-15T00:00:00+00:00",
    }
