import asyncio
import json
import random
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import pytest

import app
import db
from env_validation import EngineConfig
from learner_service import LearnerService
from outbox import SyncOutbox
from schemas import LearnerState

NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


async def _call_app(method: str, path: str, *, payload: Optional[dict] = None, query: Optional[dict] = None):
    body = b""
    headers = [(b"host", b"testserver")]
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        headers.extend(
            [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        )
    query_string = urlencode(query or {}, doseq=True).encode()
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method.upper(),
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "query_string": query_string,
        "headers": headers,
        "client": ("testclient", 12345),
        "server": ("testserver", 80),
        "state": {},
    }

    messages = []

    async def receive():
        nonlocal body
        if body:
            chunk, body = body, b""
            return {"type": "http.request", "body": chunk, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    await app.app(scope, receive, send)
    status = 500
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    data = json.loads(body_bytes.decode("utf-8") or "{}")
    return status, data


def _post(path: str, payload: Optional[dict] = None) -> tuple[int, dict]:
    return asyncio.run(_call_app("POST", path, payload=payload))


def _get(path: str, query: Optional[dict] = None) -> tuple[int, dict]:
    return asyncio.run(_call_app("GET", path, query=query))


def _answer(question: dict):
    variant = question["variant"]
    if variant == "true_false":
        return question["answer"]
    if variant == "matching":
        return {left: right for left, right in question["pairs"]}
    return question["correct"]


@pytest.fixture
def service(temp_db, catalog, monkeypatch):
    config = EngineConfig()
    svc = LearnerService(
        catalog,
        config=config,
        outbox=SyncOutbox(config, backoff=0),
        rng=random.Random(5),
        clock=lambda: NOW,
    )
    monkeypatch.setattr(app, "_service", svc)
    return svc


def test_health(service):
    status, data = _get("/health")
    assert status == 200
    assert data["status"] == "ok"
    assert data["catalog_items"] == 16
    assert data["sync_enabled"] is False


def test_resume_returns_snapshot(service):
    status, data = _post("/learners/alice/resume")
    assert status == 200
    assert data["state"]["stats"]["attempts_remaining"] == 5
    assert data["tier_result"] is None
    assert data["streak_at_risk"] is False


def test_full_lesson_round_trip(service):
    status, started = _post("/learners/alice/sessions", {"mode": "lesson", "lesson_id": "u1-l1"})
    assert status == 200
    assert len(started["questions"]) == 12
    session_id = started["session_id"]

    for question in started["questions"]:
        status, result = _post(
            "/learners/alice/answers",
            {"session_id": session_id, "question_id": question["id"], "answer": _answer(question)},
        )
        assert status == 200
        assert result["correct"] is True

    status, summary = _post("/learners/alice/sessions/complete", {"session_id": session_id})
    assert status == 200
    assert summary["score"]["passed"] is True
    assert summary["completion"]["star_earned"] is True
    assert summary["sync_event_id"]
    assert summary["state"]["completed_lessons"] == {"u1-l1": 100}

    status, quests = _get("/learners/alice/quests")
    assert status == 200
    first = quests["quests"][0]
    assert first["completed"] and not first["claimed"]

    status, claim = _post("/learners/alice/quests/1/claim")
    assert status == 200
    assert claim["claimed"] is True


def test_locked_and_unknown_lessons(service):
    status, data = _post("/learners/alice/sessions", {"mode": "lesson", "lesson_id": "u1-l2"})
    assert status == 400
    assert "locked" in data["detail"]

    status, data = _post("/learners/alice/sessions", {"mode": "lesson", "lesson_id": "nope"})
    assert status == 404
    assert data["detail"] == "Unknown lesson: nope"

    status, _ = _post("/learners/alice/sessions", {"mode": "speedrun"})
    assert status == 422


def test_out_of_attempts_is_a_conflict(service):
    state = LearnerState().with_stats(attempts_remaining=0, next_attempt_regen_at=NOW + timedelta(minutes=5))
    db.save_learner_state("bob", state)
    status, data = _post("/learners/bob/sessions", {"mode": "lesson", "lesson_id": "u1-l1"})
    assert status == 409


def test_unknown_session_is_not_found(service):
    status, _ = _post("/learners/alice/answers", {"session_id": "nope", "question_id": "q", "answer": "x"})
    assert status == 404
    status, _ = _post("/learners/alice/sessions/complete", {"session_id": "nope"})
    assert status == 404


def test_shop_streak_and_rewards(service):
    status, _ = _post("/learners/alice/shop/hat")
    assert status == 400
    status, data = _post("/learners/alice/shop/attempt")
    assert status == 200
    assert data["purchased"] is False

    status, _ = _post("/learners/alice/streak/pray")
    assert status == 400
    status, data = _post("/learners/alice/streak/dismiss")
    assert status == 200 and data["ok"] is True

    status, data = _post("/learners/alice/rewards/roll")
    assert status == 200
    assert data["reward"]["kind"] in {"streak_save", "double_reward", "big_currency", "currency"}


def test_mistakes_and_reviews(service):
    status, data = _get("/learners/alice/mistakes")
    assert status == 200
    assert data["mistakes"] == []
    status, _ = _get("/learners/alice/mistakes", {"days": 0})
    assert status == 400

    status, data = _get("/learners/alice/reviews")
    assert status == 200
    assert data == {"status": "No review data available"}


def test_drain_without_endpoint_is_skipped(service):
    status, data = _post("/sync/drain")
    assert status == 200
    assert data == {"skipped": True, "delivered": [], "failed": []}
