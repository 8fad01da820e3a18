"""HTTP surface for the drill engine.

Thin FastAPI layer over ``learner_service.LearnerService``: every endpoint maps
one UI event onto one service call and serialises the resulting snapshot.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

import db
from catalog import CatalogValidationError, load_catalog
from env_validation import ConfigurationError, load_config, validate_environment
from learner_service import LearnerService, OutOfAttemptsError, SessionError
from schemas import LearnerState

logger = logging.getLogger(__name__)
api_logger = logging.getLogger("drill.api")

_service: Optional[LearnerService] = None


def get_service() -> LearnerService:
    global _service
    if _service is None:
        config = load_config()
        _service = LearnerService(load_catalog(config.catalog_path), config=config)
    return _service


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        validate_environment()
        db.configure(load_config().db_path)
        db.init()
        service = get_service()
        logger.info("Catalog loaded with %s items", len(service.catalog))
        yield
    except (ConfigurationError, CatalogValidationError, FileNotFoundError) as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    finally:
        db.close()


app = FastAPI(title="DrillBuddy", version="1.0.0", lifespan=_lifespan)


# ---------------------------------------------------------------------------
# request bodies
# ---------------------------------------------------------------------------

class SessionStartBody(BaseModel):
    mode: Literal[
        "lesson", "practice", "spaced_review", "mistake_review", "item_review", "mastery", "capstone", "blitz"
    ] = "lesson"
    lesson_id: Optional[str] = None
    unit_id: Optional[str] = None
    item_ids: Optional[List[str]] = None
    count: Optional[int] = Field(default=None, ge=0, le=100)


class AnswerBody(BaseModel):
    session_id: str
    question_id: str
    answer: Any = None


class SessionCompleteBody(BaseModel):
    session_id: str


def _state_payload(state: LearnerState) -> Dict[str, Any]:
    return state.model_dump(mode="json")


def _guard(call, *args, **kwargs):
    """Translate service errors into HTTP status codes."""
    try:
        return call(*args, **kwargs)
    except OutOfAttemptsError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc).strip("'\""))
    except (SessionError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc))


# ---------------------------------------------------------------------------
# endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
def health():
    service = get_service()
    return {
        "status": "ok",
        "catalog_items": len(service.catalog),
        "sync_enabled": service.config.sync_enabled,
        "pending_sync_events": service.outbox.pending_count(),
    }


@app.post("/learners/{learner_id}/resume")
def resume(learner_id: str):
    result = _guard(get_service().resume, learner_id)
    api_logger.info("resume learner=%s at_risk=%s", learner_id, result.streak_at_risk)
    return {
        "state": _state_payload(result.state),
        "tier_result": result.tier_result.model_dump() if result.tier_result else None,
        "streak_at_risk": result.streak_at_risk,
        "seconds_until_next_attempt": result.seconds_until_next_attempt,
        "due_reviews": result.due_reviews,
    }


@app.post("/learners/{learner_id}/sessions")
def start_session(learner_id: str, body: SessionStartBody):
    session = _guard(
        get_service().start_session,
        learner_id,
        body.mode,
        lesson_id=body.lesson_id,
        unit_id=body.unit_id,
        item_ids=body.item_ids,
        count=body.count,
    )
    api_logger.info("session start learner=%s mode=%s n=%s", learner_id, body.mode, len(session.questions))
    return {
        "session_id": session.session_id,
        "mode": session.plan.mode,
        "lesson_id": session.plan.lesson_id,
        "unit_id": session.plan.unit_id,
        "questions": [question.to_dict() for question in session.questions],
    }


@app.post("/learners/{learner_id}/answers")
def submit_answer(learner_id: str, body: AnswerBody):
    result = _guard(get_service().submit_answer, learner_id, body.session_id, body.question_id, body.answer)
    return asdict(result)


@app.post("/learners/{learner_id}/sessions/complete")
def complete_session(learner_id: str, body: SessionCompleteBody):
    summary = _guard(get_service().finish_session, learner_id, body.session_id)
    api_logger.info(
        "session complete learner=%s mode=%s score=%s", learner_id, summary.mode, summary.score.score_percent
    )
    completion = None
    if summary.completion is not None:
        completion = asdict(summary.completion)
        completion["star_earned"] = summary.completion.star_earned
    return {
        "session_id": summary.session_id,
        "mode": summary.mode,
        "score": {**asdict(summary.score), "passed": summary.score.passed},
        "completion": completion,
        "sync_event_id": summary.sync_event.event_id if summary.sync_event else None,
        "mistakes_added": summary.mistakes_added,
        "state": _state_payload(summary.state),
    }


@app.get("/learners/{learner_id}/quests")
def list_quests(learner_id: str):
    quests = get_service().daily_quests(learner_id)
    return {"quests": [{**asdict(quest), "completed": quest.completed} for quest in quests]}


@app.post("/learners/{learner_id}/quests/{quest_id}/claim")
def claim_quest(learner_id: str, quest_id: int):
    state, ok = get_service().claim_quest(learner_id, quest_id)
    return {"claimed": ok, "currency": state.stats.currency}


@app.post("/learners/{learner_id}/shop/{product}")
def purchase(learner_id: str, product: str):
    state, ok = _guard(get_service().purchase, learner_id, product)
    return {"purchased": ok, "state": _state_payload(state)}


@app.post("/learners/{learner_id}/streak/{action}")
def streak_action(learner_id: str, action: str):
    state, ok = _guard(get_service().streak_action, learner_id, action)
    return {"ok": ok, "streak_current": state.stats.streak_current, "streak_saves_held": state.stats.streak_saves_held}


@app.post("/learners/{learner_id}/rewards/roll")
def roll_reward(learner_id: str):
    state, reward = get_service().roll_reward(learner_id)
    return {"reward": asdict(reward), "state": _state_payload(state)}


@app.get("/learners/{learner_id}/mistakes")
def recent_mistakes(learner_id: str, days: int = 7):
    if days <= 0:
        raise HTTPException(status_code=400, detail="days must be positive")
    entries = get_service().recent_mistakes(learner_id, days)
    return {"mistakes": [entry.model_dump(mode="json") for entry in entries]}


@app.get("/learners/{learner_id}/reviews")
def review_insights(learner_id: str):
    return get_service().review_insights(learner_id)


@app.post("/sync/drain")
async def drain_outbox():
    report = await get_service().outbox.drain_async()
    api_logger.info("sync drain delivered=%s failed=%s", len(report.delivered), len(report.failed))
    return {
        "skipped": report.skipped,
        "delivered": report.delivered,
        "failed": report.failed,
    }
