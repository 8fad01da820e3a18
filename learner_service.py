"""Per-event orchestration for one learner: load snapshot, apply reducers, save, sync.

The engines never touch storage or the network. This service is the only
place that loads a snapshot, runs the pure progression and tracker functions
over it, writes the result back and hands reward events to the outbox.
"""

from __future__ import annotations

import logging
import random
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import db
from catalog import Catalog
from engines import concepts
from engines import progression
from engines.league import RankSource, SeededRankSource, check_tier_rollover
from engines.questions import MatchingQuestion, Question
from engines.session import SessionAssembler, SessionPlan
from env_validation import EngineConfig, load_config
from outbox import SyncOutbox
from schemas import LearnerState, MistakeEntry, SyncEvent, TierWeekResult

logger = logging.getLogger(__name__)

# Modes that complete a lesson record and therefore cost attempts to start.
_GRADED_MODES = ("lesson", "mastery", "capstone")
_PRACTICE_MODES = ("practice", "spaced_review", "mistake_review", "item_review")
_STREAK_ACTIONS = ("save", "accept", "dismiss")
PRODUCTS = ("attempt", "refill", "streak_save")


class SessionError(ValueError):
    """Raised for unknown sessions, repeated answers or locked content."""


class OutOfAttemptsError(SessionError):
    """Raised when a graded session is started with no attempts left."""


@dataclass
class ActiveSession:
    session_id: str
    learner_id: str
    plan: SessionPlan
    started_at: datetime
    endgame: bool = False
    answers: Dict[str, bool] = field(default_factory=dict)
    combo: int = 0
    highest_combo: int = 0
    mistakes: List[MistakeEntry] = field(default_factory=list)

    @property
    def questions(self) -> List[Question]:
        return self.plan.questions

    def question(self, question_id: str) -> Question:
        for question in self.plan.questions:
            if question.id == question_id:
                return question
        raise SessionError(f"Unknown question {question_id} in session {self.session_id}")

    @property
    def correct_count(self) -> int:
        return sum(1 for correct in self.answers.values() if correct)


@dataclass
class ResumeResult:
    state: LearnerState
    tier_result: Optional[TierWeekResult] = None
    streak_at_risk: bool = False
    seconds_until_next_attempt: Optional[int] = None
    due_reviews: int = 0


@dataclass
class AnswerResult:
    question_id: str
    correct: bool
    combo: int
    combo_bonus: int
    attempts_remaining: int
    explanation: str


@dataclass
class SessionSummary:
    session_id: str
    mode: str
    score: progression.SessionScore
    state: LearnerState
    completion: Optional[progression.LessonCompletion] = None
    sync_event: Optional[SyncEvent] = None
    mistakes_added: int = 0


class LearnerService:
    def __init__(
        self,
        catalog: Catalog,
        config: Optional[EngineConfig] = None,
        outbox: Optional[SyncOutbox] = None,
        rng: Optional[random.Random] = None,
        rank_source: Optional[RankSource] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.catalog = catalog
        self.config = config or load_config()
        self.rng = rng or random.Random(self.config.seed)
        self.assembler = SessionAssembler(catalog, self.rng)
        self.scheduler = self.assembler.scheduler
        self.outbox = outbox or SyncOutbox(self.config)
        self.rank_source = rank_source or SeededRankSource()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sessions: Dict[str, ActiveSession] = {}
        self._streak_checked: set[str] = set()
        self._pending_tier: Dict[str, TierWeekResult] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # snapshot handling
    # ------------------------------------------------------------------
    @property
    def regen_interval(self) -> timedelta:
        return timedelta(minutes=self.config.attempt_regen_minutes)

    def _now(self, now: Optional[datetime]) -> datetime:
        return now or self._clock()

    def _load(self, learner_id: str, now: datetime) -> LearnerState:
        """Load a snapshot and bring it up to ``now`` (regen, week rollover).

        Whichever call first crosses a week boundary runs the rollover; its
        result is held until the next ``resume`` hands it to the UI.
        """

        state = db.load_learner_state(learner_id)
        state = progression.set_attempts_max(state, self.config.attempts_max)
        state = progression.recompute_attempts(state, now, self.regen_interval)
        state, tier_result = check_tier_rollover(state, now, self.rank_source)
        if tier_result is not None:
            self._pending_tier[learner_id] = tier_result
        return state

    def _save(self, learner_id: str, state: LearnerState) -> None:
        db.save_learner_state(learner_id, state)

    def state(self, learner_id: str, now: Optional[datetime] = None) -> LearnerState:
        with self._lock:
            return self._load(learner_id, self._now(now))

    # ------------------------------------------------------------------
    # app lifecycle
    # ------------------------------------------------------------------
    def resume(self, learner_id: str, now: Optional[datetime] = None) -> ResumeResult:
        """App foregrounded: regenerate attempts, roll the tier week, check the streak once."""

        now = self._now(now)
        with self._lock:
            state = self._load(learner_id, now)
            tier_result = self._pending_tier.pop(learner_id, None)
            at_risk = False
            if learner_id not in self._streak_checked:
                self._streak_checked.add(learner_id)
                at_risk = progression.streak_at_risk(state, now)
                if at_risk:
                    logger.info("[Streak] Missed day detected for %s; streak about to break", learner_id)
            self._save(learner_id, state)
        if self.config.sync_enabled and self.outbox.pending_count(learner_id):
            self.outbox.schedule_drain()
        return ResumeResult(
            state=state,
            tier_result=tier_result,
            streak_at_risk=at_risk,
            seconds_until_next_attempt=progression.seconds_until_next_attempt(state, now),
            due_reviews=self.scheduler.due_count(state.mastery, now),
        )

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    def start_session(
        self,
        learner_id: str,
        mode: str,
        *,
        lesson_id: Optional[str] = None,
        unit_id: Optional[str] = None,
        item_ids: Optional[Sequence[str]] = None,
        count: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ActiveSession:
        now = self._now(now)
        if mode == "lesson" and lesson_id and lesson_id.startswith("mastery-"):
            mode, unit_id, lesson_id = "mastery", lesson_id[len("mastery-"):], None

        with self._lock:
            state = self._load(learner_id, now)
            endgame = False
            if mode == "lesson":
                self._check_unlocked(lesson_id, state)
                unit = self.catalog.unit_for_lesson(lesson_id)
                endgame = bool(unit and unit.is_capstone)
            elif mode == "mastery":
                self._check_mastery_unlocked(unit_id, state)
            elif mode == "capstone":
                self._check_capstone_unlocked(state)
            if mode in _GRADED_MODES and state.stats.attempts_remaining <= 0:
                raise OutOfAttemptsError("No attempts left; wait for regeneration or refill")

            plan = self.assembler.assemble(
                mode,
                state,
                now,
                lesson_id=lesson_id,
                unit_id=unit_id,
                item_ids=item_ids,
                count=count,
            )
            session = ActiveSession(
                session_id=str(uuid.uuid4()),
                learner_id=learner_id,
                plan=plan,
                started_at=now,
                endgame=endgame or mode == "capstone",
            )
            self._sessions[session.session_id] = session
            self._save(learner_id, state)
        logger.info("Started %s session %s for %s", mode, session.session_id, learner_id)
        return session

    def _check_unlocked(self, lesson_id: Optional[str], state: LearnerState) -> None:
        if not lesson_id:
            raise SessionError("lesson mode needs a lesson_id")
        lesson = self.catalog.lesson(lesson_id)
        unit = self.catalog.unit_for_lesson(lesson.id)
        if unit is None:
            return
        index = unit.lesson_ids.index(lesson.id)
        if not self.catalog.is_lesson_unlocked(unit.id, index, state.completed_lessons):
            raise SessionError(f"Lesson {lesson_id} is locked")

    def _check_mastery_unlocked(self, unit_id: Optional[str], state: LearnerState) -> None:
        if not unit_id:
            raise SessionError("mastery mode needs a unit_id")
        if not self.catalog.is_mastery_unlocked(unit_id, state.completed_lessons):
            raise SessionError(f"Mastery exam for {unit_id} is locked")

    def _check_capstone_unlocked(self, state: LearnerState) -> None:
        unit = self.catalog.capstone_unit()
        if unit is not None and not self.catalog.is_lesson_unlocked(unit.id, 0, state.completed_lessons):
            raise SessionError("The capstone exam is locked")

    def session(self, session_id: str, learner_id: Optional[str] = None) -> ActiveSession:
        session = self._sessions.get(session_id)
        if session is None or (learner_id is not None and session.learner_id != learner_id):
            raise KeyError(f"Unknown session: {session_id}")
        return session

    def submit_answer(
        self,
        learner_id: str,
        session_id: str,
        question_id: str,
        answer: Any,
        now: Optional[datetime] = None,
    ) -> AnswerResult:
        now = self._now(now)
        with self._lock:
            session = self.session(session_id, learner_id)
            question = session.question(question_id)
            if question_id in session.answers:
                raise SessionError(f"Question {question_id} already answered")
            correct = question.is_correct(answer)
            session.answers[question_id] = correct

            state = self._load(learner_id, now)
            if isinstance(question, MatchingQuestion):
                item_results = question.pair_results(answer)
            elif question.item_id:
                item_results = ((question.item_id, correct),)
            else:
                item_results = ()
            for item_id, item_correct in item_results:
                mastery = self.scheduler.update(state.mastery, item_id, item_correct, now)
                state = state.model_copy(update={"mastery": mastery})
            if question.concept_id:
                updated = concepts.update(state.concepts, question.concept_id, correct, now)
                state = state.model_copy(update={"concepts": updated})

            bonus = 0
            mistake_kind = session.plan.mistake_kinds.get(question_id, question.kind)
            if correct:
                session.combo += 1
                session.highest_combo = max(session.highest_combo, session.combo)
                multiplier = progression.reward_multiplier(session.plan.mode, session.endgame)
                bonus = progression.combo_bonus(session.combo, multiplier)
                state = progression.add_currency(state, bonus)
                for item_id, _ in item_results:
                    state = progression.remove_mistake(state, item_id, mistake_kind)
            else:
                session.combo = 0
                if question.phase != "intro":
                    if session.plan.mode in _GRADED_MODES:
                        state = progression.lose_attempt(state, now, self.regen_interval)
                    if session.plan.mode != "mistake_review":
                        session.mistakes.extend(
                            MistakeEntry(item_id=item_id, kind=mistake_kind, occurred_at=now, session_id=session_id)
                            for item_id, item_correct in item_results
                            if not item_correct
                        )
            self._save(learner_id, state)

        return AnswerResult(
            question_id=question_id,
            correct=correct,
            combo=session.combo,
            combo_bonus=bonus,
            attempts_remaining=state.stats.attempts_remaining,
            explanation=question.explanation,
        )

    def finish_session(self, learner_id: str, session_id: str, now: Optional[datetime] = None) -> SessionSummary:
        """Score the session and apply its rewards; unanswered questions count as wrong."""

        now = self._now(now)
        with self._lock:
            session = self.session(session_id, learner_id)
            mode = session.plan.mode
            multiplier = progression.reward_multiplier(mode, session.endgame)
            score = progression.score_session(session.correct_count, len(session.questions), multiplier)

            state = self._load(learner_id, now)
            completion = None
            source = None
            if mode in _GRADED_MODES:
                lesson_id = self._completion_id(session)
                state, completion = progression.complete_lesson(
                    state,
                    lesson_id,
                    score,
                    now,
                    star_eligible=mode == "lesson" and self.catalog.is_star_eligible(lesson_id),
                    highest_combo=session.highest_combo,
                )
                xp = completion.xp_awarded
                source = "endgame_complete" if session.endgame else (
                    "mastery_complete" if mode == "mastery" else "lesson_complete"
                )
            elif mode == "blitz":
                xp = 0
                if score.passed:
                    state = progression.record_activity(state, now)
            else:
                state = progression.complete_practice(state, score, now, highest_combo=session.highest_combo)
                xp = score.xp
                source = "practice_complete"

            if session.mistakes:
                state = progression.add_mistakes(state, session.mistakes)
            state = progression.prune_mistakes(state, now, progression.MISTAKE_RETENTION_DAYS)
            self._save(learner_id, state)
            del self._sessions[session_id]

        sync_event = None
        if source and xp > 0:
            sync_event = self.outbox.enqueue(learner_id, xp, source, now)
        logger.info("Finished %s session %s: %s/%s", mode, session_id, score.correct, score.total)
        return SessionSummary(
            session_id=session_id,
            mode=mode,
            score=score,
            state=state,
            completion=completion,
            sync_event=sync_event,
            mistakes_added=len(session.mistakes),
        )

    def _completion_id(self, session: ActiveSession) -> str:
        if session.plan.mode == "mastery":
            return self.catalog.unit(session.plan.unit_id).mastery_lesson_id
        if session.plan.mode == "capstone":
            return "capstone"
        return session.plan.lesson_id

    # ------------------------------------------------------------------
    # quests, shop, streak, rewards
    # ------------------------------------------------------------------
    def _mutate(self, learner_id: str, now: Optional[datetime], change) -> Tuple[LearnerState, Any]:
        now = self._now(now)
        with self._lock:
            state = self._load(learner_id, now)
            state, result = change(state, now)
            self._save(learner_id, state)
        return state, result

    def daily_quests(self, learner_id: str, now: Optional[datetime] = None) -> List[progression.DailyQuest]:
        now = self._now(now)
        return progression.daily_quests(self.state(learner_id, now), now)

    def claim_quest(self, learner_id: str, quest_id: int, now: Optional[datetime] = None) -> Tuple[LearnerState, bool]:
        return self._mutate(learner_id, now, lambda state, at: progression.claim_quest(state, quest_id, at))

    def purchase(self, learner_id: str, product: str, now: Optional[datetime] = None) -> Tuple[LearnerState, bool]:
        if product not in PRODUCTS:
            raise ValueError(f"Unknown product: {product}")
        actions = {
            "attempt": lambda state, at: progression.buy_attempt(state),
            "refill": lambda state, at: progression.buy_full_refill(state),
            "streak_save": lambda state, at: progression.buy_streak_save(state),
        }
        return self._mutate(learner_id, now, actions[product])

    def streak_action(self, learner_id: str, action: str, now: Optional[datetime] = None) -> Tuple[LearnerState, bool]:
        if action not in _STREAK_ACTIONS:
            raise ValueError(f"Unknown streak action: {action}")
        if action == "save":
            return self._mutate(learner_id, now, progression.use_streak_save)
        if action == "accept":
            return self._mutate(learner_id, now, lambda state, at: (progression.accept_streak_break(state, at), True))
        return self.state(learner_id, now), True

    def roll_reward(self, learner_id: str, now: Optional[datetime] = None) -> Tuple[LearnerState, progression.LootReward]:
        return self._mutate(learner_id, now, lambda state, at: progression.roll_reward(state, self.rng))

    def recent_mistakes(self, learner_id: str, days: int = progression.MISTAKE_WINDOW_DAYS,
                        now: Optional[datetime] = None) -> List[MistakeEntry]:
        now = self._now(now)
        return progression.recent_mistakes(self.state(learner_id, now), now, days)

    def review_insights(self, learner_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = self._now(now)
        return self.scheduler.review_insights(self.state(learner_id, now).mastery, now)
