"""Quiz session state machine: question progression, hints, feedback and attempts."""

from __future__ import annotations

import json
import logging
import math
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from engines.base import ActiveProfile, ProgressSink, QuestionRepository
from engines.scoring import score_question
from engines.validation import (
    DataIntegrityError,
    EmptySetError,
    MissingQuestionError,
    PreconditionError,
    QuestionLockedError,
    SessionCompletedError,
    SetNotFoundError,
)
from schemas import Question, QuestionAttempt, QuestionSet, ScoreResult, SessionSummary, dump_answer

logger = logging.getLogger("qb.session")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def star_rating(accuracy: int) -> int:
    if accuracy >= 90:
        return 3
    if accuracy >= 70:
        return 2
    if accuracy >= 50:
        return 1
    return 0


def calculate_accuracy(correct: int, total: int) -> int:
    if total <= 0:
        return 0
    return _round_half_up(100 * correct / total)


def _has_answer(value: Any) -> bool:
    # False is a real answer for true/false questions
    if isinstance(value, bool):
        return True
    return bool(value)


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass
class QuestionState:
    answer: Any = None
    attempt: Optional[QuestionAttempt] = None
    result: Optional[ScoreResult] = None
    hint_shown: bool = False
    feedback_shown: bool = False
    feedback: Optional[str] = None

    @property
    def submitted(self) -> bool:
        return self.attempt is not None


@dataclass(frozen=True)
class Submission:
    attempt: QuestionAttempt
    result: ScoreResult
    recorded: bool


@dataclass
class QuizSession:
    question_set: QuestionSet
    questions: List[Question]
    progress_sink: Optional[ProgressSink] = None
    active_profile: Optional[ActiveProfile] = None
    clock: Callable[[], datetime] = _utcnow
    current_index: int = 0
    status: SessionStatus = SessionStatus.IN_PROGRESS
    score: int = 0
    states: Dict[str, QuestionState] = field(default_factory=dict)
    time_started: datetime = field(init=False)
    question_start_time: datetime = field(init=False)

    def __post_init__(self) -> None:
        now = self.clock()
        self.time_started = now
        self.question_start_time = now
        self.states = {question.id: QuestionState() for question in self.questions}

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------
    @classmethod
    def start(
        cls,
        question_set: QuestionSet,
        questions: Sequence[Question],
        *,
        progress_sink: Optional[ProgressSink] = None,
        active_profile: Optional[ActiveProfile] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> "QuizSession":
        """Order ``questions`` for play and open a session at the first question.

        ``random`` sets are shuffled exactly once here; ``restart`` keeps the
        resulting order.
        """

        if not questions:
            raise EmptySetError(question_set.id)
        ids = [q.id for q in questions]
        if len(set(ids)) != len(ids):
            raise DataIntegrityError(f"Question set {question_set.id!r} lists a question more than once")

        ordered = list(questions)
        if question_set.recommended_order == "random":
            (rng or random.Random()).shuffle(ordered)

        session = cls(
            question_set=question_set,
            questions=ordered,
            progress_sink=progress_sink,
            active_profile=active_profile,
            clock=clock,
        )
        logger.info("Started session for set %s with %d questions", question_set.id, len(ordered))
        return session

    @classmethod
    def from_repository(
        cls,
        repository: QuestionRepository,
        set_id: str,
        **kwargs: Any,
    ) -> "QuizSession":
        question_set = repository.get_set(set_id)
        if question_set is None:
            raise SetNotFoundError(set_id)
        if not question_set.question_ids:
            raise EmptySetError(set_id)
        questions = repository.get_questions(question_set.question_ids)
        found = {q.id for q in questions}
        missing = [qid for qid in question_set.question_ids if qid not in found]
        if missing:
            raise MissingQuestionError(missing, set_id=set_id)
        return cls.start(question_set, questions, **kwargs)

    # ------------------------------------------------------------------
    # read helpers
    # ------------------------------------------------------------------
    @property
    def set_id(self) -> str:
        return self.question_set.id

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    @property
    def is_completed(self) -> bool:
        return self.status is SessionStatus.COMPLETED

    @property
    def current_question(self) -> Question:
        return self.questions[self.current_index]

    @property
    def current_state(self) -> QuestionState:
        return self.states[self.current_question.id]

    @property
    def answered_count(self) -> int:
        return sum(1 for state in self.states.values() if state.submitted)

    @property
    def progress_percent(self) -> float:
        done = self.current_index + (1 if self.current_state.submitted else 0)
        return done / self.total_questions * 100

    def state_for(self, question_id: str) -> QuestionState:
        return self.states[question_id]

    def _require_active(self) -> None:
        if self.is_completed:
            raise SessionCompletedError()

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------
    def set_answer(self, answer: Any) -> Any:
        """Store the candidate answer for the current question without scoring it."""

        self._require_active()
        question = self.current_question
        state = self.current_state
        if state.submitted:
            raise QuestionLockedError(question.id)
        stored = self._resolve_answer(question, answer)
        state.answer = stored
        return stored

    @staticmethod
    def _resolve_answer(question: Question, answer: Any) -> Any:
        # mcq_single canonical answers are stored as choice text, so a choice id
        # picked by the player is translated into that text before scoring.
        if question.type != "mcq_single" or not isinstance(answer, str):
            return answer
        texts = {choice.text for choice in question.choices or []}
        if str(question.answer) not in texts and question.choice_by_id(str(question.answer)) is not None:
            return answer
        choice = question.choice_by_id(answer)
        return choice.text if choice is not None else answer

    def submit(self) -> Submission:
        self._require_active()
        question = self.current_question
        state = self.current_state
        if state.submitted:
            raise QuestionLockedError(question.id)
        if not _has_answer(state.answer):
            raise PreconditionError("Please provide an answer!")

        result = score_question(question, state.answer)
        now = self.clock()
        elapsed = (now - self.question_start_time).total_seconds()
        attempt = QuestionAttempt(
            question_id=question.id,
            is_correct=result.is_correct,
            user_answer=json.loads(dump_answer(state.answer)),
            time_spent=max(0, _round_half_up(elapsed)),
            hints_used=1 if state.hint_shown else 0,
            timestamp=now,
        )

        state.attempt = attempt
        state.result = result
        state.feedback_shown = True
        state.feedback = result.feedback
        if result.is_correct:
            self.score += 1

        recorded = self._emit(attempt)
        logger.debug(
            "Submitted %s in set %s: correct=%s score=%.2f",
            question.id,
            self.set_id,
            result.is_correct,
            result.score,
        )
        return Submission(attempt=attempt, result=result, recorded=recorded)

    def _emit(self, attempt: QuestionAttempt) -> bool:
        if self.active_profile is None or self.progress_sink is None:
            return False
        profile_id = self.active_profile.current()
        if not profile_id:
            return False
        try:
            self.progress_sink.record_attempt(profile_id, self.set_id, attempt)
        except Exception:
            logger.exception(
                "Failed to record attempt for question %s (profile %s, set %s)",
                attempt.question_id,
                profile_id,
                self.set_id,
            )
            return False
        return True

    def request_hint(self) -> Optional[str]:
        self._require_active()
        self.current_state.hint_shown = True
        return self.current_question.hint

    def next(self) -> SessionStatus:
        self._require_active()
        if self.current_index >= self.total_questions - 1:
            self.status = SessionStatus.COMPLETED
            logger.info("Completed set %s: %d/%d correct", self.set_id, self.score, self.total_questions)
        else:
            self.current_index += 1
            self.question_start_time = self.clock()
        return self.status

    def previous(self) -> int:
        self._require_active()
        if self.current_index > 0:
            self.current_index -= 1
            self.question_start_time = self.clock()
        return self.current_index

    def restart(self) -> None:
        now = self.clock()
        self.current_index = 0
        self.status = SessionStatus.IN_PROGRESS
        self.score = 0
        self.states = {question.id: QuestionState() for question in self.questions}
        self.time_started = now
        self.question_start_time = now

    # ------------------------------------------------------------------
    # summary
    # ------------------------------------------------------------------
    def summary(self, message_for: Optional[Callable[[int], str]] = None) -> SessionSummary:
        accuracy = calculate_accuracy(self.score, self.total_questions)
        elapsed = (self.clock() - self.time_started).total_seconds()
        return SessionSummary(
            set_id=self.set_id,
            score=self.score,
            total_questions=self.total_questions,
            answered=self.answered_count,
            accuracy=accuracy,
            stars=star_rating(accuracy),
            elapsed_seconds=max(0, _round_half_up(elapsed)),
            completed=self.is_completed,
            message=message_for(accuracy) if message_for else None,
        )
