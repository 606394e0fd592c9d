"""Pydantic schemas for question content, scoring results and learner progress."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar, Union

from pydantic import BaseModel, Field, ValidationError

__all__ = [
    "Subject",
    "QuestionType",
    "Difficulty",
    "SUBJECTS",
    "QUESTION_TYPES",
    "CHOICE_TYPES",
    "Choice",
    "MatchPair",
    "Media",
    "Question",
    "QuestionSet",
    "AppData",
    "ScoreResult",
    "QuestionAttempt",
    "SetProgress",
    "ProfilePreferences",
    "Profile",
    "SessionSummary",
    "TopicScore",
    "SkillScore",
    "DateRange",
    "Report",
    "parse_json_safe",
    "dump_answer",
]

Subject = Literal["math", "english", "science"]
QuestionType = Literal[
    "mcq_single",
    "mcq_multi",
    "short_answer",
    "true_false",
    "fill_blank",
    "match",
    "order",
]
Difficulty = Literal["easy", "medium", "hard"]
Theme = Literal["light", "dark", "high-contrast"]

SUBJECTS: tuple[str, ...] = ("math", "english", "science")
QUESTION_TYPES: tuple[str, ...] = (
    "mcq_single",
    "mcq_multi",
    "short_answer",
    "true_false",
    "fill_blank",
    "match",
    "order",
)
# Types whose questions must carry a choice list.
CHOICE_TYPES = frozenset({"mcq_single", "mcq_multi", "match", "order"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Choice(BaseModel):
    id: str
    text: str

    model_config = {"frozen": True}


class MatchPair(BaseModel):
    left_id: str = Field(alias="leftId")
    right_id: str = Field(alias="rightId")

    model_config = {"frozen": True, "populate_by_name": True}


class Media(BaseModel):
    image_url: str | None = Field(default=None, alias="imageUrl")
    audio_url: str | None = Field(default=None, alias="audioUrl")

    model_config = {"frozen": True, "populate_by_name": True}


Answer = Union[bool, str, List[str], List[MatchPair]]


class Question(BaseModel):
    """One scorable content item; read-only once loaded."""

    id: str
    subject: Subject
    topic: str
    skill: str
    prompt: str
    media: Media | None = None
    type: QuestionType
    choices: List[Choice] | None = None
    answer: Answer = Field(description="Canonical correct answer; its shape depends on ``type``.")
    explanation: str | None = None
    hint: str | None = None
    difficulty: Difficulty | None = None
    tags: List[str] | None = None
    cambridge_ref: str | None = Field(default=None, alias="cambridgeRef")

    model_config = {"frozen": True, "populate_by_name": True}

    def choice_by_id(self, choice_id: str) -> Optional[Choice]:
        for choice in self.choices or ():
            if choice.id == choice_id:
                return choice
        return None


class QuestionSet(BaseModel):
    id: str
    title: str = ""
    subject: Subject
    description: str | None = None
    question_ids: List[str] = Field(alias="questionIds")
    recommended_order: Literal["fixed", "random"] = Field(default="fixed", alias="recommendedOrder")
    time_limit_seconds: float | None = Field(
        default=None,
        gt=0,
        alias="timeLimitSeconds",
        description="Advisory display value; sessions never stop on it.",
    )

    model_config = {"frozen": True, "populate_by_name": True}


class AppData(BaseModel):
    """Content bundle as stored in question files."""

    questions: List[Question] = Field(default_factory=list)
    sets: List[QuestionSet] = Field(default_factory=list)


class ScoreResult(BaseModel):
    is_correct: bool = Field(alias="isCorrect")
    score: float = Field(ge=0.0, le=1.0)
    partial_credit: float | None = Field(
        default=None,
        gt=0.0,
        lt=1.0,
        alias="partialCredit",
        description="Fractional credit for answers that are partly right (mcq_multi, match, order).",
    )
    feedback: str

    model_config = {"frozen": True, "populate_by_name": True}


class QuestionAttempt(BaseModel):
    question_id: str = Field(alias="questionId")
    is_correct: bool = Field(alias="isCorrect")
    user_answer: Any = Field(alias="userAnswer")
    time_spent: int = Field(ge=0, alias="timeSpent", description="Dwell time in whole seconds.")
    hints_used: int = Field(ge=0, le=1, alias="hintsUsed")
    timestamp: datetime = Field(default_factory=_utcnow)

    model_config = {"frozen": True, "populate_by_name": True}


class SetProgress(BaseModel):
    set_id: str = Field(alias="setId")
    attempts: List[QuestionAttempt] = Field(default_factory=list)
    score: int = 0
    total_questions: int = Field(default=0, alias="totalQuestions")
    time_spent: int = Field(default=0, alias="timeSpent")
    completed_at: datetime | None = Field(default=None, alias="completedAt")

    model_config = {"populate_by_name": True}


class ProfilePreferences(BaseModel):
    theme: Theme = "light"
    dyslexia_friendly: bool = Field(default=False, alias="dyslexiaFriendly")
    audio_enabled: bool = Field(default=True, alias="audioEnabled")

    model_config = {"populate_by_name": True}


class Profile(BaseModel):
    id: str
    name: str
    avatar: str | None = None
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")
    progress: List[SetProgress] = Field(default_factory=list)
    preferences: ProfilePreferences = Field(default_factory=ProfilePreferences)

    model_config = {"populate_by_name": True}


class SessionSummary(BaseModel):
    set_id: str = Field(alias="setId")
    score: int
    total_questions: int = Field(alias="totalQuestions")
    answered: int
    accuracy: int = Field(ge=0, le=100)
    stars: int = Field(ge=0, le=3)
    elapsed_seconds: int = Field(alias="elapsedSeconds")
    completed: bool
    message: str | None = None

    model_config = {"populate_by_name": True}


class TopicScore(BaseModel):
    topic: str
    correct: int
    total: int
    accuracy: int


class SkillScore(BaseModel):
    skill: str
    correct: int
    total: int
    accuracy: int
    last_attempt: datetime = Field(alias="lastAttempt")

    model_config = {"populate_by_name": True}


class DateRange(BaseModel):
    start: datetime
    end: datetime


class Report(BaseModel):
    child_id: str = Field(alias="childId")
    date_range: DateRange = Field(alias="dateRange")
    total_questions: int = Field(alias="totalQuestions")
    total_correct: int = Field(alias="totalCorrect")
    overall_accuracy: int = Field(alias="overallAccuracy")
    time_spent: int = Field(alias="timeSpent")
    topic_scores: List[TopicScore] = Field(default_factory=list, alias="topicScores")
    skill_scores: List[SkillScore] = Field(default_factory=list, alias="skillScores")
    streak: int = 0
    badges: List[str] = Field(default_factory=list)

    model_config = {"populate_by_name": True}


_T = TypeVar("_T", bound=BaseModel)


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse ``text`` into ``model``, re-raising pydantic errors as-is.

    Plain JSON syntax errors are reported as ``ValueError`` so callers only
    need to handle two exception types.
    """

    try:
        return model.model_validate_json(text)
    except ValidationError:
        raise
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid JSON payload: {exc}") from exc


def dump_answer(value: Any) -> str:
    """Serialise a user answer (possibly holding MatchPair models) to JSON text."""

    def _default(obj: Any) -> Dict[str, Any]:
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json", by_alias=True)
        raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")

    return json.dumps(value, default=_default)
