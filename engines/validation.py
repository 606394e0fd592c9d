"""Error taxonomy and content validation for question banks."""

from __future__ import annotations

from collections import Counter
from typing import Any, Iterable, List, Mapping, Sequence

from pydantic import ValidationError as PydanticValidationError

from schemas import CHOICE_TYPES, AppData, Question


class QuizError(Exception):
    """Base class for errors raised by the quiz core."""
    pass


class ContentValidationError(QuizError, ValueError):
    """Raised when a content bundle fails validation at ingestion."""

    def __init__(self, message: str, problems: Sequence[str] | None = None) -> None:
        super().__init__(message)
        self.problems: List[str] = list(problems or [])


class DataIntegrityError(QuizError):
    """Raised when a set cannot be turned into a playable question list."""
    pass


class SetNotFoundError(DataIntegrityError, KeyError):
    def __init__(self, set_id: str) -> None:
        super().__init__(f"Question set not found: {set_id}")
        self.set_id = set_id

    def __str__(self) -> str:
        return str(self.args[0])


class MissingQuestionError(DataIntegrityError):
    def __init__(self, missing: Iterable[str], set_id: str | None = None) -> None:
        self.missing = list(missing)
        self.set_id = set_id
        where = f"Set {set_id!r} references" if set_id else "Unknown"
        super().__init__(f"{where} non-existent questions: {', '.join(self.missing)}")


class EmptySetError(DataIntegrityError):
    def __init__(self, set_id: str) -> None:
        super().__init__(f"Question set {set_id!r} has no playable questions")
        self.set_id = set_id


class SessionError(QuizError):
    """Base class for misuse of a quiz session."""
    pass


class PreconditionError(SessionError):
    """Raised when an operation's precondition is not met; state is left unchanged."""
    pass


class QuestionLockedError(PreconditionError):
    def __init__(self, question_id: str) -> None:
        super().__init__(f"Question {question_id!r} was already submitted")
        self.question_id = question_id


class SessionCompletedError(SessionError):
    def __init__(self) -> None:
        super().__init__("Quiz session is already completed; restart it to play again")


def _answer_shape_problem(question: Question) -> str | None:
    answer = question.answer
    qtype = question.type
    if qtype == "true_false":
        if not isinstance(answer, bool):
            return "true_false answer must be a boolean"
    elif qtype == "mcq_single":
        if not isinstance(answer, str):
            return "mcq_single answer must be a string"
    elif qtype in ("short_answer", "fill_blank"):
        if isinstance(answer, bool):
            return f"{qtype} answer must be a string or list of strings"
        if isinstance(answer, list) and not all(isinstance(a, str) for a in answer):
            return f"{qtype} answer must be a string or list of strings"
    elif qtype in ("mcq_multi", "order"):
        if not isinstance(answer, list) or not answer or not all(isinstance(a, str) for a in answer):
            return f"{qtype} answer must be a non-empty list of strings"
    elif qtype == "match":
        if not isinstance(answer, list) or not answer or isinstance(answer[0], str):
            return "match answer must be a non-empty list of {leftId, rightId} pairs"
    return None


def validate_question(question: Question) -> List[str]:
    """Return a list of problems found in ``question`` (empty when valid)."""

    problems: List[str] = []
    if question.type in CHOICE_TYPES and not question.choices:
        problems.append(f"Question {question.id} of type {question.type} requires choices")
    if question.choices:
        counts = Counter(choice.id for choice in question.choices)
        dupes = sorted(cid for cid, n in counts.items() if n > 1)
        if dupes:
            problems.append(f"Question {question.id} has duplicate choice ids: {', '.join(dupes)}")
    shape = _answer_shape_problem(question)
    if shape:
        problems.append(f"Question {question.id}: {shape}")
    return problems


def validate_app_data(data: AppData) -> None:
    """Cross-check a parsed bundle.

    Raises ContentValidationError listing every problem found: duplicate
    question or set ids, sets referencing unknown questions, and questions
    whose choices or answer do not fit their type.
    """

    problems: List[str] = []

    question_counts = Counter(q.id for q in data.questions)
    set_counts = Counter(s.id for s in data.sets)
    duplicates = [qid for qid, n in question_counts.items() if n > 1]
    duplicates += [sid for sid, n in set_counts.items() if n > 1]
    if duplicates:
        problems.append(f"Duplicate IDs found: {', '.join(duplicates)}")

    for question in data.questions:
        problems.extend(validate_question(question))

    known = set(question_counts)
    for qset in data.sets:
        missing = [qid for qid in qset.question_ids if qid not in known]
        if missing:
            label = qset.title or qset.id
            problems.append(f'Set "{label}" references non-existent questions: {", ".join(missing)}')

    if problems:
        raise ContentValidationError(problems[0], problems)


def parse_app_data(raw: Any) -> AppData:
    """Validate a decoded JSON/YAML payload into an :class:`AppData` bundle."""

    if not isinstance(raw, Mapping):
        raise ContentValidationError("Content bundle root must be an object with 'questions' and 'sets'")
    try:
        data = AppData.model_validate(raw)
    except PydanticValidationError as exc:
        problems = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        ]
        raise ContentValidationError(f"Content bundle failed schema validation: {problems[0]}", problems) from exc
    validate_app_data(data)
    return data

