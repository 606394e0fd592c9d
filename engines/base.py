from typing import List, Optional, Sequence

from schemas import Question, QuestionAttempt, QuestionSet


class QuestionRepository:
    def get_set(self, set_id: str) -> Optional[QuestionSet]:
        raise NotImplementedError

    def get_question(self, question_id: str) -> Optional[Question]:
        return None

    def get_questions(self, ids: Sequence[str]) -> List[Question]:
        """Return questions in ``ids`` order; unresolved ids raise MissingQuestionError."""
        raise NotImplementedError


class ProgressSink:
    def record_attempt(self, profile_id: str, set_id: str, attempt: QuestionAttempt) -> None:
        raise NotImplementedError


class ActiveProfile:
    def current(self) -> Optional[str]:
        raise NotImplementedError
