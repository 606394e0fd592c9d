"""Progress-store adapters that let quiz sessions record into the local database."""

from typing import Optional

import db
from engines.base import ActiveProfile, ProgressSink
from schemas import QuestionAttempt


class DbProgressSink(ProgressSink):
    def __init__(self, total_questions: Optional[int] = None) -> None:
        self.total_questions = total_questions

    def record_attempt(self, profile_id: str, set_id: str, attempt: QuestionAttempt) -> None:
        db.add_question_attempt(profile_id, set_id, attempt, total_questions=self.total_questions)


class DbActiveProfile(ActiveProfile):
    """Looks up the current profile on every call so profile switches apply immediately."""

    def current(self) -> Optional[str]:
        return db.get_current_profile_id()
