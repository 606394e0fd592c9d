"""Parent-facing progress reports built from stored question attempts."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import db
from engines.base import QuestionRepository
from engines.quiz_session import calculate_accuracy
from schemas import DateRange, QuestionAttempt, Report, SkillScore, TopicScore

BADGE_MIN_ATTEMPTS = 5
BADGE_MIN_ACCURACY = 90


@dataclass
class _Tally:
    correct: int = 0
    total: int = 0
    last_attempt: Optional[datetime] = None

    def add(self, attempt: QuestionAttempt) -> None:
        self.total += 1
        if attempt.is_correct:
            self.correct += 1
        if self.last_attempt is None or attempt.timestamp > self.last_attempt:
            self.last_attempt = attempt.timestamp

    @property
    def accuracy(self) -> int:
        return calculate_accuracy(self.correct, self.total)


def daily_streak(days: Iterable[date]) -> int:
    """Count consecutive days with activity ending on the most recent active day."""
    active = sorted(set(days), reverse=True)
    if not active:
        return 0
    streak = 1
    for previous, current in zip(active, active[1:]):
        if previous - current != timedelta(days=1):
            break
        streak += 1
    return streak


def _lookup(repo: QuestionRepository, question_id: str) -> Tuple[str, str, Optional[str]]:
    question = repo.get_question(question_id)
    if question is None:
        return "unknown", "unknown", None
    return question.topic, question.skill, question.subject


def build_report(
    profile_id: str,
    repo: QuestionRepository,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Report:
    """Aggregate a profile's attempts in ``[start, end]`` by topic, skill and subject.

    Attempts for questions the bank no longer knows are counted under
    ``unknown`` topic and skill and never contribute to subject badges.
    """
    rows = db.list_attempts(profile_id, since=start, until=end)
    attempts: List[QuestionAttempt] = [row["attempt"] for row in rows]

    topics: Dict[str, _Tally] = defaultdict(_Tally)
    skills: Dict[str, _Tally] = defaultdict(_Tally)
    subjects: Dict[str, _Tally] = defaultdict(_Tally)
    for attempt in attempts:
        topic, skill, subject = _lookup(repo, attempt.question_id)
        topics[topic].add(attempt)
        skills[skill].add(attempt)
        if subject:
            subjects[subject].add(attempt)

    total = len(attempts)
    correct = sum(1 for a in attempts if a.is_correct)
    if attempts:
        first = min(a.timestamp for a in attempts)
        last = max(a.timestamp for a in attempts)
    else:
        first = last = datetime.now(timezone.utc)

    badges = sorted(
        subject
        for subject, tally in subjects.items()
        if tally.total >= BADGE_MIN_ATTEMPTS and tally.accuracy >= BADGE_MIN_ACCURACY
    )

    return Report(
        child_id=profile_id,
        date_range=DateRange(start=start or first, end=end or last),
        total_questions=total,
        total_correct=correct,
        overall_accuracy=calculate_accuracy(correct, total),
        time_spent=sum(a.time_spent for a in attempts),
        topic_scores=[
            TopicScore(topic=name, correct=t.correct, total=t.total, accuracy=t.accuracy)
            for name, t in sorted(topics.items())
        ],
        skill_scores=[
            SkillScore(
                skill=name,
                correct=t.correct,
                total=t.total,
                accuracy=t.accuracy,
                last_attempt=t.last_attempt,
            )
            for name, t in sorted(skills.items())
        ],
        streak=daily_streak(a.timestamp.date() for a in attempts),
        badges=badges,
    )
