from datetime import date, datetime, timedelta, timezone

import db
from engines.reporting import build_report, daily_streak
from schemas import QuestionAttempt

T0 = datetime(2024, 3, 4, 16, 0, tzinfo=timezone.utc)


def _record(profile_id, set_id, qid, correct, at, seconds=10):
    db.add_question_attempt(
        profile_id,
        set_id,
        QuestionAttempt(
            question_id=qid,
            is_correct=correct,
            user_answer="x",
            time_spent=seconds,
            hints_used=0,
            timestamp=at,
        ),
    )


def test_daily_streak_counts_back_from_latest_day():
    assert daily_streak([]) == 0
    assert daily_streak([date(2024, 3, 1)]) == 1
    days = [date(2024, 3, 1), date(2024, 3, 3), date(2024, 3, 4), date(2024, 3, 4), date(2024, 3, 5)]
    assert daily_streak(days) == 3


def test_report_aggregates_by_topic_and_skill(temp_db, sample_bank):
    profile = db.create_profile("Ava")
    _record(profile.id, "g1-math-starter", "g1-math-add-001", True, T0)
    _record(profile.id, "g1-math-starter", "g1-math-tf-001", False, T0 + timedelta(minutes=1))
    _record(profile.id, "g1-math-starter", "g1-math-sub-001", True, T0 + timedelta(days=1))

    report = build_report(profile.id, sample_bank)

    assert report.child_id == profile.id
    assert report.total_questions == 3
    assert report.total_correct == 2
    assert report.overall_accuracy == 67
    assert report.time_spent == 30
    assert report.streak == 2
    topics = {t.topic: (t.correct, t.total, t.accuracy) for t in report.topic_scores}
    assert topics == {"Addition": (1, 2, 50), "Subtraction": (1, 1, 100)}
    adding = next(s for s in report.skill_scores if s.skill == "Adding within 10")
    assert adding.last_attempt == T0 + timedelta(minutes=1)
    assert report.badges == []
    assert report.date_range.start == T0


def test_badge_for_strong_subject(temp_db, sample_bank):
    profile = db.create_profile("Ava")
    for minute in range(5):
        _record(profile.id, "g1-english-words", "g1-eng-tf-001", True, T0 + timedelta(minutes=minute))
    _record(profile.id, "g1-math-starter", "g1-math-add-001", True, T0)

    report = build_report(profile.id, sample_bank)
    assert report.badges == ["english"]


def test_report_window_and_unknown_questions(temp_db, sample_bank):
    profile = db.create_profile("Ava")
    _record(profile.id, "old-set", "retired-question", True, T0 - timedelta(days=10))
    _record(profile.id, "g1-math-starter", "g1-math-add-001", False, T0)

    windowed = build_report(profile.id, sample_bank, start=T0 - timedelta(days=1))
    assert windowed.total_questions == 1
    assert windowed.overall_accuracy == 0

    full = build_report(profile.id, sample_bank)
    assert {t.topic for t in full.topic_scores} == {"unknown", "Addition"}


def test_empty_report(temp_db, sample_bank):
    profile = db.create_profile("Ava")
    report = build_report(profile.id, sample_bank)
    assert report.total_questions == 0
    assert report.overall_accuracy == 0
    assert report.streak == 0
    assert report.topic_scores == []
