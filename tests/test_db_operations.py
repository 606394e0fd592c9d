import json
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

import db
from engines.progress import DbActiveProfile, DbProgressSink
from schemas import QuestionAttempt, SetProgress

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _attempt(qid, correct, seconds=5, at=T0, answer="7"):
    return QuestionAttempt(
        question_id=qid,
        is_correct=correct,
        user_answer=answer,
        time_spent=seconds,
        hints_used=0,
        timestamp=at,
    )


def test_create_profile_becomes_current(temp_db):
    first = db.create_profile("Ava", "🦊")
    assert first.id.startswith("profile_")
    assert db.get_current_profile_id() == first.id

    second = db.create_profile("Ben", make_current=False)
    assert db.get_current_profile_id() == first.id
    assert [p.name for p in db.list_profiles()] == ["Ava", "Ben"]

    db.set_current_profile(second.id)
    assert db.get_current_profile().name == "Ben"


def test_first_attempt_creates_progress_and_score_counts_correct(temp_db):
    profile = db.create_profile("Ava")
    db.add_question_attempt(profile.id, "set-1", _attempt("q1", True, 4), total_questions=3)
    db.add_question_attempt(profile.id, "set-1", _attempt("q2", False, 6), total_questions=3)
    progress = db.add_question_attempt(profile.id, "set-1", _attempt("q3", True, 10), total_questions=3)

    assert progress.score == 2
    assert progress.time_spent == 20
    assert progress.total_questions == 3
    assert [a.question_id for a in progress.attempts] == ["q1", "q2", "q3"]
    assert progress.completed_at is None


def test_attempt_answers_round_trip_as_json(temp_db):
    profile = db.create_profile("Ava")
    db.add_question_attempt(profile.id, "set-1", _attempt("q1", True, answer=["a", "c"]))
    db.add_question_attempt(profile.id, "set-1", _attempt("q2", True, answer=False))
    attempts = db.get_set_progress(profile.id, "set-1").attempts
    assert attempts[0].user_answer == ["a", "c"]
    assert attempts[1].user_answer is False
    assert attempts[0].timestamp == T0


def test_unknown_profile_is_ignored(temp_db):
    assert db.add_question_attempt("profile_missing", "set-1", _attempt("q1", True)) is None
    assert db.list_set_progress("profile_missing") == []


def test_mark_set_completed(temp_db):
    profile = db.create_profile("Ava")
    assert db.mark_set_completed(profile.id, "set-1") is None
    db.add_question_attempt(profile.id, "set-1", _attempt("q1", True))
    done = db.mark_set_completed(profile.id, "set-1", total_questions=5, completed_at=T0)
    assert done.completed_at == T0
    assert done.total_questions == 5


def test_delete_profile_removes_progress_and_current_pointer(temp_db):
    profile = db.create_profile("Ava")
    db.add_question_attempt(profile.id, "set-1", _attempt("q1", True))
    db.delete_profile(profile.id)
    assert db.get_profile(profile.id) is None
    assert db.get_current_profile_id() is None
    assert db.list_attempts(profile.id) == []


def test_export_and_import_profile(temp_db):
    profile = db.create_profile("Ava", "🐢")
    db.add_question_attempt(profile.id, "set-1", _attempt("q1", True, 3))
    db.add_question_attempt(profile.id, "set-1", _attempt("q2", False, 4))

    exported = db.export_profile(profile.id)
    payload = json.loads(exported)
    assert payload["name"] == "Ava"
    assert payload["progress"][0]["setId"] == "set-1"
    assert payload["progress"][0]["attempts"][0]["questionId"] == "q1"

    imported = db.import_profile(exported)
    assert imported.id != profile.id
    assert imported.name == "Ava"
    assert imported.progress[0].score == 1
    assert imported.progress[0].time_spent == 7
    assert len(imported.progress[0].attempts) == 2


def test_failed_import_leaves_no_partial_profile(temp_db, monkeypatch):
    profile = db.create_profile("Ava")
    db.add_question_attempt(profile.id, "set-1", _attempt("q1", True))
    db.add_question_attempt(profile.id, "set-2", _attempt("q2", True))
    exported = db.export_profile(profile.id)

    real_insert = db._insert_attempt
    calls = []

    def flaky_insert(con, profile_id, set_id, attempt):
        calls.append(attempt.question_id)
        if len(calls) == 2:
            raise sqlite3.OperationalError("disk I/O error")
        real_insert(con, profile_id, set_id, attempt)

    monkeypatch.setattr(db, "_insert_attempt", flaky_insert)
    with pytest.raises(sqlite3.OperationalError):
        db.import_profile(exported)

    assert [p.id for p in db.list_profiles()] == [profile.id]


def test_export_unknown_profile_raises(temp_db):
    with pytest.raises(KeyError):
        db.export_profile("profile_missing")


def test_import_rejects_invalid_payload(temp_db):
    with pytest.raises(ValueError, match="Invalid profile data"):
        db.import_profile(json.dumps({"name": "No id"}))
    with pytest.raises(ValueError):
        db.import_profile("not json")


def test_save_set_progress_replaces_attempts(temp_db):
    profile = db.create_profile("Ava")
    db.add_question_attempt(profile.id, "set-1", _attempt("q1", False))
    db.save_set_progress(
        profile.id,
        SetProgress(set_id="set-1", attempts=[_attempt("q9", True)], score=1, total_questions=1, time_spent=5),
    )
    progress = db.get_set_progress(profile.id, "set-1")
    assert [a.question_id for a in progress.attempts] == ["q9"]
    assert progress.score == 1


def test_update_profile_preferences(temp_db):
    profile = db.create_profile("Ava")
    updated = db.update_profile(
        profile.id,
        preferences=profile.preferences.model_copy(update={"theme": "high-contrast", "dyslexia_friendly": True}),
    )
    assert updated.preferences.theme == "high-contrast"
    assert updated.preferences.dyslexia_friendly is True
    assert updated.name == "Ava"
    assert db.update_profile("profile_missing", name="X") is None


def test_list_attempts_filters_by_window(temp_db):
    profile = db.create_profile("Ava")
    for day in range(3):
        db.add_question_attempt(profile.id, "set-1", _attempt(f"q{day}", True, at=T0 + timedelta(days=day)))
    rows = db.list_attempts(profile.id, since=T0 + timedelta(days=1))
    assert [row["attempt"].question_id for row in rows] == ["q1", "q2"]
    rows = db.list_attempts(profile.id, until=T0)
    assert [row["set_id"] for row in rows] == ["set-1"]


def test_clear_all_data(temp_db):
    db.create_profile("Ava")
    db.clear_all_data()
    assert db.list_profiles() == []
    assert db.get_current_profile_id() is None


def test_db_progress_sink_follows_current_profile(temp_db):
    sink = DbProgressSink(total_questions=4)
    active = DbActiveProfile()
    assert active.current() is None

    profile = db.create_profile("Ava")
    assert active.current() == profile.id
    sink.record_attempt(active.current(), "set-1", _attempt("q1", True))
    assert db.get_set_progress(profile.id, "set-1").total_questions == 4
