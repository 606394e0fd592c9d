# app.py: QuizBuddy HTTP API v1.0.0
# - Content browsing and uploads backed by the in-memory question bank
# - Learner profiles and progress stored in SQLite
# - Quiz sessions held in-process, keyed by session id

import json
import logging
import os
import random
import threading
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel, Field

import db
import item_bank
from engines.progress import DbActiveProfile, DbProgressSink
from engines.quiz_session import QuizSession, SessionStatus
from engines.reporting import build_report
from engines.validation import (
    ContentValidationError,
    DataIntegrityError,
    PreconditionError,
    QuizError,
    SessionCompletedError,
    parse_app_data,
)
from env_validation import configure_logging, get_env_int, validate_environment
from personalization import MessageCatalogue, load_catalogue
from schemas import ProfilePreferences, Question

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        validate_environment()
        configure_logging()

        db.init()
        bank = item_bank.get_default_bank()
        logger.info("Question bank ready from %s: %d questions, %d sets", bank.source, len(bank.questions), len(bank.sets))
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    finally:
        SESSIONS.clear()
        db._pool.close_all()


app = FastAPI(title="QuizBuddy", version="1.0.0", lifespan=_lifespan)

SESSIONS: dict[str, QuizSession] = {}
_SESSIONS_LOCK = threading.Lock()
MAX_SESSIONS = 100
_CATALOGUE: Optional[MessageCatalogue] = None


def _catalogue() -> MessageCatalogue:
    global _CATALOGUE
    if _CATALOGUE is None:
        _CATALOGUE = load_catalogue(os.getenv("MESSAGE_CATALOGUE_PATH") or None)
    return _CATALOGUE


def _bank() -> item_bank.QuestionBank:
    return item_bank.get_default_bank()


def _http_error(exc: QuizError) -> HTTPException:
    if isinstance(exc, ContentValidationError):
        return HTTPException(status_code=422, detail={"message": str(exc), "problems": exc.problems})
    if isinstance(exc, DataIntegrityError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (PreconditionError, SessionCompletedError)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _dump(model: Any) -> Any:
    return model.model_dump(by_alias=True, mode="json")


# ---------- Schemas ----------
class UploadBody(BaseModel):
    data: dict[str, Any]
    replace: bool = False


class ProfileBody(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    avatar: Optional[str] = None
    make_current: bool = True


class ProfileUpdateBody(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=64)
    avatar: Optional[str] = None
    preferences: Optional[ProfilePreferences] = None


class SessionStartBody(BaseModel):
    set_id: str
    max_questions: Optional[int] = Field(default=None, ge=1)
    seed: Optional[int] = None


class AnswerBody(BaseModel):
    answer: Any = None


# ---------- Content ----------
@app.get("/")
def root():
    bank = _bank()
    return {
        "name": app.title,
        "version": app.version,
        "source": bank.source,
        "questions": len(bank.questions),
        "sets": len(bank.sets),
    }


@app.get("/questions")
def list_questions():
    """Full content bundle; other instances can load it via ``QUESTION_BANK_URL``."""
    return _dump(_bank().to_app_data())


@app.get("/questions/search")
def search_questions(
    subject: Optional[str] = None,
    topic: Optional[str] = None,
    skill: Optional[str] = None,
    difficulty: Optional[str] = None,
    tag: Optional[str] = None,
):
    questions = _bank().filter_questions(
        subject=subject,
        topic=topic,
        skill=skill,
        difficulty=difficulty,
        tags=[tag] if tag else None,
    )
    return {"count": len(questions), "questions": [_dump(q) for q in questions]}


@app.get("/subjects")
def list_subjects():
    catalogue = _catalogue()
    subjects = []
    for subject, data in _bank().subject_data().items():
        subjects.append(
            {
                "subject": subject,
                "intro": catalogue.subject_intro(subject),
                "question_count": len(data["questions"]),
                "set_ids": [s.id for s in data["sets"]],
                "topics": data["topics"],
            }
        )
    return {"subjects": subjects, "available": _bank().available_subjects()}


@app.get("/grades")
def list_grades():
    root = os.getenv("QUESTION_DATA_DIR", "data/questions")
    try:
        grades = [item_bank.grade_metadata(root, grade) for grade in item_bank.available_grades(root)]
    except QuizError as exc:
        raise _http_error(exc)
    return {"current": get_env_int("CURRENT_GRADE", 1), "grades": grades}


@app.get("/sets")
def list_sets(subject: Optional[str] = None):
    bank = _bank()
    sets = bank.sets_for_subject(subject) if subject else bank.sets
    return {"count": len(sets), "sets": [_dump(s) for s in sets]}


@app.get("/sets/{set_id}")
def get_set(set_id: str):
    bank = _bank()
    qset = bank.get_set(set_id)
    if qset is None:
        raise HTTPException(status_code=404, detail=f"Set {set_id} not found")
    try:
        questions = bank.get_questions(qset.question_ids)
    except QuizError as exc:
        raise _http_error(exc)
    return {"set": _dump(qset), "questions": [_public_question(q, reveal=False, hint=False) for q in questions]}


@app.post("/questions/upload")
def upload_questions(body: UploadBody):
    bank = _bank()
    try:
        data = parse_app_data(body.data)
    except QuizError as exc:
        raise _http_error(exc)
    conflicts = bank.conflicts_with(data)
    if conflicts and not body.replace:
        raise HTTPException(
            status_code=409,
            detail={"message": f"Found {len(conflicts)} items with existing IDs", "conflicts": conflicts},
        )
    try:
        counts = bank.merge(data, replace=body.replace)
    except QuizError as exc:
        raise _http_error(exc)
    return {"ok": True, **counts}


# ---------- Profiles ----------
def _require_profile(profile_id: str):
    profile = db.get_profile(profile_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    return profile


@app.post("/profiles")
def create_profile(body: ProfileBody):
    profile = db.create_profile(body.name.strip(), body.avatar, make_current=body.make_current)
    logger.info("Created profile %s", profile.id)
    return _dump(profile)


@app.get("/profiles")
def list_profiles():
    return {"profiles": [_dump(p) for p in db.list_profiles()], "current": db.get_current_profile_id()}


@app.get("/profiles/current")
def current_profile():
    profile = db.get_current_profile()
    return {"profile": _dump(profile) if profile else None}


@app.patch("/profiles/{profile_id}")
def update_profile(profile_id: str, body: ProfileUpdateBody):
    updated = db.update_profile(
        profile_id,
        name=body.name,
        avatar=body.avatar,
        preferences=body.preferences,
    )
    if updated is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    return _dump(updated)


@app.post("/profiles/{profile_id}/select")
def select_profile(profile_id: str):
    _require_profile(profile_id)
    db.set_current_profile(profile_id)
    return {"ok": True, "current": profile_id}


@app.delete("/profiles/{profile_id}")
def delete_profile(profile_id: str):
    _require_profile(profile_id)
    db.delete_profile(profile_id)
    logger.info("Deleted profile %s", profile_id)
    return {"ok": True}


@app.get("/profiles/{profile_id}/export")
def export_profile(profile_id: str):
    try:
        payload = db.export_profile(profile_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Profile not found")
    return Response(
        content=payload,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{profile_id}.json"'},
    )


@app.post("/profiles/import")
def import_profile(payload: dict[str, Any]):
    try:
        profile = db.import_profile(json.dumps(payload))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    logger.info("Imported profile %s", profile.id)
    return _dump(profile)


@app.get("/profiles/{profile_id}/progress")
def profile_progress(profile_id: str):
    _require_profile(profile_id)
    return {"profile_id": profile_id, "progress": [_dump(p) for p in db.list_set_progress(profile_id)]}


@app.get("/profiles/{profile_id}/report")
def profile_report(profile_id: str, start: Optional[datetime] = None, end: Optional[datetime] = None):
    _require_profile(profile_id)
    return _dump(build_report(profile_id, _bank(), start=start, end=end))


# ---------- Sessions ----------
def _public_question(question: Question, *, reveal: bool, hint: bool) -> dict[str, Any]:
    exclude = set()
    if not reveal:
        exclude |= {"answer", "explanation"}
    if not hint:
        exclude.add("hint")
    payload = question.model_dump(by_alias=True, mode="json", exclude=exclude)
    payload["has_hint"] = bool(question.hint)
    return payload


def _register_session(session_id: str, session: QuizSession) -> None:
    """Store a session, evicting completed sessions first and then the oldest ones."""
    with _SESSIONS_LOCK:
        overflow = len(SESSIONS) + 1 - MAX_SESSIONS
        if overflow > 0:
            completed = [sid for sid, s in SESSIONS.items() if s.is_completed]
            active = [sid for sid, s in SESSIONS.items() if not s.is_completed]
            for sid in (completed + active)[:overflow]:
                del SESSIONS[sid]
                logger.info("Evicted session %s from the registry", sid)
        SESSIONS[session_id] = session


def _session_or_404(session_id: str) -> QuizSession:
    session = SESSIONS.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _session_view(session_id: str, session: QuizSession) -> dict[str, Any]:
    state = session.current_state
    return {
        "session_id": session_id,
        "set_id": session.set_id,
        "title": session.question_set.title,
        "status": session.status.value,
        "current_index": session.current_index,
        "total_questions": session.total_questions,
        "progress_percent": session.progress_percent,
        "score": session.score,
        "time_limit_seconds": session.question_set.time_limit_seconds,
        "question": _public_question(session.current_question, reveal=state.submitted, hint=state.hint_shown),
        "answer": state.answer,
        "submitted": state.submitted,
        "feedback": state.feedback if state.feedback_shown else None,
        "result": _dump(state.result) if state.result else None,
    }


@app.post("/sessions")
def start_session(body: SessionStartBody):
    limit = body.max_questions or get_env_int("MAX_SET_QUESTIONS", 20)
    rng = random.Random(body.seed) if body.seed is not None else None
    try:
        drawn = _bank().get_set_data(body.set_id, max_questions=limit, rng=rng)
        if drawn is None:
            raise HTTPException(status_code=404, detail=f"Set {body.set_id} not found")
        qset, questions = drawn
        session = QuizSession.start(
            qset,
            questions,
            progress_sink=DbProgressSink(total_questions=len(questions)),
            active_profile=DbActiveProfile(),
            rng=rng,
        )
    except QuizError as exc:
        raise _http_error(exc)

    session_id = uuid4().hex
    _register_session(session_id, session)
    return _session_view(session_id, session)


@app.get("/sessions/{session_id}")
def session_state(session_id: str):
    return _session_view(session_id, _session_or_404(session_id))


@app.post("/sessions/{session_id}/answer")
def set_answer(session_id: str, body: AnswerBody):
    session = _session_or_404(session_id)
    try:
        session.set_answer(body.answer)
    except QuizError as exc:
        raise _http_error(exc)
    return _session_view(session_id, session)


@app.post("/sessions/{session_id}/submit")
def submit_answer(session_id: str):
    session = _session_or_404(session_id)
    try:
        submission = session.submit()
    except QuizError as exc:
        raise _http_error(exc)
    view = _session_view(session_id, session)
    view["recorded"] = submission.recorded
    view["message"] = _catalogue().feedback_toast(submission.result.is_correct)
    return view


@app.post("/sessions/{session_id}/hint")
def request_hint(session_id: str):
    session = _session_or_404(session_id)
    try:
        hint = session.request_hint()
    except QuizError as exc:
        raise _http_error(exc)
    return {"hint": hint}


@app.post("/sessions/{session_id}/next")
def next_question(session_id: str):
    session = _session_or_404(session_id)
    try:
        status = session.next()
    except QuizError as exc:
        raise _http_error(exc)
    if status is SessionStatus.COMPLETED:
        profile_id = db.get_current_profile_id()
        if profile_id:
            db.mark_set_completed(profile_id, session.set_id, total_questions=session.total_questions)
        return {"status": status.value, "summary": _dump(session.summary(_catalogue().achievement_message))}
    return _session_view(session_id, session)


@app.post("/sessions/{session_id}/previous")
def previous_question(session_id: str):
    session = _session_or_404(session_id)
    try:
        session.previous()
    except QuizError as exc:
        raise _http_error(exc)
    return _session_view(session_id, session)


@app.post("/sessions/{session_id}/restart")
def restart_session(session_id: str):
    session = _session_or_404(session_id)
    session.restart()
    return _session_view(session_id, session)


@app.get("/sessions/{session_id}/summary")
def session_summary(session_id: str):
    session = _session_or_404(session_id)
    return _dump(session.summary(_catalogue().achievement_message))


@app.delete("/sessions/{session_id}")
def discard_session(session_id: str):
    with _SESSIONS_LOCK:
        removed = SESSIONS.pop(session_id, None)
    if removed is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"ok": True}
