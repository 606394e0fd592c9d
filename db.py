import json
import os
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from db_pool import SQLiteConnectionPool
from schemas import Profile, ProfilePreferences, QuestionAttempt, SetProgress, dump_answer, parse_json_safe

DB_PATH = os.getenv("DB_PATH", "data.db")

CURRENT_PROFILE_KEY = "current_profile"

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS profiles (
              id           TEXT PRIMARY KEY,
              name         TEXT NOT NULL,
              avatar       TEXT,
              preferences  TEXT,
              created_at   TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS app_settings (
              key          TEXT PRIMARY KEY,
              value        TEXT
            );

            CREATE TABLE IF NOT EXISTS set_progress (
              profile_id      TEXT NOT NULL,
              set_id          TEXT NOT NULL,
              score           INTEGER NOT NULL DEFAULT 0,
              total_questions INTEGER NOT NULL DEFAULT 0,
              time_spent      INTEGER NOT NULL DEFAULT 0,
              completed_at    TEXT,
              PRIMARY KEY(profile_id, set_id),
              FOREIGN KEY(profile_id) REFERENCES profiles(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS question_attempts (
              id           INTEGER PRIMARY KEY AUTOINCREMENT,
              profile_id   TEXT NOT NULL,
              set_id       TEXT NOT NULL,
              question_id  TEXT NOT NULL,
              is_correct   INTEGER NOT NULL,
              user_answer  TEXT,
              time_spent   INTEGER NOT NULL DEFAULT 0,
              hints_used   INTEGER NOT NULL DEFAULT 0,
              timestamp    TEXT NOT NULL,
              FOREIGN KEY(profile_id, set_id) REFERENCES set_progress(profile_id, set_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_attempts_profile_set
              ON question_attempts(profile_id, set_id, id);
            CREATE INDEX IF NOT EXISTS idx_attempts_timestamp
              ON question_attempts(profile_id, timestamp);
            """
        )
        con.commit()


# -------------- helpers --------------
def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        parsed = datetime.strptime(text, "%Y-%m-%d %H:%M:%S")
    return _coerce_to_utc(parsed)


def _coerce_to_utc(dt: Optional[datetime], fallback: Optional[datetime] = None) -> datetime:
    if dt is None:
        dt = fallback or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _isoformat(dt: datetime) -> str:
    return _coerce_to_utc(dt).isoformat(timespec="microseconds")


def generate_profile_id() -> str:
    return f"profile_{int(time.time() * 1000)}_{uuid4().hex[:13]}"


def _attempt_from_row(row: sqlite3.Row) -> QuestionAttempt:
    return QuestionAttempt(
        question_id=row["question_id"],
        is_correct=bool(row["is_correct"]),
        user_answer=_decode_json_field(row["user_answer"]),
        time_spent=int(row["time_spent"] or 0),
        hints_used=int(row["hints_used"] or 0),
        timestamp=_parse_timestamp(row["timestamp"]),
    )


def _progress_from_row(row: sqlite3.Row) -> SetProgress:
    attempts = [
        _attempt_from_row(a)
        for a in _query(
            """
            SELECT question_id, is_correct, user_answer, time_spent, hints_used, timestamp
            FROM question_attempts
            WHERE profile_id = ? AND set_id = ?
            ORDER BY id
            """,
            (row["profile_id"], row["set_id"]),
        )
    ]
    return SetProgress(
        set_id=row["set_id"],
        attempts=attempts,
        score=int(row["score"] or 0),
        total_questions=int(row["total_questions"] or 0),
        time_spent=int(row["time_spent"] or 0),
        completed_at=_parse_timestamp(row["completed_at"]) if row["completed_at"] else None,
    )


def _profile_from_row(row: sqlite3.Row) -> Profile:
    prefs_raw = _decode_json_field(row["preferences"])
    preferences = ProfilePreferences.model_validate(prefs_raw) if isinstance(prefs_raw, dict) else ProfilePreferences()
    return Profile(
        id=row["id"],
        name=row["name"],
        avatar=row["avatar"],
        created_at=_parse_timestamp(row["created_at"]),
        preferences=preferences,
        progress=list_set_progress(row["id"]),
    )


# -------------- profiles --------------
def _insert_profile(con: sqlite3.Connection, profile: Profile) -> None:
    con.execute(
        "INSERT INTO profiles(id, name, avatar, preferences, created_at) VALUES (?,?,?,?,?)",
        (
            profile.id,
            profile.name,
            profile.avatar,
            json_dumps(profile.preferences.model_dump(by_alias=True)),
            _isoformat(profile.created_at),
        ),
    )


def create_profile(name: str, avatar: Optional[str] = None, *, make_current: bool = True) -> Profile:
    """Create a learner profile and, by default, make it the active one."""
    profile = Profile(id=generate_profile_id(), name=name, avatar=avatar)
    with _conn() as con:
        _insert_profile(con, profile)
        con.commit()
    if make_current:
        set_current_profile(profile.id)
    return profile


def get_profile(profile_id: str) -> Optional[Profile]:
    rows = _query("SELECT id, name, avatar, preferences, created_at FROM profiles WHERE id = ?", (profile_id,))
    return _profile_from_row(rows[0]) if rows else None


def list_profiles() -> List[Profile]:
    rows = _query("SELECT id, name, avatar, preferences, created_at FROM profiles ORDER BY created_at, id")
    return [_profile_from_row(row) for row in rows]


def update_profile(
    profile_id: str,
    *,
    name: Optional[str] = None,
    avatar: Optional[str] = None,
    preferences: Optional[ProfilePreferences] = None,
) -> Optional[Profile]:
    existing = get_profile(profile_id)
    if existing is None:
        return None
    _exec(
        "UPDATE profiles SET name = ?, avatar = ?, preferences = ? WHERE id = ?",
        (
            name if name is not None else existing.name,
            avatar if avatar is not None else existing.avatar,
            json_dumps((preferences or existing.preferences).model_dump(by_alias=True)),
            profile_id,
        ),
    )
    return get_profile(profile_id)


def delete_profile(profile_id: str) -> None:
    with _conn() as con:
        con.execute("DELETE FROM question_attempts WHERE profile_id = ?", (profile_id,))
        con.execute("DELETE FROM set_progress WHERE profile_id = ?", (profile_id,))
        con.execute("DELETE FROM profiles WHERE id = ?", (profile_id,))
        con.execute(
            "DELETE FROM app_settings WHERE key = ? AND value = ?",
            (CURRENT_PROFILE_KEY, profile_id),
        )
        con.commit()


def set_current_profile(profile_id: str) -> None:
    _exec(
        """
        INSERT INTO app_settings(key, value) VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        (CURRENT_PROFILE_KEY, profile_id),
    )


def get_current_profile_id() -> Optional[str]:
    """Return the active profile id, ignoring a pointer to a deleted profile."""
    rows = _query(
        """
        SELECT p.id FROM app_settings s
        JOIN profiles p ON p.id = s.value
        WHERE s.key = ?
        """,
        (CURRENT_PROFILE_KEY,),
    )
    return rows[0]["id"] if rows else None


def get_current_profile() -> Optional[Profile]:
    profile_id = get_current_profile_id()
    return get_profile(profile_id) if profile_id else None


# -------------- progress --------------
def _insert_attempt(con: sqlite3.Connection, profile_id: str, set_id: str, attempt: QuestionAttempt) -> None:
    con.execute(
        """
        INSERT INTO question_attempts(
            profile_id, set_id, question_id, is_correct, user_answer, time_spent, hints_used, timestamp
        ) VALUES (?,?,?,?,?,?,?,?)
        """,
        (
            profile_id,
            set_id,
            attempt.question_id,
            1 if attempt.is_correct else 0,
            dump_answer(attempt.user_answer),
            int(attempt.time_spent),
            int(attempt.hints_used),
            _isoformat(attempt.timestamp),
        ),
    )


def add_question_attempt(
    profile_id: str,
    set_id: str,
    attempt: QuestionAttempt,
    *,
    total_questions: Optional[int] = None,
) -> Optional[SetProgress]:
    """Append ``attempt`` to the profile's progress for ``set_id``.

    The first attempt creates the SetProgress row; every attempt recomputes
    ``score`` as the number of correct attempts and adds its time to the
    cumulative ``time_spent``. Unknown profiles are ignored and return None.
    """
    if not _query("SELECT 1 FROM profiles WHERE id = ?", (profile_id,)):
        return None
    with _conn() as con:
        con.execute(
            """
            INSERT INTO set_progress(profile_id, set_id, score, total_questions, time_spent)
            VALUES (?, ?, 0, ?, 0)
            ON CONFLICT(profile_id, set_id) DO NOTHING
            """,
            (profile_id, set_id, int(total_questions or 0)),
        )
        _insert_attempt(con, profile_id, set_id, attempt)
        con.execute(
            """
            UPDATE set_progress SET
              score = (
                SELECT COUNT(*) FROM question_attempts
                WHERE profile_id = ? AND set_id = ? AND is_correct = 1
              ),
              time_spent = time_spent + ?,
              total_questions = MAX(total_questions, ?)
            WHERE profile_id = ? AND set_id = ?
            """,
            (
                profile_id,
                set_id,
                int(attempt.time_spent),
                int(total_questions or 0),
                profile_id,
                set_id,
            ),
        )
        con.commit()
    return get_set_progress(profile_id, set_id)


def mark_set_completed(
    profile_id: str,
    set_id: str,
    *,
    total_questions: Optional[int] = None,
    completed_at: Optional[datetime] = None,
) -> Optional[SetProgress]:
    when = _isoformat(completed_at or datetime.now(timezone.utc))
    cur = _exec(
        """
        UPDATE set_progress SET
          completed_at = ?,
          total_questions = MAX(total_questions, ?)
        WHERE profile_id = ? AND set_id = ?
        """,
        (when, int(total_questions or 0), profile_id, set_id),
    )
    if cur.rowcount == 0:
        return None
    return get_set_progress(profile_id, set_id)


def _write_set_progress(con: sqlite3.Connection, profile_id: str, progress: SetProgress) -> None:
    con.execute(
        "DELETE FROM question_attempts WHERE profile_id = ? AND set_id = ?",
        (profile_id, progress.set_id),
    )
    con.execute(
        """
        INSERT INTO set_progress(profile_id, set_id, score, total_questions, time_spent, completed_at)
        VALUES (?,?,?,?,?,?)
        ON CONFLICT(profile_id, set_id) DO UPDATE SET
          score = excluded.score,
          total_questions = excluded.total_questions,
          time_spent = excluded.time_spent,
          completed_at = excluded.completed_at
        """,
        (
            profile_id,
            progress.set_id,
            int(progress.score),
            int(progress.total_questions),
            int(progress.time_spent),
            _isoformat(progress.completed_at) if progress.completed_at else None,
        ),
    )
    for attempt in progress.attempts:
        _insert_attempt(con, profile_id, progress.set_id, attempt)


def save_set_progress(profile_id: str, progress: SetProgress) -> None:
    """Replace the stored progress for ``progress.set_id`` wholesale."""
    with _conn() as con:
        _write_set_progress(con, profile_id, progress)
        con.commit()


def get_set_progress(profile_id: str, set_id: str) -> Optional[SetProgress]:
    rows = _query(
        """
        SELECT profile_id, set_id, score, total_questions, time_spent, completed_at
        FROM set_progress WHERE profile_id = ? AND set_id = ?
        """,
        (profile_id, set_id),
    )
    return _progress_from_row(rows[0]) if rows else None


def list_set_progress(profile_id: str) -> List[SetProgress]:
    rows = _query(
        """
        SELECT profile_id, set_id, score, total_questions, time_spent, completed_at
        FROM set_progress WHERE profile_id = ? ORDER BY set_id
        """,
        (profile_id,),
    )
    return [_progress_from_row(row) for row in rows]


def list_attempts(
    profile_id: str,
    *,
    set_id: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Flat attempt rows (with their set id) for reporting, oldest first."""
    clauses = ["profile_id = ?"]
    params: list[Any] = [profile_id]
    if set_id:
        clauses.append("set_id = ?")
        params.append(set_id)
    if since is not None:
        clauses.append("timestamp >= ?")
        params.append(_isoformat(since))
    if until is not None:
        clauses.append("timestamp <= ?")
        params.append(_isoformat(until))
    rows = _query(
        f"""
        SELECT set_id, question_id, is_correct, user_answer, time_spent, hints_used, timestamp
        FROM question_attempts
        WHERE {' AND '.join(clauses)}
        ORDER BY timestamp, id
        """,
        params,
    )
    return [{"set_id": row["set_id"], "attempt": _attempt_from_row(row)} for row in rows]


# -------------- export / import --------------
def export_profile(profile_id: str) -> str:
    profile = get_profile(profile_id)
    if profile is None:
        raise KeyError("Profile not found")
    return profile.model_dump_json(by_alias=True, indent=2)


def import_profile(json_string: str) -> Profile:
    """Import an exported profile under a freshly generated id."""
    try:
        incoming = parse_json_safe(json_string, Profile)
    except ValueError as exc:
        raise ValueError("Invalid profile data") from exc

    profile = incoming.model_copy(update={"id": generate_profile_id()})
    with _conn() as con:
        _insert_profile(con, profile)
        for progress in profile.progress:
            _write_set_progress(con, profile.id, progress)
        con.commit()
    return get_profile(profile.id)


def clear_all_data() -> None:
    with _conn() as con:
        con.execute("DELETE FROM question_attempts")
        con.execute("DELETE FROM set_progress")
        con.execute("DELETE FROM app_settings")
        con.execute("DELETE FROM profiles")
        con.commit()
