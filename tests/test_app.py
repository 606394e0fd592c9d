import asyncio
import json

import pytest
from fastapi import HTTPException

import app
import item_bank


def _request(method: str, path: str, payload: dict | None = None) -> tuple[int, dict]:
    async def _call():
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        received_once = False

        async def receive():
            nonlocal received_once
            if not received_once:
                received_once = True
                return {"type": "http.request", "body": body, "more_body": False}
            return {"type": "http.disconnect"}

        messages = []

        async def send(message):
            messages.append(message)

        scope = {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "scheme": "http",
            "query_string": b"",
            "headers": [
                (b"host", b"testserver"),
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ],
            "client": ("testclient", 12345),
            "server": ("testserver", 80),
            "state": {},
        }

        await app.app(scope, receive, send)
        return messages

    messages = asyncio.run(_call())
    status = 500
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    return status, json.loads(body_bytes.decode("utf-8") or "{}")


@pytest.fixture
def api(temp_db, sample_bank, monkeypatch):
    item_bank.set_default_bank(sample_bank)
    monkeypatch.setattr(app, "SESSIONS", {})
    monkeypatch.setattr(app, "_CATALOGUE", None)
    monkeypatch.setenv("LEARNER_NAME", "Ava")
    yield app
    item_bank.set_default_bank(None)


def test_content_endpoints(api):
    bundle = api.list_questions()
    assert len(bundle["questions"]) == 10
    assert {s["id"] for s in bundle["sets"]} == {"g1-math-starter", "g1-english-words", "g1-science-nature"}

    subjects = {s["subject"]: s for s in api.list_subjects()["subjects"]}
    assert subjects["math"]["question_count"] == 5
    assert subjects["science"]["intro"] == "Let's discover amazing things about our world, Ava!"

    assert api.list_sets(subject="english")["count"] == 1
    detail = api.get_set("g1-math-starter")
    assert "answer" not in detail["questions"][0]

    found = api.search_questions(subject="math", tag="addition")
    assert {q["id"] for q in found["questions"]} == {"g1-math-add-001", "g1-math-tf-001"}

    with pytest.raises(HTTPException) as excinfo:
        api.get_set("missing")
    assert excinfo.value.status_code == 404


def test_upload_merges_and_reports_conflicts(api):
    upload = {
        "questions": [
            {
                "id": "g1-math-add-001",
                "subject": "math",
                "topic": "Addition",
                "skill": "Adding within 10",
                "prompt": "What is 2 + 2?",
                "type": "short_answer",
                "answer": "4",
            }
        ],
        "sets": [{"id": "extra", "title": "Extra", "subject": "math", "questionIds": ["g1-math-add-001"]}],
    }
    with pytest.raises(HTTPException) as excinfo:
        api.upload_questions(api.UploadBody(data=upload))
    assert excinfo.value.status_code == 409
    assert excinfo.value.detail["conflicts"] == ["g1-math-add-001"]

    result = api.upload_questions(api.UploadBody(data=upload, replace=True))
    assert result == {"ok": True, "questions": 1, "sets": 1, "replaced": 1}
    assert item_bank.get_default_bank().get_question("g1-math-add-001").prompt == "What is 2 + 2?"

    with pytest.raises(HTTPException) as excinfo:
        api.upload_questions(api.UploadBody(data={"questions": [{"id": "bad"}], "sets": []}))
    assert excinfo.value.status_code == 422
    assert excinfo.value.detail["problems"]


def test_profile_lifecycle(api):
    created = api.create_profile(api.ProfileBody(name="Ava", avatar="🦊"))
    profile_id = created["id"]
    assert api.current_profile()["profile"]["id"] == profile_id

    other = api.create_profile(api.ProfileBody(name="Ben", make_current=False))
    api.select_profile(other["id"])
    assert api.list_profiles()["current"] == other["id"]

    updated = api.update_profile(profile_id, api.ProfileUpdateBody(preferences={"theme": "dark"}))
    assert updated["preferences"]["theme"] == "dark"

    exported = api.export_profile(profile_id)
    assert exported.media_type == "application/json"
    imported = api.import_profile(json.loads(exported.body))
    assert imported["id"] != profile_id
    assert imported["name"] == "Ava"

    api.delete_profile(other["id"])
    assert api.current_profile() == {"profile": None}
    with pytest.raises(HTTPException) as excinfo:
        api.select_profile(other["id"])
    assert excinfo.value.status_code == 404

    with pytest.raises(HTTPException) as excinfo:
        api.import_profile({"name": "broken"})
    assert excinfo.value.status_code == 422


def test_session_flow_records_progress(api):
    profile = api.create_profile(api.ProfileBody(name="Ava"))
    view = api.start_session(api.SessionStartBody(set_id="g1-math-starter"))
    sid = view["session_id"]
    assert view["total_questions"] == 5
    assert "answer" not in view["question"]

    answers = ["b", ["a", "c"], "7", ["n1", "n5", "n9"], False]
    for answer in answers:
        api.set_answer(sid, api.AnswerBody(answer=answer))
        submitted = api.submit_answer(sid)
        assert submitted["recorded"] is True
        assert submitted["question"]["answer"] is not None
        step = api.next_question(sid)

    assert step["status"] == "completed"
    summary = step["summary"]
    assert summary["score"] == 4
    assert summary["accuracy"] == 80
    assert summary["stars"] == 2
    assert summary["message"] == "Well done, Ava! You're learning so well!"

    progress = api.profile_progress(profile["id"])["progress"][0]
    assert progress["setId"] == "g1-math-starter"
    assert progress["score"] == 4
    assert progress["completedAt"] is not None

    report = api.profile_report(profile["id"])
    assert report["totalQuestions"] == 5
    assert report["overallAccuracy"] == 80

    with pytest.raises(HTTPException) as excinfo:
        api.submit_answer(sid)
    assert excinfo.value.status_code == 409

    restarted = api.restart_session(sid)
    assert restarted["status"] == "in_progress"
    assert restarted["score"] == 0


def test_session_errors_map_to_http_status(api):
    with pytest.raises(HTTPException) as excinfo:
        api.start_session(api.SessionStartBody(set_id="missing"))
    assert excinfo.value.status_code == 404

    sid = api.start_session(api.SessionStartBody(set_id="g1-science-nature"))["session_id"]
    with pytest.raises(HTTPException) as excinfo:
        api.submit_answer(sid)
    assert excinfo.value.status_code == 409
    assert excinfo.value.detail == "Please provide an answer!"

    assert api.request_hint(sid) == {"hint": "Living things grow."}
    assert api.session_state(sid)["question"]["hint"] == "Living things grow."
    assert api.previous_question(sid)["current_index"] == 0
    assert api.session_summary(sid)["completed"] is False

    assert api.discard_session(sid) == {"ok": True}
    with pytest.raises(HTTPException) as excinfo:
        api.session_state(sid)
    assert excinfo.value.status_code == 404


def test_anonymous_session_is_not_recorded(api):
    sid = api.start_session(api.SessionStartBody(set_id="g1-science-nature"))["session_id"]
    api.set_answer(sid, api.AnswerBody(answer="b"))
    submitted = api.submit_answer(sid)
    assert submitted["result"]["isCorrect"] is True
    assert submitted["recorded"] is False
    assert submitted["message"] in [m.format(name="Ava") for m in api._catalogue().motivational]


def test_unknown_session_over_http(api):
    status, payload = _request("POST", "/sessions/nope/submit")
    assert status == 404
    assert payload["detail"] == "Session not found"

    status, payload = _request("POST", "/sessions", {"set_id": "g1-math-starter", "max_questions": 2, "seed": 1})
    assert status == 200
    assert payload["total_questions"] == 2


def test_session_registry_is_capped(api, monkeypatch):
    monkeypatch.setattr(api, "MAX_SESSIONS", 2)

    def start():
        return api.start_session(api.SessionStartBody(set_id="g1-science-nature"))["session_id"]

    finished = start()
    api.next_question(finished)
    assert api.next_question(finished)["status"] == "completed"

    older = start()
    newer = start()
    assert set(api.SESSIONS) == {older, newer}

    latest = start()
    assert set(api.SESSIONS) == {newer, latest}
    with pytest.raises(HTTPException) as excinfo:
        api.session_state(older)
    assert excinfo.value.status_code == 404
