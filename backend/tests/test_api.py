from datetime import timedelta

import cv2
import numpy as np
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from examportal.api.v1.endpoints import sessions
from examportal.core.security import create_access_token
from examportal.main import app
from examportal.utils.timezone import utc_now

from conftest import FakeDetector, FakeMediaSink, exam_payload


def auth(user_id, role):
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


TEACHER = auth("teacher-1", "teacher")
OTHER_TEACHER = auth("teacher-2", "teacher")
STUDENT = auth("student-1", "student")


@pytest.fixture(scope="module")
def client():
    app.dependency_overrides[sessions.get_face_detector] = lambda: FakeDetector(count=1)
    app.dependency_overrides[sessions.get_media_sink] = lambda: FakeMediaSink()
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def create_exam(client, **overrides):
    payload = exam_payload(**overrides)
    payload.pop("id")
    payload.pop("created_by")
    payload["start_time"] = payload["start_time"].isoformat()
    payload["end_time"] = payload["end_time"].isoformat()
    response = client.post("/api/v1/exams", json=payload, headers=TEACHER)
    assert response.status_code == 201, response.text
    return response.json()


def receive_until(ws, predicate, limit=100):
    for _ in range(limit):
        event = ws.receive_json()
        if predicate(event):
            return event
    raise AssertionError("expected event not received")


def is_command(action):
    return lambda event: event["type"] == "command" and event["data"]["action"] == action


def jpeg_frame():
    ok, buffer = cv2.imencode(".jpg", np.zeros((48, 64, 3), dtype=np.uint8))
    assert ok
    return buffer.tobytes()


def test_health(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["services"] == {"database": "healthy", "cache": "disabled"}


def test_requests_need_a_token(client):
    assert client.get("/api/v1/exams").status_code == 401
    assert client.get("/api/v1/exams", headers={"Authorization": "Bearer junk"}).status_code == 401


def test_teacher_creates_and_reads_exam(client):
    exam = create_exam(client)
    assert exam["created_by"] == "teacher-1"
    assert exam["status"] == "active"

    response = client.get(f"/api/v1/exams/{exam['id']}", headers=TEACHER)
    assert response.status_code == 200
    assert response.json()["questions"][0]["correct_answer"] == "0"

    assert client.get(f"/api/v1/exams/{exam['id']}", headers=OTHER_TEACHER).status_code == 403
    assert client.get("/api/v1/exams/missing", headers=TEACHER).status_code == 404


def test_students_cannot_create_exams(client):
    payload = exam_payload()
    payload.pop("id")
    payload.pop("created_by")
    payload["start_time"] = payload["start_time"].isoformat()
    payload["end_time"] = payload["end_time"].isoformat()
    assert client.post("/api/v1/exams", json=payload, headers=STUDENT).status_code == 403


def test_invalid_exam_is_rejected(client):
    payload = exam_payload(questions=[
        {"id": "q1", "type": "multiple-choice", "text": "?", "points": 1, "options": ["a", "b"], "correct_answer": "7"},
    ])
    payload.pop("id")
    payload.pop("created_by")
    payload["start_time"] = payload["start_time"].isoformat()
    payload["end_time"] = payload["end_time"].isoformat()
    assert client.post("/api/v1/exams", json=payload, headers=TEACHER).status_code == 422


def test_student_sees_public_view_of_assigned_exam(client):
    exam = create_exam(client)
    response = client.get(f"/api/v1/exams/{exam['id']}", headers=STUDENT)
    assert response.status_code == 200
    body = response.json()
    assert "correct_answer" not in body["questions"][0]
    assert "model_answer" not in body["questions"][1]
    assert body["max_score"] == 5

    assert client.get(f"/api/v1/exams/{exam['id']}", headers=auth("student-9", "student")).status_code == 403


def test_exam_listings(client):
    exam = create_exam(client, title="Listed")
    student_titles = [e["title"] for e in client.get("/api/v1/exams", headers=STUDENT).json()]
    teacher_exams = client.get("/api/v1/exams", headers=TEACHER).json()
    assert "Listed" in student_titles
    assert exam["id"] in [e["id"] for e in teacher_exams]
    assert client.get("/api/v1/exams", headers=OTHER_TEACHER).json() == []


def test_submissions_endpoints_require_staff(client):
    exam = create_exam(client)
    assert client.get(f"/api/v1/exams/{exam['id']}/submissions", headers=STUDENT).status_code == 403
    assert client.get(f"/api/v1/exams/{exam['id']}/submissions", headers=OTHER_TEACHER).status_code == 403
    assert client.get(f"/api/v1/exams/{exam['id']}/submissions", headers=TEACHER).json() == []
    response = client.post(
        f"/api/v1/exams/{exam['id']}/submissions/student-1/evaluate", json={"scores": {"q2": 1}}, headers=TEACHER
    )
    assert response.status_code == 404


def expect_close(client, path, code):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect(path) as ws:
            ws.receive_json()
    assert exc_info.value.code == code


def test_session_socket_rejections(client):
    exam = create_exam(client)
    student_token = create_access_token("student-1", "student")
    teacher_token = create_access_token("teacher-1", "teacher")
    stranger_token = create_access_token("student-9", "student")

    expect_close(client, f"/api/v1/sessions/{exam['id']}/ws?token=junk", sessions.CLOSE_UNAUTHENTICATED)
    expect_close(client, f"/api/v1/sessions/{exam['id']}/ws?token={teacher_token}", sessions.CLOSE_FORBIDDEN)
    expect_close(client, f"/api/v1/sessions/{exam['id']}/ws?token={stranger_token}", sessions.CLOSE_FORBIDDEN)
    expect_close(client, f"/api/v1/sessions/missing/ws?token={student_token}", sessions.CLOSE_NOT_FOUND)

    now = utc_now()
    upcoming = create_exam(client, start_time=now + timedelta(days=1), end_time=now + timedelta(days=2))
    expect_close(client, f"/api/v1/sessions/{upcoming['id']}/ws?token={student_token}", sessions.CLOSE_FORBIDDEN)


def test_failed_session_setup_frees_the_slot(client, monkeypatch):
    exam = create_exam(client, assigned_students=["student-retry"])
    token = create_access_token("student-retry", "student")
    path = f"/api/v1/sessions/{exam['id']}/ws?token={token}"

    def broken_session(*args, **kwargs):
        raise RuntimeError("session setup failed")

    monkeypatch.setattr(sessions, "ExamSession", broken_session)
    with pytest.raises((RuntimeError, WebSocketDisconnect)):
        with client.websocket_connect(path) as ws:
            ws.receive_json()
    assert sessions.registry.get(exam["id"], "student-retry") is None
    assert len(sessions.registry) == 0

    monkeypatch.undo()
    with client.websocket_connect(path) as ws:
        assert ws.receive_json()["data"]["state"] == "instructions"


def test_one_live_session_per_student(client):
    exam = create_exam(client)
    token = create_access_token("student-1", "student")
    path = f"/api/v1/sessions/{exam['id']}/ws?token={token}"

    with client.websocket_connect(path) as ws:
        assert ws.receive_json()["data"]["state"] == "instructions"
        expect_close(client, path, sessions.CLOSE_DUPLICATE)


def test_live_session_end_to_end(client):
    exam = create_exam(client, assigned_students=["student-ws"])
    token = create_access_token("student-ws", "student")

    with client.websocket_connect(f"/api/v1/sessions/{exam['id']}/ws?token={token}") as ws:
        assert ws.receive_json()["data"]["state"] == "instructions"

        ws.send_json({"type": "clipboard", "action": "copy"})
        notice = receive_until(ws, lambda e: e["type"] == "notice")
        assert notice["data"]["message"] == "Copy is disabled during the exam"

        ws.send_json({"type": "start"})
        receive_until(ws, is_command("start_camera"))
        ws.send_bytes(jpeg_frame())
        receive_until(ws, is_command("enter_fullscreen"))
        ws.send_json({"type": "fullscreen_result", "granted": True})
        receive_until(ws, lambda e: e["type"] == "state" and e["data"]["state"] == "answering")

        ws.send_json({"type": "answer", "question_id": "q1", "value": "0"})
        ws.send_json({"type": "answer", "question_id": "q2", "value": "very fast and furious"})
        ws.send_json({"type": "answer", "question_id": "q404", "value": "x"})
        error = receive_until(ws, lambda e: e["type"] == "error")
        assert "q404" in error["data"]["message"]

        ws.send_json({"type": "submit", "confirm": False})
        submitted = receive_until(ws, lambda e: e["type"] == "submitted")
        submission = submitted["data"]["submission"]
        assert submission["student_id"] == "student-ws"
        assert (submission["score"], submission["max_score"], submission["percentage"]) == (4, 5, 80)
        assert submission["needs_evaluation"] is True

    results = client.get(f"/api/v1/exams/{exam['id']}/submissions", headers=TEACHER).json()
    assert [r["student_id"] for r in results] == ["student-ws"]

    response = client.post(
        f"/api/v1/exams/{exam['id']}/submissions/student-ws/evaluate", json={"scores": {"q2": 2}}, headers=TEACHER
    )
    assert response.status_code == 200
    assert response.json()["percentage"] == 60

    bad = client.post(
        f"/api/v1/exams/{exam['id']}/submissions/student-ws/evaluate", json={"scores": {"q2": 99}}, headers=TEACHER
    )
    assert bad.status_code == 400

    my_results = client.get("/api/v1/exams/results/me", headers=auth("student-ws", "student")).json()
    assert my_results[0]["exam_title"] == "Physics Midterm"
    assert my_results[0]["score"] == 3
    assert len(sessions.registry) == 0
