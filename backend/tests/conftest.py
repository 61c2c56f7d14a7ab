import os
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="examportal-tests-")

# Settings are read at import time, so the environment is prepared first
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_TEST_DIR, 'examportal.db')}"
os.environ["CACHE_ENABLED"] = "false"
os.environ["UPLOAD_BASE_DIR"] = _TEST_DIR

import asyncio
from datetime import timedelta
from typing import Any, Dict, List, Optional

import numpy as np
import pytest

from examportal.core.exceptions import CameraUnavailableError, ExamNotFoundError, FullscreenDeniedError
from examportal.schemas.exam import Exam
from examportal.schemas.session import SessionEvent
from examportal.services.scoring import build_submission
from examportal.session.machine import ExamSession
from examportal.utils.timezone import utc_now

NO_WAIT = 3600.0


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeRepository:
    def __init__(self, exam: Optional[Exam] = None, failures: int = 0):
        self.exam = exam
        self.failures = failures
        self.calls: List[Dict[str, Any]] = []
        self.submissions = []

    async def fetch_exam(self, exam_id):
        if self.exam is not None and self.exam.id == exam_id:
            return self.exam
        return None

    async def submit_attempt(self, exam_id, student_id, answers, warning_count, warnings,
                             start_time, end_time, time_taken):
        self.calls.append({
            "exam_id": exam_id,
            "student_id": student_id,
            "answers": answers,
            "warning_count": warning_count,
            "warnings": warnings,
            "time_taken": time_taken,
        })
        if self.exam is None or self.exam.id != exam_id:
            raise ExamNotFoundError(exam_id)
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("database unavailable")
        submission = build_submission(
            self.exam, student_id, answers, warning_count, warnings, start_time, end_time, time_taken
        )
        self.submissions.append(submission)
        return submission


class FakeIdentity:
    def __init__(self, student_id: str = "student-1", error: Optional[Exception] = None):
        self.student_id = student_id
        self.error = error

    async def current_student_id(self):
        if self.error is not None:
            raise self.error
        return self.student_id


class FakeCamera:
    def __init__(self, fail: bool = False, ready: bool = True):
        self.fail = fail
        self.ready = ready
        self.open_calls = 0
        self.released = 0
        self.frame = np.zeros((48, 64, 3), dtype=np.uint8)

    async def open(self):
        self.open_calls += 1
        if self.fail:
            raise CameraUnavailableError("Camera permission denied")

    def is_ready(self):
        return self.ready and self.released == 0

    def read_frame(self):
        return self.frame if self.released == 0 else None

    def release(self):
        self.released += 1


class FakeDetector:
    def __init__(self, count: int = 1, error: Optional[Exception] = None):
        self.count = count
        self.error = error
        self.calls = 0

    def estimate_face_count(self, frame):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.count


class FakeDisplay:
    def __init__(self, deny: bool = False, delay: float = 0.0):
        self.deny = deny
        self.delay = delay
        self.fullscreen = False
        self.requests = 0
        self.exits = 0

    @property
    def is_fullscreen(self):
        return self.fullscreen

    async def request_fullscreen(self):
        self.requests += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.deny:
            raise FullscreenDeniedError("Fullscreen request denied")
        self.fullscreen = True

    async def exit_fullscreen(self):
        self.exits += 1
        self.fullscreen = False


class FakeMediaSink:
    def __init__(self, error: Optional[Exception] = None, delay: float = 0.0):
        self.error = error
        self.delay = delay
        self.stored: List[bytes] = []

    async def store(self, image_bytes):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.stored.append(image_bytes)
        return f"http://media.test/uploads/warnings/{len(self.stored)}.jpg"


def exam_payload(sections: bool = False, duration: int = 10, warnings_threshold: int = 3, **overrides):
    now = utc_now()
    data = {
        "id": "exam-1",
        "title": "Physics Midterm",
        "subject": "Physics",
        "created_by": "teacher-1",
        "start_time": now - timedelta(hours=1),
        "end_time": now + timedelta(hours=2),
        "duration": duration,
        "assigned_students": ["student-1"],
        "warnings_threshold": warnings_threshold,
    }
    if sections:
        data["sections"] = [
            {
                "id": "s1",
                "name": "Mechanics",
                "time_limit": 5,
                "questions": [
                    {"id": "q1", "type": "multiple-choice", "text": "Unit of force?",
                     "points": 1, "options": ["Newton", "Joule"], "correct_answer": "0"},
                    {"id": "q2", "type": "true-false", "text": "F = ma", "points": 1, "correct_answer": "0"},
                ],
            },
            {
                "id": "s2",
                "name": "Waves",
                "time_limit": 5,
                "questions": [
                    {"id": "q3", "type": "short-answer", "text": "Describe sound",
                     "points": 4, "model_answer": "fast furious loud"},
                ],
            },
        ]
    else:
        data["questions"] = [
            {"id": "q1", "type": "multiple-choice", "text": "Unit of force?",
             "points": 1, "options": ["Newton", "Joule"], "correct_answer": "0"},
            {"id": "q2", "type": "short-answer", "text": "Describe the storm",
             "points": 4, "model_answer": "fast furious loud"},
        ]
    data.update(overrides)
    return data


def make_exam(**kwargs) -> Exam:
    return Exam.model_validate(exam_payload(**kwargs))


class SessionHarness:
    """An ExamSession wired to fakes, with the loops slowed down so tests drive them"""

    def __init__(self, exam: Exam, **overrides):
        self.clock = FakeClock()
        self.repository = overrides.pop("repository", FakeRepository(exam))
        self.identity = overrides.pop("identity", FakeIdentity())
        self.camera = overrides.pop("camera", FakeCamera())
        self.detector = overrides.pop("detector", FakeDetector())
        self.display = overrides.pop("display", FakeDisplay())
        self.media_sink = overrides.pop("media_sink", FakeMediaSink())
        self.events: List[SessionEvent] = []
        options = dict(
            tick_interval=NO_WAIT,
            sample_interval=NO_WAIT,
            low_time_threshold=300,
            snapshot_upload_timeout=1.0,
            clock=self.clock,
        )
        options.update(overrides)
        self.session = ExamSession(
            exam,
            self.repository,
            identity=self.identity,
            camera=self.camera,
            detector=self.detector,
            display=self.display,
            media_sink=self.media_sink,
            listener=self.events.append,
            **options,
        )

    def events_of(self, event_type: str) -> List[SessionEvent]:
        return [event for event in self.events if event.type == event_type]

    def tick_after(self, seconds: float):
        self.clock.advance(seconds)
        self.session.timer.tick()


@pytest.fixture
def exam():
    return make_exam()


@pytest.fixture
def sectioned_exam():
    return make_exam(sections=True, duration=30)


@pytest.fixture
async def harness(exam):
    h = SessionHarness(exam)
    yield h
    await h.session.close()


@pytest.fixture
async def sectioned_harness(sectioned_exam):
    h = SessionHarness(sectioned_exam)
    yield h
    await h.session.close()
