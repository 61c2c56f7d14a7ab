"""
Collaborators the exam session depends on.

The session never talks to the database, the media host, the webcam or the
browser directly; it goes through these interfaces so it can run against
the WebSocket client in production and against fakes in tests.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from ..schemas.exam import Exam
from ..schemas.submission import ExamWarning, Submission


class ExamRepository(Protocol):
    async def fetch_exam(self, exam_id: str) -> Optional[Exam]:
        ...

    async def submit_attempt(
        self,
        exam_id: str,
        student_id: str,
        answers: Dict[str, str],
        warning_count: int,
        warnings: List[ExamWarning],
        start_time: datetime,
        end_time: datetime,
        time_taken: int,
    ) -> Submission:
        ...


class MediaSink(Protocol):
    async def store(self, image_bytes: bytes) -> str:
        ...


class IdentityProvider(Protocol):
    async def current_student_id(self) -> str:
        ...


class FaceDetector(Protocol):
    def estimate_face_count(self, frame: Any) -> int:
        ...


class CameraSource(Protocol):
    async def open(self) -> None:
        ...

    def is_ready(self) -> bool:
        ...

    def read_frame(self) -> Optional[Any]:
        ...

    def release(self) -> None:
        ...


class DisplayController(Protocol):
    @property
    def is_fullscreen(self) -> bool:
        ...

    async def request_fullscreen(self) -> None:
        ...

    async def exit_fullscreen(self) -> None:
        ...
