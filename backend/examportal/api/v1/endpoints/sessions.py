from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from typing import Dict, Optional, Tuple
import asyncio
import logging

from ....core.cache import cache
from ....core.database import AsyncSessionLocal
from ....core.exceptions import NotAuthenticatedError
from ....core.security import verify_token
from ....core.config import settings
from ....detection.camera import OpenCVCamera
from ....detection.face_detector import face_detector
from ....schemas.exam import ExamStatus
from ....schemas.session import SessionEvent
from ....schemas.user import UserRole
from ....services.exam_service import SqlExamRepository, derive_status
from ....services.identity_service import TokenIdentityProvider
from ....services.media_service import media_storage
from ....session.client import ClientChannel, ClientDisplay, ClientFrameCamera
from ....session.machine import ExamSession

logger = logging.getLogger(__name__)

router = APIRouter()

# WebSocket close codes
CLOSE_UNAUTHENTICATED = 4401
CLOSE_FORBIDDEN = 4403
CLOSE_NOT_FOUND = 4404
CLOSE_DUPLICATE = 4409

SessionKey = Tuple[str, str]


class SessionRegistry:
    """Live sessions of this process, at most one per (exam, student)"""

    def __init__(self):
        self._sessions: Dict[SessionKey, Optional[ExamSession]] = {}

    def claim(self, exam_id: str, student_id: str) -> bool:
        key = (exam_id, student_id)
        if key in self._sessions:
            return False
        self._sessions[key] = None
        return True

    def attach(self, exam_id: str, student_id: str, session: ExamSession):
        self._sessions[(exam_id, student_id)] = session

    def get(self, exam_id: str, student_id: str) -> Optional[ExamSession]:
        return self._sessions.get((exam_id, student_id))

    def release(self, exam_id: str, student_id: str):
        self._sessions.pop((exam_id, student_id), None)

    def __len__(self) -> int:
        return len(self._sessions)


registry = SessionRegistry()


def get_exam_repository() -> SqlExamRepository:
    return SqlExamRepository(AsyncSessionLocal, cache)


def get_face_detector():
    return face_detector


def get_media_sink():
    return media_storage


def build_camera(send):
    if settings.camera_source == "local":
        return OpenCVCamera()
    return ClientFrameCamera(send)


@router.websocket("/{exam_id}/ws")
async def exam_session_ws(
    websocket: WebSocket,
    exam_id: str,
    token: str = Query(...),
    repository=Depends(get_exam_repository),
    detector=Depends(get_face_detector),
    media_sink=Depends(get_media_sink),
):
    """Live exam session: JSON events and JPEG webcam frames in, session events out"""
    await websocket.accept()

    try:
        user = verify_token(token)
    except NotAuthenticatedError as e:
        logger.warning(f"Rejected exam session for {exam_id}: {e.message}")
        await websocket.close(code=CLOSE_UNAUTHENTICATED)
        return
    if user.role != UserRole.STUDENT:
        await websocket.close(code=CLOSE_FORBIDDEN)
        return

    exam = await repository.fetch_exam(exam_id)
    if exam is None:
        await websocket.close(code=CLOSE_NOT_FOUND)
        return
    if user.id not in exam.assigned_students:
        logger.warning(f"Student {user.id} is not assigned to exam {exam_id}")
        await websocket.close(code=CLOSE_FORBIDDEN)
        return
    if derive_status(exam.status, exam.start_time, exam.end_time) != ExamStatus.ACTIVE:
        await websocket.close(code=CLOSE_FORBIDDEN)
        return
    if not registry.claim(exam_id, user.id):
        logger.warning(f"Student {user.id} already has a live session for exam {exam_id}")
        await websocket.close(code=CLOSE_DUPLICATE)
        return

    outbox: asyncio.Queue = asyncio.Queue()
    send = outbox.put_nowait

    async def pump():
        while True:
            event: SessionEvent = await outbox.get()
            await websocket.send_json(event.model_dump(mode="json"))

    channel: Optional[ClientChannel] = None
    sender: Optional[asyncio.Task] = None
    try:
        display = ClientDisplay(send)
        camera = build_camera(send)
        session = ExamSession(
            exam,
            repository,
            identity=TokenIdentityProvider(token),
            camera=camera,
            detector=detector,
            display=display,
            media_sink=media_sink,
            listener=send,
        )
        channel = ClientChannel(session, display, camera, send)
        registry.attach(exam_id, user.id, session)

        sender = asyncio.create_task(pump())
        send(SessionEvent(type="state", data=session.snapshot().model_dump(mode="json")))
        logger.info(f"Exam session opened: exam={exam_id} student={user.id}")

        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            if message.get("text") is not None:
                await channel.handle_text(message["text"])
            elif message.get("bytes") is not None:
                await channel.handle_bytes(message["bytes"])
    except WebSocketDisconnect:
        pass
    finally:
        try:
            if channel is not None:
                await channel.close()
            if sender is not None:
                sender.cancel()
                await asyncio.gather(sender, return_exceptions=True)
        finally:
            registry.release(exam_id, user.id)
        logger.info(f"Exam session closed: exam={exam_id} student={user.id}")
