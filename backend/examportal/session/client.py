"""
Browser-side collaborators of an exam session, reached over the session
WebSocket.

The browser streams webcam frames as binary JPEG messages and DOM events as
JSON text messages; the server answers with ``SessionEvent`` JSON. Fullscreen
and camera start/stop are commands the client acknowledges.
"""
import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional, Set

import cv2
import numpy as np

from ..core.config import settings
from ..core.exceptions import CameraUnavailableError, FullscreenDeniedError, InvalidSessionStateError
from ..schemas.session import SessionEvent
from .machine import ExamSession
from .ports import CameraSource

logger = logging.getLogger(__name__)

EventSender = Callable[[SessionEvent], None]


def command(action: str, **data) -> SessionEvent:
    return SessionEvent(type="command", data={"action": action, **data})


class ClientDisplay:
    """Fullscreen control of the student's browser tab"""

    def __init__(self, send: EventSender, ack_timeout: Optional[float] = None):
        self._send = send
        self.ack_timeout = ack_timeout if ack_timeout is not None else settings.fullscreen_ack_timeout
        self._fullscreen = False
        self._pending: Optional[asyncio.Future] = None

    @property
    def is_fullscreen(self) -> bool:
        return self._fullscreen

    async def request_fullscreen(self):
        if self._pending is None or self._pending.done():
            self._pending = asyncio.get_running_loop().create_future()
            self._send(command("enter_fullscreen"))
        pending = self._pending
        try:
            granted = await asyncio.wait_for(asyncio.shield(pending), timeout=self.ack_timeout)
        except asyncio.TimeoutError:
            raise FullscreenDeniedError("The browser did not confirm fullscreen mode")
        if not granted:
            raise FullscreenDeniedError("Fullscreen mode was denied by the browser")
        self._fullscreen = True

    async def exit_fullscreen(self):
        self._fullscreen = False
        self._send(command("exit_fullscreen"))

    def resolve_request(self, granted: bool):
        if self._pending is not None and not self._pending.done():
            self._pending.set_result(granted)

    def report_state(self, is_fullscreen: bool) -> bool:
        """Record a fullscreenchange event; returns True when the state changed"""
        changed = is_fullscreen != self._fullscreen
        self._fullscreen = is_fullscreen
        return changed


class ClientFrameCamera:
    """Camera source fed by JPEG frames the browser pushes over the socket"""

    def __init__(
        self,
        send: EventSender,
        ready_timeout: Optional[float] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ):
        self._send = send
        self.ready_timeout = ready_timeout if ready_timeout is not None else settings.camera_ready_timeout
        self.width = width or settings.camera_frame_width
        self.height = height or settings.camera_frame_height
        self._frame: Optional[np.ndarray] = None
        self._first_frame = asyncio.Event()
        self._denied: Optional[str] = None
        self._released = False

    async def open(self):
        self._send(command("start_camera", width=self.width, height=self.height))
        try:
            await asyncio.wait_for(self._first_frame.wait(), timeout=self.ready_timeout)
        except asyncio.TimeoutError:
            raise CameraUnavailableError("No video received from the camera")
        if self._denied is not None:
            raise CameraUnavailableError(self._denied)

    def push_jpeg(self, data: bytes) -> bool:
        if self._released:
            return False
        frame = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
        if frame is None:
            logger.debug(f"Dropping undecodable frame ({len(data)} bytes)")
            return False
        self._frame = frame
        self._first_frame.set()
        return True

    def report_denied(self, message: Optional[str] = None):
        self._denied = message or "Camera access was denied"
        self._first_frame.set()

    def is_ready(self) -> bool:
        if self._released or self._frame is None:
            return False
        height, width = self._frame.shape[:2]
        return height > 0 and width > 0

    def read_frame(self) -> Optional[np.ndarray]:
        return self._frame

    def release(self):
        if self._released:
            return
        self._released = True
        self._frame = None
        self._send(command("stop_camera"))


class ClientChannel:
    """Dispatches client messages to the exam session"""

    def __init__(self, session: ExamSession, display: ClientDisplay, camera: CameraSource, send: EventSender):
        self.session = session
        self.display = display
        self.camera = camera
        self._send = send
        self._tasks: Set[asyncio.Task] = set()
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "start": self._start,
            "confirm_section": lambda m: self.session.confirm_section(),
            "answer": lambda m: self.session.set_answer(str(m["question_id"]), str(m.get("value", ""))),
            "navigate": lambda m: self.session.navigate(m["direction"]),
            "jump": lambda m: self.session.jump_to(int(m["index"])),
            "advance": lambda m: self.session.advance(),
            "submit": lambda m: self.session.request_submit(confirm=bool(m.get("confirm", False))),
            "retry_submit": self._retry_submit,
            "fullscreen_result": lambda m: self.display.resolve_request(bool(m.get("granted"))),
            "fullscreen_change": self._fullscreen_change,
            "visibility_change": lambda m: self.session.monitor.on_visibility_change(bool(m.get("hidden"))),
            "clipboard": lambda m: self.session.monitor.on_clipboard(str(m.get("action", ""))),
            "camera_error": self._camera_error,
            "snapshot": lambda m: self._send(SessionEvent(type="state", data=self.session.snapshot().model_dump(mode="json"))),
        }

    async def handle_text(self, raw: str):
        try:
            message = json.loads(raw)
        except ValueError:
            self._error("Malformed message")
            return
        if not isinstance(message, dict):
            self._error("Malformed message")
            return

        handler = self._handlers.get(message.get("type"))
        if handler is None:
            self._error(f"Unknown message type: {message.get('type')}")
            return

        try:
            handler(message)
        except (KeyError, ValueError, TypeError) as e:
            self._error(f"Invalid {message.get('type')} message: {e}")
        except InvalidSessionStateError as e:
            self._error(e.message)

    async def handle_bytes(self, data: bytes):
        if isinstance(self.camera, ClientFrameCamera):
            self.camera.push_jpeg(data)
        else:
            logger.debug(f"Ignoring client frame ({len(data)} bytes), the camera is local")

    def _camera_error(self, message: Dict[str, Any]):
        if isinstance(self.camera, ClientFrameCamera):
            self.camera.report_denied(message.get("message"))

    def _fullscreen_change(self, message: Dict[str, Any]):
        is_fullscreen = bool(message.get("is_fullscreen"))
        if self.display.report_state(is_fullscreen):
            self.session.monitor.on_fullscreen_change(is_fullscreen)

    # Start and retry wait on the client (frames, acknowledgements), so they
    # run beside the receive loop instead of inside it

    def _start(self, message: Dict[str, Any]):
        self._spawn(self.session.start())

    def _retry_submit(self, message: Dict[str, Any]):
        self._spawn(self.session.retry_submit())

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, (CameraUnavailableError, FullscreenDeniedError)):
            return
        if isinstance(error, InvalidSessionStateError):
            self._error(error.message)
        elif error is not None:
            logger.error(f"Session operation failed: {error}", exc_info=error)
            self._error("Unexpected error in exam session")

    def _error(self, message: str):
        self._send(SessionEvent(type="error", data={"message": message, "fatal": False}))

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.session.close()
