import asyncio
import logging
from typing import Any, Callable, Optional

import cv2

from ..core.exceptions import CameraUnavailableError, FullscreenDeniedError
from ..schemas.session import SessionState, STARTED_STATES
from ..schemas.submission import WarningType
from .ports import CameraSource, DisplayController, FaceDetector, MediaSink

logger = logging.getLogger(__name__)

CLIPBOARD_ACTIONS = ("copy", "cut", "paste")
JPEG_QUALITY = 80


class IntegrityMonitor:
    """
    Camera lifecycle, face sampling and fullscreen/visibility/clipboard
    enforcement for one exam session.

    The monitor never decides what a violation means for the session. It
    reports each one through ``on_violation(warning_type, frame)`` and reads
    the current session state through ``state_provider``; every handler is a
    no-op outside the states in which its rule applies.
    """

    def __init__(
        self,
        camera: CameraSource,
        detector: FaceDetector,
        display: DisplayController,
        media_sink: MediaSink,
        state_provider: Callable[[], SessionState],
        on_violation: Callable[[WarningType, Optional[Any]], None],
        on_notice: Optional[Callable[[str], None]] = None,
        sample_interval: float = 5.0,
    ):
        self.camera = camera
        self.detector = detector
        self.display = display
        self.media_sink = media_sink
        self.state_provider = state_provider
        self.on_violation = on_violation
        self.on_notice = on_notice
        self.sample_interval = sample_interval

        self._camera_acquired = False
        self._released = False
        self._sampling_task: Optional[asyncio.Task] = None
        self._sample_in_flight: Optional[asyncio.Task] = None
        self._reentry_task: Optional[asyncio.Task] = None

    @property
    def camera_acquired(self) -> bool:
        return self._camera_acquired

    @property
    def sampling(self) -> bool:
        return self._sampling_task is not None

    async def acquire_camera(self):
        """Open the camera once per session; there is no retry"""
        if self._camera_acquired:
            return
        try:
            await self.camera.open()
        except CameraUnavailableError:
            raise
        except Exception as e:
            logger.error(f"Camera acquisition failed: {e}")
            raise CameraUnavailableError(f"Camera access is required to take this exam: {e}") from e
        self._camera_acquired = True
        logger.info("Camera acquired")

    async def enter_fullscreen(self):
        try:
            await self.display.request_fullscreen()
        except FullscreenDeniedError:
            raise
        except Exception as e:
            logger.error(f"Fullscreen request failed: {e}")
            raise FullscreenDeniedError(f"Fullscreen mode is required to take this exam: {e}") from e

    async def exit_fullscreen(self):
        if not self.display.is_fullscreen:
            return
        try:
            await self.display.exit_fullscreen()
        except Exception as e:
            logger.warning(f"Could not exit fullscreen: {e}")

    # Face sampling

    def start_sampling(self):
        if self._sampling_task is None and not self._released:
            self._sampling_task = asyncio.create_task(self._sampling_loop())
            logger.info(f"Face sampling started (every {self.sample_interval}s)")

    def stop_sampling(self):
        if self._sampling_task is not None:
            self._sampling_task.cancel()
            self._sampling_task = None
        if self._sample_in_flight is not None and not self._sample_in_flight.done():
            self._sample_in_flight.cancel()
        self._sample_in_flight = None

    async def _sampling_loop(self):
        while True:
            await asyncio.sleep(self.sample_interval)
            if self._sample_in_flight is not None and not self._sample_in_flight.done():
                logger.debug("Previous face sample still running, skipping this interval")
                continue
            if self.state_provider() != SessionState.ANSWERING:
                continue
            self._sample_in_flight = asyncio.create_task(self.sample_once())

    async def sample_once(self) -> Optional[int]:
        """
        Take one face sample and report a violation when the face count is
        not exactly one. Returns the count used, or None when no sample was
        taken.
        """
        if self.state_provider() != SessionState.ANSWERING:
            return None
        if not self.camera.is_ready():
            return None

        frame = self.camera.read_frame()
        if frame is None:
            return None

        try:
            count = await asyncio.to_thread(self.detector.estimate_face_count, frame)
        except Exception as e:
            logger.warning(f"Face detection failed, treating sample as one face: {e}")
            count = 1

        # The session may have closed while the detector was running
        if self.state_provider() != SessionState.ANSWERING:
            return count

        if count == 0:
            self.on_violation(WarningType.NO_FACE, frame)
        elif count > 1:
            self.on_violation(WarningType.MULTIPLE_FACES, frame)
        return count

    # Browser events

    def on_fullscreen_change(self, is_fullscreen: bool):
        if is_fullscreen or self.state_provider() not in STARTED_STATES:
            return
        self.on_violation(WarningType.FULLSCREEN_EXIT, None)
        if self.state_provider() in STARTED_STATES:
            self._reentry_task = asyncio.create_task(self._reenter_fullscreen())

    async def _reenter_fullscreen(self):
        try:
            await self.display.request_fullscreen()
        except Exception as e:
            logger.warning(f"Automatic fullscreen re-entry failed: {e}")

    def on_visibility_change(self, hidden: bool):
        if hidden and self.state_provider() == SessionState.ANSWERING:
            self.on_violation(WarningType.TAB_SWITCH, None)

    def on_clipboard(self, action: str) -> bool:
        """Clipboard actions are always cancelled; returns True when one was blocked"""
        if action not in CLIPBOARD_ACTIONS:
            return False
        if self.on_notice:
            self.on_notice(f"{action.capitalize()} is disabled during the exam")
        return True

    # Warning snapshots

    def latest_frame(self) -> Optional[Any]:
        try:
            return self.camera.read_frame()
        except Exception as e:
            logger.warning(f"Could not read a frame from the camera: {e}")
            return None

    async def capture_warning_image(self, frame: Optional[Any] = None) -> Optional[str]:
        """Encode a frame as JPEG and upload it; returns None on any failure"""
        try:
            if frame is None:
                frame = self.latest_frame()
            if frame is None:
                return None
            ok, buffer = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), JPEG_QUALITY])
            if not ok:
                logger.warning("Could not encode warning snapshot")
                return None
            return await self.media_sink.store(buffer.tobytes())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Warning snapshot capture failed: {e}")
            return None

    def release(self):
        if self._released:
            return
        self._released = True
        self.stop_sampling()
        if self._reentry_task is not None and not self._reentry_task.done():
            self._reentry_task.cancel()
        self._reentry_task = None
        if self._camera_acquired:
            try:
                self.camera.release()
            except Exception as e:
                logger.warning(f"Camera release failed: {e}")
        logger.info("Integrity monitor released")
