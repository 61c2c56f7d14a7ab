import asyncio
import logging
from typing import Optional

import cv2
import numpy as np

from ..core.config import settings
from ..core.exceptions import CameraUnavailableError

logger = logging.getLogger(__name__)


class OpenCVCamera:
    """Camera source backed by a local webcam, for kiosk-style exam stations"""

    def __init__(self, index: Optional[int] = None, width: Optional[int] = None, height: Optional[int] = None):
        self.index = settings.camera_index if index is None else index
        self.width = width or settings.camera_frame_width
        self.height = height or settings.camera_frame_height
        self._capture: Optional[cv2.VideoCapture] = None

    async def open(self):
        if self._capture is not None:
            return
        self._capture = await asyncio.to_thread(self._open_capture)

    def _open_capture(self) -> cv2.VideoCapture:
        capture = cv2.VideoCapture(self.index)
        if not capture.isOpened():
            capture.release()
            raise CameraUnavailableError(f"Could not open camera {self.index}")
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        logger.info(f"Camera {self.index} opened at {self.width}x{self.height}")
        return capture

    def is_ready(self) -> bool:
        if self._capture is None or not self._capture.isOpened():
            return False
        width = self._capture.get(cv2.CAP_PROP_FRAME_WIDTH)
        height = self._capture.get(cv2.CAP_PROP_FRAME_HEIGHT)
        return width > 0 and height > 0

    def read_frame(self) -> Optional[np.ndarray]:
        if self._capture is None:
            return None
        ok, frame = self._capture.read()
        return frame if ok else None

    def release(self):
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info(f"Camera {self.index} released")
