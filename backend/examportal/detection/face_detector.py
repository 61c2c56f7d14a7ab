import logging
import threading
from typing import Optional

import cv2
import mediapipe as mp
import numpy as np

from ..core.config import settings

logger = logging.getLogger(__name__)


class MediaPipeFaceDetector:
    """
    Counts faces in a BGR frame with MediaPipe face detection.

    One instance is shared by every live session; calls are serialized because
    a MediaPipe graph is not safe to run from several threads at once.
    """

    def __init__(self, model_selection: Optional[int] = None, min_detection_confidence: Optional[float] = None):
        self.model_selection = model_selection if model_selection is not None else settings.face_detection_model
        self.min_detection_confidence = (
            min_detection_confidence if min_detection_confidence is not None else settings.face_detection_confidence
        )
        self._detector = None
        self._lock = threading.Lock()

    def _get_detector(self):
        if self._detector is None:
            self._detector = mp.solutions.face_detection.FaceDetection(
                model_selection=self.model_selection,
                min_detection_confidence=self.min_detection_confidence,
            )
            logger.info(
                f"MediaPipe face detection loaded (model={self.model_selection}, "
                f"confidence={self.min_detection_confidence})"
            )
        return self._detector

    def estimate_face_count(self, frame: np.ndarray) -> int:
        rgb_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        with self._lock:
            results = self._get_detector().process(rgb_frame)
        detections = results.detections if results and results.detections else []
        return len(detections)

    def close(self):
        with self._lock:
            if self._detector is not None:
                self._detector.close()
                self._detector = None


face_detector = MediaPipeFaceDetector()
