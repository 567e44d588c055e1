"""Camera frame capture: centered square crop, JPEG encode, OpenCV source."""

from __future__ import annotations

import logging
import threading
from typing import Optional, Union

import cv2
import numpy as np

from coverscan.errors import FetchError

LOGGER = logging.getLogger("coverscan.capture")


def center_square_crop(frame: np.ndarray, fraction: float = 0.75) -> np.ndarray:
    """Return the centered square covering ``fraction`` of the shorter side."""
    if frame is None or frame.ndim < 2 or frame.size == 0:
        raise ValueError("Empty frame")
    if not 0.0 < fraction <= 1.0:
        raise ValueError(f"fraction must be within (0, 1] (got {fraction})")
    height, width = frame.shape[:2]
    size = max(1, int(min(height, width) * fraction))
    y0 = (height - size) // 2
    x0 = (width - size) // 2
    return frame[y0 : y0 + size, x0 : x0 + size]


def encode_jpeg(frame: np.ndarray, quality: int = 80) -> bytes:
    ok, buffer = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buffer.tobytes()


class VideoCaptureFrameSource:
    """Frame source reading the latest camera frame through OpenCV."""

    def __init__(
        self,
        device: Union[int, str] = 0,
        crop_fraction: float = 0.75,
        jpeg_quality: int = 80,
        capture: Optional["cv2.VideoCapture"] = None,
    ) -> None:
        self.device = device
        self.crop_fraction = crop_fraction
        self.jpeg_quality = jpeg_quality
        self._capture = capture
        self._lock = threading.Lock()

    def _ensure_open(self) -> "cv2.VideoCapture":
        if self._capture is None:
            LOGGER.info("Opening camera %s", self.device)
            self._capture = cv2.VideoCapture(self.device)
        if not self._capture.isOpened():
            raise FetchError(f"Camera {self.device} is not available")
        return self._capture

    def capture(self) -> bytes:
        """Grab one frame, crop it to the sleeve overlay, return JPEG bytes."""
        with self._lock:
            capture = self._ensure_open()
            ok, frame = capture.read()
        if not ok or frame is None:
            raise FetchError(f"Camera {self.device} returned no frame")
        cropped = center_square_crop(frame, self.crop_fraction)
        return encode_jpeg(cropped, self.jpeg_quality)

    def release(self) -> None:
        with self._lock:
            if self._capture is not None:
                self._capture.release()
                self._capture = None
