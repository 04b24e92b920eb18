# detector_link/services/frame_source.py
import time
import logging
from typing import Optional, Protocol

import cv2
import numpy as np

from detector_link.core import protocol
from detector_link.core.config import Settings
from detector_link.core.models import CapturedFrame

logger = logging.getLogger(__name__)


class FrameSource(Protocol):
    """Supplies RGB frames with monotonically increasing frame ids."""

    def read(self) -> Optional[CapturedFrame]:
        ...

    def close(self) -> None:
        ...


def fit_to_protocol(frame: np.ndarray) -> np.ndarray:
    """Downscale (keeping aspect) so the frame fits MAX_FRAME_WIDTH x MAX_FRAME_HEIGHT."""
    height, width = frame.shape[:2]
    scale = min(protocol.MAX_FRAME_WIDTH / width, protocol.MAX_FRAME_HEIGHT / height, 1.0)
    if scale >= 1.0:
        return frame
    size = (max(1, int(width * scale)), max(1, int(height * scale)))
    return cv2.resize(frame, size, interpolation=cv2.INTER_AREA)


class OpenCVFrameSource:
    def __init__(self, source: str, width: int = 0, height: int = 0):
        self.source = source
        self.frame_id = 0

        target = int(source) if source.isdigit() else source
        self.cap = cv2.VideoCapture(target)
        if width and height:
            self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
            self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)

        if not self.cap.isOpened():
            logger.error("Failed to open video source: %s", source)
        else:
            logger.info("Video source opened: %s", source)

    def read(self) -> Optional[CapturedFrame]:
        if self.cap is None or not self.cap.isOpened():
            return None

        ok, bgr = self.cap.read()
        if not ok or bgr is None:
            logger.debug("No frame from %s", self.source)
            return None

        if bgr.ndim == 2:
            rgb = cv2.cvtColor(bgr, cv2.COLOR_GRAY2RGB)
        else:
            rgb = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)
        rgb = np.ascontiguousarray(fit_to_protocol(rgb))

        self.frame_id += 1
        height, width = rgb.shape[:2]
        return CapturedFrame(
            frame_id=self.frame_id,
            width=width,
            height=height,
            pixels=rgb,
            timestamp=time.time(),
            source=self.source,
        )

    def close(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None


class SyntheticFrameSource:
    """Moving gradient pattern, for running without a camera."""

    def __init__(self, width: int = 640, height: int = 480):
        self.width = width
        self.height = height
        self.frame_id = 0

        xs = np.linspace(0, 255, width, dtype=np.float32)
        ys = np.linspace(0, 255, height, dtype=np.float32)
        self._base = np.empty((height, width, 3), dtype=np.uint8)
        self._base[..., 0] = xs[None, :].astype(np.uint8)
        self._base[..., 1] = ys[:, None].astype(np.uint8)
        self._base[..., 2] = 128

    def read(self) -> Optional[CapturedFrame]:
        self.frame_id += 1
        shift = (self.frame_id * 8) % self.width
        pixels = np.roll(self._base, shift, axis=1)
        return CapturedFrame(
            frame_id=self.frame_id,
            width=self.width,
            height=self.height,
            pixels=pixels,
            timestamp=time.time(),
            source="synthetic",
        )

    def close(self) -> None:
        return None


def create_frame_source(settings: Settings) -> Optional[FrameSource]:
    source = (settings.capture_source or "").strip()
    if not source:
        logger.info("Capture disabled (capture_source is empty)")
        return None
    if source.lower() == "synthetic":
        logger.info("Using synthetic frame source %dx%d", settings.capture_width, settings.capture_height)
        return SyntheticFrameSource(settings.capture_width, settings.capture_height)
    return OpenCVFrameSource(source, settings.capture_width, settings.capture_height)
