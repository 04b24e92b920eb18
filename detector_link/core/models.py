from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Optional, Tuple

import numpy as np


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class ModelArchitecture(IntEnum):
    UNKNOWN = 0
    SSD_MOBILENET = 1
    YOLOV8 = 2
    YOLOV5 = 3
    EFFICIENTDET = 4

    @classmethod
    def from_wire(cls, value: int) -> "ModelArchitecture":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class PixelFormat(IntEnum):
    RGB24 = 0

    @property
    def bytes_per_pixel(self) -> int:
        return 3


@dataclass(frozen=True)
class ModelInfo:
    name: str
    description: str
    architecture: ModelArchitecture
    input_width: int
    input_height: int
    num_classes: int
    model_size_bytes: int
    device: str


@dataclass(frozen=True)
class ServerInfo:
    """Handshake outcome. Only ever stored when `accepted` is true."""

    protocol_version: int
    accepted: bool
    model: ModelInfo

    @property
    def model_name(self) -> str:
        return self.model.name

    @property
    def model_input_width(self) -> int:
        return self.model.input_width

    @property
    def model_input_height(self) -> int:
        return self.model.input_height

    @property
    def num_classes(self) -> int:
        return self.model.num_classes


@dataclass
class FrameHeader:
    frame_id: int
    width: int
    height: int
    stride: int
    pixel_format: PixelFormat
    timestamp_ns: int

    @classmethod
    def for_rgb(cls, frame_id: int, width: int, height: int, timestamp_ns: int) -> "FrameHeader":
        fmt = PixelFormat.RGB24
        return cls(
            frame_id=frame_id,
            width=width,
            height=height,
            stride=width * fmt.bytes_per_pixel,
            pixel_format=fmt,
            timestamp_ns=timestamp_ns,
        )

    @property
    def payload_size(self) -> int:
        return self.stride * self.height


@dataclass(frozen=True)
class Detection:
    label: str
    confidence: float
    x: float
    y: float
    width: float
    height: float
    class_id: int = 0

    def to_pixels(self, frame_width: int, frame_height: int) -> Tuple[int, int, int, int]:
        """Normalized box -> (x, y, w, h) in pixels of a frame of the given size."""
        return (
            int(round(self.x * frame_width)),
            int(round(self.y * frame_height)),
            int(round(self.width * frame_width)),
            int(round(self.height * frame_height)),
        )


@dataclass(frozen=True)
class DetectionResult:
    frame_id: int
    inference_time_ms: float
    detections: Tuple[Detection, ...] = ()

    def __len__(self) -> int:
        return len(self.detections)


@dataclass
class CapturedFrame:
    frame_id: int
    width: int
    height: int
    pixels: np.ndarray
    timestamp: float
    source: Optional[str] = field(default=None)
