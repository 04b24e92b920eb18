"""Wire and shared-memory layouts spoken with the detector service.

Every message is fixed-size, native byte order, no padding (``struct`` prefix
``=``) and starts with a ``u32`` type tag. There is no length prefix: the tag
alone determines how many bytes follow.

Shared memory region (``SHM_SIZE`` bytes)::

    offset 0   u64 frame_id
    offset 8   u32 width
    offset 12  u32 height
    offset 16  u32 stride            (width * 3 for RGB24)
    offset 20  u32 pixel format      (0 = RGB24)
    offset 24  u64 timestamp_ns
    offset 32  zero padding up to FRAME_HEADER_SIZE
    offset 64  row-major pixels, at most MAX_FRAME_SIZE bytes
"""

from __future__ import annotations

import math
import struct
from enum import IntEnum
from typing import Dict, Iterable, Tuple

from detector_link.core.errors import ProtocolError
from detector_link.core.models import (
    Detection,
    DetectionResult,
    FrameHeader,
    ModelArchitecture,
    ModelInfo,
    PixelFormat,
    ServerInfo,
)

PROTOCOL_VERSION = 1

SOCKET_PATH = "/tmp/vision_detector.sock"
SHM_NAME = "/vision_detector_frames"

MAX_FRAME_WIDTH = 1920
MAX_FRAME_HEIGHT = 1080
BYTES_PER_PIXEL = 3
MAX_FRAME_SIZE = MAX_FRAME_WIDTH * MAX_FRAME_HEIGHT * BYTES_PER_PIXEL

FRAME_HEADER_SIZE = 64
SHM_SIZE = FRAME_HEADER_SIZE + MAX_FRAME_SIZE

MAX_DETECTIONS = 32
LABEL_SIZE = 32
MODEL_NAME_SIZE = 64
MODEL_DESCRIPTION_SIZE = 128
DEVICE_SIZE = 32

# Upper bound of bytes thrown away when an unknown tag shows up
DISCARD_CHUNK_SIZE = 4096


class MessageType(IntEnum):
    HANDSHAKE_REQUEST = 1
    HANDSHAKE_RESPONSE = 2
    FRAME_READY = 3
    DETECTION_RESULT = 4
    HEARTBEAT = 5  # request and reply
    SHUTDOWN = 6


TYPE_TAG = struct.Struct("=I")

FRAME_HEADER = struct.Struct(
    "="
    "Q"  # frame id
    "I"  # width
    "I"  # height
    "I"  # stride
    "I"  # pixel format
    "Q"  # timestamp ns
)
HANDSHAKE_REQUEST = struct.Struct("=IIII")  # type, version, max width, max height

MODEL_INFO_FORMAT = (
    f"{MODEL_NAME_SIZE}s"
    f"{MODEL_DESCRIPTION_SIZE}s"
    "I"  # architecture
    "I"  # input width
    "I"  # input height
    "I"  # num classes
    "Q"  # model size bytes
    f"{DEVICE_SIZE}s"
)
HANDSHAKE_RESPONSE = struct.Struct("=III" + MODEL_INFO_FORMAT)  # type, version, accepted, model

HEARTBEAT = struct.Struct("=IQ")  # type, timestamp ns
FRAME_READY = struct.Struct("=IQIIQ")  # type, frame id, width, height, timestamp ns
SHUTDOWN = struct.Struct("=I")

DETECTION = struct.Struct(f"=I{LABEL_SIZE}sfffff")  # class id, label, confidence, x, y, w, h
DETECTION_RESULT_HEAD = struct.Struct("=IQfI")  # type, frame id, inference ms, count
DETECTION_RESULT_SIZE = DETECTION_RESULT_HEAD.size + MAX_DETECTIONS * DETECTION.size

MESSAGE_SIZES: Dict[int, int] = {
    MessageType.HANDSHAKE_REQUEST: HANDSHAKE_REQUEST.size,
    MessageType.HANDSHAKE_RESPONSE: HANDSHAKE_RESPONSE.size,
    MessageType.FRAME_READY: FRAME_READY.size,
    MessageType.DETECTION_RESULT: DETECTION_RESULT_SIZE,
    MessageType.HEARTBEAT: HEARTBEAT.size,
    MessageType.SHUTDOWN: SHUTDOWN.size,
}


def message_size(tag: int) -> int | None:
    return MESSAGE_SIZES.get(tag)


def peek_type(data: bytes) -> int:
    if len(data) < TYPE_TAG.size:
        raise ProtocolError(f"Message too short for a type tag ({len(data)} bytes)")
    return TYPE_TAG.unpack_from(data, 0)[0]


def _encode_str(value: str, size: int) -> bytes:
    # Keep room for the NUL terminator the C side expects
    return value.encode("utf-8")[: size - 1]


def _decode_str(raw: bytes) -> str:
    return raw.split(b"\0", 1)[0].decode("utf-8", errors="replace")


def _clamp_unit(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, value))


def _check(data: bytes, layout: struct.Struct, expected: MessageType, what: str) -> None:
    if len(data) != layout.size:
        raise ProtocolError(f"Invalid {what}: expected {layout.size} bytes, got {len(data)}")
    tag = peek_type(data)
    if tag != expected:
        raise ProtocolError(f"Unexpected message type in {what}: {tag} (expected {int(expected)})")


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------
def encode_handshake_request(
    version: int = PROTOCOL_VERSION,
    max_width: int = MAX_FRAME_WIDTH,
    max_height: int = MAX_FRAME_HEIGHT,
) -> bytes:
    return HANDSHAKE_REQUEST.pack(MessageType.HANDSHAKE_REQUEST, version, max_width, max_height)


def decode_handshake_request(data: bytes) -> Tuple[int, int, int]:
    """Returns (version, max_width, max_height)."""
    _check(data, HANDSHAKE_REQUEST, MessageType.HANDSHAKE_REQUEST, "handshake request")
    _, version, max_width, max_height = HANDSHAKE_REQUEST.unpack(data)
    return version, max_width, max_height


def encode_handshake_response(info: ServerInfo) -> bytes:
    model = info.model
    return HANDSHAKE_RESPONSE.pack(
        MessageType.HANDSHAKE_RESPONSE,
        info.protocol_version,
        1 if info.accepted else 0,
        _encode_str(model.name, MODEL_NAME_SIZE),
        _encode_str(model.description, MODEL_DESCRIPTION_SIZE),
        int(model.architecture),
        model.input_width,
        model.input_height,
        model.num_classes,
        model.model_size_bytes,
        _encode_str(model.device, DEVICE_SIZE),
    )


def decode_handshake_response(data: bytes) -> ServerInfo:
    _check(data, HANDSHAKE_RESPONSE, MessageType.HANDSHAKE_RESPONSE, "handshake response")
    (
        _,
        version,
        accepted,
        name,
        description,
        architecture,
        input_width,
        input_height,
        num_classes,
        model_size_bytes,
        device,
    ) = HANDSHAKE_RESPONSE.unpack(data)
    return ServerInfo(
        protocol_version=version,
        accepted=bool(accepted),
        model=ModelInfo(
            name=_decode_str(name),
            description=_decode_str(description),
            architecture=ModelArchitecture.from_wire(architecture),
            input_width=input_width,
            input_height=input_height,
            num_classes=num_classes,
            model_size_bytes=model_size_bytes,
            device=_decode_str(device),
        ),
    )


# ---------------------------------------------------------------------------
# Heartbeat / shutdown
# ---------------------------------------------------------------------------
def encode_heartbeat(timestamp_ns: int) -> bytes:
    return HEARTBEAT.pack(MessageType.HEARTBEAT, timestamp_ns)


def decode_heartbeat(data: bytes) -> int:
    _check(data, HEARTBEAT, MessageType.HEARTBEAT, "heartbeat")
    return HEARTBEAT.unpack(data)[1]


def encode_shutdown() -> bytes:
    return SHUTDOWN.pack(MessageType.SHUTDOWN)


# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------
def encode_frame_header(header: FrameHeader) -> bytes:
    packed = FRAME_HEADER.pack(
        header.frame_id,
        header.width,
        header.height,
        header.stride,
        int(header.pixel_format),
        header.timestamp_ns,
    )
    return packed.ljust(FRAME_HEADER_SIZE, b"\0")


def decode_frame_header(data: bytes) -> FrameHeader:
    if len(data) < FRAME_HEADER.size:
        raise ProtocolError(f"Frame header needs {FRAME_HEADER.size} bytes, got {len(data)}")
    frame_id, width, height, stride, fmt, timestamp_ns = FRAME_HEADER.unpack_from(data, 0)
    try:
        pixel_format = PixelFormat(fmt)
    except ValueError as e:
        raise ProtocolError(f"Unknown pixel format tag: {fmt}") from e
    return FrameHeader(
        frame_id=frame_id,
        width=width,
        height=height,
        stride=stride,
        pixel_format=pixel_format,
        timestamp_ns=timestamp_ns,
    )


def encode_frame_ready(header: FrameHeader) -> bytes:
    return FRAME_READY.pack(
        MessageType.FRAME_READY,
        header.frame_id,
        header.width,
        header.height,
        header.timestamp_ns,
    )


def decode_frame_ready(data: bytes) -> Tuple[int, int, int, int]:
    """Returns (frame_id, width, height, timestamp_ns)."""
    _check(data, FRAME_READY, MessageType.FRAME_READY, "frame ready notification")
    _, frame_id, width, height, timestamp_ns = FRAME_READY.unpack(data)
    return frame_id, width, height, timestamp_ns


# ---------------------------------------------------------------------------
# Detection results
# ---------------------------------------------------------------------------
def encode_detection_result(frame_id: int, inference_time_ms: float, detections: Iterable[Detection]) -> bytes:
    items = list(detections)
    if len(items) > MAX_DETECTIONS:
        raise ProtocolError(f"Too many detections: {len(items)} > {MAX_DETECTIONS}")

    buf = bytearray(DETECTION_RESULT_SIZE)
    DETECTION_RESULT_HEAD.pack_into(
        buf, 0, MessageType.DETECTION_RESULT, frame_id, inference_time_ms, len(items)
    )
    offset = DETECTION_RESULT_HEAD.size
    for det in items:
        DETECTION.pack_into(
            buf,
            offset,
            det.class_id,
            _encode_str(det.label, LABEL_SIZE),
            det.confidence,
            det.x,
            det.y,
            det.width,
            det.height,
        )
        offset += DETECTION.size
    return bytes(buf)


def decode_detection_result(data: bytes) -> DetectionResult:
    if len(data) != DETECTION_RESULT_SIZE:
        raise ProtocolError(
            f"Invalid detection result: expected {DETECTION_RESULT_SIZE} bytes, got {len(data)}"
        )
    tag, frame_id, inference_time_ms, count = DETECTION_RESULT_HEAD.unpack_from(data, 0)
    if tag != MessageType.DETECTION_RESULT:
        raise ProtocolError(f"Unexpected message type in detection result: {tag}")
    if count > MAX_DETECTIONS:
        raise ProtocolError(f"Detection count {count} exceeds protocol maximum {MAX_DETECTIONS}")

    detections = []
    offset = DETECTION_RESULT_HEAD.size
    for _ in range(count):
        class_id, label, confidence, x, y, w, h = DETECTION.unpack_from(data, offset)
        detections.append(
            Detection(
                label=_decode_str(label),
                confidence=_clamp_unit(confidence),
                x=_clamp_unit(x),
                y=_clamp_unit(y),
                width=_clamp_unit(w),
                height=_clamp_unit(h),
                class_id=class_id,
            )
        )
        offset += DETECTION.size

    return DetectionResult(
        frame_id=frame_id,
        inference_time_ms=inference_time_ms,
        detections=tuple(detections),
    )
