"""detector_link.services.detection_client

Client side of the detector IPC: a Unix socket for control messages plus a
shared memory region for pixels.

Everything runs on the caller's thread. Public methods never raise for IPC
problems: they return False/None and keep a human readable `last_error`.
Reconnecting is the caller's job (see `detector_link.core.worker`).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from detector_link.core import protocol
from detector_link.core.config import Settings, get_settings
from detector_link.core.errors import (
    DetectorLinkError,
    FrameRejectedError,
    IPCTimeoutError,
    PeerClosedError,
    ProtocolError,
)
from detector_link.core.models import ConnectionState, DetectionResult, FrameHeader, ServerInfo
from detector_link.services.control_channel import ControlChannel
from detector_link.services.shm_buffer import SharedFrameBuffer

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DetectionClientConfig:
    socket_path: str = protocol.SOCKET_PATH
    shm_name: str = protocol.SHM_NAME
    connect_timeout_sec: float = 1.0
    # Advisory: the owning loop decides whether to call connect() again
    auto_reconnect: bool = True
    io_timeout_sec: float = 0.5
    heartbeat_timeout_sec: float = 1.0
    heartbeat_max_attempts: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> "DetectionClientConfig":
        return cls(
            socket_path=settings.socket_path,
            shm_name=settings.shm_name,
            connect_timeout_sec=settings.connect_timeout_sec,
            auto_reconnect=settings.auto_reconnect,
            io_timeout_sec=settings.io_timeout_sec,
            heartbeat_timeout_sec=settings.heartbeat_timeout_sec,
            heartbeat_max_attempts=settings.heartbeat_max_attempts,
        )


class DetectionClient:
    """
    Connection manager for the detector service:
    - Disconnected -> Connecting -> Connected, Error on any failure
    - socket and mapping are acquired together and released together
    - keeps last_error for diagnostics
    """

    def __init__(
        self,
        config: DetectionClientConfig | None = None,
        clock_ns: Callable[[], int] = time.monotonic_ns,
    ):
        self.config = config or DetectionClientConfig()
        self._clock_ns = clock_ns

        self._state = ConnectionState.DISCONNECTED
        self._server_info: Optional[ServerInfo] = None
        self.last_error: Optional[str] = None

        # Results consumed (and dropped) while waiting for a heartbeat reply
        self.dropped_results = 0

        self._channel: Optional[ControlChannel] = None
        self._buffer: Optional[SharedFrameBuffer] = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    def get_state(self) -> ConnectionState:
        return self._state

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def server_info(self) -> Optional[ServerInfo]:
        return self._server_info

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------
    def connect(self) -> bool:
        if self._state is ConnectionState.CONNECTED:
            return True

        # Leftovers from a failed or dropped session
        self._cleanup()
        self._state = ConnectionState.CONNECTING
        log.info("Connecting to detector at %s (shm=%s)", self.config.socket_path, self.config.shm_name)

        try:
            self._channel = ControlChannel(self.config.socket_path, self.config.io_timeout_sec)
            self._channel.open(self.config.connect_timeout_sec)
            self._buffer = SharedFrameBuffer(self.config.shm_name, create=False)
            server_info = self._perform_handshake()
        except DetectorLinkError as e:
            self._fail(ConnectionState.ERROR, str(e))
            return False

        self._server_info = server_info
        self._state = ConnectionState.CONNECTED
        model = server_info.model
        log.info(
            "Connected to detector: %s (%s) input=%dx%d classes=%d device=%s",
            model.name,
            model.architecture.name,
            model.input_width,
            model.input_height,
            model.num_classes,
            model.device or "?",
        )
        return True

    def disconnect(self) -> None:
        if self._state is ConnectionState.CONNECTED and self._channel is not None:
            try:
                self._channel.send(protocol.encode_shutdown(), timeout_sec=self.config.io_timeout_sec)
            except DetectorLinkError as e:
                log.debug("Shutdown notification not delivered: %s", e)

        was = self._state
        self._cleanup()
        self._state = ConnectionState.DISCONNECTED
        if was is not ConnectionState.DISCONNECTED:
            log.info("Disconnected from detector (was %s)", was.value)

    close = disconnect

    def __enter__(self) -> "DetectionClient":
        return self

    def __exit__(self, *exc) -> None:
        self.disconnect()

    def _perform_handshake(self) -> ServerInfo:
        timeout = self.config.connect_timeout_sec
        deadline = time.monotonic() + timeout

        self._channel.send(protocol.encode_handshake_request(), timeout_sec=timeout)

        try:
            data = self._channel.recv_exact(protocol.HANDSHAKE_RESPONSE.size, deadline - time.monotonic())
        except IPCTimeoutError as e:
            raise IPCTimeoutError(f"Handshake timeout after {timeout:.3f}s") from e
        except PeerClosedError as e:
            raise PeerClosedError("Server closed the connection during handshake") from e
        except ProtocolError as e:
            raise ProtocolError(f"Invalid handshake response: {e}") from e

        info = protocol.decode_handshake_response(data)

        if not info.accepted:
            raise ProtocolError(
                f"Handshake rejected by server (protocol version mismatch? "
                f"client={protocol.PROTOCOL_VERSION} server={info.protocol_version})"
            )
        if info.protocol_version != protocol.PROTOCOL_VERSION:
            raise ProtocolError(
                f"Protocol version mismatch: client={protocol.PROTOCOL_VERSION} "
                f"server={info.protocol_version}"
            )
        return info

    # ------------------------------------------------------------------
    # Health check
    # ------------------------------------------------------------------
    def send_heartbeat(self) -> bool:
        """
        Ping the detector and wait for the echo.

        Detection results that arrive before the reply are consumed and
        dropped (counted in `dropped_results`); other traffic is discarded.
        """
        if not self.is_connected():
            self._set_error("Not connected")
            return False

        channel = self._channel
        timeout = self.config.heartbeat_timeout_sec
        try:
            channel.send(protocol.encode_heartbeat(self._clock_ns()))
            deadline = time.monotonic() + timeout

            for _ in range(self.config.heartbeat_max_attempts):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise IPCTimeoutError(f"Heartbeat timeout after {timeout:.3f}s")
                try:
                    tag, _data = channel.read_message(remaining)
                except IPCTimeoutError as e:
                    raise IPCTimeoutError(f"Heartbeat timeout after {timeout:.3f}s") from e

                if tag == protocol.MessageType.HEARTBEAT:
                    log.debug("Heartbeat OK")
                    return True
                if tag == protocol.MessageType.DETECTION_RESULT:
                    self.dropped_results += 1
                    log.debug("Dropped detection result while waiting for heartbeat reply")
                    continue
                log.debug("Discarded message type %s while waiting for heartbeat reply", tag)

            raise ProtocolError(
                f"Invalid heartbeat response: no reply within {self.config.heartbeat_max_attempts} messages"
            )
        except DetectorLinkError as e:
            self._on_io_failure(e, "Heartbeat failed")
            return False

    # ------------------------------------------------------------------
    # Frame processing
    # ------------------------------------------------------------------
    def send_frame(
        self,
        pixels,
        width: int,
        height: int,
        frame_id: int,
        timestamp_ns: int | None = None,
    ) -> bool:
        """
        Write an RGB frame into shared memory and announce it.

        Oversized or inconsistent frames are rejected before the region is
        touched and leave the connection state alone.
        """
        if not self.is_connected():
            self._set_error("Not connected")
            return False
        if self._buffer is None or not self._buffer.is_open:
            self._set_error("Shared memory not available")
            return False

        header = FrameHeader.for_rgb(
            frame_id=frame_id,
            width=width,
            height=height,
            timestamp_ns=self._clock_ns() if timestamp_ns is None else timestamp_ns,
        )

        try:
            self._buffer.write_frame(header, pixels)
        except FrameRejectedError as e:
            self._set_error(f"Frame {frame_id} rejected: {e}")
            return False
        except DetectorLinkError as e:
            self._on_io_failure(e, "Shared memory write failed")
            return False

        # The send() syscall below orders the stores above before the
        # notification becomes visible to the detector.
        try:
            self._channel.send(protocol.encode_frame_ready(header))
        except DetectorLinkError as e:
            self._on_io_failure(e, "Failed to send frame notification")
            return False

        log.debug("Frame %s sent (%dx%d)", frame_id, width, height)
        return True

    def receive_detections(self) -> Optional[DetectionResult]:
        """
        Non-blocking: None right away when nothing is queued, when the next
        message is not a detection result, or on failure.
        """
        if not self.is_connected():
            return None

        channel = self._channel
        try:
            if not channel.wait_readable(0.0):
                return None
            tag, data = channel.read_message(self.config.io_timeout_sec)
        except DetectorLinkError as e:
            self._on_io_failure(e, "Receive failed")
            return None

        if tag != protocol.MessageType.DETECTION_RESULT:
            log.debug("Ignored message type %s on result path", tag)
            return None

        try:
            return protocol.decode_detection_result(data)
        except ProtocolError as e:
            # Framing is intact (the full message was read), so stay connected
            self._set_error(f"Malformed detection result: {e}")
            return None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _set_error(self, message: str) -> None:
        self.last_error = message
        log.warning("DetectionClient: %s", message)

    def _fail(self, state: ConnectionState, message: str) -> None:
        self._set_error(message)
        self._cleanup()
        self._state = state

    def _on_io_failure(self, error: DetectorLinkError, context: str) -> None:
        if isinstance(error, PeerClosedError):
            self._fail(ConnectionState.DISCONNECTED, f"{context}: {error}")
        else:
            self._fail(ConnectionState.ERROR, f"{context}: {error}")

    def _cleanup(self) -> None:
        if self._channel is not None:
            self._channel.close()
            self._channel = None
        if self._buffer is not None:
            self._buffer.close()
            self._buffer = None


def create_detection_client(settings: Settings | None = None) -> DetectionClient:
    settings = settings or get_settings()
    return DetectionClient(DetectionClientConfig.from_settings(settings))
