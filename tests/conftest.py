from __future__ import annotations

import shutil
import socket
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import List, Optional, Tuple

import pytest

from detector_link.core import protocol
from detector_link.core.models import Detection, ModelArchitecture, ModelInfo, ServerInfo
from detector_link.services.detection_client import DetectionClient, DetectionClientConfig
from detector_link.services.shm_buffer import SharedFrameBuffer

DEFAULT_MODEL = ModelInfo(
    name="ssd_mobilenet_v2_coco",
    description="SSD MobileNet v2 trained on COCO",
    architecture=ModelArchitecture.SSD_MOBILENET,
    input_width=300,
    input_height=300,
    num_classes=80,
    model_size_bytes=17_000_000,
    device="cpu",
)


def _recv_exact(conn: socket.socket, size: int) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        chunk = conn.recv(size - len(buf))
        if not chunk:
            raise ConnectionError(f"peer closed after {len(buf)} of {size} bytes")
        buf += chunk
    return bytes(buf)


class FakeDetectorServer:
    """
    Minimal detector: owns the shared memory segment, listens on the Unix
    socket and answers the handshake from a background thread. Everything
    after the handshake is driven by the test through `conn`.
    """

    def __init__(self, socket_path: str, shm_name: str, create_shm: bool = True):
        self.socket_path = socket_path
        self.shm_name = shm_name

        self.model = DEFAULT_MODEL
        self.protocol_version = protocol.PROTOCOL_VERSION
        self.accept = True
        self.respond = True
        # Raw bytes sent instead of a real handshake response
        self.response_override: Optional[bytes] = None

        self.handshake_requests: List[Tuple[int, int, int]] = []
        self.connections: List[socket.socket] = []
        self.conn: Optional[socket.socket] = None

        self.shm = SharedFrameBuffer(shm_name, create=True) if create_shm else None

        self._listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self._listener.bind(socket_path)
        self._listener.listen(4)
        self._listener.settimeout(0.05)

        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True, name="FakeDetector")
        self._thread.start()

    def _serve(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return

            conn.settimeout(2.0)
            self.connections.append(conn)
            try:
                request = _recv_exact(conn, protocol.HANDSHAKE_REQUEST.size)
            except OSError:
                continue
            version, max_w, max_h = protocol.decode_handshake_request(request)
            self.handshake_requests.append((version, max_w, max_h))
            self.conn = conn

            if not self.respond:
                continue
            if self.response_override is not None:
                payload = self.response_override
            else:
                accepted = self.accept and version == self.protocol_version
                payload = protocol.encode_handshake_response(
                    ServerInfo(protocol_version=self.protocol_version, accepted=accepted, model=self.model)
                )
            try:
                conn.sendall(payload)
            except OSError:
                pass

    # ------------------------------------------------------------------
    # Test-side helpers
    # ------------------------------------------------------------------
    def send(self, data: bytes) -> None:
        assert self.conn is not None, "no client connected"
        self.conn.sendall(data)

    def send_result(self, frame_id: int, inference_time_ms: float, detections=()) -> None:
        self.send(protocol.encode_detection_result(frame_id, inference_time_ms, detections))

    def send_heartbeat_reply(self, timestamp_ns: int = 0) -> None:
        self.send(protocol.encode_heartbeat(timestamp_ns))

    def recv_message(self) -> Tuple[int, bytes]:
        assert self.conn is not None, "no client connected"
        head = _recv_exact(self.conn, protocol.TYPE_TAG.size)
        tag = protocol.peek_type(head)
        size = protocol.message_size(tag)
        assert size is not None, f"client sent unknown message type {tag}"
        return tag, head + _recv_exact(self.conn, size - len(head))

    def close_client(self) -> None:
        if self.conn is None:
            return
        try:
            self.conn.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.conn.close()
        self.conn = None

    def close(self) -> None:
        self._stop.set()
        self._thread.join(timeout=2.0)
        self._listener.close()
        for conn in self.connections:
            conn.close()
        if self.shm is not None:
            self.shm.close()
            self.shm.unlink()


@pytest.fixture
def ipc_names():
    # AF_UNIX paths are limited to ~108 bytes, so stay out of pytest's tmp_path
    directory = tempfile.mkdtemp(prefix="dl-")
    yield str(Path(directory) / "detector.sock"), f"/dl_test_{uuid.uuid4().hex[:12]}"
    shutil.rmtree(directory, ignore_errors=True)


@pytest.fixture
def server(ipc_names):
    srv = FakeDetectorServer(*ipc_names)
    yield srv
    srv.close()


@pytest.fixture
def client_config(ipc_names) -> DetectionClientConfig:
    socket_path, shm_name = ipc_names
    return DetectionClientConfig(
        socket_path=socket_path,
        shm_name=shm_name,
        connect_timeout_sec=0.5,
        io_timeout_sec=0.2,
        heartbeat_timeout_sec=0.5,
        heartbeat_max_attempts=5,
    )


@pytest.fixture
def client(client_config):
    c = DetectionClient(client_config)
    yield c
    c.disconnect()


def poll_detections(client: DetectionClient, timeout: float = 1.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = client.receive_detections()
        if result is not None:
            return result
        time.sleep(0.005)
    return None


def make_detection(label: str, confidence: float = 0.5, box=(0.25, 0.25, 0.5, 0.5), class_id: int = 0) -> Detection:
    x, y, w, h = box
    return Detection(label=label, confidence=confidence, x=x, y=y, width=w, height=h, class_id=class_id)
