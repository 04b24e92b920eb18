from __future__ import annotations

import struct
import time

import numpy as np
import pytest

from detector_link.core import protocol
from detector_link.core.models import ConnectionState, ServerInfo
from detector_link.services.detection_client import DetectionClient, DetectionClientConfig

from conftest import FakeDetectorServer, make_detection, poll_detections


# ---------------------------------------------------------------------------
# Connect / handshake
# ---------------------------------------------------------------------------
def test_connect_negotiates_and_exposes_model(server, client) -> None:
    assert client.get_state() is ConnectionState.DISCONNECTED
    assert client.server_info is None

    assert client.connect() is True

    assert client.is_connected()
    assert server.handshake_requests == [(1, 1920, 1080)]
    info = client.server_info
    assert info.model_name == "ssd_mobilenet_v2_coco"
    assert info.num_classes == 80
    assert info.model_input_width == 300
    assert info.model_input_height == 300


def test_connect_when_connected_is_noop(server, client) -> None:
    assert client.connect()
    assert client.connect()
    assert len(server.handshake_requests) == 1


def test_connect_without_server(client_config) -> None:
    client = DetectionClient(client_config)

    assert client.connect() is False

    assert client.get_state() is ConnectionState.ERROR
    assert "Failed to connect" in client.last_error
    assert client._channel is None
    assert client._buffer is None


def test_connect_without_shared_memory(ipc_names, client) -> None:
    srv = FakeDetectorServer(*ipc_names, create_shm=False)
    try:
        assert client.connect() is False
        assert client.get_state() is ConnectionState.ERROR
        assert "Shared memory not found" in client.last_error
        assert client._channel is None
    finally:
        srv.close()


def test_handshake_rejected(server, client) -> None:
    server.accept = False

    assert client.connect() is False

    assert client.get_state() is ConnectionState.ERROR
    assert "rejected" in client.last_error
    assert client.server_info is None


def test_handshake_version_mismatch(server, client) -> None:
    # Server claims a newer protocol and refuses ours
    server.protocol_version = 2

    assert client.connect() is False
    assert client.get_state() is ConnectionState.ERROR
    assert client.last_error


def test_accepted_handshake_with_other_version_is_refused(server, client) -> None:
    server.response_override = protocol.encode_handshake_response(
        ServerInfo(protocol_version=7, accepted=True, model=server.model)
    )

    assert client.connect() is False
    assert "mismatch" in client.last_error


def test_handshake_timeout(server, client) -> None:
    server.respond = False

    started = time.monotonic()
    assert client.connect() is False
    elapsed = time.monotonic() - started

    assert client.get_state() is ConnectionState.ERROR
    assert "timeout" in client.last_error.lower()
    assert elapsed < client.config.connect_timeout_sec + 0.5


def test_handshake_response_of_wrong_type(server, client) -> None:
    raw = bytearray(protocol.encode_handshake_response(ServerInfo(1, True, server.model)))
    struct.pack_into("=I", raw, 0, protocol.MessageType.FRAME_READY)
    server.response_override = bytes(raw)

    assert client.connect() is False
    assert client.get_state() is ConnectionState.ERROR


def test_undersized_handshake_response(server, client) -> None:
    server.response_override = protocol.encode_heartbeat(0)

    assert client.connect() is False
    assert client.get_state() is ConnectionState.ERROR
    assert "Invalid handshake response" in client.last_error


# ---------------------------------------------------------------------------
# Disconnect
# ---------------------------------------------------------------------------
def test_disconnect_notifies_server(server, client) -> None:
    assert client.connect()

    client.disconnect()

    assert client.get_state() is ConnectionState.DISCONNECTED
    tag, _ = server.recv_message()
    assert tag == protocol.MessageType.SHUTDOWN
    # idempotent
    client.disconnect()
    assert client.get_state() is ConnectionState.DISCONNECTED


def test_operations_require_connection(client) -> None:
    assert client.send_heartbeat() is False
    assert client.last_error == "Not connected"
    assert client.send_frame(b"\0" * 12, 2, 2, 1) is False
    assert client.receive_detections() is None


# ---------------------------------------------------------------------------
# Frames and results
# ---------------------------------------------------------------------------
def test_frame_to_detections_end_to_end(server, client) -> None:
    assert client.connect()
    pixels = np.random.default_rng(0).integers(0, 256, size=(480, 640, 3), dtype=np.uint8)

    assert client.send_frame(pixels, 640, 480, 1) is True

    tag, msg = server.recv_message()
    assert tag == protocol.MessageType.FRAME_READY
    frame_id, width, height, timestamp_ns = protocol.decode_frame_ready(msg)
    assert (frame_id, width, height) == (1, 640, 480)

    header, seen = server.shm.read_frame()
    assert header.frame_id == 1
    assert header.timestamp_ns == timestamp_ns
    assert np.array_equal(seen, pixels)

    server.send_result(
        1,
        12.5,
        [
            make_detection("person", 0.875, (0.1, 0.2, 0.3, 0.4), class_id=0),
            make_detection("bicycle", 0.625, (0.5, 0.5, 0.25, 0.25), class_id=1),
        ],
    )
    result = poll_detections(client)

    assert result is not None
    assert result.frame_id == 1
    assert result.inference_time_ms == 12.5
    assert [d.label for d in result.detections] == ["person", "bicycle"]
    assert result.detections[0].confidence == pytest.approx(0.875)
    assert result.detections[0].x == pytest.approx(0.1)
    assert result.detections[1].width == pytest.approx(0.25)


def test_explicit_timestamp_is_forwarded(server, client) -> None:
    assert client.connect()
    assert client.send_frame(np.zeros((2, 2, 3), dtype=np.uint8), 2, 2, 9, timestamp_ns=123456)

    _, msg = server.recv_message()
    assert protocol.decode_frame_ready(msg) == (9, 2, 2, 123456)


def test_oversized_frame_rejected_without_touching_region(server, client) -> None:
    assert client.connect()
    assert client.send_frame(np.ones((4, 4, 3), dtype=np.uint8), 4, 4, 1)
    server.recv_message()
    before = server.shm.snapshot()

    big = np.zeros((1081, 1920, 3), dtype=np.uint8)
    assert client.send_frame(big, 1920, 1081, 2) is False
    assert "rejected" in client.last_error

    assert client.send_frame(b"\0" * 10, 4, 4, 3) is False

    assert server.shm.snapshot() == before
    assert client.is_connected()


def test_receive_is_non_blocking(server, client) -> None:
    assert client.connect()

    started = time.monotonic()
    assert client.receive_detections() is None
    assert time.monotonic() - started < 0.05
    assert client.is_connected()


def test_receive_skips_non_result_messages(server, client) -> None:
    assert client.connect()

    server.send_heartbeat_reply()
    assert poll_detections(client, timeout=0.2) is None

    server.send_result(4, 3.0)
    result = poll_detections(client)
    assert result is not None and result.frame_id == 4


def test_unknown_message_type_is_discarded(server, client) -> None:
    assert client.connect()

    server.send(struct.pack("=I", 99) + b"\xaa" * 20)
    assert poll_detections(client, timeout=0.2) is None
    assert client.is_connected()

    server.send_result(2, 1.0)
    result = poll_detections(client)
    assert result is not None and result.frame_id == 2


def test_bare_unknown_tag_does_not_block(server, client) -> None:
    assert client.connect()
    server.send(struct.pack("=I", 99))
    assert client._channel.wait_readable(1.0)

    started = time.monotonic()
    assert client.receive_detections() is None
    assert time.monotonic() - started < 0.05
    assert client.is_connected()

    server.send_result(3, 1.0)
    result = poll_detections(client)
    assert result is not None and result.frame_id == 3


@pytest.mark.parametrize(
    "pixels,width,height,frame_id",
    [
        (b"\x07" * 3, -1, -1, 1),
        (b"\x07" * 12, 2, 2, -1),
        (np.zeros((2, 2, 3), dtype=np.float32), 2, 2, 1),
        ([7] * 12, 2, 2, 1),
    ],
)
def test_invalid_frames_are_rejected_without_raising(server, client, pixels, width, height, frame_id) -> None:
    assert client.connect()
    before = server.shm.snapshot()

    assert client.send_frame(pixels, width, height, frame_id) is False

    assert "rejected" in client.last_error
    assert server.shm.snapshot() == before
    assert client.is_connected()


def test_malformed_result_keeps_connection(server, client) -> None:
    assert client.connect()

    raw = bytearray(protocol.encode_detection_result(1, 1.0, []))
    struct.pack_into("=I", raw, 16, protocol.MAX_DETECTIONS + 5)
    server.send(bytes(raw))

    assert poll_detections(client, timeout=0.2) is None
    assert "Malformed detection result" in client.last_error
    assert client.is_connected()


# ---------------------------------------------------------------------------
# Heartbeat
# ---------------------------------------------------------------------------
def test_heartbeat_round_trip(server, client) -> None:
    assert client.connect()
    server.send_heartbeat_reply()

    assert client.send_heartbeat() is True

    tag, msg = server.recv_message()
    assert tag == protocol.MessageType.HEARTBEAT
    assert protocol.decode_heartbeat(msg) > 0


def test_heartbeat_drops_interleaved_results(server, client) -> None:
    assert client.connect()
    for frame_id in (1, 2, 3):
        server.send_result(frame_id, 5.0)
    server.send_heartbeat_reply()

    assert client.send_heartbeat() is True

    assert client.dropped_results == 3
    assert client.receive_detections() is None
    assert client.is_connected()


def test_heartbeat_gives_up_after_max_attempts(server, client) -> None:
    assert client.connect()
    for frame_id in range(1, client.config.heartbeat_max_attempts + 1):
        server.send_result(frame_id, 5.0)
    server.send_heartbeat_reply()

    assert client.send_heartbeat() is False
    assert client.get_state() is ConnectionState.ERROR
    assert "Invalid heartbeat response" in client.last_error


def test_heartbeat_timeout(server, client) -> None:
    assert client.connect()

    started = time.monotonic()
    assert client.send_heartbeat() is False
    elapsed = time.monotonic() - started

    assert client.get_state() is ConnectionState.ERROR
    assert "Heartbeat timeout" in client.last_error
    assert elapsed < client.config.heartbeat_timeout_sec + 0.5
    assert client._channel is None


# ---------------------------------------------------------------------------
# Peer loss and reconnect
# ---------------------------------------------------------------------------
def test_peer_close_then_clean_reconnect(server, client) -> None:
    assert client.connect()
    old_channel = client._channel
    old_buffer = client._buffer

    server.close_client()
    deadline = time.monotonic() + 1.0
    while client.is_connected() and time.monotonic() < deadline:
        client.receive_detections()

    assert client.get_state() is ConnectionState.DISCONNECTED
    assert client.last_error
    assert client._channel is None
    assert client._buffer is None
    assert not old_channel.is_open
    assert not old_buffer.is_open

    assert client.connect() is True
    assert client.is_connected()
    assert len(server.handshake_requests) == 2


def test_heartbeat_after_peer_close(server, client) -> None:
    assert client.connect()
    server.close_client()

    assert client.send_heartbeat() is False
    assert client.get_state() is ConnectionState.DISCONNECTED
    assert client._channel is None
    assert client._buffer is None


def test_send_frame_after_peer_close(server, client) -> None:
    assert client.connect()
    old_channel = client._channel
    old_buffer = client._buffer
    server.close_client()

    assert client.send_frame(np.zeros((2, 2, 3), dtype=np.uint8), 2, 2, 1) is False

    assert client.get_state() is ConnectionState.DISCONNECTED
    assert "disconnected" in client.last_error.lower()
    assert client._channel is None
    assert client._buffer is None
    assert not old_channel.is_open
    assert not old_buffer.is_open


def test_context_manager_disconnects(server, client_config) -> None:
    with DetectionClient(client_config) as c:
        assert c.connect()
    assert c.get_state() is ConnectionState.DISCONNECTED


def test_config_from_settings() -> None:
    from detector_link.core.config import Settings

    settings = Settings(socket_path="/tmp/x.sock", shm_name="/frames", heartbeat_max_attempts=3)
    cfg = DetectionClientConfig.from_settings(settings)
    assert cfg.socket_path == "/tmp/x.sock"
    assert cfg.shm_name == "/frames"
    assert cfg.heartbeat_max_attempts == 3
