"""Unix domain stream socket carrying fixed-size typed messages.

All waits are bounded with ``select``; the socket itself keeps a timeout so a
send to a stuck peer cannot block forever.
"""

from __future__ import annotations

import logging
import select
import socket
import time
from typing import Optional, Tuple

from detector_link.core import protocol
from detector_link.core.errors import (
    IPCTimeoutError,
    PeerClosedError,
    ProtocolError,
    TransportError,
)

log = logging.getLogger(__name__)

_PEER_GONE = (BrokenPipeError, ConnectionResetError, ConnectionAbortedError)


class ControlChannel:
    def __init__(self, path: str, io_timeout_sec: float = 0.5):
        self.path = path
        self.io_timeout_sec = io_timeout_sec
        self._sock: Optional[socket.socket] = None

    @property
    def is_open(self) -> bool:
        return self._sock is not None

    def fileno(self) -> int:
        return self._sock.fileno() if self._sock is not None else -1

    def _require(self) -> socket.socket:
        if self._sock is None:
            raise TransportError("Control channel is not connected")
        return self._sock

    def open(self, timeout_sec: float) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(timeout_sec)
        try:
            sock.connect(self.path)
        except OSError as e:
            sock.close()
            raise TransportError(f"Failed to connect to server at {self.path}: {e}") from e
        sock.settimeout(self.io_timeout_sec)
        self._sock = sock
        log.debug("Control channel connected: %s", self.path)

    def close(self) -> None:
        if self._sock is None:
            return
        try:
            self._sock.close()
        except OSError as e:
            log.debug("Error closing control socket: %s", e)
        finally:
            self._sock = None

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------
    def send(self, data: bytes, timeout_sec: Optional[float] = None) -> None:
        sock = self._require()
        if timeout_sec is not None:
            sock.settimeout(timeout_sec)
        try:
            sock.sendall(data)
        except _PEER_GONE as e:
            raise PeerClosedError(f"Server disconnected: {e}") from e
        except socket.timeout as e:
            raise TransportError(f"Send timed out after {sock.gettimeout()}s") from e
        except OSError as e:
            raise TransportError(f"Send failed: {e}") from e
        finally:
            if timeout_sec is not None and self._sock is not None:
                self._sock.settimeout(self.io_timeout_sec)

    # ------------------------------------------------------------------
    # Receiving
    # ------------------------------------------------------------------
    def wait_readable(self, timeout_sec: float) -> bool:
        sock = self._require()
        try:
            readable, _, _ = select.select([sock], [], [], max(0.0, timeout_sec))
        except (OSError, ValueError) as e:
            raise TransportError(f"Socket poll failed: {e}") from e
        return bool(readable)

    def _recv_some(self, size: int) -> Optional[bytes]:
        """One recv(); None when the socket timed out without data."""
        sock = self._require()
        try:
            return sock.recv(size)
        except _PEER_GONE as e:
            raise PeerClosedError(f"Server disconnected: {e}") from e
        except socket.timeout:
            return None
        except OSError as e:
            raise TransportError(f"Receive failed: {e}") from e

    def recv_exact(self, size: int, timeout_sec: float) -> bytes:
        """
        Read exactly `size` bytes before the deadline.

        Zero bytes before the deadline -> IPCTimeoutError; EOF before any
        byte -> PeerClosedError; some but not all bytes -> ProtocolError.
        """
        deadline = time.monotonic() + timeout_sec
        buf = bytearray()
        while len(buf) < size:
            remaining = deadline - time.monotonic()
            if remaining <= 0 or not self.wait_readable(remaining):
                if buf:
                    raise ProtocolError(f"Short read: got {len(buf)} of {size} bytes")
                raise IPCTimeoutError(f"No data within {timeout_sec:.3f}s")

            chunk = self._recv_some(size - len(buf))
            if chunk is None:
                continue
            if not chunk:
                if buf:
                    raise ProtocolError(
                        f"Short read: got {len(buf)} of {size} bytes before server disconnected"
                    )
                raise PeerClosedError("Server disconnected")
            buf += chunk
        return bytes(buf)

    def discard_available(self, limit: int = protocol.DISCARD_CHUNK_SIZE) -> int:
        """Drop up to `limit` already queued bytes without waiting."""
        sock = self._require()
        # A socket with a timeout polls before recv() even with MSG_DONTWAIT
        if not self.wait_readable(0.0):
            return 0
        try:
            dropped = sock.recv(limit, socket.MSG_DONTWAIT)
        except (BlockingIOError, socket.timeout):
            return 0
        except _PEER_GONE as e:
            raise PeerClosedError(f"Server disconnected: {e}") from e
        except OSError as e:
            raise TransportError(f"Receive failed: {e}") from e
        if not dropped:
            raise PeerClosedError("Server disconnected")
        return len(dropped)

    def read_message(self, timeout_sec: float) -> Tuple[int, Optional[bytes]]:
        """
        Read one message: the type tag within `timeout_sec`, then the rest of
        the fixed size for that tag within the I/O timeout.

        Returns (tag, full message bytes). For a tag with no known size the
        message is unframeable: up to DISCARD_CHUNK_SIZE queued bytes are
        dropped and (tag, None) is returned.
        """
        head = self.recv_exact(protocol.TYPE_TAG.size, timeout_sec)
        tag = protocol.peek_type(head)
        size = protocol.message_size(tag)
        if size is None:
            dropped = self.discard_available()
            log.warning("Unknown message type %s, discarded %d bytes", tag, dropped + len(head))
            return tag, None

        try:
            body = self.recv_exact(size - len(head), self.io_timeout_sec)
        except (IPCTimeoutError, PeerClosedError) as e:
            raise ProtocolError(
                f"Short read: message type {tag} truncated after {len(head)} of {size} bytes"
            ) from e
        return tag, head + body
