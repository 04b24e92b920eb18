import mmap
import struct
import logging
from typing import Optional, Tuple

import numpy as np
import posix_ipc

from detector_link.core import protocol
from detector_link.core.errors import FrameRejectedError, TransportError
from detector_link.core.models import FrameHeader

logger = logging.getLogger(__name__)


def _as_byte_view(pixels) -> np.ndarray:
    """Flat uint8 view over bytes, bytearray, memoryview or a uint8 ndarray."""
    if isinstance(pixels, np.ndarray):
        if pixels.dtype != np.uint8:
            raise FrameRejectedError(f"Pixel array must be uint8, got {pixels.dtype}")
        return np.ascontiguousarray(pixels).reshape(-1)
    try:
        return np.frombuffer(pixels, dtype=np.uint8)
    except (TypeError, ValueError) as e:
        raise FrameRejectedError(f"Unsupported pixel buffer: {type(pixels).__name__}") from e


class SharedFrameBuffer:
    """
    Single-slot frame region shared with the detector.

    One header area followed by one payload; every write overwrites the
    previous frame. The client opens the segment the detector created
    (``create=False``); ``create=True`` is for the detector side and tests.
    """

    def __init__(self, name: str, size: int = protocol.SHM_SIZE, create: bool = False):
        self.name = name
        self.size = size
        self.create_mode = create
        self.capacity = size - protocol.FRAME_HEADER_SIZE

        self._shm: Optional[posix_ipc.SharedMemory] = None
        self._mmap: Optional[mmap.mmap] = None
        self._open()

    def _open(self):
        flags = posix_ipc.O_CREAT if self.create_mode else 0

        try:
            self._shm = posix_ipc.SharedMemory(
                self.name,
                flags=flags,
                mode=0o666,
                size=self.size if self.create_mode else 0,
            )
        except posix_ipc.ExistentialError as e:
            raise TransportError(f"Shared memory not found: {self.name} (detector not running?)") from e
        except (posix_ipc.Error, OSError, ValueError) as e:
            raise TransportError(f"Failed to open shared memory {self.name}: {e}") from e

        try:
            if self._shm.size < self.size:
                raise TransportError(
                    f"Shared memory {self.name} is {self._shm.size} bytes, need {self.size}"
                )
            self._mmap = mmap.mmap(
                self._shm.fd,
                self.size,
                mmap.MAP_SHARED,
                mmap.PROT_READ | mmap.PROT_WRITE,
            )
        except TransportError:
            self.close()
            raise
        except (OSError, ValueError) as e:
            self.close()
            raise TransportError(f"Failed to map shared memory {self.name}: {e}") from e

        if self.create_mode:
            self._mmap[0:protocol.FRAME_HEADER_SIZE] = b"\x00" * protocol.FRAME_HEADER_SIZE
            logger.info("Created SHM segment: %s (%.1f MB)", self.name, self.size / 1024 / 1024)
        else:
            logger.debug("Mapped SHM segment: %s", self.name)

    @property
    def is_open(self) -> bool:
        return self._mmap is not None and not self._mmap.closed

    def _require_open(self) -> mmap.mmap:
        if not self.is_open:
            raise TransportError(f"Shared memory {self.name} is not mapped")
        return self._mmap

    def check_fits(self, header: FrameHeader, payload_len: int) -> None:
        """Raise FrameRejectedError if the frame cannot be written as-is."""
        if header.width <= 0 or header.height <= 0:
            raise FrameRejectedError(f"Empty frame: {header.width}x{header.height}")
        expected = header.width * header.height * protocol.BYTES_PER_PIXEL
        if header.width > protocol.MAX_FRAME_WIDTH or header.height > protocol.MAX_FRAME_HEIGHT:
            raise FrameRejectedError(
                f"Frame {header.width}x{header.height} exceeds maximum "
                f"{protocol.MAX_FRAME_WIDTH}x{protocol.MAX_FRAME_HEIGHT}"
            )
        if expected > self.capacity:
            raise FrameRejectedError(f"Frame too large: {expected} > {self.capacity}")
        if payload_len != expected:
            raise FrameRejectedError(
                f"Pixel buffer is {payload_len} bytes, expected {expected} for "
                f"{header.width}x{header.height} RGB"
            )

    def write_frame(self, header: FrameHeader, pixels) -> None:
        """
        Copy one frame into the region.

        Validation happens before any byte is touched. Payload goes in first,
        header last, so a header observed by a polling reader always
        describes complete pixels.
        """
        buf = self._require_open()
        data = _as_byte_view(pixels)
        self.check_fits(header, data.size)
        try:
            packed = protocol.encode_frame_header(header)
        except struct.error as e:
            raise FrameRejectedError(f"Frame header out of range: {e}") from e

        start = protocol.FRAME_HEADER_SIZE
        buf[start:start + data.size] = data
        buf[0:protocol.FRAME_HEADER_SIZE] = packed

    def read_header(self) -> FrameHeader:
        buf = self._require_open()
        return protocol.decode_frame_header(buf[0:protocol.FRAME_HEADER_SIZE])

    def read_payload(self, header: FrameHeader) -> bytes:
        buf = self._require_open()
        size = header.payload_size
        if size > self.capacity:
            raise FrameRejectedError(f"Header claims {size} bytes, capacity is {self.capacity}")
        start = protocol.FRAME_HEADER_SIZE
        return bytes(buf[start:start + size])

    def read_frame(self) -> Tuple[FrameHeader, np.ndarray]:
        """Header plus a copied (height, width, 3) uint8 array."""
        header = self.read_header()
        payload = self.read_payload(header)
        pixels = np.frombuffer(payload, dtype=np.uint8).reshape(
            (header.height, header.width, protocol.BYTES_PER_PIXEL)
        )
        return header, pixels

    def snapshot(self) -> bytes:
        """Raw copy of the whole region (diagnostics and tests)."""
        buf = self._require_open()
        return bytes(buf[:])

    def close(self):
        """Unmap and close the descriptor (no unlink)."""
        try:
            if self._mmap is not None and not self._mmap.closed:
                self._mmap.close()
        except (ValueError, BufferError) as e:
            logger.error("Failed to close mmap for %s: %s", self.name, e)

        if self._shm is not None:
            try:
                self._shm.close_fd()
            except (posix_ipc.Error, OSError) as e:
                logger.error("Failed to close SHM fd for %s: %s", self.name, e)

        self._mmap = None
        self._shm = None

    def unlink(self):
        """Remove the segment name. Only the creator should call this."""
        if not self.create_mode:
            logger.warning("unlink() called on %s but this instance did not create it", self.name)
            return
        try:
            posix_ipc.unlink_shared_memory(self.name)
            logger.info("SHM unlinked: %s", self.name)
        except posix_ipc.ExistentialError:
            pass

    def __enter__(self) -> "SharedFrameBuffer":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
        if self.create_mode:
            self.unlink()
