"""Exceptions raised inside the IPC layer.

They never leave `DetectionClient`'s public methods: the client turns them
into a failure return value plus `last_error`.
"""

from __future__ import annotations


class DetectorLinkError(RuntimeError):
    """Base class for IPC failures."""


class TransportError(DetectorLinkError):
    """Socket or shared memory level failure (connect, open, send, recv, mmap)."""


class PeerClosedError(TransportError):
    """The detector closed its end of the control channel."""


class ProtocolError(DetectorLinkError):
    """Malformed, undersized or unexpected message on the wire."""


class IPCTimeoutError(DetectorLinkError):
    """A bounded wait (handshake, heartbeat) expired."""


class FrameRejectedError(DetectorLinkError, ValueError):
    """A frame does not fit the shared region or the negotiated bounds."""
