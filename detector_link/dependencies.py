from __future__ import annotations

from fastapi import Request

from detector_link.core.worker import DetectionLoop
from detector_link.services.detection_client import DetectionClient


def get_client(request: Request) -> DetectionClient:
    """
    Dependency: get detection client from app.state.
    Tests inject a fake client through create_app(client_factory=...).
    """
    return request.app.state.client


def get_loop(request: Request) -> DetectionLoop:
    return request.app.state.loop
