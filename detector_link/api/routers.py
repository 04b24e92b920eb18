from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status

from detector_link.api.schemas import (
    DetectionResponse,
    DetectionResultResponse,
    HealthResponse,
    ModelInfoResponse,
    ServerInfoResponse,
    StatusResponse,
)
from detector_link.core.worker import DetectionLoop
from detector_link.dependencies import get_client, get_loop
from detector_link.services.detection_client import DetectionClient

router = APIRouter(tags=["detector"])


@router.get("/health", response_model=HealthResponse)
async def health_check(
    response: Response,
    client: DetectionClient = Depends(get_client),
):
    connected = client.is_connected()
    if not connected:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HealthResponse(
        status="ok" if connected else "degraded",
        state=client.get_state().value,
        connected=connected,
        last_error=client.last_error,
    )


@router.get("/status", response_model=StatusResponse)
async def get_status(
    client: DetectionClient = Depends(get_client),
    loop: DetectionLoop = Depends(get_loop),
):
    info = client.server_info
    server = None
    if info is not None:
        model = info.model
        server = ServerInfoResponse(
            protocol_version=info.protocol_version,
            accepted=info.accepted,
            model=ModelInfoResponse(
                name=model.name,
                description=model.description,
                architecture=model.architecture.name,
                input_width=model.input_width,
                input_height=model.input_height,
                num_classes=model.num_classes,
                model_size_bytes=model.model_size_bytes,
                device=model.device,
            ),
        )

    return StatusResponse(
        state=client.get_state().value,
        connected=client.is_connected(),
        last_error=client.last_error,
        socket_path=client.config.socket_path,
        shm_name=client.config.shm_name,
        server=server,
        dropped_results=client.dropped_results,
        stats=dict(loop.stats),
    )


@router.get("/detections/latest", response_model=DetectionResultResponse)
async def get_latest_detections(loop: DetectionLoop = Depends(get_loop)):
    result = loop.latest
    if result is None:
        raise HTTPException(status_code=404, detail="No detection results yet")

    return DetectionResultResponse(
        frame_id=result.frame_id,
        inference_time_ms=result.inference_time_ms,
        count=len(result.detections),
        detections=[
            DetectionResponse(
                class_id=d.class_id,
                label=d.label,
                confidence=d.confidence,
                x=d.x,
                y=d.y,
                width=d.width,
                height=d.height,
            )
            for d in result.detections
        ],
    )
