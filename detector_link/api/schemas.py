from pydantic import BaseModel
from typing import Optional, List, Dict, Any


class HealthResponse(BaseModel):
    status: str
    state: str
    connected: bool
    last_error: Optional[str] = None


class ModelInfoResponse(BaseModel):
    name: str
    description: str
    architecture: str
    input_width: int
    input_height: int
    num_classes: int
    model_size_bytes: int
    device: str


class ServerInfoResponse(BaseModel):
    protocol_version: int
    accepted: bool
    model: ModelInfoResponse


class StatusResponse(BaseModel):
    state: str
    connected: bool
    last_error: Optional[str] = None
    socket_path: str
    shm_name: str
    server: Optional[ServerInfoResponse] = None
    dropped_results: int
    stats: Dict[str, Any]


class DetectionResponse(BaseModel):
    class_id: int
    label: str
    confidence: float
    x: float
    y: float
    width: float
    height: float


class DetectionResultResponse(BaseModel):
    frame_id: int
    inference_time_ms: float
    count: int
    detections: List[DetectionResponse]
