"""Pydantic response schemas for the OnnxSight inspection API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    device: str
    operators: int


class OperatorResponse(BaseModel):
    """A registered operator."""

    name: str
    category: str
    description: str
    output_kind: str = Field(description="'tensor' for raw outputs, 'detections' for decoded results")


class OperatorsResponse(BaseModel):
    operators: list[OperatorResponse]


class ModelInfo(BaseModel):
    """A known model and whether its file is present in the models directory."""

    name: str
    task: str = Field(description="Model task: 'pose_estimation' or 'face_detection'")
    filename: str
    input_size: int | None = Field(default=None, description="Square input size, None if dynamic")
    description: str
    status: str = Field(description="Model status: 'present' or 'missing'")


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class TensorSchema(BaseModel):
    name: str
    shape: list[int] = Field(description="Shape with dynamic dimensions bound to 1")
    element_type: str


class ModelSchemaResponse(BaseModel):
    """Inputs and outputs reported by a loaded model."""

    name: str
    inputs: list[TensorSchema]
    outputs: list[TensorSchema]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
