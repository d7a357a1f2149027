"""Pydantic request/response schemas for the MoodTracker API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ClassifyImageResponse(BaseModel):
    """Top emotion for an uploaded image."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0)
    failure: str | None = Field(
        default=None,
        description="Why the sentinel label was returned: 'decode_failed', 'inference_failed' or 'no_result'",
    )


class UpdateModelResponse(BaseModel):
    """Outcome of a personalization request."""

    state: str = Field(description="'completed' or 'failed'")
    failure: str | None = None
    detail: str | None = None
    records: int = Field(description="Number of training records submitted")
    model_version: int = Field(description="Version of the model serving inference after the call")


class ResetModelResponse(BaseModel):
    removed: bool
    model_version: int


class InputConstraintInfo(BaseModel):
    feature_name: str
    width: int
    height: int
    pixel_format: str


class ModelInfoResponse(BaseModel):
    """Information about the model currently serving inference."""

    name: str
    version: int
    source: str = Field(description="'bundled' or 'personalized'")
    labels: list[str]
    exemplars: int
    input: InputConstraintInfo


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    model_version: int
    personalized: bool
    is_updating: bool
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
