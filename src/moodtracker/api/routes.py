"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Form, HTTPException, Request, Response, UploadFile, status

from moodtracker.api.middleware import verify_api_key
from moodtracker.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    InputConstraintInfo,
    ModelInfoResponse,
    ResetModelResponse,
    UpdateModelResponse,
)
from moodtracker.ml.model_provider import ModelSource
from moodtracker.ml.model_store import ModelStoreError
from moodtracker.ml.preprocessing import ImageDecodeError, decode_image
from moodtracker.ml.update_orchestrator import UpdateFailure

if TYPE_CHECKING:
    from moodtracker.config import Settings
    from moodtracker.ml.image_classifier import ClassifierService
    from moodtracker.ml.inference import InferencePool
    from moodtracker.ml.model_provider import ArtifactModelProvider
    from moodtracker.ml.update_orchestrator import UpdateOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_PAYLOAD_TOO_LARGE = 413

_UPDATE_STATUS: dict[UpdateFailure | None, int] = {
    None: status.HTTP_200_OK,
    UpdateFailure.EMPTY_BATCH: status.HTTP_400_BAD_REQUEST,
    UpdateFailure.BUSY: status.HTTP_409_CONFLICT,
    UpdateFailure.UPDATE_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
    UpdateFailure.PERSISTENCE_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
    UpdateFailure.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
}

_QUEUE_FULL = "Inference queue is full, try again later"


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_provider(request: Request) -> ArtifactModelProvider:
    provider: ArtifactModelProvider = request.app.state.model_provider
    return provider


def _get_classifier(request: Request) -> ClassifierService:
    classifier: ClassifierService = request.app.state.classifier
    return classifier


def _get_orchestrator(request: Request) -> UpdateOrchestrator:
    orchestrator: UpdateOrchestrator = request.app.state.update_orchestrator
    return orchestrator


async def _read_upload(request: Request, file: UploadFile) -> bytes:
    limit = _get_settings(request).max_file_size
    data = await file.read(limit + 1)
    if len(data) > limit:
        raise HTTPException(status_code=_PAYLOAD_TOO_LARGE, detail=f"File exceeds {limit} bytes")
    return data


@router.post(
    "/classify",
    response_model=ClassifyImageResponse,
    responses={
        _PAYLOAD_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify the emotion in an image",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse:
    """Return the top emotion label and its confidence.

    Undecodable images and engine errors yield the "Unknown" label with zero
    confidence and a ``failure`` reason instead of an error status.
    """
    data = await _read_upload(request, file)
    try:
        result = await _get_inference_pool(request).run(_get_classifier(request).classify_bytes, data)
    except TimeoutError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_QUEUE_FULL) from None

    return ClassifyImageResponse(
        label=result.label,
        confidence=result.confidence,
        failure=result.failure,
    )


@router.post(
    "/update",
    response_model=UpdateModelResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": UpdateModelResponse},
        status.HTTP_409_CONFLICT: {"model": UpdateModelResponse},
        _PAYLOAD_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": UpdateModelResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
        status.HTTP_504_GATEWAY_TIMEOUT: {"model": UpdateModelResponse},
    },
    summary="Personalize the model with a corrected label",
)
async def update_model(
    request: Request,
    response: Response,
    file: UploadFile,
    label: Annotated[str, Form()],
) -> UpdateModelResponse:
    """Teach the model that the uploaded image shows ``label``."""
    data = await _read_upload(request, file)
    settings = _get_settings(request)
    try:
        image = await _get_inference_pool(request).run(decode_image, data, settings.max_image_pixels)
    except TimeoutError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_QUEUE_FULL) from None
    except ImageDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from None

    result = await _get_orchestrator(request).update_model(image, label)
    response.status_code = _UPDATE_STATUS[result.failure]
    return UpdateModelResponse(
        state=result.state,
        failure=result.failure,
        detail=result.detail,
        records=result.records,
        model_version=_get_provider(request).current().artifact.version,
    )


@router.delete(
    "/model/personalization",
    response_model=ResetModelResponse,
    responses={
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    },
    summary="Discard personalization and restore the bundled model",
)
async def reset_model(request: Request) -> ResetModelResponse:
    try:
        removed = await _get_orchestrator(request).reset()
    except ModelStoreError as exc:
        logger.error("Reset failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from None
    if removed is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A model update is in progress")

    return ResetModelResponse(removed=removed, model_version=_get_provider(request).current().artifact.version)


@router.get(
    "/model",
    response_model=ModelInfoResponse,
    summary="Describe the active model",
)
async def model_info(request: Request) -> ModelInfoResponse:
    loaded = _get_provider(request).current()
    artifact = loaded.artifact
    constraint = artifact.constraint
    return ModelInfoResponse(
        name=artifact.name,
        version=artifact.version,
        source=loaded.source,
        labels=list(artifact.labels),
        exemplars=artifact.size,
        input=InputConstraintInfo(
            feature_name=constraint.feature_name,
            width=constraint.width,
            height=constraint.height,
            pixel_format=constraint.pixel_format,
        ),
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    loaded = _get_provider(request).current()
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        model_version=loaded.artifact.version,
        personalized=loaded.source == ModelSource.PERSONALIZED,
        is_updating=_get_orchestrator(request).is_updating,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )
