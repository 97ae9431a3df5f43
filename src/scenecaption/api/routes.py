"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request, UploadFile, status
from fastapi.responses import JSONResponse

from scenecaption.api.schemas import (
    CaptionResponse,
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
)
from scenecaption.ml.model_manager import MODEL_REGISTRY
from scenecaption.ml.preprocessing import decode_image
from scenecaption.pipeline import ClassificationSucceeded, FailureKind

if TYPE_CHECKING:
    from scenecaption.config import Settings
    from scenecaption.ml.inference import InferencePool
    from scenecaption.ml.model_manager import ModelManager
    from scenecaption.pipeline import ClassificationPipeline

router = APIRouter(prefix="/api/v1")

# Starlette renamed the 413/422 constants; plain codes work across versions.
HTTP_413_TOO_LARGE = 413
HTTP_422_UNPROCESSABLE = 422

_FAILURE_STATUS: dict[FailureKind, int] = {
    FailureKind.MODEL_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    FailureKind.INFERENCE_REJECTED: status.HTTP_503_SERVICE_UNAVAILABLE,
    FailureKind.IMAGE_CONVERSION: HTTP_422_UNPROCESSABLE,
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_pipeline(request: Request) -> ClassificationPipeline:
    pipeline: ClassificationPipeline = request.app.state.pipeline
    return pipeline


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(detail=detail).model_dump())


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        HTTP_413_TOO_LARGE: {"model": ErrorResponse},
        HTTP_422_UNPROCESSABLE: {"model": ClassifyImageResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ClassifyImageResponse},
    },
    summary="Classify an image and caption its top labels",
)
async def classify_image(request: Request, file: UploadFile) -> JSONResponse:
    """Classify an uploaded image and return the caption with its ranked tags."""
    settings = _get_settings(request)
    pipeline = _get_pipeline(request)

    image_bytes = await file.read()
    if len(image_bytes) > settings.max_file_size:
        return _error(
            HTTP_413_TOO_LARGE,
            f"File exceeds {settings.max_file_size} bytes",
        )
    try:
        image = decode_image(image_bytes, settings.max_image_pixels)
    except ValueError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    # classify() is shielded, so a client disconnect leaves the caption to finish.
    outcome = await pipeline.classify(image)

    if isinstance(outcome, ClassificationSucceeded):
        body = ClassifyImageResponse(
            caption=outcome.caption,
            tags=[ImageTag(label=c.label, confidence=c.confidence) for c in outcome.classifications],
        )
        return JSONResponse(status_code=status.HTTP_200_OK, content=body.model_dump())

    body = ClassifyImageResponse(caption=outcome.caption, tags=[], error=outcome.kind.value)
    return JSONResponse(
        status_code=_FAILURE_STATUS.get(outcome.kind, status.HTTP_200_OK),
        content=body.model_dump(),
    )


@router.get(
    "/caption",
    response_model=CaptionResponse,
    summary="Current caption",
)
async def current_caption(request: Request) -> CaptionResponse:
    """Return the caption most recently written by the pipeline."""
    return CaptionResponse(caption=_get_pipeline(request).caption.text)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=_get_model_manager(request).get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
        rejected_requests=pool.rejected_count,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return registered classification models and which one is active."""
    settings = _get_settings(request)
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                status="active" if spec.name == settings.classification_model else "available",
                input_size=spec.input_size,
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
