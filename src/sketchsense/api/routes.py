"""API route definitions."""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import TYPE_CHECKING, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from sketchsense.api.middleware import verify_api_key
from sketchsense.api.schemas import (
    BackendResponse,
    ClassifyResponse,
    DownloadResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    RankedLabel,
    SelectModelResponse,
    StrokesRequest,
    ThreadsRequest,
)
from sketchsense.ml.engine import ModelLoadError, ShapeMismatchError
from sketchsense.ml.image_classifier import ModelNotInstalledError
from sketchsense.ml.model_registry import MODEL_REGISTRY, Provenance
from sketchsense.ml.postprocessing import resolve_label
from sketchsense.ml.preprocessing import decode_image

if TYPE_CHECKING:
    from collections.abc import Callable

    from sketchsense.config import Settings
    from sketchsense.ml.image_classifier import SketchClassifier
    from sketchsense.ml.inference import InferencePool
    from sketchsense.ml.model_registry import ModelDescriptor
    from sketchsense.ml.postprocessing import ClassificationResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

T = TypeVar("T")

LOW_CONFIDENCE_ADVISORY = "Low confidence. Please draw more clearly."


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_classifier(request: Request) -> SketchClassifier:
    classifier: SketchClassifier = request.app.state.classifier
    return classifier


async def _run_on_pool(request: Request, func: Callable[..., T], *args: object) -> T:
    try:
        return await _get_inference_pool(request).run(func, *args)
    except TimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference queue is full, try again later",
        ) from exc


async def _classify(request: Request, func: Callable[..., ClassificationResult], *args: object) -> ClassifyResponse:
    classifier = _get_classifier(request)
    try:
        result = await _run_on_pool(request, func, *args)
    except ValueError as exc:
        raise HTTPException(
            status_code=HTTPStatus.UNPROCESSABLE_ENTITY,
            detail=f"Classification failed: {exc}",
        ) from exc
    except RuntimeError as exc:
        logger.exception("Classification failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Classification failed: {exc}",
        ) from exc

    settings = _get_settings(request)
    active = classifier.active_model
    labels = active.labels if active else None
    low_confidence = result.is_low_confidence(settings.low_confidence_threshold)
    return ClassifyResponse(
        label=result.label,
        confidence=result.confidence,
        scores=list(result.scores),
        top3=[
            RankedLabel(index=i, label=resolve_label(i, labels), score=result.scores[i]) for i in result.top3_indices
        ],
        top3_indices=list(result.top3_indices),
        low_confidence=low_confidence,
        advisory=LOW_CONFIDENCE_ADVISORY if low_confidence else None,
        model=active.id if active else None,
        backend=classifier.backend_status,
    )


_CLASSIFY_ERRORS = {
    HTTPStatus.UNPROCESSABLE_ENTITY.value: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


@router.post(
    "/classify",
    response_model=ClassifyResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        HTTPStatus.REQUEST_ENTITY_TOO_LARGE.value: {"model": ErrorResponse},
        **_CLASSIFY_ERRORS,
    },
    summary="Classify an uploaded drawing",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyResponse:
    """Classify an uploaded image of a drawing with the active model."""
    settings = _get_settings(request)
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )
    try:
        image = decode_image(data, settings.max_image_pixels)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return await _classify(request, _get_classifier(request).classify_image, image)


@router.post(
    "/classify-strokes",
    response_model=ClassifyResponse,
    responses=_CLASSIFY_ERRORS,
    summary="Classify a drawing given as strokes",
)
async def classify_strokes(request: Request, body: StrokesRequest) -> ClassifyResponse:
    """Render stroke polylines and classify the drawing with the active model."""
    classifier = _get_classifier(request)

    def run() -> ClassificationResult:
        return classifier.classify_strokes(
            body.strokes,
            body.width,
            body.height,
            body.stroke_width,
            crop_to_ink=body.crop_to_ink,
        )

    return await _classify(request, run)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health and backend status."""
    classifier = _get_classifier(request)
    pool = _get_inference_pool(request)
    active = classifier.active_model
    return HealthResponse(
        status="ok",
        backend=classifier.backend_status,
        active_model=active.id if active else None,
        cpu_threads=classifier.cpu_threads,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the model catalog with install and update status."""
    classifier = _get_classifier(request)
    downloader = classifier.downloader
    active = classifier.active_model

    models: list[ModelInfo] = []
    for descriptor in MODEL_REGISTRY.values():
        installed = downloader.is_installed(descriptor)
        if active is not None and descriptor.id == active.id:
            model_status = "active"
        elif installed:
            model_status = "installed"
        elif descriptor.provenance is Provenance.DOWNLOADED:
            model_status = "not_installed"
        else:
            model_status = "available"

        models.append(
            ModelInfo(
                id=descriptor.id,
                name=descriptor.name,
                labels=list(descriptor.labels),
                input_width=descriptor.input_width,
                input_height=descriptor.input_height,
                input_channels=descriptor.input_channels,
                provenance=descriptor.provenance.value,
                version=descriptor.version,
                source_url=descriptor.source_url,
                status=model_status,
                update_available=downloader.versions.needs_update(descriptor),
            )
        )

    return ModelsResponse(models=models)


@router.post(
    "/models/{model_id}/select",
    response_model=SelectModelResponse,
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        HTTPStatus.UNPROCESSABLE_ENTITY.value: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Switch the active model",
)
async def select_model(request: Request, model_id: str) -> SelectModelResponse:
    """Hot-swap the inference engine to another catalog model."""
    classifier = _get_classifier(request)
    try:
        descriptor: ModelDescriptor = await _run_on_pool(request, classifier.select_model, model_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown model: {model_id}") from exc
    except ModelNotInstalledError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ShapeMismatchError as exc:
        raise HTTPException(status_code=HTTPStatus.UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except ModelLoadError as exc:
        logger.exception("Failed to load model %s", model_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Model load failed: {exc}",
        ) from exc
    return SelectModelResponse(id=descriptor.id, backend=classifier.backend_status)


@router.post(
    "/models/{model_id}/download",
    response_model=DownloadResponse,
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Install a model into the local models directory",
)
async def download_model(request: Request, model_id: str) -> DownloadResponse:
    """Materialize a model from the bundled assets (simulated download)."""
    classifier = _get_classifier(request)

    def report(fraction: float) -> None:
        logger.debug("Downloading %s: %.0f%%", model_id, fraction * 100)

    try:
        path = await _run_on_pool(request, classifier.download_model, model_id, report)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown model: {model_id}") from exc
    except FileNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return DownloadResponse(
        id=model_id,
        path=str(path),
        version=classifier.downloader.versions.get_saved_version(model_id),
    )


@router.put(
    "/backend/threads",
    response_model=BackendResponse,
    responses={
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Rebuild the CPU backend with a new thread count",
)
async def set_cpu_threads(request: Request, body: ThreadsRequest) -> BackendResponse:
    """Tear down the current backend and rebuild it on CPU with ``threads`` threads."""
    classifier = _get_classifier(request)
    try:
        backend = await _run_on_pool(request, classifier.reinitialize_for_cpu_threads, body.threads)
    except ModelLoadError as exc:
        logger.exception("CPU reinitialization failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Backend rebuild failed: {exc}",
        ) from exc
    return BackendResponse(backend=backend, cpu_threads=classifier.cpu_threads)
