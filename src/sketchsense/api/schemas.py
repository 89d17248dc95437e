"""Pydantic request/response schemas for the SketchSense API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class RankedLabel(BaseModel):
    """One of the top-ranked classes."""

    index: int
    label: str
    score: float


class ClassifyResponse(BaseModel):
    """Result of classifying one drawing."""

    label: str
    confidence: float = Field(description="Score of the winning class (not re-normalized)")
    scores: list[float] = Field(description="Score for every class, indexed by class id")
    top3: list[RankedLabel]
    top3_indices: list[int]
    low_confidence: bool
    advisory: str | None = Field(default=None, description="Hint shown for low-confidence results")
    model: str | None = Field(description="Catalog id of the model that produced the result")
    backend: str


class StrokesRequest(BaseModel):
    """A drawing given as stroke polylines in canvas coordinates."""

    width: int = Field(gt=0, le=4096)
    height: int = Field(gt=0, le=4096)
    stroke_width: float = Field(default=12.0, gt=0.0)
    strokes: list[list[tuple[float, float]]]
    crop_to_ink: bool = True


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    backend: str
    active_model: str | None
    cpu_threads: int
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Catalog entry for a classifier model."""

    id: str
    name: str
    labels: list[str]
    input_width: int
    input_height: int
    input_channels: int
    provenance: str = Field(description="'bundled' or 'downloaded'")
    version: int
    source_url: str | None = None
    status: str = Field(description="Model status: 'active', 'available', 'installed', or 'not_installed'")
    update_available: bool


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class SelectModelResponse(BaseModel):
    """Outcome of a model swap."""

    id: str
    backend: str


class DownloadResponse(BaseModel):
    """Outcome of a (simulated) model download."""

    id: str
    path: str
    version: int


class ThreadsRequest(BaseModel):
    """CPU thread count for the backend rebuild."""

    threads: int = Field(ge=1)


class BackendResponse(BaseModel):
    """Backend state after a reconfiguration."""

    backend: str
    cpu_threads: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
