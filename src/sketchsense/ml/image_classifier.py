"""Sketch classifier: rasterize, run, and interpret in one call.

Wires the preprocessing, the inference engine, and the result interpreter
together for the currently selected catalog model.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from PIL import Image

from sketchsense.ml.engine import InferenceEngine, ShapeMismatchError
from sketchsense.ml.model_manager import ModelDownloader
from sketchsense.ml.model_registry import Provenance, find_by_filename, get_descriptor
from sketchsense.ml.postprocessing import ClassificationResult, interpret_scores
from sketchsense.ml.preprocessing import WHITE, ink_bounds, rasterize, render_strokes

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from pathlib import Path

    from sketchsense.config import Settings
    from sketchsense.ml.engine import BackendProbe
    from sketchsense.ml.model_registry import ModelConfig, ModelDescriptor
    from sketchsense.ml.preprocessing import Box

logger = logging.getLogger(__name__)


class ModelNotInstalledError(LookupError):
    """A downloadable model was selected before it was downloaded."""


class SketchClassifier:
    """Classifies drawings with the selected catalog model."""

    def __init__(self, settings: Settings, *, probe: BackendProbe | None = None) -> None:
        self._settings = settings
        self._lock = threading.Lock()
        self._downloader = ModelDownloader(settings)
        self._canvas: Image.Image | None = None

        descriptor = get_descriptor(settings.default_model)
        self._engine = InferenceEngine(self._config_for(descriptor), settings, probe=probe)
        self._verify_class_count(descriptor)

    # -- Public API ---------------------------------------------------------

    @property
    def engine(self) -> InferenceEngine:
        return self._engine

    @property
    def downloader(self) -> ModelDownloader:
        return self._downloader

    @property
    def backend_status(self) -> str:
        return self._engine.backend_status

    @property
    def cpu_threads(self) -> int:
        return self._engine.cpu_threads

    @property
    def active_model(self) -> ModelDescriptor | None:
        """Catalog entry of the loaded model, or None when no registered model is loaded."""
        if self._engine.backend is None:
            return None
        return find_by_filename(self._engine.config.model_file)

    def classify_image(self, image: Image.Image, crop_box: Box | None = None) -> ClassificationResult:
        with self._lock:
            config = self._engine.config
            prepared = rasterize(
                image,
                config.input_width,
                fit_fraction=self._settings.fit_fraction,
                center_by_mass=self._settings.center_by_mass,
                crop_box=crop_box,
                target=self._reusable_canvas(config.input_width),
            )
            scores = self._engine.classify(prepared)
            descriptor = self.active_model
            if descriptor is not None and scores.size != descriptor.num_classes:
                raise ShapeMismatchError(
                    f"Model '{descriptor.id}' produced {scores.size} scores for {descriptor.num_classes} labels"
                )
            result = interpret_scores(scores, descriptor.labels if descriptor else None)

        logger.debug("Classified as %s (%.3f)", result.label, result.confidence)
        return result

    def classify_strokes(
        self,
        strokes: Sequence[Sequence[tuple[float, float]]],
        width: int,
        height: int,
        stroke_width: float = 12.0,
        *,
        crop_to_ink: bool = True,
    ) -> ClassificationResult:
        """Render stroke polylines and classify the drawing."""
        drawing = render_strokes(strokes, width, height, stroke_width)
        crop_box = ink_bounds(drawing) if crop_to_ink else None
        return self.classify_image(drawing, crop_box=crop_box)

    def select_model(self, model_id: str) -> ModelDescriptor:
        """Hot-swap the engine to another catalog model.

        Raises:
            KeyError: If the model id is unknown.
            ModelNotInstalledError: If a downloadable model is not installed yet.
            ModelLoadError: If the model cannot be loaded.
            ShapeMismatchError: If the model's class count disagrees with its labels.
        """
        descriptor = get_descriptor(model_id)
        config = self._config_for(descriptor)
        with self._lock:
            self._engine.load_model(config)
            self._verify_class_count(descriptor)
        logger.info("Selected model %s (%s)", descriptor.id, self._engine.backend_status)
        return descriptor

    def download_model(self, model_id: str, progress: Callable[[float], None] | None = None) -> Path:
        return self._downloader.download(get_descriptor(model_id), progress)

    def reinitialize_for_cpu_threads(self, threads: int) -> str:
        with self._lock:
            self._engine.reinitialize_for_cpu_threads(threads)
            return self._engine.backend_status

    def close(self) -> None:
        with self._lock:
            self._engine.close()

    # -- Internal -----------------------------------------------------------

    def _config_for(self, descriptor: ModelDescriptor) -> ModelConfig:
        if self._downloader.is_installed(descriptor):
            return descriptor.to_config(str(self._downloader.installed_path(descriptor).resolve()))
        if descriptor.provenance is Provenance.DOWNLOADED:
            raise ModelNotInstalledError(f"Model '{descriptor.id}' must be downloaded first")
        return descriptor.to_config()

    def _verify_class_count(self, descriptor: ModelDescriptor) -> None:
        # Generic outputs declare no class count; classify checks those per call.
        signature = self._engine.signature
        if signature is None or signature.num_classes is None:
            return
        if signature.num_classes != descriptor.num_classes:
            self._engine.close()
            raise ShapeMismatchError(
                f"Model '{descriptor.id}' declares {signature.num_classes} outputs "
                f"for {descriptor.num_classes} labels"
            )

    def _reusable_canvas(self, size: int) -> Image.Image:
        if self._canvas is None or self._canvas.size != (size, size):
            self._canvas = Image.new("RGB", (size, size), WHITE)
        return self._canvas
