"""Shared fixtures: settings pointing at tmp dirs and tiny ONNX catalog models."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

from sketchsense.config import Settings
from sketchsense.tools.demo_models import build_classifier

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

# Fixed scores emitted by the test digits model, whatever the drawing.
DIGIT_SCORES = [0.1, 0.05, 0.7, 0.05, 0.02, 0.02, 0.02, 0.02, 0.01, 0.01]
# 'H' wins with a low score.
LETTER_SCORES = [0.45 if i == 7 else 0.022 for i in range(26)]
# 'star' wins.
SHAPE_SCORES = [0.05, 0.05, 0.1, 0.6, 0.1, 0.1]


def _constant_model(path: Path, scores: list[float], **kwargs: object) -> Path:
    return build_classifier(
        path,
        len(scores),
        weights=np.zeros((28 * 28, len(scores)), dtype=np.float32),
        bias=scores,
        softmax=False,
        **kwargs,  # type: ignore[arg-type]
    )


@pytest.fixture()
def assets_dir(tmp_path: Path) -> Path:
    """Bundled assets for every catalog model, with constant outputs."""
    assets = tmp_path / "assets"
    _constant_model(assets / "mnist.onnx", DIGIT_SCORES)
    _constant_model(assets / "letters.onnx", LETTER_SCORES)
    _constant_model(assets / "shapes.onnx", SHAPE_SCORES)
    return assets


@pytest.fixture()
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Factory for settings rooted in tmp_path, CPU-only by default."""

    def factory(**overrides: object) -> Settings:
        defaults: dict[str, object] = {
            "assets_dir": tmp_path / "assets",
            "models_dir": tmp_path / "models",
            "use_accelerator": False,
            "use_gpu": False,
            "cpu_threads": 2,
            "warmup_runs": 1,
            "max_concurrent": 1,
        }
        defaults.update(overrides)
        return Settings(**defaults)  # type: ignore[arg-type]

    return factory


@pytest.fixture()
def settings(assets_dir: Path, make_settings: Callable[..., Settings]) -> Settings:
    return make_settings()
