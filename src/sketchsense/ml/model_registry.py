"""Static catalog of the sketch classification models."""

from __future__ import annotations

import string
from dataclasses import dataclass
from enum import StrEnum
from pathlib import PurePath
from types import MappingProxyType
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping


class Provenance(StrEnum):
    BUNDLED = "bundled"
    DOWNLOADED = "downloaded"


@dataclass(frozen=True)
class ModelConfig:
    """What an inference engine needs to build a session for one model.

    ``model_file`` is either a bundled asset name or an absolute path on disk.
    """

    model_file: str
    input_width: int
    input_height: int
    input_channels: int


@dataclass(frozen=True)
class ModelDescriptor:
    """Static metadata for a single classifier model."""

    id: str
    name: str
    file_name: str
    labels: tuple[str, ...]
    input_width: int
    input_height: int
    input_channels: int
    provenance: Provenance
    version: int
    source_url: str | None = None

    @property
    def num_classes(self) -> int:
        return len(self.labels)

    def to_config(self, model_file: str | None = None) -> ModelConfig:
        """Build an engine config, optionally pointing at an installed copy."""
        return ModelConfig(
            model_file=model_file or self.file_name,
            input_width=self.input_width,
            input_height=self.input_height,
            input_channels=self.input_channels,
        )


DEFAULT_LABELS: tuple[str, ...] = tuple(string.digits)

_CATALOG: tuple[ModelDescriptor, ...] = (
    ModelDescriptor(
        id="digits",
        name="Handwritten Digits",
        file_name="mnist.onnx",
        labels=DEFAULT_LABELS,
        input_width=28,
        input_height=28,
        input_channels=1,
        provenance=Provenance.BUNDLED,
        version=1,
    ),
    ModelDescriptor(
        id="letters",
        name="Handwritten Letters",
        file_name="letters.onnx",
        labels=tuple(string.ascii_uppercase),
        input_width=28,
        input_height=28,
        input_channels=1,
        provenance=Provenance.BUNDLED,
        version=1,
    ),
    ModelDescriptor(
        id="shapes",
        name="Doodle Shapes",
        file_name="shapes.onnx",
        labels=("circle", "square", "triangle", "star", "line", "arrow"),
        input_width=28,
        input_height=28,
        input_channels=1,
        provenance=Provenance.DOWNLOADED,
        version=2,
    ),
)

MODEL_REGISTRY: Mapping[str, ModelDescriptor] = MappingProxyType({m.id: m for m in _CATALOG})


def get_descriptor(model_id: str) -> ModelDescriptor:
    try:
        return MODEL_REGISTRY[model_id]
    except KeyError:
        raise KeyError(f"Unknown model: {model_id}") from None


def find_by_filename(file_ref: str) -> ModelDescriptor | None:
    """Reverse-map a model file (asset name or path) to its descriptor."""
    name = PurePath(file_ref).name
    for descriptor in MODEL_REGISTRY.values():
        if descriptor.file_name == name:
            return descriptor
    return None
