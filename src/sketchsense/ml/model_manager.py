"""Model manager: resolve, install, and version model files.

Handles resolving model references to files on disk, the simulated download
that copies bundled assets into the writable models directory, and the
per-model version metadata used for update checks.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from collections.abc import Callable

    from sketchsense.config import Settings
    from sketchsense.ml.model_registry import ModelDescriptor

logger = logging.getLogger(__name__)

CHUNK_SIZE: int = 8 * 1024
METADATA_FILENAME: str = "model_meta.json"


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def resolve_model_path(model_file: str, assets_dir: Path) -> Path:
    """Map a model reference to a file.

    References starting with a path separator are files on disk; anything
    else is looked up by name among the bundled assets.

    Raises:
        FileNotFoundError: If the resolved file does not exist.
    """
    if model_file.startswith(os.sep):
        path = Path(model_file)
    else:
        path = Path(assets_dir) / model_file
    if not path.is_file():
        raise FileNotFoundError(f"Model file not found: {path}")
    return path


# ---------------------------------------------------------------------------
# Version metadata
# ---------------------------------------------------------------------------


class ModelMetadata(BaseModel):
    """Installed model versions, persisted as JSON."""

    versions: dict[str, int] = Field(default_factory=dict)


class ModelVersionStore:
    """Tracks the version of each installed model in a small JSON file."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    def get_saved_version(self, model_id: str) -> int:
        with self._lock:
            return self._load().versions.get(model_id, 0)

    def save_version(self, model_id: str, version: int) -> None:
        with self._lock:
            metadata = self._load()
            metadata.versions[model_id] = version
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(metadata.model_dump_json(indent=2), encoding="utf-8")

    def needs_update(self, descriptor: ModelDescriptor) -> bool:
        """Compare the installed version against the (simulated) remote one."""
        return self.get_saved_version(descriptor.id) < remote_version(descriptor)

    def _load(self) -> ModelMetadata:
        if not self._path.exists():
            return ModelMetadata()
        return ModelMetadata.model_validate_json(self._path.read_text(encoding="utf-8"))


def remote_version(descriptor: ModelDescriptor) -> int:
    # Downloads are simulated; the "remote" copy is always one release ahead.
    return descriptor.version + 1


# ---------------------------------------------------------------------------
# Simulated download
# ---------------------------------------------------------------------------


class ModelDownloader:
    """Installs models into the models directory by copying bundled assets."""

    def __init__(self, settings: Settings) -> None:
        self._assets_dir = Path(settings.assets_dir)
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)
        self.versions = ModelVersionStore(self._models_dir / METADATA_FILENAME)

    @property
    def models_dir(self) -> Path:
        return self._models_dir

    def installed_path(self, descriptor: ModelDescriptor) -> Path:
        return self._models_dir / descriptor.file_name

    def is_installed(self, descriptor: ModelDescriptor) -> bool:
        path = self.installed_path(descriptor)
        return path.is_file() and path.stat().st_size > 0

    def download(
        self,
        descriptor: ModelDescriptor,
        progress: Callable[[float], None] | None = None,
    ) -> Path:
        """Copy the bundled asset for ``descriptor`` into the models directory.

        An already installed, non-empty copy is reused. Progress is reported
        as a fraction in [0, 1] and always ends with 1.0.

        Raises:
            FileNotFoundError: If the bundled asset does not exist.
        """
        out_path = self.installed_path(descriptor)
        if self.is_installed(descriptor):
            logger.info("Model %s already installed at %s", descriptor.id, out_path)
            if progress is not None:
                progress(1.0)
            return out_path

        source = resolve_model_path(descriptor.file_name, self._assets_dir)
        total = source.stat().st_size
        part_path = out_path.with_name(out_path.name + ".part")
        copied = 0
        try:
            with source.open("rb") as src, part_path.open("wb") as dst:
                while chunk := src.read(CHUNK_SIZE):
                    dst.write(chunk)
                    copied += len(chunk)
                    if progress is not None and total:
                        progress(copied / total)
            part_path.replace(out_path)
        finally:
            part_path.unlink(missing_ok=True)

        if progress is not None:
            progress(1.0)
        self.versions.save_version(descriptor.id, remote_version(descriptor))
        logger.info("Installed %s to %s (%d bytes)", descriptor.id, out_path, copied)
        return out_path
