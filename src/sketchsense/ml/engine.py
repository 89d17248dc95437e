"""Inference engine: one ONNX Runtime session with backend fallback.

Sessions are built through an ordered list of backend tiers:

    accelerator (OpenVINO) -> GPU (CUDA) -> CPU

A tier that fails to build, or that ONNX Runtime silently replaces with
another provider, is released and the next tier is tried. The CPU tier is
terminal: if it fails, loading fails. Every successful build is followed by a
few warm-up runs so the first user-facing call does not pay lazy-init costs.

All public methods hold one re-entrant lock; the input and output buffers are
reused between calls and are not safe to share across threads.
"""

from __future__ import annotations

import contextlib
import logging
import os
import threading
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions, get_available_providers
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode
from PIL import Image

from sketchsense.ml.encoding import TensorEncoder
from sketchsense.ml.model_manager import resolve_model_path

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import NDArray

    from sketchsense.config import Settings
    from sketchsense.ml.model_registry import ModelConfig

logger = logging.getLogger(__name__)

MAX_CPU_THREADS: int = 4
CPU_PROVIDER: str = "CPUExecutionProvider"
GPU_PROVIDER: str = "CUDAExecutionProvider"

STATUS_NOT_LOADED: str = "Not Loaded"
STATUS_LOAD_FAILED: str = "Load Failed"

_DMI_FILES: tuple[str, ...] = (
    "/sys/class/dmi/id/product_name",
    "/sys/class/dmi/id/sys_vendor",
)
_VIRTUALIZATION_SIGNATURES: tuple[str, ...] = (
    "virtualbox",
    "vmware",
    "qemu",
    "kvm",
    "bochs",
    "xen",
    "parallels",
    "virtual machine",
)

_ORT_INPUT_DTYPES: dict[str, np.dtype[np.generic]] = {
    "tensor(float)": np.dtype(np.float32),
    "tensor(uint8)": np.dtype(np.uint8),
    "tensor(int8)": np.dtype(np.int8),
}

Dim = int | str | None


class ModelLoadError(RuntimeError):
    """The model could not be loaded on any backend."""


class ShapeMismatchError(ValueError):
    """The model's declared input shape disagrees with the engine config."""


class UnsupportedTensorTypeError(ValueError):
    """The model uses an input or output element type the engine cannot feed."""


# ---------------------------------------------------------------------------
# Backend planning
# ---------------------------------------------------------------------------


class BackendKind(StrEnum):
    ACCELERATOR = "accelerator"
    GPU = "gpu"
    CPU = "cpu"


@dataclass(frozen=True)
class BackendTier:
    """One execution provider to try, with its provider options."""

    kind: BackendKind
    provider: str
    options: dict[str, object] = field(default_factory=dict)

    @property
    def provider_entry(self) -> str | tuple[str, dict[str, object]]:
        return (self.provider, self.options) if self.options else self.provider

    def status(self, cpu_threads: int) -> str:
        if self.kind is BackendKind.ACCELERATOR:
            return "Accelerator Active"
        if self.kind is BackendKind.GPU:
            return "GPU Active"
        return f"CPU Multi-threaded Active ({cpu_threads})"


CPU_TIER = BackendTier(kind=BackendKind.CPU, provider=CPU_PROVIDER)


def is_virtualized(dmi_files: Sequence[str] = _DMI_FILES) -> bool:
    """Guess whether we run under a hypervisor from DMI product strings."""
    for dmi_file in dmi_files:
        try:
            text = Path(dmi_file).read_text(encoding="utf-8", errors="ignore").lower()
        except OSError:
            continue
        if any(signature in text for signature in _VIRTUALIZATION_SIGNATURES):
            return True
    return False


@dataclass(frozen=True)
class BackendProbe:
    """What the runtime and the host can offer."""

    available_providers: frozenset[str]
    virtualized: bool = False

    @classmethod
    def detect(cls) -> BackendProbe:
        return cls(
            available_providers=frozenset(get_available_providers()),
            virtualized=is_virtualized(),
        )


def plan_backends(settings: Settings, probe: BackendProbe) -> list[BackendTier]:
    """Return the tiers to attempt, in order. The CPU tier is always last."""
    tiers: list[BackendTier] = []

    accelerator = settings.accelerator_provider
    if not settings.use_accelerator:
        logger.info("Accelerator tier disabled by configuration")
    elif probe.virtualized:
        logger.info("Virtualized environment detected, skipping %s", accelerator)
    elif accelerator not in probe.available_providers:
        logger.info("%s not available in this runtime", accelerator)
    else:
        tiers.append(
            BackendTier(
                kind=BackendKind.ACCELERATOR,
                provider=accelerator,
                options={"device_type": settings.accelerator_device},
            )
        )

    if not settings.use_gpu:
        logger.info("GPU tier disabled by configuration")
    elif GPU_PROVIDER not in probe.available_providers:
        logger.info("%s not available in this runtime", GPU_PROVIDER)
    else:
        tiers.append(
            BackendTier(
                kind=BackendKind.GPU,
                provider=GPU_PROVIDER,
                options={
                    "device_id": 0,
                    "gpu_mem_limit": settings.gpu_mem_limit,
                    "arena_extend_strategy": "kSameAsRequested",
                },
            )
        )

    tiers.append(CPU_TIER)
    return tiers


def default_cpu_threads() -> int:
    return clamp_cpu_threads(os.cpu_count() or 1)


def clamp_cpu_threads(threads: int) -> int:
    return max(1, min(threads, MAX_CPU_THREADS))


# ---------------------------------------------------------------------------
# Tensor signature
# ---------------------------------------------------------------------------


class OutputLayout(StrEnum):
    VECTOR = "vector"  # float32 [N]
    ROW = "row"  # float32 [1, N]
    GENERIC = "generic"  # anything else, decoded element-wise


@dataclass(frozen=True)
class TensorSignature:
    """Input/output description of a session, resolved once per load."""

    input_name: str
    input_type: str
    input_shape: tuple[Dim, ...]
    output_name: str
    output_type: str
    output_layout: OutputLayout
    num_classes: int | None

    @property
    def input_dtype(self) -> np.dtype[np.generic] | None:
        return _ORT_INPUT_DTYPES.get(self.input_type)

    @classmethod
    def from_session(cls, session: InferenceSession) -> TensorSignature:
        model_input = session.get_inputs()[0]
        model_output = session.get_outputs()[0]
        output_shape = tuple(model_output.shape)
        layout, num_classes = _output_layout(model_output.type, output_shape)
        return cls(
            input_name=model_input.name,
            input_type=model_input.type,
            input_shape=tuple(model_input.shape),
            output_name=model_output.name,
            output_type=model_output.type,
            output_layout=layout,
            num_classes=num_classes,
        )


def _output_layout(output_type: str, shape: tuple[Dim, ...]) -> tuple[OutputLayout, int | None]:
    if output_type == "tensor(float)":
        if len(shape) == 1 and isinstance(shape[0], int):
            return OutputLayout.VECTOR, shape[0]
        if len(shape) == 2 and _is_single_batch(shape[0]) and isinstance(shape[1], int):
            return OutputLayout.ROW, shape[1]
    return OutputLayout.GENERIC, None


def _is_single_batch(dim: Dim) -> bool:
    # Symbolic (str) or unknown (None) batch dims are fed as 1.
    return not isinstance(dim, int) or dim == 1


def decode_generic(raw: NDArray[np.generic]) -> NDArray[np.float32]:
    """Flatten an arbitrary output tensor into float scores.

    8-bit outputs are mapped onto [0, 1]: uint8 as ``v / 255`` and int8 as
    ``(v + 128) / 255``.

    Raises:
        UnsupportedTensorTypeError: For non-numeric outputs.
    """
    flat = np.asarray(raw).reshape(-1)
    if flat.dtype == np.uint8:
        return flat.astype(np.float32) / 255.0
    if flat.dtype == np.int8:
        return (flat.astype(np.float32) + 128.0) / 255.0
    if np.issubdtype(flat.dtype, np.number) or flat.dtype == np.bool_:
        return flat.astype(np.float32)
    raise UnsupportedTensorTypeError(f"Unsupported output element type: {flat.dtype}")


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class InferenceEngine:
    """Owns one loaded model and the backend that runs it."""

    def __init__(self, config: ModelConfig, settings: Settings, *, probe: BackendProbe | None = None) -> None:
        self._settings = settings
        self._probe = probe if probe is not None else BackendProbe.detect()
        self._lock = threading.RLock()
        self._config = config
        self._cpu_threads = clamp_cpu_threads(settings.cpu_threads) if settings.cpu_threads else default_cpu_threads()

        self._resources = contextlib.ExitStack()
        self._session: InferenceSession | None = None
        self._signature: TensorSignature | None = None
        self._backend: BackendKind | None = None
        self._status = STATUS_NOT_LOADED

        self._encoder = TensorEncoder()
        self._output: NDArray[np.float32] | None = None

        with self._lock:
            self._build(plan_backends(settings, self._probe))

    # -- Public API ---------------------------------------------------------

    @property
    def config(self) -> ModelConfig:
        return self._config

    @property
    def backend(self) -> BackendKind | None:
        return self._backend

    @property
    def backend_status(self) -> str:
        return self._status

    @property
    def cpu_threads(self) -> int:
        return self._cpu_threads

    @property
    def signature(self) -> TensorSignature | None:
        return self._signature

    def classify(self, image: Image.Image) -> NDArray[np.float32]:
        """Run the model on a rasterized sketch and return its scores.

        The returned array is a buffer owned by the engine; it stays valid
        until the next call.

        Raises:
            ShapeMismatchError: If the model input disagrees with the config.
            UnsupportedTensorTypeError: If the model's element types are unsupported.
            ModelLoadError: If no model is loaded.
        """
        with self._lock:
            session, signature = self._require_session()
            dtype = signature.input_dtype
            if dtype is None:
                raise UnsupportedTensorTypeError(f"Unsupported input element type: {signature.input_type}")
            feed_shape = self._feed_shape(signature)

            config = self._config
            size = (config.input_width, config.input_height)
            if image.size != size:
                image = image.resize(size, Image.Resampling.BILINEAR)

            tensor = self._encoder.encode(image, config.input_channels, dtype).reshape(feed_shape)
            (raw,) = session.run([signature.output_name], {signature.input_name: tensor})
            return self._decode_output(raw, signature)

    def load_model(self, config: ModelConfig) -> None:
        """Swap to another model, rebuilding through every backend tier.

        Raises:
            ModelLoadError: If the model cannot be loaded even on CPU.
        """
        with self._lock:
            logger.info("Swapping model %s -> %s", self._config.model_file, config.model_file)
            self._teardown()
            self._config = config
            self._build(plan_backends(self._settings, self._probe))

    def reinitialize_for_cpu_threads(self, threads: int) -> None:
        """Rebuild on the CPU backend only, with ``threads`` intra-op threads."""
        with self._lock:
            self._teardown()
            self._cpu_threads = clamp_cpu_threads(threads)
            logger.info("Reinitializing %s on CPU with %d threads", self._config.model_file, self._cpu_threads)
            self._build([CPU_TIER])

    def close(self) -> None:
        """Release the session and all buffers."""
        with self._lock:
            self._teardown()
            logger.info("Inference engine closed")

    # -- Internal -----------------------------------------------------------

    def _build(self, tiers: Sequence[BackendTier]) -> None:
        try:
            model_path = resolve_model_path(self._config.model_file, self._settings.assets_dir)
        except FileNotFoundError as exc:
            self._status = STATUS_LOAD_FAILED
            raise ModelLoadError(str(exc)) from exc

        for tier in tiers:
            try:
                session = self._create_session(model_path, tier)
            except Exception as exc:
                if tier.kind is BackendKind.CPU:
                    self._status = STATUS_LOAD_FAILED
                    raise ModelLoadError(f"Could not load {model_path.name} on CPU: {exc}") from exc
                logger.warning("%s backend failed for %s, falling back: %s", tier.kind, model_path.name, exc)
                continue

            self._attach(session, tier)
            logger.info("Loaded %s (%s)", model_path.name, self._status)
            self._warm_up()
            return

        self._status = STATUS_LOAD_FAILED
        raise ModelLoadError(f"No backend tier could load {model_path.name}")

    def _create_session(self, model_path: Path, tier: BackendTier) -> InferenceSession:
        session = InferenceSession(
            str(model_path),
            sess_options=self._build_session_options(tier),
            providers=[tier.provider_entry],
        )
        active = session.get_providers()
        # ONNX Runtime may quietly fall back to CPU when a provider fails.
        if not active or active[0] != tier.provider:
            raise RuntimeError(f"{tier.provider} requested but session runs on {active}")
        return session

    def _build_session_options(self, tier: BackendTier) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._cpu_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if tier.provider == "OpenVINOExecutionProvider":
            # OpenVINO does its own graph optimization
            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts

    def _attach(self, session: InferenceSession, tier: BackendTier) -> None:
        self._session = session
        self._resources.callback(self._release, "session", self._drop_session)
        self._signature = TensorSignature.from_session(session)
        self._resources.callback(self._release, "tensor signature", self._drop_signature)
        self._backend = tier.kind
        self._status = tier.status(self._cpu_threads)

    def _teardown(self) -> None:
        # ExitStack unwinds in reverse order of registration.
        self._resources.close()
        self._encoder.reset()
        self._output = None
        self._backend = None
        self._status = STATUS_NOT_LOADED

    @staticmethod
    def _release(name: str, release: Callable[[], None]) -> None:
        try:
            release()
        except Exception:
            logger.exception("Failed to release %s", name)

    def _drop_session(self) -> None:
        self._session = None

    def _drop_signature(self) -> None:
        self._signature = None

    def _warm_up(self) -> None:
        runs = self._settings.warmup_runs
        session, signature = self._session, self._signature
        if runs == 0 or session is None or signature is None:
            return
        dtype = signature.input_dtype
        if dtype is None:
            logger.warning("Skipping warm-up: unsupported input type %s", signature.input_type)
            return
        try:
            dummy = np.zeros(self._feed_shape(signature), dtype=dtype)
        except ShapeMismatchError as exc:
            logger.warning("Skipping warm-up: %s", exc)
            return

        for attempt in range(1, runs + 1):
            try:
                session.run([signature.output_name], {signature.input_name: dummy})
            except Exception:
                logger.warning("Warm-up run %d/%d failed", attempt, runs, exc_info=True)
                return
        logger.debug("Completed %d warm-up runs", runs)

    def _require_session(self) -> tuple[InferenceSession, TensorSignature]:
        if self._session is None or self._signature is None:
            raise ModelLoadError(f"No model loaded ({self._status})")
        return self._session, self._signature

    def _feed_shape(self, signature: TensorSignature) -> tuple[int, ...]:
        """Validate the declared input shape and return the shape to feed."""
        shape = signature.input_shape
        config = self._config
        if len(shape) == 4:
            batch, height, width, channels = shape
        elif len(shape) == 3:
            batch, height, width = shape
            channels = 1
        else:
            raise ShapeMismatchError(f"Expected input (batch, height, width[, channels]), got {list(shape)}")

        problems = []
        if isinstance(batch, int) and batch != 1:
            problems.append(f"batch={batch} (expected 1)")
        for name, declared, expected in (
            ("height", height, config.input_height),
            ("width", width, config.input_width),
            ("channels", channels, config.input_channels),
        ):
            if isinstance(declared, int) and declared != expected:
                problems.append(f"{name}={declared} (expected {expected})")
        if problems:
            raise ShapeMismatchError(
                f"Model input {list(shape)} does not match {config.model_file}: " + ", ".join(problems)
            )

        if len(shape) == 4:
            return (1, config.input_height, config.input_width, config.input_channels)
        return (1, config.input_height, config.input_width)

    def _decode_output(self, raw: NDArray[np.generic], signature: TensorSignature) -> NDArray[np.float32]:
        if signature.output_layout is OutputLayout.GENERIC:
            return decode_generic(raw)

        values = np.asarray(raw).reshape(-1)
        output = self._output
        if output is None or output.size != values.size:
            output = np.empty(values.size, dtype=np.float32)
            self._output = output
            logger.debug("Allocated output buffer for %d classes", values.size)
        np.copyto(output, values)
        return output
