"""Tests for the inference engine: backend fallback, shape checks, and hot swapping."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import patch

import numpy as np
import pytest
from PIL import Image

from sketchsense.ml.engine import (
    CPU_PROVIDER,
    GPU_PROVIDER,
    STATUS_LOAD_FAILED,
    STATUS_NOT_LOADED,
    BackendKind,
    BackendProbe,
    InferenceEngine,
    ModelLoadError,
    OutputLayout,
    ShapeMismatchError,
    decode_generic,
    is_virtualized,
    plan_backends,
)
from sketchsense.ml.model_registry import ModelConfig
from sketchsense.tools.demo_models import build_classifier

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

    from sketchsense.config import Settings

ACCELERATOR = "OpenVINOExecutionProvider"
ALL_PROVIDERS = BackendProbe(available_providers=frozenset({ACCELERATOR, GPU_PROVIDER, CPU_PROVIDER}))
CPU_ONLY = BackendProbe(available_providers=frozenset({CPU_PROVIDER}))

DIGITS = ModelConfig(model_file="mnist.onnx", input_width=28, input_height=28, input_channels=1)


def _blank(size: int = 28) -> Image.Image:
    return Image.new("RGB", (size, size), (255, 255, 255))


# ---------------------------------------------------------------------------
# Fake sessions for backend fallback
# ---------------------------------------------------------------------------


class _Arg:
    def __init__(self, name: str, type_: str, shape: list[object]) -> None:
        self.name = name
        self.type = type_
        self.shape = shape


class FakeSession:
    """Stands in for InferenceSession; behavior is keyed by requested provider."""

    created: list[str] = []
    failing: set[str] = set()
    replaced: set[str] = set()
    runs: int = 0
    fail_runs: bool = False

    def __init__(self, path: str, sess_options: object = None, providers: list[object] | None = None) -> None:
        entry = (providers or [CPU_PROVIDER])[0]
        provider = entry[0] if isinstance(entry, tuple) else entry
        type(self).created.append(provider)
        if provider in self.failing:
            raise RuntimeError(f"{provider} exploded")
        self._provider = CPU_PROVIDER if provider in self.replaced else provider
        self.sess_options = sess_options

    @classmethod
    def reset(cls) -> None:
        cls.created = []
        cls.failing = set()
        cls.replaced = set()
        cls.runs = 0
        cls.fail_runs = False

    def get_providers(self) -> list[str]:
        return [self._provider]

    def get_inputs(self) -> list[_Arg]:
        return [_Arg("image", "tensor(float)", [1, 28, 28, 1])]

    def get_outputs(self) -> list[_Arg]:
        return [_Arg("scores", "tensor(float)", [1, 10])]

    def run(self, output_names: list[str], feed: dict[str, np.ndarray]) -> list[np.ndarray]:
        type(self).runs += 1
        if self.fail_runs:
            raise RuntimeError("kernel failure")
        return [np.linspace(0.0, 1.0, 10, dtype=np.float32).reshape(1, 10)]


@pytest.fixture()
def fake_session() -> Iterator[type[FakeSession]]:
    FakeSession.reset()
    with patch("sketchsense.ml.engine.InferenceSession", FakeSession):
        yield FakeSession
    FakeSession.reset()


# ---------------------------------------------------------------------------
# plan_backends
# ---------------------------------------------------------------------------


class TestPlanBackends:
    def test_full_chain_when_everything_is_available(self, make_settings: Callable[..., Settings]) -> None:
        settings = make_settings(use_accelerator=True, use_gpu=True)

        tiers = plan_backends(settings, ALL_PROVIDERS)

        assert [t.kind for t in tiers] == [BackendKind.ACCELERATOR, BackendKind.GPU, BackendKind.CPU]
        assert tiers[0].options == {"device_type": settings.accelerator_device}
        assert tiers[1].options["gpu_mem_limit"] == settings.gpu_mem_limit

    def test_cpu_is_always_last(self, make_settings: Callable[..., Settings]) -> None:
        tiers = plan_backends(make_settings(), ALL_PROVIDERS)

        assert [t.kind for t in tiers] == [BackendKind.CPU]

    def test_virtualized_host_skips_accelerator(self, make_settings: Callable[..., Settings]) -> None:
        probe = BackendProbe(available_providers=ALL_PROVIDERS.available_providers, virtualized=True)

        tiers = plan_backends(make_settings(use_accelerator=True, use_gpu=True), probe)

        assert [t.kind for t in tiers] == [BackendKind.GPU, BackendKind.CPU]

    def test_unavailable_providers_are_skipped(self, make_settings: Callable[..., Settings]) -> None:
        tiers = plan_backends(make_settings(use_accelerator=True, use_gpu=True), CPU_ONLY)

        assert [t.kind for t in tiers] == [BackendKind.CPU]


def test_is_virtualized_reads_dmi_strings(tmp_path: Path) -> None:
    physical = tmp_path / "physical"
    physical.write_text("ThinkPad X1 Carbon\n")
    virtual = tmp_path / "virtual"
    virtual.write_text("VMware Virtual Platform\n")

    assert not is_virtualized([str(physical), str(tmp_path / "missing")])
    assert is_virtualized([str(physical), str(virtual)])


# ---------------------------------------------------------------------------
# Backend fallback
# ---------------------------------------------------------------------------


class TestFallback:
    def test_uses_first_tier_that_builds(
        self, assets_dir: Path, make_settings: Callable[..., Settings], fake_session: type[FakeSession]
    ) -> None:
        engine = InferenceEngine(DIGITS, make_settings(use_accelerator=True, use_gpu=True), probe=ALL_PROVIDERS)

        assert engine.backend is BackendKind.ACCELERATOR
        assert engine.backend_status == "Accelerator Active"
        assert fake_session.created == [ACCELERATOR]

    def test_failed_accelerator_falls_back_to_gpu(
        self, assets_dir: Path, make_settings: Callable[..., Settings], fake_session: type[FakeSession]
    ) -> None:
        fake_session.failing = {ACCELERATOR}

        engine = InferenceEngine(DIGITS, make_settings(use_accelerator=True, use_gpu=True), probe=ALL_PROVIDERS)

        assert engine.backend is BackendKind.GPU
        assert engine.backend_status == "GPU Active"
        assert fake_session.created == [ACCELERATOR, GPU_PROVIDER]

    def test_silently_replaced_provider_counts_as_failure(
        self, assets_dir: Path, make_settings: Callable[..., Settings], fake_session: type[FakeSession]
    ) -> None:
        fake_session.replaced = {ACCELERATOR, GPU_PROVIDER}

        engine = InferenceEngine(
            DIGITS, make_settings(use_accelerator=True, use_gpu=True, cpu_threads=3), probe=ALL_PROVIDERS
        )

        assert engine.backend is BackendKind.CPU
        assert engine.backend_status == "CPU Multi-threaded Active (3)"
        assert fake_session.created == [ACCELERATOR, GPU_PROVIDER, CPU_PROVIDER]

    def test_cpu_failure_is_a_load_error(
        self, assets_dir: Path, make_settings: Callable[..., Settings], fake_session: type[FakeSession]
    ) -> None:
        fake_session.failing = {CPU_PROVIDER}

        with pytest.raises(ModelLoadError, match="on CPU"):
            InferenceEngine(DIGITS, make_settings(), probe=CPU_ONLY)

    def test_missing_model_file_is_a_load_error(
        self, assets_dir: Path, make_settings: Callable[..., Settings]
    ) -> None:
        config = ModelConfig(model_file="nope.onnx", input_width=28, input_height=28, input_channels=1)

        with pytest.raises(ModelLoadError, match="not found"):
            InferenceEngine(config, make_settings(), probe=CPU_ONLY)

    def test_failed_swap_leaves_engine_unloaded(
        self, assets_dir: Path, make_settings: Callable[..., Settings], fake_session: type[FakeSession]
    ) -> None:
        engine = InferenceEngine(DIGITS, make_settings(), probe=CPU_ONLY)
        fake_session.failing = {CPU_PROVIDER}

        with pytest.raises(ModelLoadError):
            engine.load_model(DIGITS)

        assert engine.backend_status == STATUS_LOAD_FAILED
        with pytest.raises(ModelLoadError, match="No model loaded"):
            engine.classify(_blank())


class TestWarmUp:
    def test_runs_configured_warm_ups(
        self, assets_dir: Path, make_settings: Callable[..., Settings], fake_session: type[FakeSession]
    ) -> None:
        InferenceEngine(DIGITS, make_settings(warmup_runs=3), probe=CPU_ONLY)

        assert fake_session.runs == 3

    def test_warm_up_failure_does_not_fail_the_load(
        self, assets_dir: Path, make_settings: Callable[..., Settings], fake_session: type[FakeSession]
    ) -> None:
        fake_session.fail_runs = True

        engine = InferenceEngine(DIGITS, make_settings(warmup_runs=3), probe=CPU_ONLY)

        assert engine.backend is BackendKind.CPU
        assert fake_session.runs == 1


class TestCpuThreads:
    @pytest.mark.parametrize(("requested", "expected"), [(0, 1), (1, 1), (3, 3), (99, 4)])
    def test_reinitialize_clamps_threads(
        self,
        assets_dir: Path,
        make_settings: Callable[..., Settings],
        fake_session: type[FakeSession],
        requested: int,
        expected: int,
    ) -> None:
        engine = InferenceEngine(DIGITS, make_settings(use_gpu=True), probe=ALL_PROVIDERS)
        assert engine.backend is BackendKind.GPU

        engine.reinitialize_for_cpu_threads(requested)

        assert engine.backend is BackendKind.CPU
        assert engine.cpu_threads == expected
        assert engine.backend_status == f"CPU Multi-threaded Active ({expected})"
        assert fake_session.created[-1] == CPU_PROVIDER

    def test_session_options_carry_thread_count(
        self, assets_dir: Path, make_settings: Callable[..., Settings], fake_session: type[FakeSession]
    ) -> None:
        engine = InferenceEngine(DIGITS, make_settings(cpu_threads=2), probe=CPU_ONLY)

        session = engine._session
        assert session is not None
        assert session.sess_options.intra_op_num_threads == 2


# ---------------------------------------------------------------------------
# Real ONNX Runtime sessions
# ---------------------------------------------------------------------------


class TestClassify:
    def test_classifies_with_constant_model(self, settings: Settings) -> None:
        engine = InferenceEngine(DIGITS, settings, probe=CPU_ONLY)

        scores = engine.classify(_blank())

        assert engine.signature is not None
        assert engine.signature.output_layout is OutputLayout.ROW
        assert scores.shape == (10,)
        assert int(np.argmax(scores)) == 2
        assert float(scores[2]) == pytest.approx(0.7)

    def test_output_buffer_is_reused(self, settings: Settings) -> None:
        engine = InferenceEngine(DIGITS, settings, probe=CPU_ONLY)

        first = engine.classify(_blank())
        second = engine.classify(_blank())

        assert first is second

    def test_off_size_image_is_resized(self, settings: Settings) -> None:
        engine = InferenceEngine(DIGITS, settings, probe=CPU_ONLY)

        scores = engine.classify(_blank(64))

        assert scores.shape == (10,)

    def test_shape_mismatch_is_reported(self, tmp_path: Path, settings: Settings) -> None:
        path = build_classifier(tmp_path / "big.onnx", 10, height=32, width=32)
        config = ModelConfig(model_file=str(path), input_width=28, input_height=28, input_channels=1)
        engine = InferenceEngine(config, settings, probe=CPU_ONLY)

        with pytest.raises(ShapeMismatchError, match="height=32"):
            engine.classify(_blank())

    def test_rank_three_input(self, tmp_path: Path, settings: Settings) -> None:
        path = build_classifier(tmp_path / "rank3.onnx", 10, channels=None)
        config = ModelConfig(model_file=str(path), input_width=28, input_height=28, input_channels=1)
        engine = InferenceEngine(config, settings, probe=CPU_ONLY)

        assert engine.classify(_blank()).shape == (10,)

    def test_uint8_input_and_vector_output(self, tmp_path: Path, settings: Settings) -> None:
        path = build_classifier(tmp_path / "q.onnx", 5, input_dtype="uint8", output="vector")
        config = ModelConfig(model_file=str(path), input_width=28, input_height=28, input_channels=1)
        engine = InferenceEngine(config, settings, probe=CPU_ONLY)

        scores = engine.classify(_blank())

        assert engine.signature is not None
        assert engine.signature.input_dtype == np.dtype(np.uint8)
        assert engine.signature.output_layout is OutputLayout.VECTOR
        assert scores.shape == (5,)
        assert float(scores.sum()) == pytest.approx(1.0, abs=1e-5)

    def test_uint8_output_is_decoded_generically(self, tmp_path: Path, settings: Settings) -> None:
        path = build_classifier(
            tmp_path / "bytes.onnx",
            4,
            weights=np.zeros((28 * 28, 4), dtype=np.float32),
            bias=[0.0, 0.0, 1.0, 0.0],
            softmax=False,
            output="uint8",
        )
        config = ModelConfig(model_file=str(path), input_width=28, input_height=28, input_channels=1)
        engine = InferenceEngine(config, settings, probe=CPU_ONLY)

        scores = engine.classify(_blank())

        assert engine.signature is not None
        assert engine.signature.output_layout is OutputLayout.GENERIC
        assert scores.tolist() == pytest.approx([0.0, 0.0, 1.0, 0.0])

    def test_hot_swap_to_different_shape(self, tmp_path: Path, settings: Settings) -> None:
        engine = InferenceEngine(DIGITS, settings, probe=CPU_ONLY)
        engine.classify(_blank())
        path = build_classifier(tmp_path / "rgb.onnx", 6, height=32, width=32, channels=3)
        rgb = ModelConfig(model_file=str(path), input_width=32, input_height=32, input_channels=3)

        engine.load_model(rgb)
        scores = engine.classify(_blank(32))

        assert engine.config == rgb
        assert scores.shape == (6,)

    def test_close_releases_session(self, settings: Settings) -> None:
        engine = InferenceEngine(DIGITS, settings, probe=CPU_ONLY)

        engine.close()

        assert engine.signature is None
        assert engine.backend is None
        assert engine.backend_status == STATUS_NOT_LOADED
        with pytest.raises(ModelLoadError):
            engine.classify(_blank())


def test_decode_generic_maps_int8_onto_unit_range() -> None:
    decoded = decode_generic(np.array([[-128, 127]], dtype=np.int8))

    assert decoded.tolist() == pytest.approx([0.0, 1.0])
