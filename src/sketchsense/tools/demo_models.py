"""Build small ONNX classifier models for development and tests.

The catalog expects bundled ``.onnx`` assets. Real trained weights are not
shipped with the source tree, so this module writes untrained stand-ins with
the right input/output signatures: a single linear layer (optionally followed
by softmax) over the flattened NHWC input.

Usage:
    python -m sketchsense.tools.demo_models [--out DIR]
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import onnx
from onnx import TensorProto, helper, numpy_helper

from sketchsense.config import get_settings
from sketchsense.ml.model_registry import MODEL_REGISTRY

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

OPSET: int = 13
IR_VERSION: int = 8

_ELEM_TYPES: dict[str, int] = {
    "float32": TensorProto.FLOAT,
    "uint8": TensorProto.UINT8,
    "int8": TensorProto.INT8,
}


def build_classifier(
    path: Path,
    num_classes: int,
    *,
    height: int = 28,
    width: int = 28,
    channels: int | None = 1,
    input_dtype: str = "float32",
    output: str = "row",
    weights: np.ndarray | None = None,
    bias: Sequence[float] | None = None,
    softmax: bool = True,
    seed: int = 0,
) -> Path:
    """Write a linear classifier model to ``path``.

    Args:
        path: Destination ``.onnx`` file.
        num_classes: Number of output scores.
        height: Declared input height.
        width: Declared input width.
        channels: Declared input channels; None declares a rank-3 [1, H, W] input.
        input_dtype: 'float32', 'uint8', or 'int8'.
        output: 'row' for [1, N] float, 'vector' for [N] float, 'uint8' for
            [1, N] uint8 scores scaled by 255.
        weights: Optional (H*W*C, N) matrix; random when omitted.
        bias: Optional per-class bias; zeros when omitted.
        softmax: Apply softmax to the logits.
        seed: Seed for the random weights.
    """
    features = height * width * (channels or 1)
    if weights is None:
        weights = np.random.default_rng(seed).normal(0.0, 0.05, size=(features, num_classes))
    bias_values = np.zeros(num_classes) if bias is None else np.asarray(bias)

    input_shape = [1, height, width] if channels is None else [1, height, width, channels]
    initializers = [
        numpy_helper.from_array(np.asarray(weights, dtype=np.float32), name="weights"),
        numpy_helper.from_array(bias_values.astype(np.float32), name="bias"),
    ]

    nodes = []
    current = "image"
    if input_dtype != "float32":
        nodes.append(helper.make_node("Cast", [current], ["image_f"], to=TensorProto.FLOAT))
        current = "image_f"
    nodes += [
        helper.make_node("Flatten", [current], ["flat"], axis=1),
        helper.make_node("MatMul", ["flat", "weights"], ["matmul"]),
        helper.make_node("Add", ["matmul", "bias"], ["logits"]),
    ]
    current = "logits"
    if softmax:
        nodes.append(helper.make_node("Softmax", [current], ["probs"], axis=1))
        current = "probs"

    if output == "vector":
        initializers.append(numpy_helper.from_array(np.array([num_classes], dtype=np.int64), name="vector_shape"))
        nodes.append(helper.make_node("Reshape", [current, "vector_shape"], ["scores"]))
        output_info = helper.make_tensor_value_info("scores", TensorProto.FLOAT, [num_classes])
    elif output == "uint8":
        initializers.append(numpy_helper.from_array(np.array(255.0, dtype=np.float32), name="byte_scale"))
        nodes += [
            helper.make_node("Mul", [current, "byte_scale"], ["scaled"]),
            helper.make_node("Cast", ["scaled"], ["scores"], to=TensorProto.UINT8),
        ]
        output_info = helper.make_tensor_value_info("scores", TensorProto.UINT8, [1, num_classes])
    elif output == "row":
        nodes.append(helper.make_node("Identity", [current], ["scores"]))
        output_info = helper.make_tensor_value_info("scores", TensorProto.FLOAT, [1, num_classes])
    else:
        raise ValueError(f"Unknown output layout: {output}")

    graph = helper.make_graph(
        nodes,
        "sketch_classifier",
        [helper.make_tensor_value_info("image", _ELEM_TYPES[input_dtype], input_shape)],
        [output_info],
        initializer=initializers,
    )
    model = helper.make_model(graph, producer_name="sketchsense", opset_imports=[helper.make_opsetid("", OPSET)])
    model.ir_version = IR_VERSION
    onnx.checker.check_model(model)

    path.parent.mkdir(parents=True, exist_ok=True)
    onnx.save(model, str(path))
    logger.info("Wrote %s (%d classes, input %s %s, output %s)", path, num_classes, input_dtype, input_shape, output)
    return path


def build_catalog(out_dir: Path) -> list[Path]:
    """Write an untrained stand-in for every catalog model into ``out_dir``."""
    return [
        build_classifier(
            out_dir / descriptor.file_name,
            descriptor.num_classes,
            height=descriptor.input_height,
            width=descriptor.input_width,
            channels=descriptor.input_channels,
            seed=index,
        )
        for index, descriptor in enumerate(MODEL_REGISTRY.values())
    ]


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--out", type=Path, default=None, help="Output directory (default: configured assets_dir)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    out_dir = args.out or get_settings().assets_dir
    build_catalog(out_dir)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
