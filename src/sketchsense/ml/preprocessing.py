"""Image preprocessing: decode, render, and rasterize sketches.

A drawing arrives either as an encoded image or as stroke polylines. Both end
up as a Pillow image that :func:`rasterize` fits into the fixed square canvas
a model expects, centering the ink by its intensity-weighted centroid.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING, Any

import numpy as np
from PIL import Image, ImageDraw, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

WHITE: tuple[int, int, int] = (255, 255, 255)
INK: tuple[int, int, int] = (0, 0, 0)

# ITU-R BT.601 luma weights
LUMA_WEIGHTS: NDArray[np.float32] = np.array([0.299, 0.587, 0.114], dtype=np.float32)
_LUMA_WEIGHTS_F64: NDArray[np.float64] = np.array([0.299, 0.587, 0.114], dtype=np.float64)

MASS_EPSILON: float = 1e-6
DEFAULT_INK_THRESHOLD: int = 16

Box = tuple[int, int, int, int]


def luminance(
    rgb: NDArray[np.floating[Any]], weights: NDArray[np.floating[Any]] = LUMA_WEIGHTS
) -> NDArray[np.floating[Any]]:
    """Return per-pixel luminance (0-255) of an HxWx3 array."""
    return rgb @ weights


def flatten(image: Image.Image) -> Image.Image:
    """Return an RGB copy of ``image`` with any transparency composited on white."""
    if image.mode == "RGB":
        return image
    rgba = image.convert("RGBA")
    background = Image.new("RGBA", rgba.size, (*WHITE, 255))
    return Image.alpha_composite(background, rgba).convert("RGB")


def decode_image(image_bytes: bytes, max_pixels: int) -> Image.Image:
    """Decode raw image bytes into a Pillow image.

    Args:
        image_bytes: Raw file bytes (any format Pillow reads).
        max_pixels: Upper bound on width * height.

    Returns:
        The decoded image, EXIF orientation applied.

    Raises:
        ValueError: If the image cannot be decoded or exceeds the pixel limit.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as opened:
            width, height = opened.size
            if width * height > max_pixels:
                raise ValueError(f"Image too large: {width}x{height} exceeds {max_pixels} pixels")
            image = ImageOps.exif_transpose(opened)
            image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError("Could not decode image") from exc
    return image


def render_strokes(
    strokes: Sequence[Sequence[tuple[float, float]]],
    width: int,
    height: int,
    stroke_width: float = 12.0,
) -> Image.Image:
    """Draw stroke polylines as round-capped black lines on a white canvas."""
    if width <= 0 or height <= 0:
        raise ValueError(f"Canvas size must be positive, got {width}x{height}")

    image = Image.new("RGB", (width, height), WHITE)
    draw = ImageDraw.Draw(image)
    line_width = max(1, round(stroke_width))
    radius = line_width / 2
    for stroke in strokes:
        points = [(float(x), float(y)) for x, y in stroke]
        if not points:
            continue
        if len(points) > 1:
            draw.line(points, fill=INK, width=line_width, joint="curve")
        for x, y in (points[0], points[-1]):
            draw.ellipse((x - radius, y - radius, x + radius, y + radius), fill=INK)
    return image


def ink_bounds(image: Image.Image, threshold: int = DEFAULT_INK_THRESHOLD) -> Box | None:
    """Return the tight (left, upper, right, lower) box around ink, or None if blank."""
    gray = flatten(image).convert("L")
    mask = gray.point(lambda v: 255 if 255 - v > threshold else 0)
    return mask.getbbox()


def rasterize(
    source: Image.Image,
    target_size: int = 28,
    *,
    fit_fraction: float = 0.9,
    center_by_mass: bool = True,
    crop_box: Box | None = None,
    target: Image.Image | None = None,
) -> Image.Image:
    """Fit ``source`` into a ``target_size`` x ``target_size`` white canvas.

    The longest side is scaled to ``fit_fraction`` of the canvas. With
    ``center_by_mass`` the centroid of inverted luminance is moved onto the
    canvas center; blank drawings fall back to geometric centering.

    Args:
        source: Drawing of any size and mode.
        target_size: Side of the square output.
        fit_fraction: Share of the canvas the longest side may occupy.
        center_by_mass: Center by ink centroid instead of bounding box.
        crop_box: Optional region of ``source`` to keep before scaling.
        target: Optional reusable RGB canvas of the right size.

    Returns:
        The target canvas (``target`` itself when given).

    Raises:
        ValueError: On a non-positive size, a fit fraction outside (0, 1],
            or a reusable canvas of the wrong size or mode.
    """
    if target_size <= 0:
        raise ValueError(f"target_size must be positive, got {target_size}")
    if not 0.0 < fit_fraction <= 1.0:
        raise ValueError(f"fit_fraction must be in (0, 1], got {fit_fraction}")

    if crop_box is not None:
        source = _crop(source, crop_box)
    flat = flatten(source)

    src_w = max(1, flat.width)
    src_h = max(1, flat.height)
    scale = (target_size * fit_fraction) / max(src_w, src_h)
    scaled_w = max(1, int(src_w * scale))
    scaled_h = max(1, int(src_h * scale))
    if (scaled_w, scaled_h) == flat.size:
        scaled = flat
    else:
        scaled = flat.resize((scaled_w, scaled_h), Image.Resampling.BILINEAR)

    left = (target_size - scaled_w) / 2
    top = (target_size - scaled_h) / 2
    if center_by_mass:
        centroid = _ink_centroid(scaled)
        if centroid is not None:
            center = (target_size - 1) / 2
            cx, cy = centroid
            left = center - cx
            top = center - cy

    if target is None:
        target = Image.new("RGB", (target_size, target_size), WHITE)
    else:
        if target.size != (target_size, target_size) or target.mode != "RGB":
            raise ValueError(
                f"Reusable canvas must be RGB {target_size}x{target_size}, "
                f"got {target.mode} {target.width}x{target.height}"
            )
        target.paste(WHITE, (0, 0, target_size, target_size))

    target.paste(scaled, (round(left), round(top)))
    return target


def _crop(source: Image.Image, box: Box) -> Image.Image:
    left, upper, right, lower = box
    left, upper = max(0, left), max(0, upper)
    right, lower = min(source.width, right), min(source.height, lower)
    if right <= left or lower <= upper:
        logger.debug("Ignoring empty crop box %s for %dx%d image", box, source.width, source.height)
        return source
    return source.crop((left, upper, right, lower))


def _ink_centroid(image: Image.Image) -> tuple[float, float] | None:
    """Return the (x, y) centroid of ink weight, or None below MASS_EPSILON."""
    rgb = np.asarray(image, dtype=np.float64)
    # Double precision keeps pure white at (numerically) zero weight.
    ink = np.clip(1.0 - luminance(rgb, _LUMA_WEIGHTS_F64) / 255.0, 0.0, None)
    mass = float(ink.sum())
    if mass <= MASS_EPSILON:
        return None
    ys, xs = np.indices(ink.shape, dtype=np.float32)
    return float((xs * ink).sum()) / mass, float((ys * ink).sum()) / mass
