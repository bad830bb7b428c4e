# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Geometric helpers mapping arbitrary-sized images into the square model input space.

The encoder consumes a fixed S x S image (S = 1024 for the SAM2 tiny export). Source
images of any aspect ratio are first centred on a square canvas whose side is their
longest edge, then resampled to S. Point prompts are expressed in that same S x S
coordinate system, so display clicks are linearly rescaled into it.
"""

from typing import NamedTuple, Tuple

import numpy as np
from PIL import Image


class Size(NamedTuple):
    w: int
    h: int


class GeometryBox(NamedTuple):
    """Offset and scaled dimensions of source content inside a target canvas."""

    x: float
    y: float
    w: float
    h: float


def compute_pad_box(source_size: Size, target_size: Size) -> GeometryBox:
    """
    Compute where an aspect-preserved copy of ``source_size`` lands in ``target_size``.

    The longer source side is stretched to the corresponding target side and the
    shorter side is scaled proportionally and centred. The pad offset uses floor
    division, so an odd remainder leaves the extra pixel on the far side.

    Args:
        source_size: (w, h) of the source content. Both must be positive.
        target_size: (w, h) of the target canvas.

    Returns:
        GeometryBox: integer offsets, scaled dimensions left unrounded.

    Example:
        >>> compute_pad_box(Size(512, 768), Size(1024, 1024))
        GeometryBox(x=170, y=0, w=682.666..., h=1024)
    """
    src_w, src_h = source_size
    dst_w, dst_h = target_size
    if src_h == src_w:
        return GeometryBox(0, 0, dst_w, dst_h)
    if src_h > src_w:
        new_w = (src_w / src_h) * dst_w
        pad_left = int(np.floor((dst_w - new_w) / 2))
        return GeometryBox(pad_left, 0, new_w, dst_h)
    new_h = (src_h / src_w) * dst_h
    pad_top = int(np.floor((dst_h - new_h) / 2))
    return GeometryBox(0, pad_top, dst_w, new_h)


def pad_to_square(image: np.ndarray) -> Tuple[np.ndarray, GeometryBox]:
    """
    Centre ``image`` on a square canvas whose side is its longest edge.

    The content keeps its native resolution; uncovered canvas pixels are zero
    (transparent for RGBA input).

    Args:
        image (np.ndarray): HxWxC uint8 pixel buffer.

    Returns:
        Tuple of the padded HxHxC (or WxWxC) buffer and the box the content occupies.
    """
    h, w = image.shape[:2]
    largest = max(w, h)
    box = compute_pad_box(Size(w, h), Size(largest, largest))
    # Scaled dims equal the source dims up to float error when the target is the longest side
    content_w, content_h = int(round(box.w)), int(round(box.h))
    if (content_w, content_h) != (w, h):
        image = resize_image(image, Size(content_w, content_h))

    padded = np.zeros((largest, largest) + image.shape[2:], dtype=image.dtype)
    x, y = int(box.x), int(box.y)
    padded[y : y + content_h, x : x + content_w] = image
    return padded, box


def resize_image(image: np.ndarray, size: Size) -> np.ndarray:
    """Bilinearly resample an HxWxC uint8 buffer to ``size``."""
    pil_image = Image.fromarray(image)
    resized = pil_image.resize((int(size.w), int(size.h)), resample=Image.BILINEAR)
    return np.asarray(resized, dtype=np.uint8).copy()


def display_to_model_point(
    x: float, y: float, display_size: Size, model_side: int
) -> Tuple[float, float]:
    """
    Linearly rescale a display-space coordinate into the 0..S model input space.

    Args:
        x, y: Position relative to the top-left corner of the displayed image.
        display_size: (w, h) of the displayed image in the same units as x, y.
        model_side: Side S of the square model input.
    """
    return (x / display_size.w) * model_side, (y / display_size.h) * model_side
