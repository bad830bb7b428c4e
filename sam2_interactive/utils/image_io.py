# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""Decoding of image files (TIFF, PNG, JPEG, ...) into RGBA pixel buffers."""

import io

from pathlib import Path
from typing import BinaryIO, Union

import numpy as np
from PIL import Image, UnidentifiedImageError

from sam2_interactive.errors import ImageFormatError


def load_image(source: Union[str, Path, bytes, BinaryIO]) -> np.ndarray:
    """
    Decode an image into an HxWx4 uint8 RGBA buffer.

    Multi-page files (e.g. TIFF stacks) yield their first page. 16-bit and float
    single-channel images are stretched to the full 8-bit range.

    Args:
        source: File path, raw encoded bytes or a binary file object.

    Raises:
        ImageFormatError: If the file is missing, corrupt or in an unsupported format.
    """
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(source)
    try:
        with Image.open(source) as img:
            img.seek(0)
            img.load()
            if img.mode in ("I;16", "I;16B", "I;16L", "I", "F"):
                img = _scale_to_8bit(img)
            rgba = img.convert("RGBA")
    except (FileNotFoundError, UnidentifiedImageError) as e:
        raise ImageFormatError(f"Could not load image {_describe(source)}: {e}") from e
    except (OSError, ValueError, SyntaxError) as e:
        raise ImageFormatError(f"Corrupt image {_describe(source)}: {e}") from e
    return np.asarray(rgba, dtype=np.uint8).copy()


def _scale_to_8bit(img: Image.Image) -> Image.Image:
    # Stretch high bit-depth data to the full 8-bit range instead of clipping it
    data = np.asarray(img, dtype=np.float64)
    lo, hi = float(data.min()), float(data.max())
    if hi > lo:
        data = (data - lo) / (hi - lo) * 255.0
    else:
        data = np.zeros_like(data)
    return Image.fromarray(data.astype(np.uint8))


def _describe(source) -> str:
    if isinstance(source, (str, Path)):
        return str(source)
    return getattr(source, "name", "<buffer>")
