# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.

# This source code is licensed under the license found in the
# LICENSE file in the root directory of this source tree.

"""
Conversions between pixel buffers and the numeric tensors consumed by the SAM2 ONNX models.

Images are handled as HxWxC uint8 numpy arrays (RGB or RGBA). Tensors are contiguous,
row-major float32 numpy arrays whose ``shape`` is the tensor ``dims`` and whose
``ravel()`` is the flat data buffer exchanged with the inference worker.

Layout conventions:
- image tensor: [1, 3, S, S], channel-planar (all red, then green, then blue), values in [0, 1]
- mask tensor: [1, C, M, M], one score plane per candidate; a score > 0 is foreground
"""

import logging

from typing import Optional, Tuple, Union

import numpy as np
import torch
import torch.nn.functional as F
from PIL.Image import Image

from sam2_interactive.utils.geometry import GeometryBox, Size, pad_to_square, resize_image

# Grayscale detection constants. These are empirical and must stay as-is for output parity.
GRAYSCALE_MAX_SAMPLES = 1000
GRAYSCALE_TOLERANCE = 2
GRAYSCALE_RATIO = 0.95

# Overlay colour for foreground mask pixels (RGBA)
MASK_COLOR = (0x32, 0xCD, 0x32, 255)


def to_model_tensor(image: np.ndarray) -> np.ndarray:
    """
    Reorder an interleaved RGB(A) buffer into a planar [1, 3, H, W] float tensor.

    Each byte is scaled from [0, 255] to [0.0, 1.0] and alpha is dropped. No resizing
    happens here; the caller must already have resampled to the model input size.
    """
    if image.ndim != 3 or image.shape[2] < 3:
        raise ValueError(f"Expected an HxWx3 or HxWx4 image, got shape {image.shape}")
    planar = np.transpose(image[..., :3], (2, 0, 1)).astype(np.float32) / 255.0
    return np.ascontiguousarray(planar[None, ...])


def from_model_tensor(tensor: np.ndarray) -> np.ndarray:
    """Inverse of ``to_model_tensor``: [1, 3, H, W] floats in [0, 1] to an HxWx3 uint8 buffer."""
    if tensor.ndim != 4 or tensor.shape[:2] != (1, 3):
        raise ValueError(f"Expected a [1, 3, H, W] tensor, got shape {tensor.shape}")
    pixels = np.clip(np.rint(tensor[0] * 255.0), 0, 255).astype(np.uint8)
    return np.ascontiguousarray(np.transpose(pixels, (1, 2, 0)))


def slice_mask_channel(masks: np.ndarray, index: int) -> np.ndarray:
    """
    Return the flat score buffer of one mask channel of a [1, C, M, M] tensor.

    The result is the contiguous range ``[index*M*M, (index+1)*M*M)`` of the flat data.

    Raises:
        IndexError: If ``index`` is not a valid channel. Callers must select a valid
            candidate; the index is never clamped.
    """
    _, num_masks, width, height = masks.shape
    if not 0 <= index < num_masks:
        raise IndexError(f"Mask index {index} out of range for {num_masks} masks")
    stride = width * height
    start = stride * index
    return np.ascontiguousarray(masks).reshape(-1)[start : start + stride].copy()


def mask_to_raster(mask: np.ndarray, width: int, height: int) -> np.ndarray:
    """
    Binarise a flat mask score buffer into an HxWx4 RGBA overlay.

    Scores strictly greater than zero become ``MASK_COLOR``; everything else,
    including exactly zero, is fully transparent.
    """
    foreground = np.asarray(mask, dtype=np.float32).reshape(height, width) > 0
    raster = np.zeros((height, width, 4), dtype=np.uint8)
    raster[foreground] = MASK_COLOR
    return raster


def composite_mask_over_image(image: np.ndarray, mask_raster: np.ndarray) -> np.ndarray:
    """
    Keep image content only where the mask raster is non-transparent.

    Follows the "source-in" compositing rule: the mask is drawn first and the image on
    top, so the result takes the image colour and the product of both alphas. A mask
    raster of a different size is bilinearly stretched over the whole image.

    Returns:
        np.ndarray: HxWx4 uint8 cut-out of ``image``.
    """
    h, w = image.shape[:2]
    if mask_raster.shape[:2] != (h, w):
        mask_raster = resize_image(mask_raster, Size(w, h))
    mask_alpha = mask_raster[..., 3].astype(np.uint16)

    if image.shape[2] == 4:
        image_alpha = image[..., 3].astype(np.uint16)
    else:
        image_alpha = np.full((h, w), 255, dtype=np.uint16)

    out = np.zeros((h, w, 4), dtype=np.uint8)
    out[..., 3] = (image_alpha * mask_alpha + 127) // 255
    visible = out[..., 3] > 0
    out[..., :3][visible] = image[..., :3][visible]
    return out


def _sample_pixels(image: np.ndarray) -> np.ndarray:
    pixels = image.reshape(-1, image.shape[2])
    step = max(1, len(pixels) // GRAYSCALE_MAX_SAMPLES)
    return pixels[::step]


def is_effectively_grayscale(image: np.ndarray) -> bool:
    """
    Cheaply decide whether an RGB(A) image carries only one channel of information.

    At most about ``GRAYSCALE_MAX_SAMPLES`` evenly strided pixels are inspected. A
    sample counts as gray if its channels agree within ``GRAYSCALE_TOLERANCE`` or
    if green and blue are near zero (single-channel sensor output).
    """
    if image.ndim != 3 or image.shape[2] < 3 or image.size == 0:
        return False
    samples = _sample_pixels(image).astype(np.int16)
    r, g, b = samples[:, 0], samples[:, 1], samples[:, 2]
    same_channels = (np.abs(r - g) <= GRAYSCALE_TOLERANCE) & (
        np.abs(g - b) <= GRAYSCALE_TOLERANCE
    )
    single_channel = (np.abs(g) <= GRAYSCALE_TOLERANCE) & (
        np.abs(b) <= GRAYSCALE_TOLERANCE
    )
    gray_count = int(np.count_nonzero(same_channels | single_channel))
    return gray_count >= GRAYSCALE_RATIO * len(samples)


def grayscale_to_rgb(image: np.ndarray) -> np.ndarray:
    """
    Force all colour channels equal to red when the image is effectively grayscale.

    The buffer is modified in place and also returned; colour images are untouched.
    """
    if is_effectively_grayscale(image):
        logging.info("Grayscale image detected, replicating the first channel to RGB")
        image[..., 1] = image[..., 0]
        image[..., 2] = image[..., 0]
    return image


def upscale_mask(mask: np.ndarray, mask_size: int, out_size: int) -> np.ndarray:
    """
    Bilinearly upsample a flat M*M mask score buffer to out_size x out_size.

    Scores are interpolated before thresholding, so the returned buffer can be fed
    straight into ``mask_to_raster``.
    """
    scores = torch.as_tensor(
        np.asarray(mask, dtype=np.float32).reshape(1, 1, mask_size, mask_size)
    )
    upscaled = F.interpolate(
        scores, (out_size, out_size), mode="bilinear", align_corners=False
    )
    return upscaled.reshape(-1).numpy()


class SAM2Transforms:
    """
    Control-side preprocessing from a source image to the encoder input tensor.

    The pipeline is: grayscale guard, centre on a square canvas, resample to the model
    resolution, convert to a planar float tensor. The square canvas and the box the
    content occupies are kept so that mask overlays and cut-outs can be produced at
    display resolution later.
    """

    def __init__(self, resolution: int = 1024, mask_size: int = 256, mask_threshold: float = 0.0):
        self.resolution = resolution
        self.mask_size = mask_size
        self.mask_threshold = mask_threshold

    def prepare_image(
        self, image: Union[np.ndarray, Image]
    ) -> Tuple[np.ndarray, GeometryBox]:
        """Normalise to RGBA, apply the grayscale guard and pad to a square."""
        pixels = _as_rgba(image)
        grayscale_to_rgb(pixels)
        return pad_to_square(pixels)

    def __call__(self, padded: np.ndarray) -> np.ndarray:
        resized = resize_image(padded, Size(self.resolution, self.resolution))
        return to_model_tensor(resized)

    def postprocess_mask(self, mask: np.ndarray, out_size: Optional[int] = None) -> np.ndarray:
        """Upscale a decoder mask to ``out_size`` (model resolution by default) and rasterise it."""
        out_size = out_size or self.resolution
        scores = upscale_mask(mask, self.mask_size, out_size) - self.mask_threshold
        return mask_to_raster(scores, out_size, out_size)


def _as_rgba(image: Union[np.ndarray, Image]) -> np.ndarray:
    if isinstance(image, Image):
        return np.asarray(image.convert("RGBA"), dtype=np.uint8).copy()
    if not isinstance(image, np.ndarray):
        raise NotImplementedError("Image format not supported")
    if image.dtype != np.uint8:
        raise ValueError(f"Expected a uint8 pixel buffer, got {image.dtype}")
    if image.ndim == 2:
        image = image[..., None]
    channels = image.shape[2]
    if channels == 4:
        return image.copy()
    rgba = np.full(image.shape[:2] + (4,), 255, dtype=np.uint8)
    if channels in (1, 3):
        rgba[..., :3] = image
    else:
        raise ValueError(f"Unsupported channel count {channels}")
    return rgba
