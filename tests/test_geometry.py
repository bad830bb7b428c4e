import math

import numpy as np
import pytest

from sam2_interactive.utils.geometry import (
    GeometryBox,
    Size,
    compute_pad_box,
    display_to_model_point,
    pad_to_square,
    resize_image,
)


class TestComputePadBox:
    """Aspect-preserving placement of source content in a square target."""

    @pytest.mark.parametrize("side", [1, 7, 256, 1024, 4000])
    def test_square_source_returns_full_target(self, side):
        assert compute_pad_box(Size(side, side), Size(1024, 1024)) == GeometryBox(0, 0, 1024, 1024)

    def test_tall_image_scales_width_and_centres_horizontally(self):
        box = compute_pad_box(Size(512, 768), Size(1024, 1024))
        assert box.x == 170
        assert box.y == 0
        assert box.w == pytest.approx(682.6667, abs=1e-3)
        assert box.h == 1024

    def test_wide_image_scales_height_and_centres_vertically(self):
        box = compute_pad_box(Size(768, 512), Size(1024, 1024))
        assert box.x == 0
        assert box.y == 170
        assert box.w == 1024
        assert box.h == pytest.approx(682.6667, abs=1e-3)

    def test_odd_remainder_floors_the_offset(self):
        # 3x4 into 10x10: new_w = 7.5, pad = floor(1.25) = 1
        box = compute_pad_box(Size(3, 4), Size(10, 10))
        assert box.x == 1
        # 1x2 into 5x5: new_w = 2.5, pad = floor(1.25) = 1, leaving 1.5 on the right
        assert compute_pad_box(Size(1, 2), Size(5, 5)).x == 1

    @pytest.mark.parametrize("w,h", [(512, 768), (768, 512), (1, 1000), (1000, 3), (333, 777)])
    def test_longer_side_fills_target_and_padding_balances(self, w, h):
        box = compute_pad_box(Size(w, h), Size(1024, 1024))
        if h > w:
            assert box.h == 1024
            assert 0 <= 1024 - (box.w + 2 * box.x) < 2
        else:
            assert box.w == 1024
            assert 0 <= 1024 - (box.h + 2 * box.y) < 2

    def test_offsets_are_integers(self):
        box = compute_pad_box(Size(333, 777), Size(1024, 1024))
        assert isinstance(box.x, int)
        assert box.x == math.floor((1024 - 333 / 777 * 1024) / 2)


class TestPadToSquare:
    def test_tall_image_is_centred_on_its_longest_side(self):
        image = np.full((6, 2, 4), 200, dtype=np.uint8)
        padded, box = pad_to_square(image)
        assert padded.shape == (6, 6, 4)
        assert box == GeometryBox(2, 0, pytest.approx(2.0), 6)
        assert (padded[:, 2:4] == 200).all()
        assert (padded[:, :2] == 0).all()
        assert (padded[:, 4:] == 0).all()

    def test_wide_image_is_centred_vertically(self):
        image = np.full((3, 8, 3), 9, dtype=np.uint8)
        padded, box = pad_to_square(image)
        assert padded.shape == (8, 8, 3)
        assert box.y == 2
        assert (padded[2:5] == 9).all()
        assert padded[:2].sum() == 0
        assert padded[5:].sum() == 0

    def test_square_image_is_unchanged(self):
        image = np.arange(4 * 4 * 4, dtype=np.uint8).reshape(4, 4, 4)
        padded, box = pad_to_square(image)
        np.testing.assert_array_equal(padded, image)
        assert box == GeometryBox(0, 0, 4, 4)


def test_resize_image_returns_requested_size():
    image = np.zeros((10, 20, 4), dtype=np.uint8)
    resized = resize_image(image, Size(32, 16))
    assert resized.shape == (16, 32, 4)
    assert resized.dtype == np.uint8


class TestDisplayToModelPoint:
    def test_rescales_linearly(self):
        assert display_to_model_point(256, 128, Size(512, 512), 1024) == (512.0, 256.0)

    def test_corners(self):
        assert display_to_model_point(0, 0, Size(300, 200), 1024) == (0.0, 0.0)
        assert display_to_model_point(300, 200, Size(300, 200), 1024) == (1024.0, 1024.0)
