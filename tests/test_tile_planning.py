"""
tests/test_tile_planning.py
=============================
Tile plan geometry: exhaustive coverage, padding clipping, ordering.
"""

from __future__ import annotations

import random

import numpy as np
import pytest

from upscaler.inference.errors import InvalidTilingError
from upscaler.inference.tile_processor import Box, plan_tiles, validate_tiling


def _coverage(plan) -> np.ndarray:
    counts = np.zeros((plan.height, plan.width), dtype=np.int32)
    for patch in plan:
        c = patch.core
        counts[c.top:c.bottom, c.left:c.right] += 1
    return counts


def test_130x130_with_patch_64_padding_6_is_a_3x3_grid():
    plan = plan_tiles(130, 130, patch_size=64, padding=6)

    assert (plan.rows, plan.cols) == (3, 3)
    assert len(plan) == 9
    assert plan[0].core == Box(0, 0, 64, 64)
    assert plan[0].padded == Box(0, 0, 70, 70)
    assert plan[4].core == Box(64, 64, 128, 128)
    assert plan[4].padded == Box(58, 58, 130, 130)
    # Bottom-right core is a 2x2 sliver
    assert plan[8].core == Box(128, 128, 130, 130)
    assert plan[8].padded == Box(122, 122, 130, 130)
    assert (_coverage(plan) == 1).all()


@pytest.mark.parametrize("seed", range(25))
def test_core_regions_partition_the_image(seed):
    rng = random.Random(seed)
    height = rng.randint(1, 300)
    width = rng.randint(1, 300)
    patch_size = rng.randint(2, 96)
    padding = rng.randint(0, (patch_size - 1) // 2)

    plan = plan_tiles(height, width, patch_size, padding)

    assert sum(p.core.area for p in plan) == height * width
    assert (_coverage(plan) == 1).all()
    for patch in plan:
        c, w = patch.core, patch.padded
        # Padded window contains the core and stays inside the image
        assert 0 <= w.top <= c.top and c.bottom <= w.bottom <= height
        assert 0 <= w.left <= c.left and c.right <= w.right <= width
        assert c.top - w.top == min(padding, c.top)
        assert w.right - c.right == min(padding, width - c.right)


def test_patches_are_ordered_row_major():
    plan = plan_tiles(100, 150, patch_size=40, padding=4)

    assert (plan.rows, plan.cols) == (3, 4)
    assert [(p.row, p.col) for p in plan] == [(r, c) for r in range(3) for c in range(4)]
    assert [p.index for p in plan] == list(range(len(plan)))


def test_image_smaller_than_patch_is_a_single_unpadded_patch():
    plan = plan_tiles(20, 30, patch_size=64, padding=6)

    assert len(plan) == 1
    assert plan[0].core == Box(0, 0, 20, 30)
    assert plan[0].padded == plan[0].core
    assert plan[0].core_offset == (0, 0)


def test_core_offset_locates_core_inside_padded_window():
    plan = plan_tiles(130, 130, patch_size=64, padding=6)
    assert plan[0].core_offset == (0, 0)
    assert plan[4].core_offset == (6, 6)
    assert plan[5].core_offset == (6, 6)


@pytest.mark.parametrize(
    "patch_size,padding",
    [(0, 0), (-8, 1), (16, -1), (16, 8), (12, 6), (1, 1)],
)
def test_invalid_tiling_is_rejected(patch_size, padding):
    with pytest.raises(InvalidTilingError):
        validate_tiling(patch_size, padding)
    with pytest.raises(InvalidTilingError):
        plan_tiles(64, 64, patch_size, padding)


def test_padding_just_under_half_patch_is_accepted():
    validate_tiling(16, 7)
    validate_tiling(1, 0)


@pytest.mark.parametrize("height,width", [(0, 10), (10, 0)])
def test_empty_image_cannot_be_tiled(height, width):
    with pytest.raises(InvalidTilingError):
        plan_tiles(height, width, 64, 6)


def test_invalid_tiling_is_also_a_value_error():
    with pytest.raises(ValueError):
        validate_tiling(8, 4)
