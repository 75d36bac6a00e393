"""
tests/test_architectures.py
=============================
Shape and range checks for the served network architectures.
"""

from __future__ import annotations

import pytest
import torch

from upscaler.model import ESRGANNet, RestorationNet


@pytest.mark.parametrize("scale", [2, 3, 4, 8])
def test_esrgan_output_is_scaled(scale):
    model = ESRGANNet(scale=scale, num_feat=16, num_blocks=2).eval()
    x = torch.rand(1, 3, 12, 10)
    with torch.no_grad():
        y = model(x)
    assert y.shape == (1, 3, 12 * scale, 10 * scale)


@pytest.mark.parametrize("scale", [1, 5, 6])
def test_esrgan_rejects_unsupported_scale(scale):
    with pytest.raises(ValueError):
        ESRGANNet(scale=scale)


def test_restoration_net_keeps_resolution():
    model = RestorationNet(num_feat=8, num_blocks=2).eval()
    x = torch.rand(2, 3, 17, 9)
    with torch.no_grad():
        y = model(x)
    assert y.shape == x.shape


def test_outputs_stay_in_unit_range():
    torch.manual_seed(0)
    x = torch.rand(1, 3, 16, 16)
    with torch.no_grad():
        up = ESRGANNet(scale=2, num_feat=8, num_blocks=1).eval()(x)
        restored = RestorationNet(num_feat=8, num_blocks=1).eval()(x)
    for y in (up, restored):
        assert torch.isfinite(y).all()
        assert y.min() >= 0.0 and y.max() <= 1.0


def test_esrgan_widths_differ_in_size():
    slim = sum(p.numel() for p in ESRGANNet(scale=2, num_feat=32, num_blocks=4).parameters())
    thick = sum(p.numel() for p in ESRGANNet(scale=2, num_feat=64, num_blocks=16).parameters())
    assert thick > slim
