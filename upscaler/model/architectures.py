"""
upscaler/model/architectures.py
=================================
Network definitions served by the model registry.

CRITICAL: Layer names and channel counts must match the checkpoints under
``checkpoint_dir``. ``load_state_dict`` is called with ``strict=True`` so
any drift fails loudly at load time instead of serving noise.

Families:
  ESRGANNet       — residual trunk + pixel-shuffle upsampler (x2/x3/x4/x8)
  RestorationNet  — same-resolution residual predictor (MAXIM-style tasks)

Both take (B, 3, H, W) in [0, 1] and return values in [0, 1].
"""

from __future__ import annotations

import math

import torch.nn as nn
import torch.nn.functional as F


class ResidualBlock(nn.Module):
    """Two-conv residual block with a scaled skip."""
    def __init__(self, channels, res_scale=0.2):
        super().__init__()
        self.res_scale = res_scale
        self.block = nn.Sequential(
            nn.Conv2d(channels, channels, 3, padding=1),
            nn.LeakyReLU(0.2, inplace=True),
            nn.Conv2d(channels, channels, 3, padding=1),
        )

    def forward(self, x):
        return x + self.block(x) * self.res_scale


def _upsample_stages(scale: int) -> list[int]:
    """Factor a magnification into pixel-shuffle stages (x8 → [2, 2, 2])."""
    if scale == 3:
        return [3]
    if scale >= 2 and scale & (scale - 1) == 0:
        return [2] * int(math.log2(scale))
    raise ValueError(f"Unsupported scale {scale}; expected 2, 3, 4 or 8")


class ESRGANNet(nn.Module):
    """Compact ESRGAN-style upscaler.

    ``num_feat`` / ``num_blocks`` select the slim / medium / thick variants.
    """
    def __init__(self, scale=4, num_feat=64, num_blocks=8, in_channels=3):
        super().__init__()
        self.scale = scale
        self.conv_first = nn.Conv2d(in_channels, num_feat, 3, padding=1)
        self.body = nn.Sequential(*[ResidualBlock(num_feat) for _ in range(num_blocks)])
        self.conv_body = nn.Conv2d(num_feat, num_feat, 3, padding=1)

        up = []
        for factor in _upsample_stages(scale):
            up += [
                nn.Conv2d(num_feat, num_feat * factor * factor, 3, padding=1),
                nn.PixelShuffle(factor),
                nn.LeakyReLU(0.2, inplace=True),
            ]
        self.upsample = nn.Sequential(*up)
        self.conv_last = nn.Conv2d(num_feat, in_channels, 3, padding=1)

    def forward(self, x):
        feat = self.conv_first(x)
        feat = feat + self.conv_body(self.body(feat))
        out = self.conv_last(self.upsample(feat))
        # Residual over a nearest upsample keeps an untrained net close to identity
        base = F.interpolate(x, scale_factor=self.scale, mode="nearest")
        return (base + out).clamp(0.0, 1.0)


class RestorationNet(nn.Module):
    """Same-resolution restoration (deblur, denoise, dehaze, ...)."""
    def __init__(self, num_feat=32, num_blocks=6, in_channels=3):
        super().__init__()
        self.scale = 1
        self.conv_first = nn.Conv2d(in_channels, num_feat, 3, padding=1)
        self.body = nn.Sequential(*[ResidualBlock(num_feat) for _ in range(num_blocks)])
        self.conv_last = nn.Conv2d(num_feat, in_channels, 3, padding=1)

    def forward(self, x):
        return (x + self.conv_last(self.body(self.conv_first(x)))).clamp(0.0, 1.0)
