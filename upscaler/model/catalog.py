"""
upscaler/model/catalog.py
===========================
Configuration table of every servable model.

One row per (family, scale) selector. Tiling parameters live here rather
than in per-model code paths; adding a model is a new row, not a new
handler.
"""

from __future__ import annotations

from functools import partial

from upscaler.inference.registry import ModelSelector, ModelSpec
from upscaler.model.architectures import ESRGANNet, RestorationNet

DEFAULT_PATCH_SIZE = 64
DEFAULT_PADDING = 6

# (num_feat, num_blocks) per ESRGAN width variant
_ESRGAN_WIDTHS = {
    "esrgan-slim": (32, 4),
    "esrgan-medium": (64, 8),
    "esrgan-thick": (64, 16),
}

_ESRGAN_SCALES = {"x2": 2, "x3": 3, "x4": 4, "x8": 8}

# Legacy profiles are named, not numbered
_LEGACY_PROFILES = {
    "gans": (4, 64, 12),
    "psnr-small": (4, 32, 6),
    "div2k-2x": (2, 64, 10),
    "div2k-3x": (3, 64, 10),
    "div2k-4x": (4, 64, 10),
}

_MAXIM_TASKS = (
    "deblurring",
    "denoising",
    "enhancement",
    "retouching",
    "deraining",
    "dehazing-indoor",
    "dehazing-outdoor",
)


def _esrgan(family: str, scale_key: str, scale: int, num_feat: int, num_blocks: int,
            description: str) -> ModelSpec:
    return ModelSpec(
        selector=ModelSelector(family, scale_key),
        scale=scale,
        build=partial(ESRGANNet, scale=scale, num_feat=num_feat, num_blocks=num_blocks),
        architecture=f"ESRGANNet(feat={num_feat}, blocks={num_blocks})",
        patch_size=DEFAULT_PATCH_SIZE,
        padding=DEFAULT_PADDING,
        description=description,
    )


def default_specs() -> list[ModelSpec]:
    """All rows of the catalog, in a stable order."""
    specs = [
        _esrgan("default", None, 2, 32, 4, "Default 2x upscaler"),
    ]

    for family, (feat, blocks) in _ESRGAN_WIDTHS.items():
        for key, scale in _ESRGAN_SCALES.items():
            specs.append(_esrgan(family, key, scale, feat, blocks,
                                 f"{family} {scale}x upscaler"))

    for key, (scale, feat, blocks) in _LEGACY_PROFILES.items():
        specs.append(_esrgan("esrgan-legacy", key, scale, feat, blocks,
                             f"Legacy ESRGAN profile '{key}' ({scale}x)"))

    for task in _MAXIM_TASKS:
        specs.append(ModelSpec(
            selector=ModelSelector(f"maxim-{task}"),
            scale=1,
            build=partial(RestorationNet, num_feat=32, num_blocks=6),
            architecture="RestorationNet(feat=32, blocks=6)",
            patch_size=DEFAULT_PATCH_SIZE,
            padding=DEFAULT_PADDING,
            description=f"MAXIM {task.replace('-', ' ')} restoration (1x)",
        ))

    return specs
