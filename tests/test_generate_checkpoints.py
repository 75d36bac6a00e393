"""
tests/test_generate_checkpoints.py
====================================
Generated checkpoints must load strictly into the catalog architectures.
"""

from __future__ import annotations

import pytest

from upscaler.config import UpscalerSettings
from upscaler.inference.generate_checkpoints import generate_checkpoints
from upscaler.inference.model_loader import ModelCache
from upscaler.inference.registry import ModelSelector, build_default_registry


def test_generates_one_file_per_family_member(tmp_path):
    written = generate_checkpoints(tmp_path, family="esrgan-slim")

    assert sorted(p.name for p in written) == [
        "esrgan-slim-x2.pth",
        "esrgan-slim-x3.pth",
        "esrgan-slim-x4.pth",
        "esrgan-slim-x8.pth",
    ]
    assert all(p.stat().st_size > 0 for p in written)


def test_generated_checkpoints_are_served_by_the_registry(tmp_path):
    generate_checkpoints(tmp_path, family="ESRGAN-Slim", verify=False)
    registry = build_default_registry(UpscalerSettings(checkpoint_dir=tmp_path, device="cpu"))

    selector = ModelSelector("esrgan-slim", "x3")
    model = ModelCache(registry).get(selector)
    model.warmup(16)

    assert registry.describe(selector)["checkpoint_present"] is True
    assert model.is_warm(16)


def test_unknown_family_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        generate_checkpoints(tmp_path, family="does-not-exist")
