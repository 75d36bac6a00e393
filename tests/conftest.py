"""
tests/conftest.py
===================
Shared pytest fixtures and tiny deterministic models for upscaler tests.
"""

from __future__ import annotations

import io
import threading
import time

import numpy as np
import pytest
import torch
import torch.nn as nn
import torch.nn.functional as F
from PIL import Image

from upscaler.inference.model_loader import ModelCache
from upscaler.inference.output_sink import OutputSink
from upscaler.inference.registry import ModelRegistry, ModelSelector, ModelSpec


# ─────────────────────────────────────────────────────────────────────────────
# Test models
# ─────────────────────────────────────────────────────────────────────────────

class IdentityNet(nn.Module):
    """Returns its input unchanged (scale 1)."""
    def forward(self, x):
        return x


class NearestUpsampleNet(nn.Module):
    """Exact nearest-neighbour upscale; independent of patch context."""
    def __init__(self, scale=2):
        super().__init__()
        self.scale = scale

    def forward(self, x):
        return F.interpolate(x, scale_factor=self.scale, mode="nearest")


class RecordingNet(nn.Module):
    """Identity that records the shape of every call."""
    def __init__(self):
        super().__init__()
        self.calls = []

    def forward(self, x):
        self.calls.append(tuple(x.shape))
        return x


class FlakyNet(nn.Module):
    """Identity that raises on the ``fail_at``-th call (warmup is call 1)."""
    def __init__(self, fail_at=3):
        super().__init__()
        self.fail_at = fail_at
        self.calls = 0

    def forward(self, x):
        self.calls += 1
        if self.calls == self.fail_at:
            raise RuntimeError("simulated device failure")
        return x


class WhiteIntolerantNet(nn.Module):
    """Identity that fails on all-white patches (warmup noise passes)."""
    def forward(self, x):
        if bool((x >= 0.999).all()):
            raise RuntimeError("cannot process blank patch")
        return x


class FixedSizeNet(nn.Module):
    """Always returns a 64x64 output: passes a 64 warmup, drifts on real patches."""
    def forward(self, x):
        return F.interpolate(x, size=(64, 64), mode="nearest")


class NanNet(nn.Module):
    def forward(self, x):
        out = x.clone()
        out[:, :, 0, 0] = float("nan")
        return out


class SlowNet(nn.Module):
    def __init__(self, delay_s=0.1):
        super().__init__()
        self.delay_s = delay_s

    def forward(self, x):
        time.sleep(self.delay_s)
        return x


def make_spec(family, scale=None, build=IdentityNet, magnification=1,
              patch_size=32, padding=4) -> ModelSpec:
    return ModelSpec(
        selector=ModelSelector(family, scale),
        scale=magnification,
        build=build,
        architecture=getattr(build, "__name__", "test"),
        patch_size=patch_size,
        padding=padding,
        requires_checkpoint=False,
        description=f"test model {family}",
    )


class CountingRegistry(ModelRegistry):
    """Registry that counts (and optionally slows down) real loads."""

    def __init__(self, *args, load_delay_s=0.0, **kwargs):
        super().__init__(*args, **kwargs)
        self.load_delay_s = load_delay_s
        self.resolve_count = 0
        self._count_lock = threading.Lock()

    def resolve(self, selector):
        with self._count_lock:
            self.resolve_count += 1
        time.sleep(self.load_delay_s)
        return super().resolve(selector)


# ─────────────────────────────────────────────────────────────────────────────
# Image helpers
# ─────────────────────────────────────────────────────────────────────────────

def png_bytes(width: int = 48, height: int = 40, seed: int = 0, color=None, mode="RGB") -> bytes:
    if color is not None:
        img = Image.new(mode, (width, height), color)
    else:
        rng = np.random.default_rng(seed)
        channels = 4 if mode == "RGBA" else 3
        img = Image.fromarray(rng.integers(0, 256, (height, width, channels), dtype=np.uint8))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def random_image(height: int, width: int, seed: int = 0) -> torch.Tensor:
    generator = torch.Generator().manual_seed(seed)
    return torch.rand(3, height, width, generator=generator)


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def test_registry():
    """Registry of small deterministic models (no checkpoints needed)."""
    return CountingRegistry([
        make_spec("identity"),
        make_spec("nearest", "x2", build=lambda: NearestUpsampleNet(2), magnification=2),
        make_spec("white-intolerant", build=WhiteIntolerantNet),
        make_spec("slow", build=lambda: SlowNet(0.1), patch_size=16, padding=2),
    ])


@pytest.fixture
def model_cache(test_registry):
    return ModelCache(test_registry)


@pytest.fixture
def sink(tmp_path):
    return OutputSink(tmp_path / "upscaled")


@pytest.fixture
def cpu():
    return torch.device("cpu")
