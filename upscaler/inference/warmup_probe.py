"""
upscaler/inference/warmup_probe.py
====================================
Dry inference pass run once per model before real patches.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

import torch

if TYPE_CHECKING:
    from upscaler.inference.model_loader import LoadedModel


@dataclass
class WarmupProbeResult:
    passed: bool
    finite: bool
    output_shape: tuple
    latency_ms: float
    reason: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "passed": self.passed,
            "finite": self.finite,
            "output_shape": list(self.output_shape),
            "latency_ms": self.latency_ms,
            "reason": self.reason,
        }


def run_warmup_probe(
    model: "LoadedModel",
    patch_size: int,
    seed: int = 1234,
) -> WarmupProbeResult:
    """
    Push one synthetic ``patch_size`` square through the model.

    The probe checks:
      1) the call does not raise
      2) output is (3, patch_size * scale, patch_size * scale)
      3) output contains only finite values
    """
    generator = torch.Generator().manual_seed(seed)
    dummy = torch.rand(3, patch_size, patch_size, generator=generator)
    expected = (3, patch_size * model.scale, patch_size * model.scale)
    t0 = time.perf_counter()

    try:
        out = model.infer(dummy)
    except Exception as exc:
        return WarmupProbeResult(
            passed=False,
            finite=False,
            output_shape=(),
            latency_ms=(time.perf_counter() - t0) * 1000.0,
            reason=f"probe_exception: {exc}",
        )
    finally:
        del dummy

    latency_ms = (time.perf_counter() - t0) * 1000.0
    shape = tuple(out.shape)
    finite = bool(torch.isfinite(out).all().item())
    del out

    if shape != expected:
        return WarmupProbeResult(
            passed=False,
            finite=finite,
            output_shape=shape,
            latency_ms=latency_ms,
            reason=f"output_shape {shape} != expected {expected}",
        )

    if not finite:
        return WarmupProbeResult(
            passed=False,
            finite=False,
            output_shape=shape,
            latency_ms=latency_ms,
            reason="non_finite_output",
        )

    return WarmupProbeResult(
        passed=True,
        finite=True,
        output_shape=shape,
        latency_ms=latency_ms,
    )
