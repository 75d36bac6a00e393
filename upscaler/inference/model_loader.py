"""
upscaler/inference/model_loader.py
====================================
Loaded-model handles and the process-wide model cache.

Checkpoint formats accepted:
  {namespace}.pth → raw state_dict (OrderedDict of tensors)
  {namespace}.pth → {'model_state_dict': state_dict}

The cache guarantees at most one load per selector, even when several
jobs ask for the same model at the same time: later callers block on a
per-selector lock and reuse the first load. Failed loads are not cached.
"""

from __future__ import annotations

import gc
import logging
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import torch

from upscaler.inference.errors import ModelLoadError
from upscaler.inference.warmup_probe import run_warmup_probe

if TYPE_CHECKING:
    from upscaler.inference.registry import ModelRegistry, ModelSelector, ModelSpec

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Device helpers
# ─────────────────────────────────────────────────────────────────────────────

def resolve_device(preference: str = "auto") -> torch.device:
    """
    Resolve the compute device.
    "auto" → CUDA if available, else CPU.
    "cuda" → CUDA; raises RuntimeError if unavailable.
    "cpu"  → Always CPU.
    """
    if preference == "auto":
        device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
        logger.info("Auto-selected device: %s", device)
        return device
    if preference == "cuda":
        if not torch.cuda.is_available():
            raise RuntimeError(
                "CUDA requested but not available. "
                "Set UPSCALER_DEVICE=cpu or ensure CUDA drivers are installed."
            )
        return torch.device("cuda")
    return torch.device("cpu")


def log_memory_stats(tag: str = "") -> None:
    """Log current GPU memory usage."""
    if torch.cuda.is_available():
        alloc = torch.cuda.memory_allocated() / 1024**3
        reserved = torch.cuda.memory_reserved() / 1024**3
        logger.info("[%s] GPU memory: allocated=%.2f GB reserved=%.2f GB",
                    tag, alloc, reserved)


def free_gpu_memory() -> None:
    """Return cached allocator blocks to the driver."""
    gc.collect()
    if torch.cuda.is_available():
        torch.cuda.empty_cache()
    logger.debug("GPU memory freed.")


# ─────────────────────────────────────────────────────────────────────────────
# Loaded model
# ─────────────────────────────────────────────────────────────────────────────

class LoadedModel:
    """A network in eval mode on its device, bound to one ModelSpec."""

    def __init__(self, spec: "ModelSpec", module: torch.nn.Module, device: torch.device) -> None:
        self.spec = spec
        self.module = module
        self.device = device
        self.loaded_at = time.time()
        self._warmed: set[int] = set()
        self._warm_lock = threading.Lock()

    @property
    def selector(self) -> "ModelSelector":
        return self.spec.selector

    @property
    def scale(self) -> int:
        return self.spec.scale

    @property
    def num_parameters(self) -> int:
        return sum(p.numel() for p in self.module.parameters())

    @torch.no_grad()
    def infer(self, patch: torch.Tensor) -> torch.Tensor:
        """Run the network on one (C, h, w) patch; returns (C, h*s, w*s) on CPU."""
        batch = patch.unsqueeze(0).to(self.device)
        try:
            out = self.module(batch)
        finally:
            del batch
        return out.squeeze(0).float().cpu()

    def is_warm(self, patch_size: int) -> bool:
        return patch_size in self._warmed

    def warmup(self, patch_size: int) -> None:
        """
        One dry pass on a synthetic patch, once per patch size.

        Surfaces load-time problems (bad weights, wrong output size,
        non-finite outputs) before any user image is touched.
        """
        if patch_size in self._warmed:
            return
        with self._warm_lock:
            if patch_size in self._warmed:
                return
            result = run_warmup_probe(self, patch_size)
            if not result.passed:
                raise ModelLoadError(
                    f"Warmup of {self.selector} failed: {result.reason}"
                )
            self._warmed.add(patch_size)
            logger.info("Warmed up %s (patch=%d) in %.1f ms",
                        self.selector, patch_size, result.latency_ms)


def load_model(
    spec: "ModelSpec",
    checkpoint_dir: Path,
    device: torch.device = torch.device("cpu"),
    allow_random_weights: bool = False,
) -> LoadedModel:
    """Build the architecture for ``spec`` and load its checkpoint."""
    t0 = time.perf_counter()
    try:
        module = spec.build()
    except Exception as exc:
        raise ModelLoadError(f"Could not build {spec.selector}: {exc}") from exc

    if spec.requires_checkpoint:
        path = spec.checkpoint_path(checkpoint_dir)
        if path.exists():
            try:
                raw = torch.load(path, map_location="cpu", weights_only=True)
                state = (raw["model_state_dict"]
                         if isinstance(raw, dict) and "model_state_dict" in raw
                         else raw)
                module.load_state_dict(state, strict=True)
            except Exception as exc:
                raise ModelLoadError(f"Could not load checkpoint {path}: {exc}") from exc
            logger.info("Loaded weights for %s from %s", spec.selector, path.name)
        elif allow_random_weights:
            logger.warning(
                "Checkpoint %s not found; serving %s with random init. "
                "Output quality is meaningless.", path, spec.selector,
            )
        else:
            raise ModelLoadError(f"Checkpoint not found for {spec.selector}: {path}")

    module.eval()
    module = module.to(device)
    model = LoadedModel(spec, module, device)

    logger.info(
        "Model %s loaded in %.2f s (%.2f M params) → %s",
        spec.selector, time.perf_counter() - t0, model.num_parameters / 1e6, device,
    )
    return model


# ─────────────────────────────────────────────────────────────────────────────
# Process-wide cache
# ─────────────────────────────────────────────────────────────────────────────

class ModelCache:
    """
    Read-mostly cache of LoadedModel keyed by selector.

    Thread safety:
      - ``_lock`` guards the per-selector lock table and model dict writes.
      - Each selector has its own lock, so loading one model never blocks
        lookups of another. Concurrent first access to the same selector
        results in exactly one ``registry.resolve`` call.
    """

    def __init__(self, registry: "ModelRegistry") -> None:
        self.registry = registry
        self._models: dict["ModelSelector", LoadedModel] = {}
        self._key_locks: dict["ModelSelector", threading.Lock] = {}
        self._lock = threading.Lock()
        self.load_count = 0

    def get(self, selector: "ModelSelector") -> LoadedModel:
        # Unknown selectors fail here, before any lock or load
        self.registry.lookup(selector)

        model = self._models.get(selector)
        if model is not None:
            return model

        with self._lock:
            key_lock = self._key_locks.setdefault(selector, threading.Lock())

        with key_lock:
            model = self._models.get(selector)
            if model is None:
                log_memory_stats(f"before_load:{selector}")
                model = self.registry.resolve(selector)
                with self._lock:
                    self._models[selector] = model
                    self.load_count += 1
                log_memory_stats(f"after_load:{selector}")
        return model

    def peek(self, selector: "ModelSelector") -> Optional[LoadedModel]:
        return self._models.get(selector)

    def loaded(self) -> list["ModelSelector"]:
        with self._lock:
            return list(self._models)

    def clear(self) -> None:
        """Drop every cached model (shutdown / tests)."""
        with self._lock:
            self._models.clear()
            self._key_locks.clear()
        free_gpu_memory()
        logger.info("Model cache cleared.")
