"""
upscaler/inference/registry.py
================================
Model registry: maps a (family, scale) selector to a loadable model.

The registry only describes and loads models; it never caches them (see
``ModelCache`` in model_loader.py) and the inference core never mutates
its contents after start-up.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

import torch

from upscaler.inference.errors import UnknownModelError
from upscaler.inference.model_loader import LoadedModel, load_model, resolve_device

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelSelector:
    """Immutable (family, scale/variant) pair. Values are normalised."""
    family: str
    scale: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "family", self.family.strip().lower())
        if self.scale is not None:
            scale = self.scale.strip().lower()
            object.__setattr__(self, "scale", scale or None)

    @property
    def namespace(self) -> str:
        """Directory / file-stem form, e.g. ``esrgan-slim-x2``."""
        return self.family if self.scale is None else f"{self.family}-{self.scale}"

    def __str__(self) -> str:
        return self.namespace


@dataclass(frozen=True)
class ModelSpec:
    """One row of the model configuration table."""
    selector: ModelSelector
    scale: int
    build: Callable[[], torch.nn.Module] = field(compare=False)
    architecture: str = ""
    patch_size: int = 64
    padding: int = 6
    checkpoint: Optional[str] = None
    requires_checkpoint: bool = True
    description: str = ""

    def checkpoint_path(self, checkpoint_dir: Path) -> Path:
        return Path(checkpoint_dir) / (self.checkpoint or f"{self.selector.namespace}.pth")


class ModelRegistry:
    """
    Table of servable models.

    Usage::

        registry = build_default_registry(settings)
        spec = registry.lookup(ModelSelector("esrgan-slim", "x2"))
        model = registry.resolve(spec.selector)   # expensive, uncached
    """

    def __init__(
        self,
        specs: Iterable[ModelSpec] = (),
        checkpoint_dir: Path = Path("./checkpoints"),
        device: torch.device = torch.device("cpu"),
        allow_random_weights: bool = False,
    ) -> None:
        self.checkpoint_dir = Path(checkpoint_dir)
        self.device = device
        self.allow_random_weights = allow_random_weights
        self._specs: dict[ModelSelector, ModelSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: ModelSpec) -> None:
        if spec.selector in self._specs:
            raise ValueError(f"Model {spec.selector} is already registered")
        self._specs[spec.selector] = spec

    def __contains__(self, selector: ModelSelector) -> bool:
        return selector in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    def selectors(self) -> list[ModelSelector]:
        return list(self._specs)

    def lookup(self, selector: ModelSelector) -> ModelSpec:
        try:
            return self._specs[selector]
        except KeyError:
            raise UnknownModelError(
                f"No model registered for family={selector.family!r} scale={selector.scale!r}"
            ) from None

    def resolve(self, selector: ModelSelector) -> LoadedModel:
        """Build and load the model for ``selector``. Not cached."""
        spec = self.lookup(selector)
        return load_model(
            spec,
            checkpoint_dir=self.checkpoint_dir,
            device=self.device,
            allow_random_weights=self.allow_random_weights,
        )

    def describe(self, selector: ModelSelector) -> dict:
        """JSON-friendly metadata for one model, without loading it."""
        spec = self.lookup(selector)
        path = spec.checkpoint_path(self.checkpoint_dir)
        return {
            "family": spec.selector.family,
            "scale": spec.selector.scale,
            "magnification": spec.scale,
            "architecture": spec.architecture,
            "description": spec.description,
            "patch_size": spec.patch_size,
            "padding": spec.padding,
            "checkpoint": str(path) if spec.requires_checkpoint else None,
            "checkpoint_present": path.exists() if spec.requires_checkpoint else True,
        }


def build_default_registry(settings) -> ModelRegistry:
    """Registry populated from the catalog table and ``UpscalerSettings``."""
    from upscaler.model.catalog import default_specs

    registry = ModelRegistry(
        default_specs(),
        checkpoint_dir=settings.checkpoint_dir,
        device=resolve_device(settings.device),
        allow_random_weights=settings.allow_random_weights,
    )
    logger.info(
        "Model registry ready: %d models, checkpoint_dir=%s device=%s",
        len(registry), registry.checkpoint_dir, registry.device,
    )
    return registry
