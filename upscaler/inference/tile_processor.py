"""
upscaler/inference/tile_processor.py
======================================
Splits an image into overlapping patches and stitches per-patch outputs
back into a full-resolution image.

Problem  : A large upload cannot be pushed through the network as a single
           tensor without exhausting memory.
Risk     : Naive patching causes visible seams where the network lost
           context at patch borders.
Solution : Each patch carries a padding halo of neighbouring pixels. Only
           the non-overlapping core of every output patch is copied into
           the canvas, so the halo never reaches the final image.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterator, Sequence, Union

import torch

from upscaler.inference.errors import DimensionMismatchError, InvalidTilingError
from upscaler.inference.tensors import ImageTensor

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Patch descriptors
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Box:
    """Half-open pixel rectangle: rows [top, bottom), columns [left, right)."""
    top: int
    left: int
    bottom: int
    right: int

    @property
    def height(self) -> int:
        return self.bottom - self.top

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def area(self) -> int:
        return self.height * self.width


@dataclass(frozen=True)
class Patch:
    """One tile of a plan: its core region plus the padded read window."""
    index: int
    row: int
    col: int
    core: Box
    padded: Box

    @property
    def core_offset(self) -> tuple[int, int]:
        """(dy, dx) of the core region inside the padded window."""
        return self.core.top - self.padded.top, self.core.left - self.padded.left


@dataclass(frozen=True)
class TilePlan:
    """Row-major, exhaustive decomposition of an image into patches."""
    height: int
    width: int
    patch_size: int
    padding: int
    rows: int
    cols: int
    patches: tuple[Patch, ...]

    def __len__(self) -> int:
        return len(self.patches)

    def __iter__(self) -> Iterator[Patch]:
        return iter(self.patches)

    def __getitem__(self, index: int) -> Patch:
        return self.patches[index]


# ─────────────────────────────────────────────────────────────────────────────
# Tile planning
# ─────────────────────────────────────────────────────────────────────────────

def validate_tiling(patch_size: int, padding: int) -> None:
    if patch_size < 1:
        raise InvalidTilingError(f"patch_size must be positive, got {patch_size}")
    if padding < 0:
        raise InvalidTilingError(f"padding must be non-negative, got {padding}")
    if 2 * padding >= patch_size:
        raise InvalidTilingError(
            f"padding ({padding}) must be smaller than half the patch size ({patch_size})"
        )


def plan_tiles(height: int, width: int, patch_size: int, padding: int) -> TilePlan:
    """
    Decompose an ``height x width`` image into a grid of patches.

    Core regions are ``patch_size`` squares (smaller on the bottom/right
    edges) that partition the image exactly. Each padded window extends the
    core by ``padding`` pixels on every side, clipped at the image border.
    An image smaller than one patch yields a single patch covering the
    whole image with no effective padding.
    """
    validate_tiling(patch_size, padding)
    if height < 1 or width < 1:
        raise InvalidTilingError(f"Cannot tile an empty {width}x{height} image")

    rows = math.ceil(height / patch_size)
    cols = math.ceil(width / patch_size)

    patches: list[Patch] = []
    for r in range(rows):
        y0 = r * patch_size
        y1 = min(y0 + patch_size, height)
        for c in range(cols):
            x0 = c * patch_size
            x1 = min(x0 + patch_size, width)
            core = Box(y0, x0, y1, x1)
            padded = Box(
                max(0, y0 - padding),
                max(0, x0 - padding),
                min(height, y1 + padding),
                min(width, x1 + padding),
            )
            patches.append(Patch(index=len(patches), row=r, col=c, core=core, padded=padded))

    return TilePlan(
        height=height,
        width=width,
        patch_size=patch_size,
        padding=padding,
        rows=rows,
        cols=cols,
        patches=tuple(patches),
    )


def extract_patch(image: torch.Tensor, patch: Patch) -> torch.Tensor:
    """Copy the padded window of ``patch`` out of a (C, H, W) image."""
    p = patch.padded
    return image[:, p.top:p.bottom, p.left:p.right].clone()


# ─────────────────────────────────────────────────────────────────────────────
# Stitching
# ─────────────────────────────────────────────────────────────────────────────

class Canvas:
    """
    Freshly allocated output buffer that receives patch cores one by one.

    ``place`` validates the output size against the plan before copying,
    so a model whose output drifts from ``padded * scale`` is caught here
    instead of producing a silently misaligned image.
    """

    def __init__(
        self,
        plan: TilePlan,
        scale: int = 1,
        channels: int = 3,
        device: torch.device = torch.device("cpu"),
    ) -> None:
        self.plan = plan
        self.scale = scale
        self._buffer = torch.zeros(
            channels, plan.height * scale, plan.width * scale,
            dtype=torch.float32, device=device,
        )
        self._placed = 0

    @property
    def placed(self) -> int:
        return self._placed

    def place(self, patch: Patch, output: torch.Tensor) -> None:
        s = self.scale
        expected = (patch.padded.height * s, patch.padded.width * s)
        actual = tuple(output.shape[-2:])
        if output.dim() != 3 or actual != expected or output.shape[0] != self._buffer.shape[0]:
            raise DimensionMismatchError(
                f"Patch {patch.index} output has shape {tuple(output.shape)}, "
                f"expected ({self._buffer.shape[0]}, {expected[0]}, {expected[1]})"
            )

        dy, dx = patch.core_offset
        core = output[
            :,
            dy * s:(dy + patch.core.height) * s,
            dx * s:(dx + patch.core.width) * s,
        ]
        self._buffer[
            :,
            patch.core.top * s:patch.core.bottom * s,
            patch.core.left * s:patch.core.right * s,
        ] = core.to(self._buffer.device, dtype=self._buffer.dtype)
        self._placed += 1

    def finish(self, name: str = "") -> ImageTensor:
        if self._placed != len(self.plan):
            raise DimensionMismatchError(
                f"Canvas received {self._placed} patches, plan has {len(self.plan)}"
            )
        out = ImageTensor(self._buffer, name=name)
        self._buffer = None
        return out

    def discard(self) -> None:
        self._buffer = None


def assemble(
    patch_outputs: Sequence[Union[ImageTensor, torch.Tensor]],
    plan: TilePlan,
    scale: int = 1,
) -> ImageTensor:
    """
    Stitch patch outputs (in plan order) into a new full-size image.

    Pure with respect to its inputs: outputs are read, never modified or
    released.
    """
    if len(patch_outputs) != len(plan):
        raise DimensionMismatchError(
            f"Got {len(patch_outputs)} patch outputs for a plan of {len(plan)} patches"
        )
    first = patch_outputs[0]
    first = first.data if isinstance(first, ImageTensor) else first
    canvas = Canvas(plan, scale=scale, channels=first.shape[0], device=first.device)
    try:
        for patch, out in zip(plan, patch_outputs):
            canvas.place(patch, out.data if isinstance(out, ImageTensor) else out)
        return canvas.finish()
    except Exception:
        canvas.discard()
        raise
