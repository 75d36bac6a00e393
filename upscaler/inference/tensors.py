"""
upscaler/inference/tensors.py
===============================
Owned pixel buffers with scoped release.

An ``ImageTensor`` wraps a ``(C, H, W)`` float tensor in ``[0, 1]``. The
buffer is owned by exactly one job; ``release()`` drops the reference so
the allocator can reclaim it, and using the object as a context manager
guarantees the release on every exit path.
"""

from __future__ import annotations

from typing import Optional

import torch

from upscaler.inference.errors import TensorReleasedError


class ImageTensor:
    """Decoded image (or patch) buffer of shape (C, H, W)."""

    def __init__(self, data: torch.Tensor, name: str = "") -> None:
        if data.dim() != 3:
            raise ValueError(f"Expected a (C, H, W) tensor, got shape {tuple(data.shape)}")
        self._data: Optional[torch.Tensor] = data
        self.name = name

    # ── Access ────────────────────────────────────────────────────────────

    @property
    def data(self) -> torch.Tensor:
        if self._data is None:
            raise TensorReleasedError(f"ImageTensor {self.name or id(self)} was already released")
        return self._data

    @property
    def released(self) -> bool:
        return self._data is None

    @property
    def channels(self) -> int:
        return self.data.shape[0]

    @property
    def height(self) -> int:
        return self.data.shape[1]

    @property
    def width(self) -> int:
        return self.data.shape[2]

    @property
    def size(self) -> tuple[int, int]:
        """(width, height), in PIL order."""
        return self.width, self.height

    # ── Lifetime ──────────────────────────────────────────────────────────

    def release(self) -> None:
        """Drop the underlying buffer. Safe to call more than once."""
        self._data = None

    def __enter__(self) -> "ImageTensor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __repr__(self) -> str:
        if self._data is None:
            return f"ImageTensor(name={self.name!r}, released)"
        return f"ImageTensor(name={self.name!r}, shape={tuple(self._data.shape)})"
