"""
upscaler/config.py
====================
Service configuration.

What  : Output location, checkpoint location, device, concurrency bounds,
        request limits and the default model.
Why   : Centralised config keeps paths and limits out of the handlers.
How   : Pydantic settings model reads ``UPSCALER_*`` environment variables
        or a ``.env`` file. Per-model patch size / padding are not here;
        they live in the catalog table (upscaler/model/catalog.py).
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class UpscalerSettings(BaseSettings):
    """Settings for the upscaling service."""

    # ── Storage ───────────────────────────────────────────────────────────
    output_root: Path = Field(
        default=Path("./public/upscaled"),
        description="Root directory for upscaled images, one subfolder per model.",
    )
    checkpoint_dir: Path = Field(
        default=Path("./checkpoints"),
        description="Directory holding {family}-{scale}.pth weight files.",
    )

    # ── Models ────────────────────────────────────────────────────────────
    device: Literal["auto", "cpu", "cuda"] = Field(default="auto")
    default_family: str = Field(default="default")
    default_scale: Optional[str] = Field(default=None)
    allow_random_weights: bool = Field(
        default=False,
        description="Serve randomly initialised networks when a checkpoint is missing (dev only).",
    )
    warm_start_default: bool = Field(
        default=False,
        description="Load and warm up the default model at startup.",
    )

    # ── Concurrency ───────────────────────────────────────────────────────
    max_concurrent_jobs: int = Field(default=2, ge=1)
    job_timeout_s: Optional[float] = Field(default=300.0, gt=0)
    max_queue_depth: int = Field(default=20, ge=1)
    progress_buffer_size: int = Field(default=64, ge=1)

    # ── Request limits ────────────────────────────────────────────────────
    max_payload_mb: float = Field(default=20.0, gt=0)
    max_image_pixels: int = Field(default=16_000_000, ge=1)

    # ── Server ────────────────────────────────────────────────────────────
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000, ge=1, le=65535)

    # ── Logging ───────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO")

    model_config = {
        "env_prefix": "UPSCALER_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


def get_settings() -> UpscalerSettings:
    return UpscalerSettings()
