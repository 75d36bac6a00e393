"""
upscaler/inference/generate_checkpoints.py
============================================
Generate random-initialized checkpoint files for catalog models.

The files have the layout the registry loads ({namespace}.pth, raw
state_dict), so the full pipeline (loading, warmup, tiling, stitching,
persistence) can be exercised without trained weights. Outputs of such
models are close to a nearest-neighbour upscale and carry no learned detail.

Usage:
    python -m upscaler.inference.generate_checkpoints
    python -m upscaler.inference.generate_checkpoints --output-dir ./checkpoints --family esrgan-slim
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional

import torch

from upscaler.inference.model_loader import load_model
from upscaler.model.catalog import default_specs

logger = logging.getLogger(__name__)


def generate_checkpoints(output_dir: Path, family: Optional[str] = None, verify: bool = True) -> list[Path]:
    """Write one checkpoint per catalog row (optionally one family only)."""
    output_dir.mkdir(parents=True, exist_ok=True)
    specs = [s for s in default_specs() if family is None or s.selector.family == family.lower()]
    if not specs:
        raise ValueError(f"No catalog entries for family {family!r}")

    written: list[Path] = []
    for spec in specs:
        module = spec.build()
        path = spec.checkpoint_path(output_dir)
        torch.save(module.state_dict(), path)
        params = sum(p.numel() for p in module.parameters())
        logger.info("Saved %s: %.2fM params, %.1f MB",
                    path.name, params / 1e6, path.stat().st_size / 1e6)
        written.append(path)

        if verify:
            model = load_model(spec, checkpoint_dir=output_dir)
            out = model.infer(torch.rand(3, 16, 16))
            logger.info("Verified %s: 16x16 → %dx%d", spec.selector, out.shape[2], out.shape[1])

    logger.info("%d checkpoints saved to: %s", len(written), output_dir.resolve())
    return written


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
    parser = argparse.ArgumentParser(description="Generate random-init checkpoint files")
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("./checkpoints"),
        help="Directory to save checkpoint files",
    )
    parser.add_argument("--family", default=None, help="Only generate this model family")
    parser.add_argument("--no-verify", action="store_true", help="Skip the load-back check")
    args = parser.parse_args()
    generate_checkpoints(args.output_dir, family=args.family, verify=not args.no_verify)
