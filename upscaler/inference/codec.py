"""
upscaler/inference/codec.py
=============================
Image bytes ↔ ImageTensor conversion.

Decoding always yields 3 channels: alpha is dropped, palette / grey
images are expanded to RGB, and EXIF orientation is applied.
"""

from __future__ import annotations

import io
from typing import Optional

import numpy as np
import torch
from PIL import Image, ImageOps, UnidentifiedImageError

from upscaler.inference.errors import DecodeError, EncodeError, ImageTooLargeError
from upscaler.inference.tensors import ImageTensor


def decode_image(data: bytes, name: str = "", max_pixels: Optional[int] = None) -> ImageTensor:
    """Decode PNG/JPEG bytes into a (3, H, W) float tensor in [0, 1]."""
    if not data:
        raise DecodeError(f"Empty payload for [{name}]")
    try:
        with Image.open(io.BytesIO(data)) as img:
            w, h = img.size
            if max_pixels is not None and w * h > max_pixels:
                raise ImageTooLargeError(
                    f"Image too large: {w}×{h} = {w * h:,} pixels. "
                    f"Maximum: {max_pixels:,} pixels."
                )
            img = ImageOps.exif_transpose(img).convert("RGB")
            arr = np.asarray(img, dtype=np.uint8)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise DecodeError(f"Invalid image [{name}]: {exc}") from exc

    tensor = torch.from_numpy(arr.copy()).permute(2, 0, 1).float().div_(255.0)
    return ImageTensor(tensor, name=name)


def encode_png(image: ImageTensor) -> bytes:
    """Encode a (3, H, W) [0, 1] tensor as PNG bytes."""
    try:
        arr = (
            image.data.detach()
            .clamp(0.0, 1.0)
            .mul(255.0)
            .round()
            .to(torch.uint8)
            .permute(1, 2, 0)
            .contiguous()
            .cpu()
            .numpy()
        )
        buf = io.BytesIO()
        Image.fromarray(arr).save(buf, format="PNG")
    except Exception as exc:
        raise EncodeError(f"PNG encoding failed for [{image.name}]: {exc}") from exc
    return buf.getvalue()
