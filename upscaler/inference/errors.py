"""
upscaler/inference/errors.py
==============================
Error kinds raised by the tiled-inference core.

Request-level errors (bad selector, empty batch, model that cannot load)
abort a whole batch before any file is decoded. Item-level errors (decode,
inference, encode, persistence, timeout) are captured on the failing job
only. Every class carries a short ``kind`` label used in job results and
in the ``upscaler_errors_total`` metric.
"""

from __future__ import annotations


class UpscaleError(Exception):
    """Base class for every error raised by the upscaling core."""

    kind = "internal"


# ── Request-level ────────────────────────────────────────────────────────────

class UnknownModelError(UpscaleError):
    """The (family, scale) selector is not registered."""

    kind = "unknown_model"


class ModelLoadError(UpscaleError):
    """A registered model could not be built, loaded or warmed up."""

    kind = "model_load"


class EmptyBatchError(UpscaleError):
    """A batch was submitted without any files."""

    kind = "empty_batch"


class InvalidTilingError(UpscaleError, ValueError):
    """Patch size / padding combination cannot tile an image."""

    kind = "invalid_tiling"


# ── Item-level ───────────────────────────────────────────────────────────────

class DecodeError(UpscaleError):
    """Malformed or unsupported image bytes."""

    kind = "decode"


class ImageTooLargeError(DecodeError):
    """Decoded image exceeds the configured pixel budget."""

    kind = "image_too_large"


class EncodeError(UpscaleError):
    kind = "encode"


class InferenceError(UpscaleError):
    """Model invocation failed for a patch. The cause is chained."""

    kind = "inference"


class DimensionMismatchError(UpscaleError):
    """A patch output does not have the size the tile plan predicted.

    This is an internal invariant violation (model output-size drift),
    not a user error.
    """

    kind = "dimension_mismatch"


class PersistenceError(UpscaleError):
    kind = "persistence"


class JobTimeoutError(UpscaleError, TimeoutError):
    kind = "timeout"


class JobCancelledError(UpscaleError):
    kind = "cancelled"


class TensorReleasedError(UpscaleError):
    """A released ImageTensor buffer was read."""

    kind = "released"
