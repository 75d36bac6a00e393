"""
upscaler/inference/engine.py
==============================
Patch-based inference executor.

Runs a LoadedModel over the tile plan of one image, strictly sequentially:
inference is expected to saturate the device, so running patches of the
same job in parallel would only raise peak memory.

Buffer lifetimes are scoped, not manual:
  • the input ImageTensor is released once every patch has been read, or
    as soon as the run fails;
  • each patch input and patch output lives inside a ``with`` block and is
    released before the next patch starts, whatever the outcome;
  • the partially filled canvas is discarded on failure.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from upscaler.inference.errors import (
    DimensionMismatchError,
    InferenceError,
    JobCancelledError,
)
from upscaler.inference.model_loader import LoadedModel
from upscaler.inference.tensors import ImageTensor
from upscaler.inference.tile_processor import Canvas, extract_patch, plan_tiles

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, ImageTensor], None]


# ─────────────────────────────────────────────────────────────────────────────
# Progress channel
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProgressEvent:
    job: str
    sequence: int   # 1-based, in publication order
    fraction: float


class ProgressChannel:
    """
    Bounded, ordered stream of progress events for a single job.

    Only the most recent ``maxlen`` events are retained. Events are
    appended by the worker thread and may be read from any thread.
    """

    def __init__(self, job: str, maxlen: int = 64) -> None:
        self.job = job
        self._events: deque[ProgressEvent] = deque(maxlen=maxlen)
        self._lock = threading.Lock()
        self._published = 0

    def publish(self, fraction: float) -> ProgressEvent:
        with self._lock:
            self._published += 1
            event = ProgressEvent(self.job, self._published, fraction)
            self._events.append(event)
        return event

    def events(self) -> list[ProgressEvent]:
        with self._lock:
            return list(self._events)

    @property
    def latest(self) -> Optional[ProgressEvent]:
        with self._lock:
            return self._events[-1] if self._events else None

    @property
    def published(self) -> int:
        return self._published

    @property
    def fraction(self) -> float:
        latest = self.latest
        return latest.fraction if latest else 0.0


# ─────────────────────────────────────────────────────────────────────────────
# Executor
# ─────────────────────────────────────────────────────────────────────────────

class InferenceExecutor:
    """
    Usage::

        executor = InferenceExecutor()
        out = executor.run(model, image, patch_size=64, padding=6,
                           on_progress=lambda frac, patch: ...)
    """

    def run(
        self,
        model: LoadedModel,
        image: ImageTensor,
        patch_size: int,
        padding: int,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ImageTensor:
        """
        Upscale ``image`` patch by patch and return the stitched result.

        ``on_progress(fraction, patch_output)`` is called after every patch
        with a non-decreasing fraction that is exactly 1.0 on the last
        patch. ``patch_output`` is only valid during the call; it is
        released as soon as the callback returns.

        Raises:
            ModelLoadError: warmup of the model failed.
            InferenceError: the model raised on a patch (cause chained).
            DimensionMismatchError: a patch output has an unexpected size.
            JobCancelledError: ``cancel_event`` was set between patches.
        """
        canvas: Optional[Canvas] = None
        try:
            model.warmup(patch_size)

            plan = plan_tiles(image.height, image.width, patch_size, padding)
            total = len(plan)
            canvas = Canvas(plan, scale=model.scale, channels=image.channels)
            t0 = time.perf_counter()

            for patch in plan:
                if cancel_event is not None and cancel_event.is_set():
                    raise JobCancelledError(
                        f"[{image.name}] cancelled after {patch.index}/{total} patches"
                    )

                with ImageTensor(extract_patch(image.data, patch)) as patch_in:
                    try:
                        raw = model.infer(patch_in.data)
                    except Exception as exc:
                        raise InferenceError(
                            f"{model.selector} failed on patch {patch.index + 1}/{total} "
                            f"of [{image.name}]: {exc}"
                        ) from exc

                if raw.dim() != 3:
                    raise DimensionMismatchError(
                        f"Patch {patch.index} output has shape {tuple(raw.shape)}, expected (C, H, W)"
                    )
                with ImageTensor(raw, name=f"{image.name}#{patch.index}") as patch_out:
                    del raw
                    canvas.place(patch, patch_out.data)
                    if on_progress is not None:
                        on_progress((patch.index + 1) / total, patch_out)

            # Every patch has been read from the input
            image.release()
            result = canvas.finish(name=image.name)
            canvas = None

            logger.debug(
                "Executed %d patches of [%s] with %s in %.2fs",
                total, image.name, model.selector, time.perf_counter() - t0,
            )
            return result
        finally:
            image.release()
            if canvas is not None:
                canvas.discard()
