"""
upscaler/inference/orchestrator.py
====================================
Runs one upscaling job per uploaded file and aggregates the results.

What  : decode → plan → infer → stitch → encode → persist, per file.
Why   : A batch is best-effort. One corrupt upload must not take its
        siblings down with it, so every item-level failure is captured on
        its own job. Only request-level problems (no files, unknown or
        unloadable model) abort the whole batch, and they do so before any
        file is decoded.
How   : Jobs run in the default thread-pool executor, bounded by an
        asyncio.Semaphore. Each job owns its buffers and progress channel;
        nothing mutable is shared between jobs. Results are returned in
        upload order regardless of completion order.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Callable, Iterable, Iterator, Optional

from upscaler.inference.codec import decode_image, encode_png
from upscaler.inference.engine import InferenceExecutor, ProgressChannel
from upscaler.inference.errors import (
    EmptyBatchError,
    JobCancelledError,
    JobTimeoutError,
    PersistenceError,
    UpscaleError,
)
from upscaler.inference.model_loader import LoadedModel, ModelCache, free_gpu_memory
from upscaler.inference.output_sink import OutputSink, StoredArtifact
from upscaler.inference.registry import ModelSelector
from upscaler.inference.tensors import ImageTensor
from upscaler.inference.tile_processor import validate_tiling

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Job data model
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TilingConfig:
    patch_size: int
    padding: int


class JobStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class JobResult:
    """Terminal outcome of one file."""
    name: str
    status: JobStatus
    artifact: Optional[StoredArtifact] = None
    width: Optional[int] = None
    height: Optional[int] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    persistence_error: Optional[str] = None
    elapsed_s: float = 0.0
    patches: int = 0
    progress: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is JobStatus.SUCCEEDED

    @property
    def stored(self) -> bool:
        return self.artifact is not None

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status.value,
            "filename": self.artifact.filename if self.artifact else None,
            "width": self.width,
            "height": self.height,
            "error_kind": self.error_kind,
            "error": self.error,
            "persistence_error": self.persistence_error,
            "elapsed_s": round(self.elapsed_s, 3),
            "patches": self.patches,
            "progress": self.progress,
        }


@dataclass
class UpscaleJob:
    """One (file, selector) pair and its private state."""
    index: int
    name: str
    data: bytes
    selector: ModelSelector
    tiling: TilingConfig
    progress: ProgressChannel
    cancel_event: threading.Event = field(default_factory=threading.Event)
    started_at: float = 0.0
    result: Optional[JobResult] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def elapsed_s(self) -> float:
        return time.perf_counter() - self.started_at if self.started_at else 0.0

    def settle(self, result: JobResult) -> bool:
        """Record the terminal result; the first writer wins."""
        with self._lock:
            if self.result is not None:
                return False
            self.result = result
            return True

    def failure(self, exc: BaseException) -> JobResult:
        return JobResult(
            name=self.name,
            status=JobStatus.FAILED,
            error_kind=getattr(exc, "kind", "internal"),
            error=str(exc) or type(exc).__name__,
            elapsed_s=self.elapsed_s,
            patches=self.progress.published,
            progress=self.progress.fraction,
        )


@dataclass(frozen=True)
class BatchResult:
    """Per-file outcomes of one request, in upload order."""
    selector: ModelSelector
    results: tuple[JobResult, ...]

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self) -> Iterator[JobResult]:
        return iter(self.results)

    def __getitem__(self, index: int) -> JobResult:
        return self.results[index]

    @property
    def succeeded(self) -> list[JobResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> list[JobResult]:
        return [r for r in self.results if not r.ok]

    @property
    def all_failed(self) -> bool:
        return not self.succeeded


# ─────────────────────────────────────────────────────────────────────────────
# Orchestrator
# ─────────────────────────────────────────────────────────────────────────────

class BatchOrchestrator:
    """
    Usage::

        orchestrator = BatchOrchestrator(cache, sink, max_concurrent_jobs=2)
        batch = await orchestrator.process_batch(
            [("cat.jpg", data)], ModelSelector("esrgan-slim", "x2"),
        )
    """

    def __init__(
        self,
        cache: ModelCache,
        sink: OutputSink,
        executor: Optional[InferenceExecutor] = None,
        decoder: Callable[..., ImageTensor] = decode_image,
        encoder: Callable[[ImageTensor], bytes] = encode_png,
        max_concurrent_jobs: int = 2,
        job_timeout_s: Optional[float] = None,
        max_image_pixels: Optional[int] = None,
        progress_buffer_size: int = 64,
    ) -> None:
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")
        self.cache = cache
        self.sink = sink
        self.executor = executor or InferenceExecutor()
        self.decoder = decoder
        self.encoder = encoder
        self.max_concurrent_jobs = max_concurrent_jobs
        self.job_timeout_s = job_timeout_s
        self.max_image_pixels = max_image_pixels
        self.progress_buffer_size = progress_buffer_size

    async def process_batch(
        self,
        files: Iterable[tuple[str, bytes]],
        selector: ModelSelector,
        tiling: Optional[TilingConfig] = None,
    ) -> BatchResult:
        """
        Upscale every file with the model behind ``selector``.

        Raises (request-level, before any decode):
            EmptyBatchError: ``files`` is empty.
            UnknownModelError: ``selector`` is not registered.
            ModelLoadError: the model cannot be loaded or warmed up.
            InvalidTilingError: ``tiling`` cannot tile an image.
        """
        files = list(files)
        if not files:
            raise EmptyBatchError("Files need to be provided")

        loop = asyncio.get_running_loop()
        model: LoadedModel = await loop.run_in_executor(None, self.cache.get, selector)

        tiling = tiling or TilingConfig(model.spec.patch_size, model.spec.padding)
        validate_tiling(tiling.patch_size, tiling.padding)
        await loop.run_in_executor(None, model.warmup, tiling.patch_size)

        jobs = [
            UpscaleJob(
                index=i,
                name=name,
                data=data,
                selector=model.selector,
                tiling=tiling,
                progress=ProgressChannel(name, maxlen=self.progress_buffer_size),
            )
            for i, (name, data) in enumerate(files)
        ]
        logger.info("Processing batch of %d files with %s (patch=%d padding=%d)",
                    len(jobs), model.selector, tiling.patch_size, tiling.padding)

        semaphore = asyncio.Semaphore(self.max_concurrent_jobs)
        results = await asyncio.gather(
            *(self._run_job(job, model, semaphore) for job in jobs)
        )

        batch = BatchResult(selector=model.selector, results=tuple(results))
        logger.info("Batch with %s done: %d succeeded, %d failed",
                    model.selector, len(batch.succeeded), len(batch.failed))
        return batch

    # ── Per-job scheduling ────────────────────────────────────────────────

    async def _run_job(
        self,
        job: UpscaleJob,
        model: LoadedModel,
        semaphore: asyncio.Semaphore,
    ) -> JobResult:
        async with semaphore:
            loop = asyncio.get_running_loop()
            job.started_at = time.perf_counter()
            worker = loop.run_in_executor(None, self._execute, job, model)
            try:
                if self.job_timeout_s:
                    async with asyncio.timeout(self.job_timeout_s):
                        await asyncio.shield(worker)
                else:
                    await worker
            except TimeoutError:
                job.cancel_event.set()
                if job.settle(job.failure(JobTimeoutError(
                    f"[{job.name}] did not finish within {self.job_timeout_s}s"
                ))):
                    logger.error("Upscaling timed out for %s after %.1fs",
                                 job.name, job.elapsed_s)
                # Keep the slot until the worker stops at the next patch boundary
                await asyncio.wait([worker])
            except Exception as exc:
                logger.exception("Job for %s failed outside the pipeline", job.name)
                job.settle(job.failure(exc))
        return job.result

    # ── Per-job work (runs in a worker thread) ────────────────────────────

    def _execute(self, job: UpscaleJob, model: LoadedModel) -> None:
        image: Optional[ImageTensor] = None
        output: Optional[ImageTensor] = None
        try:
            image = self.decoder(job.data, name=job.name, max_pixels=self.max_image_pixels)
            output = self.executor.run(
                model,
                image,
                job.tiling.patch_size,
                job.tiling.padding,
                on_progress=partial(self._on_progress, job),
                cancel_event=job.cancel_event,
            )
            width, height = output.size
            encoded = self.encoder(output)
        except JobCancelledError as exc:
            # Already settled as timed out when cancelled by the scheduler
            logger.debug("Upscaling of %s stopped: %s", job.name, exc)
            job.settle(job.failure(exc))
            return
        except UpscaleError as exc:
            logger.error("Upscaling failed for %s: %s", job.name, exc)
            job.settle(job.failure(exc))
            return
        except Exception as exc:
            logger.exception("Unexpected error while upscaling %s", job.name)
            job.settle(job.failure(exc))
            return
        finally:
            if image is not None:
                image.release()
            if output is not None:
                output.release()
            job.data = b""
            if model.device.type == "cuda":
                free_gpu_memory()

        artifact = None
        persistence_error = None
        try:
            artifact = self.sink.persist(encoded, job.name, job.selector)
        except PersistenceError as exc:
            logger.error("Could not store output of %s: %s", job.name, exc)
            persistence_error = str(exc)
        except Exception as exc:
            logger.exception("Unexpected error while storing output of %s", job.name)
            persistence_error = f"{type(exc).__name__}: {exc}"

        logger.debug("Duration for [%s]: %.2fs", job.name, job.elapsed_s)
        logger.info("Image %s was upscaled using the %s model", job.name, job.selector)
        job.settle(JobResult(
            name=job.name,
            status=JobStatus.SUCCEEDED,
            artifact=artifact,
            width=width,
            height=height,
            persistence_error=persistence_error,
            elapsed_s=job.elapsed_s,
            patches=job.progress.published,
            progress=job.progress.fraction,
        ))

    @staticmethod
    def _on_progress(job: UpscaleJob, fraction: float, patch_output: ImageTensor) -> None:
        job.progress.publish(fraction)
        logger.debug("%.2f%% of [%s] has been processed", fraction * 100, job.name)
