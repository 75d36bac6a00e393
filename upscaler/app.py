"""
upscaler/app.py
=================
FastAPI application exposing tiled super-resolution over HTTP.

What  : Accepts multipart image uploads, upscales each with the selected
        model family/scale and stores the results on disk.
Why   : One parameterised handler keyed by a ModelSelector replaces a
        handler per model; model parameters come from the catalog table.
How   : FastAPI async endpoints; the batch orchestrator runs jobs in the
        thread pool under a semaphore; prometheus_client metrics.

Endpoints:
  GET  /public/upscaler/v1/model                          — Default model metadata
  GET  /public/upscaler/v1/models                         — All registered models
  POST /public/upscaler/v1/upscale/images/{family}        — Upscale (family default scale)
  POST /public/upscaler/v1/upscale/images/{family}/{scale}
  GET  /health    — Liveness probe
  GET  /ready     — Readiness probe
  GET  /metrics   — Prometheus metrics
  GET  /version   — API and runtime version info
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import traceback
from contextlib import asynccontextmanager
from typing import List, Optional

import torch
from fastapi import APIRouter, FastAPI, File, HTTPException, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)
from pydantic import BaseModel, Field

from upscaler.config import UpscalerSettings, get_settings
from upscaler.inference.errors import (
    DecodeError,
    EmptyBatchError,
    ImageTooLargeError,
    InvalidTilingError,
    ModelLoadError,
    UnknownModelError,
)
from upscaler.inference.model_loader import ModelCache
from upscaler.inference.orchestrator import BatchOrchestrator, BatchResult
from upscaler.inference.output_sink import OutputSink
from upscaler.inference.registry import ModelRegistry, ModelSelector, build_default_registry

CONFIG = get_settings()

logger = logging.getLogger(__name__)
logging.basicConfig(level=CONFIG.log_level.upper(), format="%(asctime)s | %(levelname)s | %(message)s")

API_VERSION = "1.0.0"
API_PREFIX = "/public/upscaler/v1"


# ─────────────────────────────────────────────────────────────────────────────
# Prometheus metrics
# ─────────────────────────────────────────────────────────────────────────────

REQUEST_COUNT = Counter(
    "upscaler_requests_total",
    "Total upscale requests",
    ["model", "status"],
)
ERROR_COUNT = Counter(
    "upscaler_errors_total",
    "Total request-level and job-level errors",
    ["error_type"],
)
JOB_COUNT = Counter(
    "upscaler_jobs_total",
    "Total per-file upscale jobs",
    ["model", "status"],
)
JOB_LATENCY = Histogram(
    "upscaler_job_seconds",
    "Per-file job latency in seconds",
    buckets=[0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
)
PATCHES_PROCESSED = Counter(
    "upscaler_patches_total",
    "Patches pushed through a model",
)
ACTIVE_REQUESTS = Gauge(
    "upscaler_active_requests",
    "Currently active upscale requests",
)
LOADED_MODELS = Gauge(
    "upscaler_loaded_models",
    "Models currently held in the model cache",
)
GPU_MEMORY_USED = Gauge(
    "upscaler_gpu_memory_used_bytes",
    "GPU memory used in bytes",
)
UPTIME = Gauge(
    "upscaler_uptime_seconds",
    "Server uptime in seconds",
)
BACKPRESSURE_REJECTED = Counter(
    "upscaler_backpressure_rejected_total",
    "Total requests rejected by backpressure",
)


# ─────────────────────────────────────────────────────────────────────────────
# Response schemas
# ─────────────────────────────────────────────────────────────────────────────

class JobResultSchema(BaseModel):
    name: str
    status: str
    filename: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    persistence_error: Optional[str] = None
    elapsed_s: float
    patches: int
    progress: float


class UpscaleResponse(BaseModel):
    message: str
    images: List[str] = Field(..., description="Names of the uploads that were upscaled")
    results: List[JobResultSchema] = Field(..., description="One entry per upload, in upload order")


class HealthResponse(BaseModel):
    status: str
    device: str
    gpu_available: bool
    gpu_name: Optional[str] = None
    gpu_memory_used_mb: Optional[float] = None
    loaded_models: List[str]
    uptime_seconds: float
    active_requests: int


class VersionResponse(BaseModel):
    api_version: str = API_VERSION
    default_model: str
    python_version: str
    torch_version: str
    cuda_available: bool
    cuda_version: Optional[str] = None


# ─────────────────────────────────────────────────────────────────────────────
# Application state (thread-safe)
# ─────────────────────────────────────────────────────────────────────────────

class AppState:
    """
    Per-process service objects plus a thread-safe active request counter.

    The model cache is the only state shared between requests; it is
    read-mostly and fills each selector at most once.
    """

    def __init__(self, settings: UpscalerSettings, registry: Optional[ModelRegistry] = None):
        self.settings = settings
        self.ready: bool = False
        self.start_time: float = time.time()

        self.registry = registry or build_default_registry(settings)
        self.cache = ModelCache(self.registry)
        self.sink = OutputSink(settings.output_root)
        self.orchestrator = BatchOrchestrator(
            self.cache,
            self.sink,
            max_concurrent_jobs=settings.max_concurrent_jobs,
            job_timeout_s=settings.job_timeout_s,
            max_image_pixels=settings.max_image_pixels,
            progress_buffer_size=settings.progress_buffer_size,
        )

        self._active_requests: int = 0
        self._active_lock: threading.Lock = threading.Lock()

    @property
    def default_selector(self) -> ModelSelector:
        return ModelSelector(self.settings.default_family, self.settings.default_scale)

    @property
    def active_requests(self) -> int:
        with self._active_lock:
            return self._active_requests

    def increment_active(self) -> int:
        with self._active_lock:
            self._active_requests += 1
            ACTIVE_REQUESTS.set(self._active_requests)
            return self._active_requests

    def decrement_active(self) -> int:
        with self._active_lock:
            self._active_requests -= 1
            ACTIVE_REQUESTS.set(self._active_requests)
            return self._active_requests


state: AppState = None  # Initialized in lifespan


# ─────────────────────────────────────────────────────────────────────────────
# Lifespan (startup / shutdown with graceful drain)
# ─────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    On startup: build registry and orchestrator, optionally warm the default model.
    On shutdown: wait for in-flight requests (up to 30s), drop cached models.
    """
    global state
    state = AppState(CONFIG)

    logger.info("Starting upscaler API...")
    if CONFIG.warm_start_default:
        selector = state.default_selector
        logger.info("Warm-starting default model %s...", selector)
        loop = asyncio.get_running_loop()
        model = await loop.run_in_executor(None, state.cache.get, selector)
        await loop.run_in_executor(None, model.warmup, model.spec.patch_size)
        LOADED_MODELS.set(len(state.cache.loaded()))

    state.ready = True
    state.start_time = time.time()
    logger.info("Upscaler API ready!")
    yield

    logger.info("Shutting down upscaler API...")
    state.ready = False

    drain_timeout = 30.0
    drain_start = time.time()
    while state.active_requests > 0 and (time.time() - drain_start) < drain_timeout:
        logger.info(
            "Draining %d active requests (%.0fs remaining)...",
            state.active_requests,
            drain_timeout - (time.time() - drain_start),
        )
        await asyncio.sleep(1.0)

    if state.active_requests > 0:
        logger.warning(
            "Shutdown timeout: %d requests still active, forcing shutdown",
            state.active_requests,
        )

    state.cache.clear()
    logger.info("Shutdown complete")


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI app
# ─────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="Upscaler API",
    description="Tiled super-resolution and restoration over HTTP",
    version=API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

router = APIRouter(prefix=API_PREFIX)


# ─────────────────────────────────────────────────────────────────────────────
# Model introspection
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/model")
async def fetch_model_package():
    """Metadata of the default model."""
    logger.info("Request received to fetch the default model package")
    try:
        data = state.registry.describe(state.default_selector)
    except UnknownModelError as exc:
        raise HTTPException(404, detail=str(exc))
    return {"data": data}


@router.get("/models")
async def list_models():
    return {"data": [state.registry.describe(s) for s in state.registry.selectors()]}


# ─────────────────────────────────────────────────────────────────────────────
# Upscaling
# ─────────────────────────────────────────────────────────────────────────────

@router.post("/upscale/images/{family}", response_model=UpscaleResponse)
async def upscale_images(family: str, files: Optional[List[UploadFile]] = File(default=None)):
    return await _upscale(ModelSelector(family), files)


@router.post("/upscale/images/{family}/{scale}", response_model=UpscaleResponse)
async def upscale_images_scaled(
    family: str,
    scale: str,
    files: Optional[List[UploadFile]] = File(default=None),
):
    return await _upscale(ModelSelector(family, scale), files)


async def _upscale(selector: ModelSelector, files: Optional[List[UploadFile]]) -> UpscaleResponse:
    """
    Shared handler for every model.

    Flow:
      1. Check backpressure (reject if overloaded), then count the request
      2. Read uploads, enforce payload size
      3. Run the batch (request-level errors abort before any decode)
      4. Report per-file outcomes

    Error handling:
      - 400: No files
      - 404: Unknown model family / scale
      - 413: Upload too large
      - 422: Every file failed to decode
      - 503: Server overloaded or model unavailable
      - 500: Every file failed for another reason, or unexpected error
    """
    logger.info("Using the %s upscaling model", selector)

    if state.active_requests >= state.settings.max_queue_depth:
        BACKPRESSURE_REJECTED.inc()
        raise HTTPException(
            503,
            detail=f"Server overloaded ({state.active_requests} active requests). Retry later.",
            headers={"Retry-After": "5"},
        )

    # Counted before the first await so concurrent requests see each other
    state.increment_active()
    try:
        max_bytes = int(state.settings.max_payload_mb * 1024 * 1024)
        uploads: list[tuple[str, bytes]] = []
        for i, upload in enumerate(files or []):
            data = await upload.read()
            if len(data) > max_bytes:
                ERROR_COUNT.labels(error_type="payload_too_large").inc()
                raise HTTPException(
                    413,
                    detail=f"{upload.filename} exceeds limit of {state.settings.max_payload_mb} MB",
                )
            uploads.append((upload.filename or f"upload_{i}", data))

        batch = await state.orchestrator.process_batch(uploads, selector)
    except HTTPException:
        raise
    except EmptyBatchError as exc:
        logger.warning("No files provided in the request")
        _count_request_error(selector, exc, 400)
        raise HTTPException(400, detail="Files need to be provided")
    except UnknownModelError as exc:
        _count_request_error(selector, exc, 404)
        raise HTTPException(404, detail=str(exc))
    except InvalidTilingError as exc:
        _count_request_error(selector, exc, 422)
        raise HTTPException(422, detail=str(exc))
    except ModelLoadError as exc:
        logger.error("Model %s unavailable: %s", selector, exc)
        _count_request_error(selector, exc, 503)
        raise HTTPException(503, detail=f"Model {selector} is not available: {exc}",
                            headers={"Retry-After": "10"})
    except Exception as exc:
        logger.error("Upscaling failed: %s", traceback.format_exc())
        _count_request_error(selector, exc, 500)
        raise HTTPException(500, detail=f"Upscaling failed: {exc}")
    finally:
        state.decrement_active()

    _record_batch(batch)
    results = [JobResultSchema(**r.as_dict()) for r in batch]

    if batch.all_failed:
        status = 422 if all(_is_decode_failure(r.error_kind) for r in batch) else 500
        REQUEST_COUNT.labels(model=str(selector), status=str(status)).inc()
        raise HTTPException(status, detail={
            "message": f"No image could be upscaled using the {selector} model",
            "results": [r.model_dump() for r in results],
        })

    REQUEST_COUNT.labels(model=str(selector), status="200").inc()
    succeeded = batch.succeeded
    if len(succeeded) == len(batch):
        message = f"Images were upscaled using the {selector} model"
    else:
        message = f"{len(succeeded)} of {len(batch)} images were upscaled using the {selector} model"
    return UpscaleResponse(
        message=message,
        images=[r.name for r in succeeded],
        results=results,
    )


_DECODE_KINDS = {DecodeError.kind, ImageTooLargeError.kind}


def _is_decode_failure(kind: Optional[str]) -> bool:
    return kind in _DECODE_KINDS


def _count_request_error(selector: ModelSelector, exc: Exception, status: int) -> None:
    ERROR_COUNT.labels(error_type=getattr(exc, "kind", "internal")).inc()
    REQUEST_COUNT.labels(model=str(selector), status=str(status)).inc()


def _record_batch(batch: BatchResult) -> None:
    for result in batch:
        JOB_COUNT.labels(model=str(batch.selector), status=result.status.value).inc()
        JOB_LATENCY.observe(result.elapsed_s)
        PATCHES_PROCESSED.inc(result.patches)
        if result.error_kind:
            ERROR_COUNT.labels(error_type=result.error_kind).inc()
        if result.persistence_error:
            ERROR_COUNT.labels(error_type="persistence").inc()
    LOADED_MODELS.set(len(state.cache.loaded()))


app.include_router(router)


# ─────────────────────────────────────────────────────────────────────────────
# Health endpoints
# ─────────────────────────────────────────────────────────────────────────────

@app.get("/health", response_model=HealthResponse)
async def health():
    """Liveness probe. Must respond quickly; never loads a model."""
    gpu_name = None
    gpu_mem_used = None

    if torch.cuda.is_available():
        gpu_name = torch.cuda.get_device_name(0)
        free, total = torch.cuda.mem_get_info(0)
        gpu_mem_used = (total - free) / 1e6
        GPU_MEMORY_USED.set(total - free)

    UPTIME.set(time.time() - state.start_time)

    return HealthResponse(
        status="healthy" if state.ready else "starting",
        device=str(state.registry.device),
        gpu_available=torch.cuda.is_available(),
        gpu_name=gpu_name,
        gpu_memory_used_mb=gpu_mem_used,
        loaded_models=[str(s) for s in state.cache.loaded()],
        uptime_seconds=time.time() - state.start_time,
        active_requests=state.active_requests,
    )


@app.get("/ready")
async def ready():
    """Readiness probe: 503 while starting or when the queue is full."""
    if not state.ready:
        raise HTTPException(503, detail="Service not ready")
    if state.active_requests >= state.settings.max_queue_depth:
        raise HTTPException(503, detail="Server overloaded",
                            headers={"Retry-After": "5"})
    return {"status": "ready"}


@app.get("/metrics")
async def metrics():
    """Prometheus-compatible metrics endpoint."""
    if torch.cuda.is_available():
        free, total = torch.cuda.mem_get_info(0)
        GPU_MEMORY_USED.set(total - free)

    UPTIME.set(time.time() - state.start_time)
    LOADED_MODELS.set(len(state.cache.loaded()))

    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


@app.get("/version", response_model=VersionResponse)
async def version():
    """Return API and runtime version information."""
    import platform
    return VersionResponse(
        api_version=API_VERSION,
        default_model=str(state.default_selector),
        python_version=platform.python_version(),
        torch_version=torch.__version__,
        cuda_available=torch.cuda.is_available(),
        cuda_version=torch.version.cuda if torch.cuda.is_available() else None,
    )


def main() -> None:
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(description="Serve the upscaler API")
    parser.add_argument("--host", default=CONFIG.host)
    parser.add_argument("--port", type=int, default=CONFIG.port)
    args = parser.parse_args()

    uvicorn.run(app, host=args.host, port=args.port, log_level=CONFIG.log_level.lower())


if __name__ == "__main__":
    main()
