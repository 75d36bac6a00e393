# Tiled super-resolution inference core
from upscaler.inference.engine import InferenceExecutor, ProgressChannel, ProgressEvent
from upscaler.inference.errors import (
    DecodeError,
    DimensionMismatchError,
    EmptyBatchError,
    InferenceError,
    ModelLoadError,
    PersistenceError,
    UnknownModelError,
    UpscaleError,
)
from upscaler.inference.model_loader import LoadedModel, ModelCache
from upscaler.inference.orchestrator import (
    BatchOrchestrator,
    BatchResult,
    JobResult,
    JobStatus,
    TilingConfig,
)
from upscaler.inference.output_sink import OutputSink, StoredArtifact
from upscaler.inference.registry import ModelRegistry, ModelSelector, ModelSpec
from upscaler.inference.tile_processor import TilePlan, assemble, plan_tiles

__all__ = [
    "InferenceExecutor",
    "ProgressChannel",
    "ProgressEvent",
    "DecodeError",
    "DimensionMismatchError",
    "EmptyBatchError",
    "InferenceError",
    "ModelLoadError",
    "PersistenceError",
    "UnknownModelError",
    "UpscaleError",
    "LoadedModel",
    "ModelCache",
    "BatchOrchestrator",
    "BatchResult",
    "JobResult",
    "JobStatus",
    "TilingConfig",
    "OutputSink",
    "StoredArtifact",
    "ModelRegistry",
    "ModelSelector",
    "ModelSpec",
    "TilePlan",
    "assemble",
    "plan_tiles",
]
