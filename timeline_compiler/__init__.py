from .config import CompilerConfig, ServiceConfig
from .errors import (
    CancelledError,
    CompilationError,
    CompileTimeoutError,
    CompilerBusyError,
    EmptyTimelineError,
    LocalRenderError,
    RemoteCompileError,
    RemoteUnavailableError,
    TransferError,
    UnresolvedAssetError,
    ValidationError,
)
from .models.compile_models import (
    CompilationResult,
    CompileOptions,
    CompileTier,
    FingerprintMode,
    RenderFidelity,
)
from .models.timeline_models import ClipReference, SourceAsset, Timeline
from .operators.compilation_orchestrator import CompilationOrchestrator

__all__ = [
    "CancelledError",
    "ClipReference",
    "CompilationError",
    "CompilationOrchestrator",
    "CompilationResult",
    "CompileOptions",
    "CompileTier",
    "CompileTimeoutError",
    "CompilerBusyError",
    "CompilerConfig",
    "EmptyTimelineError",
    "FingerprintMode",
    "LocalRenderError",
    "RemoteCompileError",
    "RemoteUnavailableError",
    "RenderFidelity",
    "ServiceConfig",
    "SourceAsset",
    "Timeline",
    "TransferError",
    "UnresolvedAssetError",
    "ValidationError",
]
