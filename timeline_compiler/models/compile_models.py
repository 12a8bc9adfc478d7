"""
Pydantic models for timeline compilation.

This module defines schemas for:
- Compile options and the caller-facing CompilationResult
- The declarative filter graph handed to the transcode engine
- Remote compile job tracking (CompileJob)
- Wire payloads exchanged with the remote compilation service
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# ENUMS
# =============================================================================


class CompileJobStatus(str, Enum):
    """Status of a remote compile job."""

    PENDING = "pending"  # Submitted, not started
    UPLOADING = "uploading"  # Service is receiving / staging inputs
    TRANSCODING = "transcoding"  # ffmpeg is running
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"  # Cancelled by the caller

    @property
    def is_terminal(self) -> bool:
        return self in (
            CompileJobStatus.SUCCEEDED,
            CompileJobStatus.FAILED,
            CompileJobStatus.CANCELLED,
        )

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    CompileJobStatus.PENDING: 0,
    CompileJobStatus.UPLOADING: 1,
    CompileJobStatus.TRANSCODING: 2,
    CompileJobStatus.SUCCEEDED: 3,
    CompileJobStatus.FAILED: 3,
    CompileJobStatus.CANCELLED: 3,
}


class CompileTier(str, Enum):
    """Which tier produced a result."""

    REMOTE = "remote"
    LOCAL = "local"


class RenderFidelity(str, Enum):
    FULL = "full"  # Real transcode of every clip
    APPROXIMATE = "approximate"  # Local best-effort, may contain placeholders


class FingerprintMode(str, Enum):
    """How source assets are deduplicated."""

    CONTENT_HASH = "content_hash"  # SHA-256 of the file bytes
    NAME_SIZE = "name_size"  # "<name>:<size>", cheaper but may collide


# =============================================================================
# OPTIONS & RESULTS
# =============================================================================


class CompileOptions(BaseModel):
    """Per-call compile settings. None means use the orchestrator config."""

    max_asset_bytes: int | None = Field(
        default=None, gt=0, description="Reject assets larger than this"
    )
    frame_rate: float = Field(default=30.0, gt=0, description="Output frame rate")
    width: int = Field(default=1920, gt=0, description="Remote output width")
    height: int = Field(default=1080, gt=0, description="Remote output height")
    local_width: int = Field(default=1280, gt=0, description="Fallback output width")
    local_height: int = Field(default=720, gt=0, description="Fallback output height")
    output_dir: str | None = Field(
        default=None, description="Directory for locally rendered artifacts"
    )
    allow_fallback: bool = Field(
        default=True, description="Render locally when the remote tier fails"
    )
    fingerprint_mode: FingerprintMode | None = None


class CompilationResult(BaseModel):
    """The finished artifact. Only object allowed to outlive a compile."""

    model_config = ConfigDict(frozen=True)

    artifact_location: str = Field(description="Download URL or local file path")
    artifact_name: str = Field(description="compiled-<timestamp>.<ext>")
    tier: CompileTier
    fidelity: RenderFidelity
    metadata: dict[str, Any] = Field(default_factory=dict)


def generate_artifact_name(extension: str = "mp4", now: datetime | None = None) -> str:
    moment = now or datetime.now(timezone.utc)
    timestamp = int(moment.timestamp() * 1000)
    return f"compiled-{timestamp}.{extension.lstrip('.')}"


# =============================================================================
# FILTER GRAPH
# =============================================================================


class GraphInput(BaseModel):
    """One unique source fed to the transcode engine."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    asset_ref: str = Field(description="Asset id as known to the engine")


class TrimNode(BaseModel):
    """Selects [start, start + duration) from one input's video and audio."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0, description="Position in timeline order")
    clip_id: str
    input_index: int = Field(ge=0)
    start_seconds: float = Field(ge=0)
    duration_seconds: float = Field(gt=0)
    video_label: str
    audio_label: str


class ConcatNode(BaseModel):
    """Terminal node joining every trimmed segment pair in order."""

    model_config = ConfigDict(frozen=True)

    segments: tuple[tuple[str, str], ...] = Field(
        description="(video_label, audio_label) per trim node, timeline order"
    )
    video_output: str = "outv"
    audio_output: str = "outa"


class FilterGraphDescriptor(BaseModel):
    """Declarative per-clip trim/rescale nodes plus one concat node."""

    model_config = ConfigDict(frozen=True)

    inputs: tuple[GraphInput, ...]
    trim_nodes: tuple[TrimNode, ...]
    concat: ConcatNode
    width: int = 1920
    height: int = 1080
    frame_rate: float = 30.0
    sample_rate: int = 48000

    @property
    def duration_seconds(self) -> float:
        return sum(node.duration_seconds for node in self.trim_nodes)


# =============================================================================
# JOB TRACKING
# =============================================================================


class CompileJob(BaseModel):
    """Client-side view of a remote compile job."""

    job_id: str
    status: CompileJobStatus = CompileJobStatus.PENDING
    progress_percent: int = Field(default=0, ge=0, le=100)
    stage_label: str = ""
    result_artifact_ref: str | None = None
    result_artifact_name: str | None = None
    error_detail: str | None = None


# =============================================================================
# WIRE PAYLOADS
# =============================================================================


class CompileManifest(BaseModel):
    """JSON manifest posted to /upload alongside (optional) multipart files."""

    filter_graph: FilterGraphDescriptor
    asset_ids: list[str] = Field(
        default_factory=list, description="Remote asset ids already transferred"
    )
    output_extension: str = "mp4"


class ProgressResponse(BaseModel):
    """GET /progress/{jobId}. Field names follow the service's JSON keys."""

    model_config = ConfigDict(populate_by_name=True)

    percent: float = 0
    stage: str = "Starting..."
    status: CompileJobStatus | None = None
    download_url: str | None = Field(default=None, alias="downloadUrl")
    output_file: str | None = Field(default=None, alias="outputFile")
    error: str | None = None


class UploadResponse(BaseModel):
    """POST /upload. Either a job to poll or an already finished artifact."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: str | None = Field(default=None, alias="jobId")
    download_url: str | None = Field(default=None, alias="downloadUrl")
    output_file: str | None = Field(default=None, alias="outputFile")


class AssetUploadResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    asset_id: str = Field(alias="assetId")
    size_bytes: int = Field(default=0, alias="sizeBytes")


class HealthResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str = "ok"
    active_jobs: int = Field(default=0, alias="activeJobs")
