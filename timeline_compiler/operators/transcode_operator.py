from __future__ import annotations

import logging
import shutil
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterable, BinaryIO, Callable
from urllib.parse import unquote
from uuid import uuid4

from fastapi.concurrency import run_in_threadpool

from timeline_compiler.config import ServiceConfig
from timeline_compiler.errors import TranscodeError
from timeline_compiler.models.compile_models import (
    CompileJobStatus,
    CompileManifest,
    ProgressResponse,
    generate_artifact_name,
)
from timeline_compiler.utils.ffmpeg_builder import build_ffmpeg_command
from timeline_compiler.utils.ffmpeg_runner import FFmpegRunner

logger = logging.getLogger(__name__)

FILE_REF_PREFIX = "file:"
TRANSCODE_PROGRESS_START = 10
TRANSCODE_PROGRESS_END = 95


class TranscodeJobNotFoundError(TranscodeError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Compile job not found: {job_id}")


class AssetNotFoundError(TranscodeError):
    def __init__(self, asset_ref: str):
        self.asset_ref = asset_ref
        super().__init__(f"Asset not found: {asset_ref}")


class ManifestError(TranscodeError):
    pass


@dataclass
class StoredAsset:
    asset_id: str
    name: str
    fingerprint: str
    path: Path
    size_bytes: int = 0


@dataclass
class TranscodeJob:
    job_id: str
    status: CompileJobStatus = CompileJobStatus.PENDING
    percent: int = 0
    stage: str = "Starting..."
    output_file: str | None = None
    error: str | None = None
    finished_at: float | None = None
    cancelled: bool = False
    process: Any = None
    temp_inputs: list[Path] = field(default_factory=list)

    @property
    def download_url(self) -> str | None:
        if self.status == CompileJobStatus.SUCCEEDED and self.output_file:
            return f"/download/{self.output_file}"
        return None


class TranscodeService:
    """Asset store and transcode job registry behind the compile service routes.

    One instance lives on ``app.state``. Each job runs ffmpeg on a daemon
    thread; finished jobs are forgotten after the configured retention
    period while their artifacts stay downloadable.
    """

    def __init__(
        self,
        config: ServiceConfig,
        runner: FFmpegRunner | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.runner = runner or FFmpegRunner(
            ffmpeg_bin=config.ffmpeg_bin,
            ffprobe_bin=config.ffprobe_bin,
            timeout_seconds=config.ffmpeg_timeout_seconds,
        )
        self._clock = clock

        self.assets_dir = config.assets_dir
        self.output_dir = config.output_dir

        self._assets: dict[str, StoredAsset] = {}
        self._jobs: dict[str, TranscodeJob] = {}
        self._lock = threading.Lock()

    @property
    def active_job_count(self) -> int:
        with self._lock:
            return sum(1 for job in self._jobs.values() if not job.status.is_terminal)

    # -------------------------------------------------------------------------
    # Assets
    # -------------------------------------------------------------------------

    async def receive_asset(
        self,
        name: str,
        fingerprint: str,
        chunks: AsyncIterable[bytes],
    ) -> StoredAsset:
        asset_id = uuid4().hex
        safe_name = Path(unquote(name or "asset")).name or "asset"
        self.assets_dir.mkdir(parents=True, exist_ok=True)
        path = self.assets_dir / f"{asset_id}-{safe_name}"

        size = 0
        try:
            with open(path, "wb") as handle:
                async for chunk in chunks:
                    if chunk:
                        await run_in_threadpool(handle.write, chunk)
                        size += len(chunk)
        except BaseException:
            path.unlink(missing_ok=True)
            raise

        asset = StoredAsset(
            asset_id=asset_id,
            name=safe_name,
            fingerprint=fingerprint,
            path=path,
            size_bytes=size,
        )
        with self._lock:
            self._assets[asset_id] = asset
        logger.info(f"Stored asset {safe_name} as {asset_id} ({size} bytes)")
        return asset

    def get_asset(self, asset_id: str) -> StoredAsset | None:
        with self._lock:
            return self._assets.get(asset_id)

    def delete_asset(self, asset_id: str) -> bool:
        with self._lock:
            asset = self._assets.pop(asset_id, None)
        if asset is None:
            return False
        asset.path.unlink(missing_ok=True)
        logger.info(f"Deleted asset {asset_id}")
        return True

    def save_direct_upload(self, filename: str | None, source: BinaryIO) -> Path:
        safe_name = Path(filename or "video").name or "video"
        self.assets_dir.mkdir(parents=True, exist_ok=True)
        path = self.assets_dir / f"direct-{uuid4().hex}-{safe_name}"
        with open(path, "wb") as handle:
            shutil.copyfileobj(source, handle)
        return path

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    def start_job(
        self,
        manifest: CompileManifest,
        direct_uploads: list[Path] | None = None,
        wait: bool = False,
    ) -> TranscodeJob:
        """Resolve the manifest inputs and start ffmpeg.

        Graph inputs reference stored assets by id, or the n-th file of the
        same request as ``file:<n>``. With ``wait`` the job runs inline.
        """
        self.purge_expired()
        direct_uploads = direct_uploads or []
        try:
            input_paths = [
                self._resolve_input(graph_input.asset_ref, direct_uploads)
                for graph_input in manifest.filter_graph.inputs
            ]
        except TranscodeError:
            _remove_files(direct_uploads)
            raise

        job = TranscodeJob(job_id=uuid4().hex, temp_inputs=list(direct_uploads))
        with self._lock:
            self._jobs[job.job_id] = job
        logger.info(
            f"Created compile job {job.job_id}: {len(manifest.filter_graph.trim_nodes)} segments, "
            f"{len(input_paths)} inputs"
        )

        if wait:
            self._run_job(job, manifest, input_paths)
        else:
            thread = threading.Thread(
                target=self._run_job,
                args=(job, manifest, input_paths),
                name=f"transcode-{job.job_id[:8]}",
                daemon=True,
            )
            thread.start()
        return job

    def get_job(self, job_id: str) -> TranscodeJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def get_progress(self, job_id: str) -> ProgressResponse:
        self.purge_expired()
        job = self.get_job(job_id)
        if job is None:
            return ProgressResponse()
        return job_to_progress(job)

    def cancel_job(self, job_id: str) -> TranscodeJob:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise TranscodeJobNotFoundError(job_id)
            if job.status.is_terminal:
                return job
            job.cancelled = True
            job.status = CompileJobStatus.CANCELLED
            job.stage = "Cancelled"
            job.finished_at = self._clock()
            process = job.process

        if process is not None:
            try:
                process.kill()
            except OSError as e:
                logger.warning(f"Failed to kill ffmpeg for job {job_id}: {e}")
        logger.info(f"Cancelled compile job {job_id}")
        return job

    def resolve_output(self, filename: str) -> Path | None:
        if Path(filename).name != filename:
            return None
        path = self.output_dir / filename
        return path if path.is_file() else None

    def purge_expired(self) -> int:
        now = self._clock()
        retention = self.config.progress_retention_seconds
        with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.finished_at is not None and now - job.finished_at >= retention
            ]
            for job_id in expired:
                del self._jobs[job_id]
        if expired:
            logger.debug(f"Purged {len(expired)} finished job(s)")
        return len(expired)

    def _resolve_input(self, asset_ref: str, direct_uploads: list[Path]) -> Path:
        if asset_ref.startswith(FILE_REF_PREFIX):
            try:
                index = int(asset_ref[len(FILE_REF_PREFIX):])
            except ValueError as e:
                raise ManifestError(f"Invalid file reference: {asset_ref}") from e
            if not 0 <= index < len(direct_uploads):
                raise AssetNotFoundError(asset_ref)
            return direct_uploads[index]

        asset = self.get_asset(asset_ref)
        if asset is None or not asset.path.exists():
            raise AssetNotFoundError(asset_ref)
        return asset.path

    def _update(self, job: TranscodeJob, **changes: Any) -> None:
        with self._lock:
            if job.status.is_terminal:
                return
            percent = changes.pop("percent", None)
            if percent is not None:
                job.percent = max(job.percent, min(100, int(percent)))
            for key, value in changes.items():
                setattr(job, key, value)

    def _finish(self, job: TranscodeJob, status: CompileJobStatus, **changes: Any) -> bool:
        """Move the job to a terminal status; False if it already was terminal."""
        with self._lock:
            applied = not job.status.is_terminal
            if applied:
                job.status = status
                for key, value in changes.items():
                    setattr(job, key, value)
            job.process = None
            if job.finished_at is None:
                job.finished_at = self._clock()
        return applied

    def _allocate_output(self, extension: str) -> Path:
        name = generate_artifact_name(extension)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / name
        if path.exists():
            path = self.output_dir / f"{Path(name).stem}-{uuid4().hex[:8]}.{extension}"
        return path

    def _run_job(
        self,
        job: TranscodeJob,
        manifest: CompileManifest,
        input_paths: list[Path],
    ) -> None:
        descriptor = manifest.filter_graph
        output_path = self._allocate_output(manifest.output_extension)
        try:
            self._update(job, status=CompileJobStatus.UPLOADING, stage="Preparing inputs", percent=5)
            audio_inputs = {
                index
                for index, path in enumerate(input_paths)
                if self.runner.probe_has_audio(path)
            }
            cmd = build_ffmpeg_command(
                descriptor,
                [str(path) for path in input_paths],
                str(output_path),
                audio_inputs=audio_inputs,
                ffmpeg_bin=self.runner.ffmpeg_bin,
            )

            if job.cancelled:
                raise TranscodeError("Cancelled before ffmpeg started")
            self._update(
                job,
                status=CompileJobStatus.TRANSCODING,
                stage="Processing video...",
                percent=TRANSCODE_PROGRESS_START,
            )

            def _on_progress(fraction: float) -> None:
                span = TRANSCODE_PROGRESS_END - TRANSCODE_PROGRESS_START
                self._update(job, percent=TRANSCODE_PROGRESS_START + int(fraction * span))

            def _on_start(process: Any) -> None:
                with self._lock:
                    job.process = process
                if job.cancelled:
                    process.kill()

            self.runner.execute(
                cmd,
                duration_seconds=descriptor.duration_seconds,
                progress_callback=_on_progress,
                on_start=_on_start,
            )

            finished = self._finish(
                job,
                CompileJobStatus.SUCCEEDED,
                percent=100,
                stage="Complete!",
                output_file=output_path.name,
            )
            if not finished:
                output_path.unlink(missing_ok=True)
                logger.info(f"Compile job {job.job_id} was cancelled after ffmpeg finished")
                return
            logger.info(f"Compile job {job.job_id} finished: {output_path.name}")
        except Exception as e:
            output_path.unlink(missing_ok=True)
            if job.cancelled:
                logger.info(f"Compile job {job.job_id} stopped after cancellation")
            else:
                logger.error(f"Compile job {job.job_id} failed: {e}")
                self._finish(job, CompileJobStatus.FAILED, stage="Failed", error=str(e))
        finally:
            self._finish_quietly(job)
            _remove_files(job.temp_inputs)

    def _finish_quietly(self, job: TranscodeJob) -> None:
        with self._lock:
            job.process = None
            if job.finished_at is None and job.status.is_terminal:
                job.finished_at = self._clock()


def job_to_progress(job: TranscodeJob) -> ProgressResponse:
    return ProgressResponse(
        percent=job.percent,
        stage=job.stage,
        status=job.status,
        download_url=job.download_url,
        output_file=job.output_file if job.status == CompileJobStatus.SUCCEEDED else None,
        error=job.error,
    )


def _remove_files(paths: list[Path]) -> None:
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove {path}: {e}")
