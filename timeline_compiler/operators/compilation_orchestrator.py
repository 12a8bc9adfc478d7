from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Callable

from timeline_compiler.config import CompilerConfig
from timeline_compiler.errors import (
    CancelledError,
    CompilerBusyError,
    EmptyTimelineError,
    RemoteCompileError,
    RemoteUnavailableError,
    TransferError,
    ValidationError,
)
from timeline_compiler.models.compile_models import (
    CompilationResult,
    CompileJob,
    CompileJobStatus,
    CompileOptions,
    CompileTier,
    FingerprintMode,
    RenderFidelity,
    generate_artifact_name,
)
from timeline_compiler.models.timeline_models import Timeline
from timeline_compiler.operators.asset_transfer import AssetTransferManager
from timeline_compiler.operators.fallback_renderer import FallbackRenderer
from timeline_compiler.operators.job_operator import JobOrchestrator
from timeline_compiler.utils.cancellation import CancellationToken
from timeline_compiler.utils.ffmpeg_builder import compile_filter_graph
from timeline_compiler.utils.progress import ProgressCallback, ProgressReporter
from timeline_compiler.utils.remote_client import RemoteCompileClient

logger = logging.getLogger(__name__)

VALIDATE_RANGE = (0, 5)
PROBE_RANGE = (5, 10)
PROBE_FAILED_PERCENT = 15
TRANSFER_RANGE = (10, 50)
REMOTE_COMPILE_RANGE = (50, 95)


@dataclass
class _CompileState:
    transfer: AssetTransferManager | None = None
    jobs: JobOrchestrator | None = None
    job_id: str | None = None


class CompilationOrchestrator:
    """Compiles a timeline into one video, escalating from the remote service to a local render.

    Steps: Validate, ProbeRemote, Transfer, RemoteCompile, FallbackCompile.
    Transfer and remote failures are logged and escalate to the local
    renderer; validation errors, cancellation and a failed local render
    surface to the caller. At most one compile runs per instance.
    """

    def __init__(
        self,
        config: CompilerConfig | None = None,
        client: RemoteCompileClient | None = None,
        renderer: FallbackRenderer | None = None,
        transfer_factory: Callable[[FingerprintMode], AssetTransferManager] | None = None,
        job_factory: Callable[[], JobOrchestrator] | None = None,
    ):
        self.config = config or CompilerConfig.from_env()
        self.client = client or RemoteCompileClient.from_config(self.config)
        self.renderer = renderer
        self._transfer_factory = transfer_factory or self._default_transfer_manager
        self._job_factory = job_factory or self._default_job_orchestrator

        self._lock = threading.Lock()
        self._token: CancellationToken | None = None

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    def close(self) -> None:
        """Release the remote client's connections."""
        self.client.close()

    def __enter__(self) -> CompilationOrchestrator:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def cancel(self) -> None:
        token = self._token
        if token is not None:
            logger.info("Cancellation requested")
            token.cancel()

    def compile(
        self,
        timeline: Timeline,
        options: CompileOptions | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> CompilationResult:
        if not self._lock.acquire(blocking=False):
            raise CompilerBusyError()

        token = CancellationToken()
        self._token = token
        try:
            return self._run(
                timeline,
                options or CompileOptions(),
                ProgressReporter(on_progress),
                token,
            )
        finally:
            self._token = None
            self._lock.release()

    def _run(
        self,
        timeline: Timeline,
        options: CompileOptions,
        reporter: ProgressReporter,
        token: CancellationToken,
    ) -> CompilationResult:
        snapshot = timeline.snapshot()
        validate_range = reporter.sub_range(*VALIDATE_RANGE)
        validate_range.begin("Validating timeline")
        self.validate(snapshot, options)
        validate_range.complete("Timeline validated")
        logger.info(
            f"Compiling {len(snapshot.clips)} clip(s), {snapshot.duration_seconds:g}s of output"
        )

        state = _CompileState()
        try:
            try:
                return self._compile_remote(snapshot, options, reporter, token, state)
            except (TransferError, RemoteCompileError) as e:
                if token.cancelled:
                    raise CancelledError() from e
                if not options.allow_fallback:
                    raise
                logger.warning(f"Remote compile failed, falling back to local render: {e}")

            return self._compile_local(snapshot, options, reporter, token)
        finally:
            self._cleanup(state)

    # -------------------------------------------------------------------------
    # Validate
    # -------------------------------------------------------------------------

    def validate(self, timeline: Timeline, options: CompileOptions | None = None) -> None:
        options = options or CompileOptions()
        if not timeline.clips:
            raise EmptyTimelineError()

        max_bytes = (
            options.max_asset_bytes
            if options.max_asset_bytes is not None
            else self.config.max_asset_bytes
        )
        seen_ids: set[str] = set()
        for clip in timeline.clips:
            if clip.id in seen_ids:
                raise ValidationError(f"Duplicate clip id: {clip.id}")
            seen_ids.add(clip.id)

            duration = clip.trim_duration_seconds
            if not math.isfinite(duration) or duration <= 0:
                raise ValidationError(f"Clip {clip.id} has a non-positive trim window")
            if clip.trim_start_seconds < 0:
                raise ValidationError(f"Clip {clip.id} has a negative trim start")
            if clip.timeline_position_seconds < 0:
                raise ValidationError(f"Clip {clip.id} has a negative timeline position")

            asset = timeline.get_asset(clip.source_asset_id)
            if asset is None:
                raise ValidationError(
                    f"Clip {clip.id} references unknown asset: {clip.source_asset_id}"
                )
            if max_bytes and asset.size_bytes > max_bytes:
                raise ValidationError(
                    f"Asset {asset.name} is {asset.size_bytes} bytes, limit is {max_bytes}"
                )
            if (
                asset.duration_seconds is not None
                and clip.trim_end_seconds > asset.duration_seconds + 1e-6
            ):
                raise ValidationError(
                    f"Clip {clip.id} trims past the end of {asset.name} "
                    f"({clip.trim_end_seconds:g}s > {asset.duration_seconds:g}s)"
                )

    # -------------------------------------------------------------------------
    # Remote tier
    # -------------------------------------------------------------------------

    def _compile_remote(
        self,
        snapshot: Timeline,
        options: CompileOptions,
        reporter: ProgressReporter,
        token: CancellationToken,
        state: _CompileState,
    ) -> CompilationResult:
        token.raise_if_cancelled()
        probe_range = reporter.sub_range(*PROBE_RANGE)
        probe_range.begin("Checking compile service")
        healthy = self.client.health(
            timeout=self.config.probe_timeout_seconds, cancel_token=token
        )
        token.raise_if_cancelled()
        if not healthy:
            reporter.report(PROBE_FAILED_PERCENT, "Compile service unavailable")
            raise RemoteUnavailableError(
                f"Compile service at {self.client.base_url} is unavailable"
            )
        probe_range.complete("Compile service available")

        transfer_range = reporter.sub_range(*TRANSFER_RANGE)
        transfer_range.begin("Uploading assets")
        transfer = self._transfer_factory(
            options.fingerprint_mode or self.config.fingerprint_mode
        )
        state.transfer = transfer
        handles = transfer.register_clips(snapshot.sorted_clips(), snapshot.assets)
        transfer.await_all_transferred(
            handles,
            on_progress=lambda fraction: transfer_range.report_fraction(
                fraction, "Uploading assets"
            ),
            cancel_token=token,
        )
        transfer_range.complete("Assets uploaded")
        token.raise_if_cancelled()

        asset_refs = transfer.remote_asset_ids_for(
            asset.asset_id for asset in snapshot.referenced_assets()
        )
        descriptor = compile_filter_graph(
            snapshot,
            asset_refs,
            width=options.width,
            height=options.height,
            frame_rate=options.frame_rate,
        )

        compile_range = reporter.sub_range(*REMOTE_COMPILE_RANGE)
        compile_range.begin("Compiling on remote service")
        jobs = self._job_factory()
        state.jobs = jobs
        job_id = jobs.submit(
            descriptor,
            [graph_input.asset_ref for graph_input in descriptor.inputs],
            cancel_token=token,
        )
        state.job_id = job_id

        def _on_job_progress(job: CompileJob) -> None:
            compile_range.report_percent(
                job.progress_percent, job.stage_label or "Compiling on remote service"
            )

        job = jobs.wait_for_completion(job_id, on_progress=_on_job_progress, cancel_token=token)
        if job.status != CompileJobStatus.SUCCEEDED or not job.result_artifact_ref:
            raise RemoteCompileError(
                f"Remote compile job {job_id} ended as {job.status.value}: "
                f"{job.error_detail or 'no artifact'}"
            )

        compile_range.complete()
        reporter.report(100, "Complete!")
        logger.info(f"Remote compile job {job_id} succeeded")
        return CompilationResult(
            artifact_location=self.client.resolve_url(job.result_artifact_ref),
            artifact_name=job.result_artifact_name or generate_artifact_name(),
            tier=CompileTier.REMOTE,
            fidelity=RenderFidelity.FULL,
            metadata={
                "job_id": job_id,
                "segment_count": len(descriptor.trim_nodes),
                "input_count": len(descriptor.inputs),
                "duration_seconds": descriptor.duration_seconds,
                "width": descriptor.width,
                "height": descriptor.height,
                "frame_rate": descriptor.frame_rate,
            },
        )

    # -------------------------------------------------------------------------
    # Local tier
    # -------------------------------------------------------------------------

    def _compile_local(
        self,
        snapshot: Timeline,
        options: CompileOptions,
        reporter: ProgressReporter,
        token: CancellationToken,
    ) -> CompilationResult:
        token.raise_if_cancelled()
        fallback_range = reporter.sub_range(reporter.percent, 100)
        fallback_range.begin("Rendering locally (reduced quality)")

        renderer = self.renderer or FallbackRenderer(
            options.output_dir or self.config.output_dir,
            frame_rate=options.frame_rate,
            width=options.local_width,
            height=options.local_height,
        )
        result = renderer.render_locally(
            snapshot,
            on_progress=lambda fraction: fallback_range.report_fraction(
                fraction, "Rendering locally (reduced quality)"
            ),
            cancel_token=token,
        )
        reporter.report(100, "Complete!")
        return result

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    def _cleanup(self, state: _CompileState) -> None:
        if state.jobs is not None and state.job_id is not None:
            job = state.jobs.get_job(state.job_id)
            if job is None or not job.status.is_terminal:
                try:
                    state.jobs.cancel(state.job_id)
                except Exception as e:
                    logger.warning(f"Failed to cancel remote job {state.job_id}: {e}")

        if state.transfer is not None:
            try:
                state.transfer.release()
            except Exception as e:
                logger.warning(f"Failed to release transferred assets: {e}")

    def _default_transfer_manager(self, fingerprint_mode: FingerprintMode) -> AssetTransferManager:
        return AssetTransferManager(
            self.client,
            fingerprint_mode=fingerprint_mode,
            max_workers=self.config.transfer_workers,
            chunk_size=self.config.upload_chunk_bytes,
        )

    def _default_job_orchestrator(self) -> JobOrchestrator:
        return JobOrchestrator(
            self.client,
            poll_interval_seconds=self.config.poll_interval_seconds,
            timeout_seconds=self.config.compile_timeout_seconds,
            max_poll_failures=self.config.max_poll_failures,
        )
