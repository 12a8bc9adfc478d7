from __future__ import annotations

import logging
import time
from typing import Callable, Iterable
from uuid import uuid4

from timeline_compiler.errors import (
    CancelledError,
    CompileTimeoutError,
    RemoteCompileError,
)
from timeline_compiler.models.compile_models import (
    CompileJob,
    CompileJobStatus,
    CompileManifest,
    FilterGraphDescriptor,
    ProgressResponse,
)
from timeline_compiler.utils.cancellation import CancellationToken
from timeline_compiler.utils.remote_client import RemoteCompileClient

logger = logging.getLogger(__name__)


class JobOrchestrator:
    """Submits compile jobs to the remote service and tracks them to completion."""

    def __init__(
        self,
        client: RemoteCompileClient,
        poll_interval_seconds: float = 1.0,
        timeout_seconds: float = 600.0,
        max_poll_failures: int = 3,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.poll_interval_seconds = poll_interval_seconds
        self.timeout_seconds = timeout_seconds
        self.max_poll_failures = max(1, max_poll_failures)
        self._clock = clock
        self._sleep = sleep

        self._jobs: dict[str, CompileJob] = {}
        self._cancelled: set[str] = set()

    def get_job(self, job_id: str) -> CompileJob | None:
        return self._jobs.get(job_id)

    def submit(
        self,
        filter_graph: FilterGraphDescriptor,
        transferred_asset_ids: Iterable[str],
        cancel_token: CancellationToken | None = None,
    ) -> str:
        manifest = CompileManifest(
            filter_graph=filter_graph,
            asset_ids=list(transferred_asset_ids),
        )
        upload = self.client.submit(manifest, cancel_token=cancel_token)

        if upload.download_url:
            job_id = upload.job_id or f"sync-{uuid4().hex}"
            job = CompileJob(
                job_id=job_id,
                status=CompileJobStatus.SUCCEEDED,
                progress_percent=100,
                stage_label="Complete!",
                result_artifact_ref=upload.download_url,
                result_artifact_name=upload.output_file,
            )
            logger.info(f"Compile job {job_id} completed synchronously")
        else:
            job_id = str(upload.job_id)
            job = CompileJob(job_id=job_id, stage_label="Submitted")
            logger.info(f"Submitted compile job {job_id}")

        self._jobs[job_id] = job
        return job_id

    def poll(self, job_id: str, cancel_token: CancellationToken | None = None) -> CompileJob:
        job = self._jobs.get(job_id) or CompileJob(job_id=job_id)
        if job_id in self._cancelled or job.status.is_terminal:
            return job

        progress = self.client.get_progress(job_id, cancel_token=cancel_token)
        updated = self._apply_progress(job, progress)
        self._jobs[job_id] = updated
        return updated

    def wait_for_completion(
        self,
        job_id: str,
        on_progress: Callable[[CompileJob], None] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CompileJob:
        """Poll until the job is terminal, the timeout elapses or the caller cancels."""
        deadline = self._clock() + self.timeout_seconds
        failures = 0

        while True:
            if cancel_token is not None and cancel_token.cancelled:
                self.cancel(job_id)
                raise CancelledError()

            try:
                job = self.poll(job_id, cancel_token)
            except CancelledError:
                self.cancel(job_id)
                raise
            except RemoteCompileError as e:
                failures += 1
                logger.warning(
                    f"Progress poll for job {job_id} failed ({failures}/{self.max_poll_failures}): {e}"
                )
                if failures >= self.max_poll_failures:
                    self._mark_failed(job_id, f"Lost contact with compile service: {e}")
                    raise RemoteCompileError(
                        f"Giving up on job {job_id} after {failures} failed polls"
                    ) from e
            else:
                failures = 0
                if on_progress:
                    on_progress(job)
                if job.status.is_terminal:
                    return job

            remaining = deadline - self._clock()
            if remaining <= 0:
                self._mark_failed(job_id, "Timed out waiting for compile service")
                self.client.cancel_job(job_id)
                raise CompileTimeoutError(job_id, self.timeout_seconds)

            delay = min(self.poll_interval_seconds, remaining)
            if cancel_token is not None:
                cancel_token.wait(delay)
            else:
                self._sleep(delay)

    def cancel(self, job_id: str) -> None:
        if job_id in self._cancelled:
            return
        self._cancelled.add(job_id)

        job = self._jobs.get(job_id) or CompileJob(job_id=job_id)
        if job.status.is_terminal:
            return

        self.client.cancel_job(job_id)
        self._jobs[job_id] = job.model_copy(
            update={"status": CompileJobStatus.CANCELLED, "stage_label": "Cancelled"}
        )
        logger.info(f"Cancelled compile job {job_id}")

    def _mark_failed(self, job_id: str, error_detail: str) -> None:
        job = self._jobs.get(job_id) or CompileJob(job_id=job_id)
        if job.status.is_terminal:
            return
        self._jobs[job_id] = job.model_copy(
            update={"status": CompileJobStatus.FAILED, "error_detail": error_detail}
        )

    def _apply_progress(self, job: CompileJob, progress: ProgressResponse) -> CompileJob:
        status = self._derive_status(progress)
        if status.rank < job.status.rank:
            status = job.status

        reported = int(max(0.0, min(100.0, progress.percent)))
        percent = max(job.progress_percent, reported)
        error_detail = progress.error

        if status == CompileJobStatus.SUCCEEDED:
            if not progress.download_url:
                status = CompileJobStatus.FAILED
                error_detail = "Compile service reported success without an artifact"
            else:
                percent = 100

        return job.model_copy(
            update={
                "status": status,
                "progress_percent": percent,
                "stage_label": progress.stage or job.stage_label,
                "result_artifact_ref": progress.download_url or job.result_artifact_ref,
                "result_artifact_name": progress.output_file or job.result_artifact_name,
                "error_detail": error_detail or job.error_detail,
            }
        )

    def _derive_status(self, progress: ProgressResponse) -> CompileJobStatus:
        if progress.error:
            return CompileJobStatus.FAILED
        if progress.status is not None:
            return progress.status
        if progress.download_url:
            return CompileJobStatus.SUCCEEDED
        if progress.percent > 0:
            return CompileJobStatus.TRANSCODING
        return CompileJobStatus.PENDING
