from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar
from urllib.parse import quote, urljoin

import requests
from pydantic import ValidationError as PydanticValidationError

from timeline_compiler.config import CompilerConfig
from timeline_compiler.errors import (
    CancelledError,
    RemoteCompileError,
    RemoteUnavailableError,
)
from timeline_compiler.models.compile_models import (
    AssetUploadResponse,
    CompileManifest,
    ProgressResponse,
    UploadResponse,
)
from timeline_compiler.utils.cancellation import CancellationToken


logger = logging.getLogger(__name__)

T = TypeVar("T")


class RemoteCompileClient:
    def __init__(
        self,
        base_url: str,
        request_timeout: float = 10.0,
        upload_timeout: float = 300.0,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/") + "/"
        self.request_timeout = request_timeout
        self.upload_timeout = upload_timeout
        self._session = session or requests.Session()
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="compile-request")

    @classmethod
    def from_config(cls, config: CompilerConfig) -> RemoteCompileClient:
        return cls(
            config.service_url,
            request_timeout=config.request_timeout_seconds,
            upload_timeout=config.upload_timeout_seconds,
        )

    def resolve_url(self, path: str) -> str:
        return urljoin(self.base_url, path.lstrip("/")) if path else self.base_url

    def health(
        self,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> bool:
        try:
            response = self._call(
                lambda: self._session.post(
                    self.resolve_url("/health"),
                    timeout=timeout if timeout is not None else self.request_timeout,
                ),
                cancel_token,
            )
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.info(f"Compile service health check failed: {e}")
            return False

    def upload_asset(
        self,
        path: str,
        name: str,
        fingerprint: str,
        chunk_size: int = 1024 * 1024,
        on_chunk: Callable[[int], None] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> str:
        """Stream one file to the service; returns the remote asset id."""

        def _chunks() -> Iterator[bytes]:
            with open(path, "rb") as handle:
                while True:
                    if cancel_token is not None:
                        cancel_token.raise_if_cancelled()
                    chunk = handle.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk
                    if on_chunk:
                        on_chunk(len(chunk))

        headers = {
            "Content-Type": "application/octet-stream",
            "X-Asset-Name": quote(name),
            "X-Asset-Fingerprint": fingerprint,
            "Content-Length": str(Path(path).stat().st_size),
        }
        try:
            response = self._session.post(
                self.resolve_url("/assets"),
                data=_chunks(),
                headers=headers,
                timeout=self.upload_timeout,
            )
        except requests.RequestException as e:
            if cancel_token is not None and cancel_token.cancelled:
                raise CancelledError() from e
            raise RemoteUnavailableError(f"Asset upload failed: {e}") from e

        payload = self._json(response, "Asset upload")
        try:
            return AssetUploadResponse.model_validate(payload).asset_id
        except PydanticValidationError as e:
            raise RemoteCompileError(f"Malformed asset upload response: {payload}") from e

    def delete_asset(self, asset_id: str) -> bool:
        try:
            response = self._session.delete(
                self.resolve_url(f"/assets/{quote(asset_id, safe='')}"),
                timeout=self.request_timeout,
            )
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.warning(f"Failed to release remote asset {asset_id}: {e}")
            return False

    def submit(
        self,
        manifest: CompileManifest,
        cancel_token: CancellationToken | None = None,
    ) -> UploadResponse:
        files = {
            "manifest": (None, manifest.model_dump_json(), "application/json"),
        }
        try:
            response = self._call(
                lambda: self._session.post(
                    self.resolve_url("/upload"),
                    files=files,
                    timeout=self.request_timeout,
                ),
                cancel_token,
            )
        except requests.RequestException as e:
            raise RemoteUnavailableError(f"Compile submission failed: {e}") from e

        payload = self._json(response, "Compile submission")
        try:
            upload = UploadResponse.model_validate(payload)
        except PydanticValidationError as e:
            raise RemoteCompileError(f"Malformed upload response: {payload}") from e
        if not upload.job_id and not upload.download_url:
            raise RemoteCompileError(f"Upload response has neither jobId nor downloadUrl: {payload}")
        return upload

    def get_progress(
        self,
        job_id: str,
        cancel_token: CancellationToken | None = None,
    ) -> ProgressResponse:
        try:
            response = self._call(
                lambda: self._session.get(
                    self.resolve_url(f"/progress/{quote(job_id, safe='')}"),
                    timeout=self.request_timeout,
                ),
                cancel_token,
            )
        except requests.RequestException as e:
            raise RemoteUnavailableError(f"Progress request failed: {e}") from e

        payload = self._json(response, "Progress request")
        try:
            return ProgressResponse.model_validate(payload)
        except PydanticValidationError as e:
            raise RemoteCompileError(f"Malformed progress response: {payload}") from e

    def cancel_job(self, job_id: str) -> bool:
        try:
            response = self._session.post(
                self.resolve_url(f"/cancel/{quote(job_id, safe='')}"),
                timeout=self.request_timeout,
            )
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.warning(f"Failed to cancel remote job {job_id}: {e}")
            return False

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._session.close()

    def _call(self, request: Callable[[], T], cancel_token: CancellationToken | None) -> T:
        """Run a blocking request; cancelling the token abandons it at once.

        An abandoned request finishes on its worker thread within its own
        timeout and its outcome is discarded.
        """
        if cancel_token is None:
            return request()
        cancel_token.raise_if_cancelled()

        future = self._executor.submit(request)
        settled = threading.Event()
        future.add_done_callback(lambda _: settled.set())
        remove = cancel_token.add_callback(settled.set)
        try:
            settled.wait()
        finally:
            remove()

        if not future.done():
            future.add_done_callback(_log_abandoned)
            raise CancelledError()
        return future.result()

    def _json(self, response: requests.Response, action: str) -> dict[str, Any]:
        if response.status_code >= 400:
            detail = response.text[:500] if response.text else response.reason
            raise RemoteCompileError(f"{action} returned {response.status_code}: {detail}")
        try:
            payload = response.json()
        except ValueError as e:
            raise RemoteCompileError(f"{action} returned invalid JSON") from e
        if not isinstance(payload, dict):
            raise RemoteCompileError(f"{action} returned unexpected payload: {payload!r}")
        return payload


def _log_abandoned(future: Future) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.debug(f"Abandoned request failed after cancellation: {error}")
