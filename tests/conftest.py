from __future__ import annotations

import json
import threading
from pathlib import Path
from types import SimpleNamespace
from typing import Callable
from urllib.parse import urljoin, urlsplit

import pytest

from timeline_compiler.errors import RemoteUnavailableError
from timeline_compiler.models.compile_models import (
    CompileManifest,
    ProgressResponse,
    UploadResponse,
)
from timeline_compiler.models.timeline_models import ClipReference, SourceAsset, Timeline
from timeline_compiler.utils.cancellation import CancellationToken


# =============================================================================
# FAKES
# =============================================================================


class FakeRemoteClient:
    """In-memory stand-in for RemoteCompileClient."""

    def __init__(
        self,
        healthy: bool = True,
        progress: list[ProgressResponse | Exception] | None = None,
        upload_response: UploadResponse | None = None,
        chunk_size: int = 4,
    ):
        self.base_url = "http://compile.test/"
        self.healthy = healthy
        self.progress = list(progress or [])
        self.upload_response = upload_response or UploadResponse(job_id="job-1")
        self.chunk_size = chunk_size

        self.health_calls = 0
        self.uploads: list[tuple[str, str]] = []
        self.deleted: list[str] = []
        self.submitted: list[CompileManifest] = []
        self.progress_calls: list[str] = []
        self.cancelled: list[str] = []
        self.fail_uploads: set[str] = set()
        self.on_upload: Callable[[str], None] | None = None
        self.closed = False
        self._lock = threading.Lock()
        self._counter = 0

    def resolve_url(self, path: str) -> str:
        return urljoin(self.base_url, path.lstrip("/")) if path else self.base_url

    def health(
        self,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> bool:
        self.health_calls += 1
        return self.healthy

    def upload_asset(
        self,
        path: str,
        name: str,
        fingerprint: str,
        chunk_size: int = 1024 * 1024,
        on_chunk: Callable[[int], None] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> str:
        if self.on_upload:
            self.on_upload(name)
        if name in self.fail_uploads:
            raise RemoteUnavailableError(f"upload of {name} refused")

        data = Path(path).read_bytes()
        for start in range(0, len(data), self.chunk_size):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            if on_chunk:
                on_chunk(len(data[start : start + self.chunk_size]))

        with self._lock:
            self._counter += 1
            remote_id = f"remote-{self._counter}"
            self.uploads.append((name, fingerprint))
        return remote_id

    def delete_asset(self, asset_id: str) -> bool:
        self.deleted.append(asset_id)
        return True

    def submit(
        self,
        manifest: CompileManifest,
        cancel_token: CancellationToken | None = None,
    ) -> UploadResponse:
        self.submitted.append(manifest)
        return self.upload_response

    def get_progress(
        self,
        job_id: str,
        cancel_token: CancellationToken | None = None,
    ) -> ProgressResponse:
        self.progress_calls.append(job_id)
        if not self.progress:
            return ProgressResponse(percent=0, stage="Starting...")
        item = self.progress.pop(0) if len(self.progress) > 1 else self.progress[0]
        if isinstance(item, Exception):
            raise item
        return item

    def cancel_job(self, job_id: str) -> bool:
        self.cancelled.append(job_id)
        return True

    def close(self) -> None:
        self.closed = True


class HangingSession:
    """requests.Session stand-in whose slow endpoints hang until released."""

    def __init__(self, slow_paths: list[str], payloads: dict[str, dict] | None = None):
        self.slow_paths = tuple(slow_paths)
        self.payloads = dict(payloads or {})
        self.release = threading.Event()
        self.calls: list[tuple[str, str]] = []
        self.closed = False

    def _request(self, method: str, url: str, **kwargs):
        self.calls.append((method, url))
        path = urlsplit(url).path
        if path.startswith(self.slow_paths):
            self.release.wait(10)
        payload = next(
            (body for prefix, body in self.payloads.items() if path.startswith(prefix)),
            {"success": True},
        )
        return SimpleNamespace(
            status_code=200,
            text=json.dumps(payload),
            reason="OK",
            json=lambda: payload,
            raise_for_status=lambda: None,
        )

    def get(self, url, **kwargs):
        return self._request("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._request("POST", url, **kwargs)

    def delete(self, url, **kwargs):
        return self._request("DELETE", url, **kwargs)

    def close(self):
        self.closed = True


class ManualClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def fake_client() -> FakeRemoteClient:
    return FakeRemoteClient()


@pytest.fixture
def make_asset(tmp_path: Path) -> Callable[..., SourceAsset]:
    """Write a small binary file and describe it as a SourceAsset."""

    def _make(
        asset_id: str,
        content: bytes | None = None,
        name: str | None = None,
        duration_seconds: float | None = None,
    ) -> SourceAsset:
        data = content if content is not None else f"video-bytes-{asset_id}".encode()
        path = tmp_path / f"{asset_id}.mp4"
        path.write_bytes(data)
        return SourceAsset(
            asset_id=asset_id,
            name=name or f"{asset_id}.mp4",
            path=str(path),
            size_bytes=len(data),
            duration_seconds=duration_seconds,
        )

    return _make


@pytest.fixture
def three_clip_timeline(make_asset) -> Timeline:
    """Clips of 2s, 3s and 1s cut from two distinct assets."""
    asset_a = make_asset("asset-a", duration_seconds=10)
    asset_b = make_asset("asset-b", duration_seconds=10)
    return Timeline(
        clips=[
            ClipReference(
                id="clip-2",
                source_asset_id="asset-b",
                trim_start_seconds=1,
                trim_duration_seconds=3,
                timeline_position_seconds=2,
            ),
            ClipReference(
                id="clip-1",
                source_asset_id="asset-a",
                trim_start_seconds=0,
                trim_duration_seconds=2,
                timeline_position_seconds=0,
            ),
            ClipReference(
                id="clip-3",
                source_asset_id="asset-a",
                trim_start_seconds=4,
                trim_duration_seconds=1,
                timeline_position_seconds=5,
            ),
        ],
        assets={"asset-a": asset_a, "asset-b": asset_b},
    )
