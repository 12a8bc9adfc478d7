from __future__ import annotations

import hashlib
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Iterable

from timeline_compiler.errors import (
    CancelledError,
    TransferError,
    UnresolvedAssetError,
)
from timeline_compiler.models.compile_models import FingerprintMode
from timeline_compiler.models.timeline_models import ClipReference, SourceAsset
from timeline_compiler.utils.cancellation import CancellationToken
from timeline_compiler.utils.remote_client import RemoteCompileClient

logger = logging.getLogger(__name__)

HASH_CHUNK_BYTES = 1024 * 1024


@dataclass
class TransferHandle:
    fingerprint: str
    asset: SourceAsset
    source_asset_ids: list[str] = field(default_factory=list)
    bytes_transferred: int = 0
    remote_asset_id: str | None = None
    completed: bool = False

    @property
    def size_bytes(self) -> int:
        return self.asset.size_bytes


def compute_fingerprint(asset: SourceAsset, mode: FingerprintMode) -> str:
    if mode == FingerprintMode.NAME_SIZE:
        return f"{asset.name}:{asset.size_bytes}"

    if asset.content_hash:
        return f"sha256:{asset.content_hash}"

    digest = hashlib.sha256()
    with open(asset.path, "rb") as handle:
        for chunk in iter(lambda: handle.read(HASH_CHUNK_BYTES), b""):
            digest.update(chunk)
    return f"sha256:{digest.hexdigest()}"


class AssetTransferManager:
    """Uploads each unique source asset of one compile exactly once.

    Owns the fingerprint -> handle map for a single compile operation;
    ``release`` deletes everything uploaded and empties the map.
    """

    def __init__(
        self,
        client: RemoteCompileClient,
        fingerprint_mode: FingerprintMode = FingerprintMode.CONTENT_HASH,
        max_workers: int = 4,
        chunk_size: int = 1024 * 1024,
    ):
        self.client = client
        self.fingerprint_mode = fingerprint_mode
        self.max_workers = max(1, max_workers)
        self.chunk_size = chunk_size

        self._handles: dict[str, TransferHandle] = {}
        self._asset_fingerprints: dict[str, str] = {}
        self._lock = threading.Lock()

    @property
    def handles(self) -> dict[str, TransferHandle]:
        return dict(self._handles)

    @property
    def held_handle_count(self) -> int:
        return len(self._handles)

    def register_clips(
        self,
        clips: Iterable[ClipReference],
        assets: dict[str, SourceAsset],
    ) -> dict[str, TransferHandle]:
        for clip in clips:
            asset_id = clip.source_asset_id
            if asset_id in self._asset_fingerprints:
                continue

            asset = assets.get(asset_id)
            if asset is None:
                raise UnresolvedAssetError(clip.id, asset_id)

            try:
                fingerprint = compute_fingerprint(asset, self.fingerprint_mode)
            except OSError as e:
                raise TransferError(asset_id, e) from e

            handle = self._handles.get(fingerprint)
            if handle is None:
                handle = TransferHandle(fingerprint=fingerprint, asset=asset)
                self._handles[fingerprint] = handle
            else:
                logger.debug(f"Asset {asset_id} shares fingerprint with {handle.asset.asset_id}")
            handle.source_asset_ids.append(asset_id)
            self._asset_fingerprints[asset_id] = fingerprint

        return dict(self._handles)

    def await_all_transferred(
        self,
        handles: dict[str, TransferHandle] | None = None,
        on_progress: Callable[[float], None] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> dict[str, str]:
        """Transfer every pending handle in parallel and wait for all of them.

        Returns fingerprint -> remote asset id. Any single failure aborts the
        remaining transfers and raises TransferError; uploads that did finish
        stay recorded so ``release`` can delete them.
        """
        handles = handles if handles is not None else dict(self._handles)
        total_bytes = max(1, sum(handle.size_bytes for handle in handles.values()))
        transferred = sum(
            handle.size_bytes if handle.completed else handle.bytes_transferred
            for handle in handles.values()
        )
        progress_lock = threading.Lock()

        def _on_bytes(handle: TransferHandle, count: int) -> None:
            nonlocal transferred
            with progress_lock:
                handle.bytes_transferred += count
                transferred += count
                if on_progress:
                    on_progress(min(1.0, transferred / total_bytes))

        if on_progress:
            on_progress(min(1.0, transferred / total_bytes))

        pending = [handle for handle in handles.values() if not handle.completed]
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        if pending:
            abort = CancellationToken()
            unlink = (
                cancel_token.add_callback(abort.cancel)
                if cancel_token is not None
                else (lambda: None)
            )
            executor = ThreadPoolExecutor(
                max_workers=min(self.max_workers, len(pending)),
                thread_name_prefix="asset-transfer",
            )
            try:
                futures = {
                    executor.submit(self._transfer_one, handle, _on_bytes, abort): handle
                    for handle in pending
                }
                for future in as_completed(futures):
                    future.result()
            except BaseException:
                abort.cancel()
                raise
            finally:
                executor.shutdown(wait=True, cancel_futures=True)
                unlink()

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        return {
            fingerprint: handle.remote_asset_id
            for fingerprint, handle in handles.items()
            if handle.remote_asset_id
        }

    def remote_asset_ids_for(self, source_asset_ids: Iterable[str]) -> dict[str, str]:
        """source asset id -> remote asset id, for assets already transferred."""
        mapping: dict[str, str] = {}
        for asset_id in source_asset_ids:
            fingerprint = self._asset_fingerprints.get(asset_id)
            handle = self._handles.get(fingerprint) if fingerprint else None
            if handle and handle.remote_asset_id:
                mapping[asset_id] = handle.remote_asset_id
        return mapping

    def release(self) -> None:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
            self._asset_fingerprints.clear()

        for handle in handles:
            if handle.remote_asset_id:
                self.client.delete_asset(handle.remote_asset_id)
        if handles:
            logger.info(f"Released {len(handles)} asset transfer handle(s)")

    def _transfer_one(
        self,
        handle: TransferHandle,
        on_bytes: Callable[[TransferHandle, int], None],
        cancel_token: CancellationToken,
    ) -> str:
        cancel_token.raise_if_cancelled()
        logger.info(
            f"Uploading asset {handle.asset.name} ({handle.size_bytes} bytes, {handle.fingerprint})"
        )
        try:
            remote_asset_id = self.client.upload_asset(
                handle.asset.path,
                handle.asset.name,
                handle.fingerprint,
                chunk_size=self.chunk_size,
                on_chunk=lambda count: on_bytes(handle, count),
                cancel_token=cancel_token,
            )
        except CancelledError:
            raise
        except Exception as e:
            raise TransferError(handle.fingerprint, e) from e

        handle.remote_asset_id = remote_asset_id
        handle.completed = True
        logger.info(f"Uploaded asset {handle.asset.name} -> {remote_asset_id}")
        return remote_asset_id
