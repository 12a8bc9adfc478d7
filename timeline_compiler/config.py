from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import dotenv

from timeline_compiler.models.compile_models import FingerprintMode


dotenv.load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_fingerprint_mode(default: FingerprintMode) -> FingerprintMode:
    raw = os.getenv("COMPILE_FINGERPRINT_MODE", "").strip().lower()
    try:
        return FingerprintMode(raw) if raw else default
    except ValueError:
        return default


@dataclass
class CompilerConfig:
    service_url: str = "http://localhost:4000"
    probe_timeout_seconds: float = 3.0
    request_timeout_seconds: float = 10.0
    upload_timeout_seconds: float = 300.0
    poll_interval_seconds: float = 1.0
    compile_timeout_seconds: float = 600.0
    max_poll_failures: int = 3
    max_asset_bytes: int = 2 * 1024 * 1024 * 1024
    transfer_workers: int = 4
    upload_chunk_bytes: int = 1024 * 1024
    output_dir: str = "output"
    fingerprint_mode: FingerprintMode = FingerprintMode.CONTENT_HASH

    @classmethod
    def from_env(cls) -> CompilerConfig:
        return cls(
            service_url=os.getenv("COMPILE_SERVICE_URL", "http://localhost:4000"),
            probe_timeout_seconds=_env_float("COMPILE_PROBE_TIMEOUT_SECONDS", 3.0),
            request_timeout_seconds=_env_float("COMPILE_REQUEST_TIMEOUT_SECONDS", 10.0),
            upload_timeout_seconds=_env_float("COMPILE_UPLOAD_TIMEOUT_SECONDS", 300.0),
            poll_interval_seconds=_env_float("COMPILE_POLL_INTERVAL_SECONDS", 1.0),
            compile_timeout_seconds=_env_float("COMPILE_TIMEOUT_SECONDS", 600.0),
            max_poll_failures=max(1, _env_int("COMPILE_MAX_POLL_FAILURES", 3)),
            max_asset_bytes=_env_int("COMPILE_MAX_ASSET_BYTES", 2 * 1024 * 1024 * 1024),
            transfer_workers=max(1, _env_int("COMPILE_TRANSFER_WORKERS", 4)),
            upload_chunk_bytes=max(4096, _env_int("COMPILE_UPLOAD_CHUNK_BYTES", 1024 * 1024)),
            output_dir=os.getenv("COMPILE_OUTPUT_DIR", "output"),
            fingerprint_mode=_env_fingerprint_mode(FingerprintMode.CONTENT_HASH),
        )


@dataclass
class ServiceConfig:
    data_dir: str = "compile-service"
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    ffmpeg_timeout_seconds: int = 7200
    progress_retention_seconds: float = 300.0
    host: str = "0.0.0.0"
    port: int = 4000

    @property
    def assets_dir(self) -> Path:
        return Path(self.data_dir) / "uploads"

    @property
    def output_dir(self) -> Path:
        return Path(self.data_dir) / "output"

    @classmethod
    def from_env(cls) -> ServiceConfig:
        return cls(
            data_dir=os.getenv("COMPILE_SERVICE_DATA_DIR", "compile-service"),
            ffmpeg_bin=os.getenv("FFMPEG_BIN", "ffmpeg"),
            ffprobe_bin=os.getenv("FFPROBE_BIN", "ffprobe"),
            ffmpeg_timeout_seconds=max(60, _env_int("FFMPEG_TIMEOUT_SECONDS", 7200)),
            progress_retention_seconds=_env_float(
                "COMPILE_PROGRESS_RETENTION_SECONDS", 300.0
            ),
            host=os.getenv("COMPILE_SERVICE_HOST", "0.0.0.0"),
            port=_env_int("COMPILE_SERVICE_PORT", 4000),
        )
