from __future__ import annotations


class CompilationError(Exception):
    pass


class ValidationError(CompilationError):
    pass


class EmptyTimelineError(ValidationError):
    def __init__(self) -> None:
        super().__init__("Timeline has no clips to compile")


class CompilerBusyError(ValidationError):
    def __init__(self) -> None:
        super().__init__("A compile is already in progress on this orchestrator")


class UnresolvedAssetError(CompilationError):
    def __init__(self, clip_id: str, source_asset_id: str):
        self.clip_id = clip_id
        self.source_asset_id = source_asset_id
        super().__init__(
            f"Clip {clip_id} references unresolved asset: {source_asset_id}"
        )


class TransferError(CompilationError):
    def __init__(self, fingerprint: str, cause: BaseException | str):
        self.fingerprint = fingerprint
        self.cause = cause
        super().__init__(f"Transfer failed for asset {fingerprint}: {cause}")


class RemoteCompileError(CompilationError):
    pass


class RemoteUnavailableError(RemoteCompileError):
    pass


class CompileTimeoutError(RemoteCompileError, TimeoutError):
    def __init__(self, job_id: str, timeout_seconds: float):
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Remote compile job {job_id} did not finish within {timeout_seconds:g}s"
        )


class LocalRenderError(CompilationError):
    pass


class CancelledError(CompilationError):
    def __init__(self, message: str = "Compilation cancelled by user"):
        super().__init__(message)


class TranscodeError(Exception):
    pass
