import logging

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse
from pydantic import ValidationError as PydanticValidationError

from timeline_compiler.errors import TranscodeError
from timeline_compiler.models.compile_models import (
    AssetUploadResponse,
    CompileJobStatus,
    CompileManifest,
    HealthResponse,
    ProgressResponse,
    UploadResponse,
)
from timeline_compiler.operators.transcode_operator import (
    AssetNotFoundError,
    ManifestError,
    TranscodeJobNotFoundError,
    TranscodeService,
)


router = APIRouter(tags=["compile"])
logger = logging.getLogger(__name__)


def get_transcode_service(request: Request) -> TranscodeService:
    return request.app.state.transcode_service


@router.api_route("/health", methods=["GET", "POST"], response_model=HealthResponse)
async def health(service: TranscodeService = Depends(get_transcode_service)):
    return HealthResponse(status="ok", active_jobs=service.active_job_count)


@router.post("/assets", response_model=AssetUploadResponse)
async def upload_asset(
    request: Request,
    x_asset_name: str = Header(...),
    x_asset_fingerprint: str = Header(default=""),
    service: TranscodeService = Depends(get_transcode_service),
):
    try:
        asset = await service.receive_asset(
            x_asset_name, x_asset_fingerprint, request.stream()
        )
    except OSError as e:
        logger.error(f"Failed to store asset {x_asset_name}: {e}")
        raise HTTPException(status_code=500, detail="Failed to store asset")
    return AssetUploadResponse(asset_id=asset.asset_id, size_bytes=asset.size_bytes)


@router.delete("/assets/{asset_id}")
async def delete_asset(
    asset_id: str,
    service: TranscodeService = Depends(get_transcode_service),
):
    if not service.delete_asset(asset_id):
        raise HTTPException(status_code=404, detail="Asset not found")
    return {"success": True}


@router.post("/upload", response_model=UploadResponse, response_model_exclude_none=True)
async def upload(
    manifest: str = Form(...),
    videos: list[UploadFile] | None = File(default=None),
    wait: bool = Query(default=False),
    service: TranscodeService = Depends(get_transcode_service),
):
    try:
        parsed = CompileManifest.model_validate_json(manifest)
    except PydanticValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid manifest: {e.errors()}")

    direct_uploads = [
        await run_in_threadpool(service.save_direct_upload, video.filename, video.file)
        for video in videos or []
    ]

    try:
        job = await run_in_threadpool(service.start_job, parsed, direct_uploads, wait=wait)
    except AssetNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ManifestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TranscodeError as e:
        logger.error(f"Failed to start compile job: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    if not wait:
        return UploadResponse(job_id=job.job_id)

    if job.status != CompileJobStatus.SUCCEEDED:
        raise HTTPException(
            status_code=500,
            detail=f"Video compilation failed: {job.error or job.status.value}",
        )
    return UploadResponse(
        job_id=job.job_id,
        download_url=job.download_url,
        output_file=job.output_file,
    )


@router.get("/progress/{job_id}", response_model=ProgressResponse, response_model_exclude_none=True)
async def get_progress(
    job_id: str,
    service: TranscodeService = Depends(get_transcode_service),
):
    return service.get_progress(job_id)


@router.post("/cancel/{job_id}")
async def cancel_job(
    job_id: str,
    service: TranscodeService = Depends(get_transcode_service),
):
    try:
        service.cancel_job(job_id)
    except TranscodeJobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True}


@router.get("/download/{filename}")
async def download(
    filename: str,
    service: TranscodeService = Depends(get_transcode_service),
):
    path = service.resolve_output(filename)
    if path is None:
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path, media_type="video/mp4", filename=filename)
