from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Request, Response, UploadFile, status

from photoforge.core.settings import Settings
from photoforge.schemas.contracts import (
    GenerateRequest,
    JobResultResponse,
    JobStatusResponse,
    SceneView,
    SubmitJobRequest,
    SubmitJobResponse,
    UploadResponse,
)
from photoforge.services.orchestrator import JobOrchestrator
from photoforge.services.scenes import SceneResolver
from photoforge.services.storage import SourceImageStorage

router = APIRouter(prefix="/api", tags=["api"])


def get_owner_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


@router.post("/upload-image", response_model=UploadResponse)
def upload_image(
    request: Request,
    file: UploadFile = File(...),
    scene_type: Optional[str] = Form(default=None),
    owner_id: str = Depends(get_owner_id),
):
    raw = file.file.read()
    if not raw:
        raise HTTPException(status_code=400, detail="Empty file")
    storage: SourceImageStorage = request.app.state.storage
    asset = storage.save_upload(owner_id, file.filename or "upload.png", raw, scene_type=scene_type)
    return UploadResponse(
        image_id=asset.id,
        filename=asset.filename,
        size_bytes=asset.size_bytes,
        mime_type=asset.mime_type,
        width=asset.width,
        height=asset.height,
    )


@router.get("/scenes", response_model=list[SceneView])
def list_scenes(request: Request, owner_id: str = Depends(get_owner_id)):
    scenes: SceneResolver = request.app.state.scenes
    return scenes.list_visible(owner_id)


@router.post("/jobs", response_model=SubmitJobResponse, status_code=status.HTTP_202_ACCEPTED)
def submit_job(
    req: SubmitJobRequest,
    owner_id: str = Depends(get_owner_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
):
    job_id = orchestrator.submit(owner_id, req.source_image_ref, req.scene_id, req.user_prompt)
    return SubmitJobResponse(
        job_id=job_id,
        status="processing",
        estimated_time_seconds=settings.estimated_job_ms // 1000,
    )


@router.post("/generate", response_model=SubmitJobResponse, status_code=status.HTTP_202_ACCEPTED)
def generate_image(
    req: GenerateRequest,
    owner_id: str = Depends(get_owner_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
):
    job_id = orchestrator.generate(owner_id, req.scene_id, req.prompt)
    return SubmitJobResponse(
        job_id=job_id,
        status="processing",
        estimated_time_seconds=settings.estimated_job_ms // 1000,
    )


@router.get("/jobs/{job_id}/status", response_model=JobStatusResponse)
def job_status(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.status(job_id, owner_id)


@router.get("/jobs/{job_id}/result", response_model=JobResultResponse)
def job_result(
    job_id: str,
    include_full_images: bool = False,
    owner_id: str = Depends(get_owner_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.result(job_id, owner_id, include_full_images=include_full_images)


@router.get("/jobs/{job_id}/images/{image_id}/download")
def download_image(
    job_id: str,
    image_id: str,
    owner_id: str = Depends(get_owner_id),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    data, mime_type, filename = orchestrator.download(job_id, image_id, owner_id)
    return Response(
        content=data,
        media_type=mime_type,
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": "private, max-age=31536000",
        },
    )
