from __future__ import annotations

import json
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from photoforge.api.routes import get_owner_id
from photoforge.models.entities import Job
from photoforge.schemas.contracts import FavoriteRequest, HistoryItem, HistoryPage
from photoforge.services.favorites import FavoriteStore
from photoforge.services.jobs import JobStore

router = APIRouter(prefix="/api", tags=["history"])


def _stores(request: Request) -> tuple[JobStore, FavoriteStore]:
    return request.app.state.jobs, request.app.state.favorites


def _item(job: Job, is_favorite: bool = False, favorited_at=None) -> HistoryItem:
    images = json.loads(job.result_json).get("images", []) if job.result_json else []
    return HistoryItem(
        id=job.id,
        source_image_ref=job.source_image_ref,
        scene_type=job.scene_type,
        scene_name=job.scene_name or job.scene_type,
        status=job.status,
        image_count=len(images),
        thumbnail_data_url=images[0].get("thumbnail_data_url") if images else None,
        error_message=job.error_message,
        is_favorite=is_favorite,
        created_at=job.created_at,
        updated_at=job.updated_at,
        favorited_at=favorited_at,
    )


@router.get("/history", response_model=HistoryPage)
def history(
    request: Request,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    scene_type: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    owner_id: str = Depends(get_owner_id),
):
    jobs, favorites = _stores(request)
    total, rows = jobs.list_jobs(
        owner_id, scene_type=scene_type, start_date=start_date, end_date=end_date, page=page, page_size=page_size
    )
    favorite_ids = favorites.favorited_ids(owner_id, [job.id for job in rows])
    return HistoryPage(
        total=total,
        page=page,
        page_size=page_size,
        items=[_item(job, job.id in favorite_ids) for job in rows],
    )


@router.delete("/jobs/{job_id}")
def delete_job(job_id: str, request: Request, owner_id: str = Depends(get_owner_id)):
    jobs, _ = _stores(request)
    job = jobs.soft_delete(job_id, owner_id)
    return {"job_id": job.id, "status": job.status}


@router.get("/trash", response_model=HistoryPage)
def trash(
    request: Request,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    owner_id: str = Depends(get_owner_id),
):
    jobs, _ = _stores(request)
    total, rows = jobs.list_jobs(owner_id, deleted=True, page=page, page_size=page_size)
    return HistoryPage(total=total, page=page, page_size=page_size, items=[_item(job) for job in rows])


@router.put("/trash/{job_id}/restore")
def restore_job(job_id: str, request: Request, owner_id: str = Depends(get_owner_id)):
    jobs, _ = _stores(request)
    job = jobs.restore(job_id, owner_id)
    return {"job_id": job.id, "status": job.status}


@router.get("/favorites", response_model=HistoryPage)
def list_favorites(
    request: Request,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    owner_id: str = Depends(get_owner_id),
):
    _, favorites = _stores(request)
    total, rows = favorites.list_favorites(owner_id, page=page, page_size=page_size)
    return HistoryPage(
        total=total,
        page=page,
        page_size=page_size,
        items=[_item(job, True, favorite.created_at) for job, favorite in rows],
    )


@router.post("/favorites")
def add_favorite(req: FavoriteRequest, request: Request, owner_id: str = Depends(get_owner_id)):
    _, favorites = _stores(request)
    favorite = favorites.add(owner_id, req.job_id)
    return {"job_id": favorite.job_id, "favorite": True}


@router.delete("/favorites/{job_id}")
def remove_favorite(job_id: str, request: Request, owner_id: str = Depends(get_owner_id)):
    _, favorites = _stores(request)
    favorites.remove(owner_id, job_id)
    return {"job_id": job_id, "favorite": False}
