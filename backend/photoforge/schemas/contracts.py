from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# -- pipeline values ---------------------------------------------------------


@dataclass(frozen=True)
class SceneConfig:
    id: int
    name: str
    type: str
    description: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    category_name: str = ""

    @property
    def preferred_model(self) -> Optional[str]:
        hint = self.config.get("preferredModel") or self.config.get("preferred_model")
        return str(hint) if hint else None


@dataclass(frozen=True)
class SourceImage:
    mime_type: str
    data: bytes


@dataclass(frozen=True)
class GeneratedImage:
    mime_type: str
    data: bytes


@dataclass
class GenerationResult:
    text: str = ""
    images: List[GeneratedImage] = field(default_factory=list)
    model: str = ""


# -- stored result payload ---------------------------------------------------


class SceneSummary(BaseModel):
    id: int
    name: str
    type: str


class PersistedImage(BaseModel):
    id: str
    filename: str
    base64: str
    data_url: str
    thumbnail_base64: str
    thumbnail_data_url: str
    mime_type: str
    width: int
    height: int
    file_size: int
    download_url: str
    job_id: str
    scene_type: str
    created_at: datetime


class ResultPayload(BaseModel):
    job_id: str
    text_response: str = ""
    images: List[PersistedImage]
    model: str
    process_time_ms: int
    scene: SceneSummary
    completed_at: datetime


# -- HTTP contracts ----------------------------------------------------------


class SubmitJobRequest(BaseModel):
    source_image_ref: str
    scene_id: int
    user_prompt: str = ""


class GenerateRequest(BaseModel):
    scene_id: int
    prompt: str


class SubmitJobResponse(BaseModel):
    job_id: str
    status: str
    estimated_time_seconds: int


class JobPreview(BaseModel):
    has_images: bool
    image_count: int
    has_text_response: bool
    process_time_ms: Optional[int] = None
    model: Optional[str] = None


class JobStatusResponse(BaseModel):
    job_id: str
    status: str
    progress_percent: int
    current_step: str
    current_step_label: str
    estimated_remaining_ms: int
    started_at: Optional[datetime] = None
    error_message: Optional[str] = None
    preview: Optional[JobPreview] = None


class ImageView(BaseModel):
    id: str
    filename: str
    width: int
    height: int
    file_size: int
    mime_type: str
    thumbnail_base64: str
    thumbnail_data_url: str
    download_url: str
    base64: Optional[str] = None
    data_url: Optional[str] = None


class ResultMeta(BaseModel):
    total_images: int
    include_full_images: bool
    total_size: int


class JobResultResponse(BaseModel):
    job_id: str
    status: str
    text_response: str
    images: List[ImageView]
    model: str
    process_time_ms: int
    scene: SceneSummary
    completed_at: datetime
    meta: ResultMeta


class HistoryItem(BaseModel):
    id: str
    source_image_ref: str
    scene_type: str
    scene_name: str
    status: str
    image_count: int = 0
    thumbnail_data_url: Optional[str] = None
    error_message: Optional[str] = None
    is_favorite: bool = False
    created_at: datetime
    updated_at: datetime
    favorited_at: Optional[datetime] = None


class HistoryPage(BaseModel):
    total: int
    page: int
    page_size: int
    items: List[HistoryItem] = Field(default_factory=list)


class FavoriteRequest(BaseModel):
    job_id: str


class SceneView(BaseModel):
    id: int
    name: str
    type: str
    description: str
    category_name: str
    is_custom: bool


class UploadResponse(BaseModel):
    image_id: str
    filename: str
    size_bytes: int
    mime_type: str
    width: Optional[int] = None
    height: Optional[int] = None
