from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


def new_id() -> str:
    return str(uuid4())


class ImageAsset(SQLModel, table=True):
    __tablename__ = "images"

    id: str = Field(default_factory=new_id, primary_key=True)
    owner_id: str = Field(index=True)
    original_name: str
    filename: str
    path: str
    thumbnail_path: Optional[str] = None
    size_bytes: int
    mime_type: str = "image/png"
    width: Optional[int] = None
    height: Optional[int] = None
    scene_type: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class SceneCategory(SQLModel, table=True):
    __tablename__ = "scene_categories"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    icon: str = ""
    description: str = ""
    owner_id: Optional[str] = Field(default=None, index=True)
    sort_order: int = 0


class Scene(SQLModel, table=True):
    __tablename__ = "scenes"

    id: Optional[int] = Field(default=None, primary_key=True)
    category_id: int = Field(foreign_key="scene_categories.id", index=True)
    name: str
    type: str = Field(index=True)
    description: str = ""
    config_json: str = "{}"
    owner_id: Optional[str] = Field(default=None, index=True)
    sort_order: int = 0


class Job(SQLModel, table=True):
    __tablename__ = "jobs"

    id: str = Field(default_factory=new_id, primary_key=True)
    owner_id: str = Field(index=True)
    source_image_ref: str = Field(index=True)
    scene_id: int
    scene_type: str = Field(index=True)
    scene_name: str = ""
    user_prompt: str = ""
    model_name: str = ""
    status: str = Field(default="processing", index=True)  # processing | completed | failed | deleted
    deleted_from: Optional[str] = None
    result_json: Optional[str] = None
    error_message: Optional[str] = None
    process_time_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Favorite(SQLModel, table=True):
    __tablename__ = "favorites"
    __table_args__ = (UniqueConstraint("owner_id", "job_id", name="uq_favorite_owner_job"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    owner_id: str = Field(index=True)
    job_id: str = Field(foreign_key="jobs.id", index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
