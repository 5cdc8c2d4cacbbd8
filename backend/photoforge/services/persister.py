from __future__ import annotations

import base64
import logging
import mimetypes
from datetime import datetime
from io import BytesIO
from uuid import uuid4

from PIL import Image
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from photoforge.core.errors import PersistenceError
from photoforge.models.entities import ImageAsset
from photoforge.schemas.contracts import (
    GeneratedImage,
    GenerationResult,
    PersistedImage,
    ResultPayload,
    SceneConfig,
    SceneSummary,
)
from photoforge.services.jobs import JobStore
from photoforge.services.storage import generated_path

logger = logging.getLogger(__name__)


def download_url(job_id: str, image_id: str) -> str:
    return f"/api/jobs/{job_id}/images/{image_id}/download"


class ResultPersister:
    def __init__(
        self,
        jobs: JobStore,
        engine: Engine,
        thumbnail_size: int = 200,
        fallback_width: int = 512,
        fallback_height: int = 512,
    ):
        self.jobs = jobs
        self.engine = engine
        self.thumbnail_size = thumbnail_size
        self.fallback_size = (fallback_width, fallback_height)

    def persist(
        self,
        job_id: str,
        result: GenerationResult,
        *,
        owner_id: str,
        scene: SceneConfig,
        elapsed_ms: int,
    ) -> list[PersistedImage]:
        images = [self._build_image(job_id, scene, idx, image) for idx, image in enumerate(result.images, start=1)]
        payload = ResultPayload(
            job_id=job_id,
            text_response=result.text,
            images=images,
            model=result.model,
            process_time_ms=elapsed_ms,
            scene=SceneSummary(id=scene.id, name=scene.name, type=scene.type),
            completed_at=datetime.utcnow(),
        )
        try:
            self.jobs.mark_completed(job_id, payload)
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"generated {len(images)} image(s) but the result could not be saved: {exc}"
            ) from exc
        self._index_images(owner_id, job_id, scene, images)
        return images

    def _build_image(self, job_id: str, scene: SceneConfig, index: int, image: GeneratedImage) -> PersistedImage:
        image_id = str(uuid4())
        width, height = self._dimensions(image.data)
        encoded = base64.b64encode(image.data).decode("ascii")
        thumbnail, thumbnail_mime = self._thumbnail(image)
        extension = mimetypes.guess_extension(image.mime_type) or ".png"
        return PersistedImage(
            id=image_id,
            filename=f"{scene.name}_processed_{index}{extension}",
            base64=encoded,
            data_url=f"data:{image.mime_type};base64,{encoded}",
            thumbnail_base64=thumbnail,
            thumbnail_data_url=f"data:{thumbnail_mime};base64,{thumbnail}",
            mime_type=image.mime_type,
            width=width,
            height=height,
            file_size=len(image.data),
            download_url=download_url(job_id, image_id),
            job_id=job_id,
            scene_type=scene.type,
            created_at=datetime.utcnow(),
        )

    def _dimensions(self, data: bytes) -> tuple[int, int]:
        try:
            with Image.open(BytesIO(data)) as im:
                return im.size
        except Exception as exc:
            logger.warning(f"Could not read image dimensions, using {self.fallback_size}: {exc}")
            return self.fallback_size

    def _thumbnail(self, image: GeneratedImage) -> tuple[str, str]:
        try:
            with Image.open(BytesIO(image.data)) as im:
                thumb = im.copy()
            thumb.thumbnail((self.thumbnail_size, self.thumbnail_size))
            buf = BytesIO()
            thumb.save(buf, format="PNG")
            return base64.b64encode(buf.getvalue()).decode("ascii"), "image/png"
        except Exception as exc:
            logger.warning(f"Thumbnail generation failed, using the full image: {exc}")
            return base64.b64encode(image.data).decode("ascii"), image.mime_type

    def _index_images(self, owner_id: str, job_id: str, scene: SceneConfig, images: list[PersistedImage]) -> None:
        for image in images:
            row = ImageAsset(
                id=image.id,
                owner_id=owner_id,
                original_name=image.filename,
                filename=image.filename,
                path=generated_path(job_id, image.id),
                thumbnail_path=f"base64_thumb:{job_id}:{image.id}",
                size_bytes=image.file_size,
                mime_type=image.mime_type,
                width=image.width,
                height=image.height,
                scene_type=scene.type,
            )
            try:
                with Session(self.engine) as session:
                    session.add(row)
                    session.commit()
            except SQLAlchemyError as exc:
                logger.warning(f"Could not index generated image {image.id} of job {job_id}: {exc}")
