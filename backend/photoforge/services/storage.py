from __future__ import annotations

import base64
import json
import logging
import mimetypes
from io import BytesIO
from pathlib import Path

from PIL import Image
from sqlalchemy.engine import Engine
from sqlmodel import Session

from photoforge.core.errors import NotFoundError, ValidationError
from photoforge.models.entities import ImageAsset, Job, new_id
from photoforge.schemas.contracts import SourceImage
from photoforge.utils.naming import sanitize_filename, upload_relpath

logger = logging.getLogger(__name__)

GENERATED_PREFIX = "base64:"


def generated_path(job_id: str, image_id: str) -> str:
    return f"{GENERATED_PREFIX}{job_id}:{image_id}"


class SourceImageStorage:
    """Uploaded source images on disk, indexed by the ``images`` table.

    Rows whose path starts with ``base64:`` point at images generated by an earlier job;
    their bytes live in that job's result payload.
    """

    def __init__(self, engine: Engine, uploads_dir: str):
        self.engine = engine
        self.uploads_dir = Path(uploads_dir)

    def save_upload(self, owner_id: str, filename: str, raw: bytes, scene_type: str | None = None) -> ImageAsset:
        if not raw:
            raise ValidationError("Empty file")
        safe_name = sanitize_filename(filename, fallback="upload.png")
        mime_type = mimetypes.guess_type(safe_name)[0] or "application/octet-stream"
        width = height = None
        try:
            with Image.open(BytesIO(raw)) as im:
                width, height = im.size
                if im.format:
                    mime_type = Image.MIME.get(im.format, mime_type)
        except Exception as exc:
            raise ValidationError(f"{filename} is not a readable image") from exc

        asset_id = new_id()
        path = self.uploads_dir / upload_relpath(owner_id, asset_id, safe_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("wb") as f:
            f.write(raw)

        asset = ImageAsset(
            id=asset_id,
            owner_id=owner_id,
            original_name=filename or safe_name,
            filename=safe_name,
            path=str(path),
            size_bytes=len(raw),
            mime_type=mime_type,
            width=width,
            height=height,
            scene_type=scene_type,
        )
        with Session(self.engine) as session:
            session.add(asset)
            session.commit()
            session.refresh(asset)
        logger.info(f"Stored upload {asset.id} for owner {owner_id} ({len(raw)} bytes)")
        return asset

    def get_asset(self, ref: str, owner_id: str) -> ImageAsset:
        with Session(self.engine) as session:
            asset = session.get(ImageAsset, ref)
        if asset is None or asset.owner_id != owner_id:
            raise NotFoundError(f"Source image {ref} not found")
        if not asset.path.startswith(GENERATED_PREFIX) and not Path(asset.path).exists():
            raise NotFoundError(f"Source image {ref} has no stored bytes")
        return asset

    def read_bytes(self, ref: str, owner_id: str) -> SourceImage:
        asset = self.get_asset(ref, owner_id)
        if asset.path.startswith(GENERATED_PREFIX):
            return SourceImage(mime_type=asset.mime_type, data=self._read_generated(asset))
        try:
            data = Path(asset.path).read_bytes()
        except OSError as exc:
            raise NotFoundError(f"Source image {ref} could not be read: {exc}") from exc
        return SourceImage(mime_type=asset.mime_type, data=data)

    def _read_generated(self, asset: ImageAsset) -> bytes:
        _, job_id, image_id = asset.path.split(":", 2)
        with Session(self.engine) as session:
            job = session.get(Job, job_id)
        payload = json.loads(job.result_json) if job and job.result_json else {}
        for image in payload.get("images", []):
            if image.get("id") == image_id:
                return base64.b64decode(image["base64"])
        raise NotFoundError(f"Generated image {asset.id} is no longer available")
