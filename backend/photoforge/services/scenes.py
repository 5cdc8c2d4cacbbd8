from __future__ import annotations

import json
import logging

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, or_, select

from photoforge.core.errors import NotFoundError
from photoforge.models.entities import Scene, SceneCategory
from photoforge.schemas.contracts import SceneConfig, SceneView

logger = logging.getLogger(__name__)


def _visible_to(owner_id: str):
    return or_(col(Scene.owner_id).is_(None), Scene.owner_id == owner_id)


class SceneResolver:
    """Looks up scenes visible to an owner: global rows or the owner's own."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def resolve(self, scene_id: int, owner_id: str) -> SceneConfig:
        with Session(self.engine) as session:
            row = session.exec(
                select(Scene, SceneCategory.name)
                .join(SceneCategory, SceneCategory.id == Scene.category_id, isouter=True)
                .where(Scene.id == scene_id, _visible_to(owner_id))
            ).first()
        if row is None:
            raise NotFoundError(f"Scene {scene_id} not found")
        scene, category_name = row
        return SceneConfig(
            id=scene.id,
            name=scene.name,
            type=scene.type,
            description=scene.description or "",
            config=self._parse_config(scene),
            category_name=category_name or "",
        )

    def list_visible(self, owner_id: str) -> list[SceneView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Scene, SceneCategory.name)
                .join(SceneCategory, SceneCategory.id == Scene.category_id, isouter=True)
                .where(_visible_to(owner_id))
                .order_by(Scene.sort_order, Scene.id)
            ).all()
        return [
            SceneView(
                id=scene.id,
                name=scene.name,
                type=scene.type,
                description=scene.description or "",
                category_name=category_name or "",
                is_custom=scene.owner_id is not None,
            )
            for scene, category_name in rows
        ]

    def _parse_config(self, scene: Scene) -> dict:
        try:
            config = json.loads(scene.config_json or "{}")
        except json.JSONDecodeError:
            logger.warning(f"Scene {scene.id} has unreadable config JSON, ignoring it")
            return {}
        return config if isinstance(config, dict) else {}
