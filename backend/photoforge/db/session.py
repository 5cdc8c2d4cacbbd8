import json
import logging

from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, func, select

from photoforge.models.entities import Scene, SceneCategory

logger = logging.getLogger(__name__)

SEED_CATEGORIES = [
    {"name": "Portrait", "icon": "portrait", "description": "Portrait retouching and restyling"},
    {"name": "Landscape", "icon": "landscape", "description": "Landscape enhancement and filters"},
    {"name": "Creative", "icon": "creative", "description": "Artistic styles and creative effects"},
    {"name": "Business", "icon": "business", "description": "Product shots and promotional images"},
]

SEED_SCENES = [
    {"category": 1, "name": "Portrait enhance", "type": "portrait_enhance", "description": "Automatically retouch portrait photos"},
    {"category": 1, "name": "Style transfer", "type": "style_transfer", "description": "Turn a portrait into a different art style"},
    {"category": 2, "name": "Landscape enhance", "type": "landscape_enhance", "description": "Boost colour and contrast of landscape photos"},
    {"category": 2, "name": "Sky replacement", "type": "sky_replacement", "description": "Replace the sky in the photo"},
    {"category": 3, "name": "Artistic style", "type": "artistic_style", "description": "Apply artistic style effects"},
    {"category": 3, "name": "Cartoonize", "type": "cartoonize", "description": "Convert the photo into a cartoon"},
    {"category": 4, "name": "Product optimize", "type": "product_optimize", "description": "Improve product photo quality"},
    {"category": 4, "name": "Background remove", "type": "background_remove", "description": "Remove the image background"},
]


def create_db_engine(database_url: str) -> Engine:
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    return create_engine(database_url, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)
    seed_scenes(engine)


def seed_scenes(engine: Engine) -> None:
    with Session(engine) as session:
        if session.exec(select(func.count()).select_from(SceneCategory)).one() > 0:
            return
        categories = []
        for order, item in enumerate(SEED_CATEGORIES):
            category = SceneCategory(sort_order=order, **item)
            session.add(category)
            categories.append(category)
        session.flush()
        for order, item in enumerate(SEED_SCENES):
            category = categories[item["category"] - 1]
            session.add(
                Scene(
                    category_id=category.id,
                    name=item["name"],
                    type=item["type"],
                    description=item["description"],
                    config_json=json.dumps({}),
                    sort_order=order,
                )
            )
        session.commit()
    logger.info(f"Seeded {len(SEED_CATEGORIES)} scene categories and {len(SEED_SCENES)} scenes")
