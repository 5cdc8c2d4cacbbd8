from __future__ import annotations

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, func, select

from photoforge.core.errors import ConflictError, NotFoundError
from photoforge.models.entities import Favorite, Job
from photoforge.services.jobs import COMPLETED


class FavoriteStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    def add(self, owner_id: str, job_id: str) -> Favorite:
        with Session(self.engine) as session:
            job = session.get(Job, job_id)
            if job is None or job.owner_id != owner_id:
                raise NotFoundError(f"Job {job_id} not found")
            if job.status != COMPLETED:
                raise ConflictError(f"Only completed jobs can be favorited (job is {job.status})")
            favorite = Favorite(owner_id=owner_id, job_id=job_id)
            session.add(favorite)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(f"Job {job_id} is already a favorite") from exc
            session.refresh(favorite)
            return favorite

    def remove(self, owner_id: str, job_id: str) -> None:
        with Session(self.engine) as session:
            favorite = session.exec(
                select(Favorite).where(Favorite.owner_id == owner_id, Favorite.job_id == job_id)
            ).first()
            if favorite is None:
                raise NotFoundError(f"Job {job_id} is not a favorite")
            session.delete(favorite)
            session.commit()

    def favorited_ids(self, owner_id: str, job_ids: list[str]) -> set[str]:
        if not job_ids:
            return set()
        with Session(self.engine) as session:
            rows = session.exec(
                select(Favorite.job_id).where(Favorite.owner_id == owner_id, Favorite.job_id.in_(job_ids))
            ).all()
        return set(rows)

    def list_favorites(self, owner_id: str, page: int = 1, page_size: int = 20) -> tuple[int, list[tuple[Job, Favorite]]]:
        with Session(self.engine) as session:
            total = session.exec(select(func.count()).select_from(Favorite).where(Favorite.owner_id == owner_id)).one()
            rows = session.exec(
                select(Job, Favorite)
                .join(Favorite, Favorite.job_id == Job.id)
                .where(Favorite.owner_id == owner_id)
                .order_by(Favorite.created_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).all()
        return total, [(job, favorite) for job, favorite in rows]
