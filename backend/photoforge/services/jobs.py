from __future__ import annotations

import logging
from datetime import date, datetime, time
from typing import Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, func, select

from photoforge.core.errors import ConflictError, NotFoundError, ValidationError
from photoforge.models.entities import Job
from photoforge.schemas.contracts import ResultPayload, SceneConfig

logger = logging.getLogger(__name__)

PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
DELETED = "deleted"

TERMINAL = {COMPLETED, FAILED}

# deleted -> completed/failed is only allowed back to the status held before deletion
TRANSITIONS = {
    PROCESSING: {COMPLETED, FAILED},
    COMPLETED: {DELETED},
    FAILED: {DELETED},
    DELETED: {COMPLETED, FAILED},
}


class JobStore:
    """Durable job records. Every status change goes through ``_transition``."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def create(self, owner_id: str, source_image_ref: str, scene: SceneConfig, user_prompt: str, model_name: str) -> Job:
        job = Job(
            owner_id=owner_id,
            source_image_ref=source_image_ref,
            scene_id=scene.id,
            scene_type=scene.type,
            scene_name=scene.name,
            user_prompt=user_prompt,
            model_name=model_name,
            status=PROCESSING,
        )
        with Session(self.engine) as session:
            session.add(job)
            session.commit()
            session.refresh(job)
        return job

    def get(self, job_id: str) -> Optional[Job]:
        with Session(self.engine) as session:
            return session.get(Job, job_id)

    def get_owned(self, job_id: str, owner_id: str) -> Job:
        job = self.get(job_id)
        if job is None or job.owner_id != owner_id:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def mark_completed(self, job_id: str, payload: ResultPayload) -> Job:
        if not payload.images:
            raise ValidationError("A completed job needs at least one image")
        with Session(self.engine) as session:
            job = self._load(session, job_id)
            self._transition(job, COMPLETED)
            job.result_json = payload.model_dump_json()
            job.process_time_ms = payload.process_time_ms
            job.error_message = None
            return self._save(session, job)

    def mark_failed(self, job_id: str, message: str) -> Job:
        with Session(self.engine) as session:
            job = self._load(session, job_id)
            self._transition(job, FAILED)
            job.error_message = message or "unknown error"
            job.result_json = None
            return self._save(session, job)

    def soft_delete(self, job_id: str, owner_id: str) -> Job:
        with Session(self.engine) as session:
            job = self._load(session, job_id, owner_id)
            previous = job.status
            self._transition(job, DELETED)
            job.deleted_from = previous
            return self._save(session, job)

    def restore(self, job_id: str, owner_id: str) -> Job:
        with Session(self.engine) as session:
            job = self._load(session, job_id, owner_id)
            if job.status != DELETED:
                raise NotFoundError(f"Job {job_id} is not in the trash")
            self._transition(job, job.deleted_from or COMPLETED)
            job.deleted_from = None
            return self._save(session, job)

    def list_jobs(
        self,
        owner_id: str,
        *,
        deleted: bool = False,
        scene_type: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[int, list[Job]]:
        conditions = [Job.owner_id == owner_id, (Job.status == DELETED) if deleted else (Job.status != DELETED)]
        if scene_type:
            conditions.append(Job.scene_type == scene_type)
        if start_date:
            conditions.append(Job.created_at >= datetime.combine(start_date, time.min))
        if end_date:
            conditions.append(Job.created_at <= datetime.combine(end_date, time.max))
        order = Job.updated_at.desc() if deleted else Job.created_at.desc()
        with Session(self.engine) as session:
            total = session.exec(select(func.count()).select_from(Job).where(*conditions)).one()
            jobs = session.exec(
                select(Job).where(*conditions).order_by(order).offset((page - 1) * page_size).limit(page_size)
            ).all()
        return total, list(jobs)

    def list_stale_processing(self, older_than: datetime) -> list[Job]:
        with Session(self.engine) as session:
            return list(session.exec(select(Job).where(Job.status == PROCESSING, Job.created_at < older_than)).all())

    def _load(self, session: Session, job_id: str, owner_id: Optional[str] = None) -> Job:
        job = session.get(Job, job_id)
        if job is None or (owner_id is not None and job.owner_id != owner_id):
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def _transition(self, job: Job, target: str) -> None:
        if target not in TRANSITIONS.get(job.status, set()):
            raise ConflictError(f"Job {job.id} cannot move from {job.status} to {target}")
        logger.info(f"Job {job.id}: {job.status} -> {target}")
        job.status = target
        job.updated_at = datetime.utcnow()

    def _save(self, session: Session, job: Job) -> Job:
        session.add(job)
        session.commit()
        session.refresh(job)
        return job
