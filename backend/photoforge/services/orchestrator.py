from __future__ import annotations

import base64
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from photoforge.core.errors import (
    NotFoundError,
    OrphanedJobError,
    PipelineError,
    UpstreamCategory,
    UpstreamError,
    ValidationError,
)
from photoforge.models.entities import Job
from photoforge.schemas.contracts import (
    GenerationResult,
    ImageView,
    JobPreview,
    JobResultResponse,
    JobStatusResponse,
    ResultMeta,
    ResultPayload,
    SourceImage,
)
from photoforge.services.jobs import COMPLETED, DELETED, FAILED, PROCESSING, JobStore
from photoforge.services.model_adapters import ModelAdapter, ModelRegistry
from photoforge.services.persister import ResultPersister
from photoforge.services.progress import ProgressTracker, step_label
from photoforge.services.prompts import build_prompt
from photoforge.services.scenes import SceneResolver
from photoforge.services.storage import SourceImageStorage
from photoforge.utils.naming import sanitize_filename

logger = logging.getLogger(__name__)

CHECKPOINTS = {
    "loading_scene": 10,
    "preparing_prompt": 20,
    "loading_source_image": 30,
    "calling_model": 40,
    "processing_result": 70,
    "saving_images": 80,
    COMPLETED: 100,
}


class JobDispatcher:
    """Bounded worker pool for fire-and-forget job runs."""

    def __init__(self, max_workers: int = 4):
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="photoforge-job")
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    def dispatch(self, fn: Callable, *args) -> Future:
        future = self._executor.submit(fn, *args)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def drain(self, timeout: Optional[float] = None) -> bool:
        with self._lock:
            pending = list(self._pending)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_jobs: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_jobs)

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)


class JobOrchestrator:
    def __init__(
        self,
        *,
        jobs: JobStore,
        scenes: SceneResolver,
        storage: SourceImageStorage,
        registry: ModelRegistry,
        persister: ResultPersister,
        progress: ProgressTracker,
        dispatcher: JobDispatcher,
        generation_timeout_s: float = 60,
        orphan_after_s: float = 900,
    ):
        self.jobs = jobs
        self.scenes = scenes
        self.storage = storage
        self.registry = registry
        self.persister = persister
        self.progress = progress
        self.dispatcher = dispatcher
        self.generation_timeout_s = generation_timeout_s
        self.orphan_after_s = orphan_after_s

    # -- submission ----------------------------------------------------------

    def submit(self, owner_id: str, source_image_ref: str, scene_id: int, user_prompt: str = "") -> str:
        if not owner_id:
            raise ValidationError("owner id is required")
        if not source_image_ref or scene_id is None:
            raise ValidationError("source image and scene are required")

        self.storage.get_asset(source_image_ref, owner_id)
        return self._enqueue(owner_id, source_image_ref, scene_id, user_prompt)

    def generate(self, owner_id: str, scene_id: int, user_prompt: str) -> str:
        """Text-to-image job: same pipeline, no source image."""
        if not owner_id:
            raise ValidationError("owner id is required")
        if scene_id is None or not (user_prompt or "").strip():
            raise ValidationError("scene and prompt are required")
        return self._enqueue(owner_id, "", scene_id, user_prompt)

    def _enqueue(self, owner_id: str, source_image_ref: str, scene_id: int, user_prompt: str) -> str:
        scene = self.scenes.resolve(scene_id, owner_id)
        adapter = self.registry.get(scene.preferred_model)

        job = self.jobs.create(owner_id, source_image_ref, scene, (user_prompt or "").strip(), adapter.name)
        self.progress.create(job.id, owner_id, meta={"source_image_ref": source_image_ref, "scene_id": scene.id})
        self.dispatcher.dispatch(self.run, job.id)
        logger.info(f"Submitted job {job.id} owner={owner_id} scene={scene.type} model={adapter.name}")
        return job.id

    # -- background run ------------------------------------------------------

    def run(self, job_id: str) -> None:
        job = self.jobs.get(job_id)
        if job is None:
            logger.error(f"Job {job_id} vanished before it could run")
            return
        started = time.monotonic()
        try:
            self._advance(job_id, "loading_scene")
            scene = self.scenes.resolve(job.scene_id, job.owner_id)

            self._advance(job_id, "preparing_prompt")
            prompt = build_prompt(scene, job.user_prompt)

            self._advance(job_id, "loading_source_image")
            source = self.storage.read_bytes(job.source_image_ref, job.owner_id) if job.source_image_ref else None

            self._advance(job_id, "calling_model")
            result = self._call_model(self.registry.get(job.model_name), prompt, source)

            self._advance(job_id, "processing_result")
            result.images = [image for image in result.images if image.data]
            if not result.images:
                detail = f"model replied with text only: {result.text[:200]}" if result.text else ""
                raise UpstreamError(UpstreamCategory.EMPTY_RESULT, detail)

            self._advance(job_id, "saving_images")
            images = self.persister.persist(
                job_id,
                result,
                owner_id=job.owner_id,
                scene=scene,
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )

            self._advance(job_id, COMPLETED)
            logger.info(f"Job {job_id} completed with {len(images)} image(s)")
        except PipelineError as exc:
            logger.error(f"Job {job_id} failed: {exc.message}")
            self._fail(job_id, exc.message)
        except Exception as exc:
            logger.exception(f"Job {job_id} failed unexpectedly")
            self._fail(job_id, f"unexpected error: {exc}")
        finally:
            self.progress.schedule_removal(job_id)

    def _advance(self, job_id: str, status: str) -> None:
        self.progress.update(job_id, status=status, progress_percent=CHECKPOINTS[status])
        logger.info(f"Job {job_id}: {status} ({CHECKPOINTS[status]}%)")

    def _call_model(self, adapter: ModelAdapter, prompt: str, source: Optional[SourceImage]) -> GenerationResult:
        # own daemon thread per call, so the timeout covers only the call itself
        future: Future = Future()

        def call() -> None:
            future.set_running_or_notify_cancel()
            try:
                future.set_result(adapter.generate(prompt, source))
            except Exception as exc:
                future.set_exception(exc)

        threading.Thread(target=call, name=f"photoforge-model-{adapter.name}", daemon=True).start()
        try:
            return future.result(timeout=self.generation_timeout_s)
        except FutureTimeout:
            raise UpstreamError(
                UpstreamCategory.NETWORK, f"{adapter.name} did not respond within {self.generation_timeout_s:g}s"
            ) from None

    def _fail(self, job_id: str, message: str) -> None:
        try:
            self.jobs.mark_failed(job_id, message)
        except (SQLAlchemyError, PipelineError) as exc:
            logger.error(f"Could not record failure of job {job_id}: {exc}")
        self.progress.update(job_id, status=FAILED, last_error=message)

    # -- polling -------------------------------------------------------------

    def status(self, job_id: str, owner_id: str) -> JobStatusResponse:
        job = self.jobs.get_owned(job_id, owner_id)
        entry = self.progress.get(job_id)
        view = JobStatusResponse(
            job_id=job.id,
            status=job.status,
            progress_percent=100,
            current_step=job.status,
            current_step_label=step_label(job.status),
            estimated_remaining_ms=0,
            started_at=datetime.fromtimestamp(entry.started_at, timezone.utc) if entry else None,
        )
        if job.status == PROCESSING:
            if entry is not None:
                view.progress_percent = entry.progress_percent
                view.current_step = entry.status
                view.current_step_label = entry.current_step_label
                view.estimated_remaining_ms = entry.estimated_remaining_ms
            else:
                view.progress_percent = 0
                view.current_step_label = "Processing (no live progress available)"
        elif job.status == COMPLETED:
            view.preview = self._preview(job)
        elif job.status == FAILED:
            view.error_message = job.error_message
        elif job.status == DELETED and job.deleted_from == FAILED:
            view.error_message = job.error_message
        return view

    def result(self, job_id: str, owner_id: str, include_full_images: bool = False) -> JobResultResponse:
        job = self.jobs.get_owned(job_id, owner_id)
        payload = self._completed_payload(job)
        images = []
        for image in payload.images:
            view = ImageView(
                id=image.id,
                filename=image.filename,
                width=image.width,
                height=image.height,
                file_size=image.file_size,
                mime_type=image.mime_type,
                thumbnail_base64=image.thumbnail_base64,
                thumbnail_data_url=image.thumbnail_data_url,
                download_url=image.download_url,
            )
            if include_full_images:
                view.base64 = image.base64
                view.data_url = image.data_url
            images.append(view)
        return JobResultResponse(
            job_id=job.id,
            status=job.status,
            text_response=payload.text_response,
            images=images,
            model=payload.model,
            process_time_ms=payload.process_time_ms,
            scene=payload.scene,
            completed_at=payload.completed_at,
            meta=ResultMeta(
                total_images=len(images),
                include_full_images=include_full_images,
                total_size=sum(image.file_size for image in images),
            ),
        )

    def download(self, job_id: str, image_id: str, owner_id: str) -> tuple[bytes, str, str]:
        job = self.jobs.get_owned(job_id, owner_id)
        payload = self._completed_payload(job)
        for image in payload.images:
            if image.id == image_id:
                filename = sanitize_filename(image.filename, fallback=f"image-{image_id}.png")
                return base64.b64decode(image.base64), image.mime_type, filename
        raise NotFoundError(f"Image {image_id} not found in job {job_id}")

    def find_orphaned_jobs(self) -> list[OrphanedJobError]:
        now = datetime.utcnow()
        stale = self.jobs.list_stale_processing(now - timedelta(seconds=self.orphan_after_s))
        return [
            OrphanedJobError(job.id, (now - job.created_at).total_seconds())
            for job in stale
            if self.progress.get(job.id) is None
        ]

    def shutdown(self) -> None:
        self.dispatcher.shutdown(wait_for_jobs=False)

    def _completed_payload(self, job: Job) -> ResultPayload:
        if job.status != COMPLETED or not job.result_json:
            raise NotFoundError(f"Job {job.id} has no completed result")
        return ResultPayload.model_validate_json(job.result_json)

    def _preview(self, job: Job) -> Optional[JobPreview]:
        if not job.result_json:
            return None
        payload = ResultPayload.model_validate_json(job.result_json)
        return JobPreview(
            has_images=bool(payload.images),
            image_count=len(payload.images),
            has_text_response=bool(payload.text_response),
            process_time_ms=payload.process_time_ms,
            model=payload.model,
        )
