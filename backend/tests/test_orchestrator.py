import base64
import json
import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from conftest import OWNER, FakeAdapter, auth_failure
from photoforge.core.errors import NotFoundError, ValidationError
from photoforge.models.entities import Job, Scene
from photoforge.schemas.contracts import GeneratedImage, GenerationResult
from photoforge.services.jobs import JobStore
from photoforge.services.orchestrator import CHECKPOINTS
from photoforge.services.progress import ProgressTracker
from photoforge.services.prompts import LEADING_INSTRUCTION

PORTRAIT_SCENE_ID = 1


def _run(orchestrator, source_ref, prompt="enhance portrait", scene_id=PORTRAIT_SCENE_ID) -> str:
    job_id = orchestrator.submit(OWNER, source_ref, scene_id, prompt)
    assert orchestrator.dispatcher.drain(timeout=10)
    return job_id


def _add_scene(engine, owner_id=None, config=None) -> int:
    with Session(engine) as session:
        scene = Scene(
            category_id=1,
            name="Custom look",
            type="custom_look",
            description="A saved custom scene",
            config_json=json.dumps(config or {}),
            owner_id=owner_id,
        )
        session.add(scene)
        session.commit()
        session.refresh(scene)
        return scene.id


class RecordingTracker(ProgressTracker):
    def __init__(self):
        super().__init__(grace_period_s=60)
        self.percents = []

    def update(self, job_id, **fields):
        entry = super().update(job_id, **fields)
        if entry is not None:
            self.percents.append(entry.progress_percent)
        return entry


def test_job_completes_with_images(orchestrator, fake_adapter, source_ref):
    job_id = _run(orchestrator, source_ref)

    status = orchestrator.status(job_id, OWNER)
    assert status.status == "completed"
    assert status.progress_percent == 100
    assert status.preview.has_images
    assert status.preview.image_count == 1

    result = orchestrator.result(job_id, OWNER)
    assert len(result.images) == 1
    assert result.images[0].base64 is None
    assert result.text_response == "here you go"
    assert result.model == "fake"
    assert result.meta.total_images == 1

    [prompt] = fake_adapter.prompts
    assert prompt.startswith(LEADING_INSTRUCTION)
    assert "enhance portrait" in prompt


def test_full_images_only_when_requested(orchestrator, source_ref):
    job_id = _run(orchestrator, source_ref)
    image = orchestrator.result(job_id, OWNER, include_full_images=True).images[0]
    assert len(base64.b64decode(image.base64)) == image.file_size
    assert image.data_url.startswith("data:image/png;base64,")


def test_missing_source_image_rejected_before_any_job(orchestrator):
    with pytest.raises(NotFoundError):
        orchestrator.submit(OWNER, "no-such-image", PORTRAIT_SCENE_ID, "")
    assert len(orchestrator.progress) == 0
    assert orchestrator.jobs.list_jobs(OWNER) == (0, [])


def test_source_image_of_another_owner_is_not_found(orchestrator, source_ref):
    with pytest.raises(NotFoundError):
        orchestrator.submit("someone-else", source_ref, PORTRAIT_SCENE_ID, "")


@pytest.mark.parametrize("owner_id, ref, scene_id", [("", "ref", 1), (OWNER, "", 1), (OWNER, "ref", None)])
def test_missing_input_is_a_validation_error(orchestrator, owner_id, ref, scene_id):
    with pytest.raises(ValidationError):
        orchestrator.submit(owner_id, ref, scene_id, "")


def test_auth_failure_fails_job_with_hint(make_orchestrator, source_ref):
    orchestrator = make_orchestrator(FakeAdapter(error=auth_failure()))
    job_id = _run(orchestrator, source_ref)

    status = orchestrator.status(job_id, OWNER)
    assert status.status == "failed"
    assert "authentication failed" in status.error_message
    assert orchestrator.jobs.get(job_id).error_message

    entry = orchestrator.progress.get(job_id)
    assert entry.status == "failed"
    assert entry.last_error == status.error_message


def test_text_only_reply_fails_job(make_orchestrator, source_ref):
    adapter = FakeAdapter(result=GenerationResult(text="I cannot draw that", images=[], model="fake"))
    orchestrator = make_orchestrator(adapter)
    job_id = _run(orchestrator, source_ref)

    job = orchestrator.jobs.get(job_id)
    assert job.status == "failed"
    assert "no images generated" in job.error_message
    assert job.result_json is None
    with pytest.raises(NotFoundError):
        orchestrator.result(job_id, OWNER)


def test_unknown_job_is_not_found(orchestrator):
    with pytest.raises(NotFoundError):
        orchestrator.status("never-submitted", OWNER)


def test_status_hidden_from_other_owners(orchestrator, source_ref):
    job_id = _run(orchestrator, source_ref)
    with pytest.raises(NotFoundError):
        orchestrator.status(job_id, "someone-else")


def test_delete_and_restore_keeps_result(orchestrator, source_ref):
    job_id = _run(orchestrator, source_ref)
    before = orchestrator.jobs.get(job_id).result_json

    orchestrator.jobs.soft_delete(job_id, OWNER)
    assert orchestrator.status(job_id, OWNER).status == "deleted"
    orchestrator.jobs.restore(job_id, OWNER)

    job = orchestrator.jobs.get(job_id)
    assert job.status == "completed"
    assert job.result_json == before


def test_progress_only_moves_forward(make_orchestrator, fake_adapter, source_ref):
    tracker = RecordingTracker()
    orchestrator = make_orchestrator(fake_adapter, progress=tracker)
    _run(orchestrator, source_ref)
    assert tracker.percents == sorted(tracker.percents)
    assert tracker.percents[-1] == 100
    assert set(CHECKPOINTS.values()) <= set(tracker.percents)


def test_failed_progress_keeps_last_percent(make_orchestrator, source_ref):
    tracker = RecordingTracker()
    orchestrator = make_orchestrator(FakeAdapter(error=auth_failure()), progress=tracker)
    job_id = _run(orchestrator, source_ref)
    assert tracker.get(job_id).progress_percent == CHECKPOINTS["calling_model"]


def test_slow_model_times_out_as_network_failure(make_orchestrator, source_ref):
    release = threading.Event()

    class SlowAdapter(FakeAdapter):
        def generate(self, prompt, image=None):
            release.wait(5)
            return super().generate(prompt, image)

    orchestrator = make_orchestrator(SlowAdapter(), timeout_s=0.2)
    try:
        job_id = _run(orchestrator, source_ref)
    finally:
        release.set()

    job = orchestrator.jobs.get(job_id)
    assert job.status == "failed"
    assert "timeout" in job.error_message


def test_persistence_failure_marks_job_failed(make_orchestrator, fake_adapter, engine, source_ref):
    class BrokenJobStore(JobStore):
        def mark_completed(self, job_id, payload):
            raise SQLAlchemyError("database is locked")

    orchestrator = make_orchestrator(fake_adapter, jobs=BrokenJobStore(engine))
    job_id = _run(orchestrator, source_ref)

    job = orchestrator.jobs.get(job_id)
    assert job.status == "failed"
    assert "could not be saved" in job.error_message


def test_scene_preferred_model_selects_adapter(make_orchestrator, fake_adapter, engine, source_ref):
    scene_id = _add_scene(engine, owner_id=OWNER, config={"preferredModel": "mock"})
    orchestrator = make_orchestrator(fake_adapter)
    job_id = _run(orchestrator, source_ref, scene_id=scene_id)

    assert fake_adapter.prompts == []
    assert orchestrator.jobs.get(job_id).model_name == "mock"
    assert orchestrator.result(job_id, OWNER).model == "mock"


def test_unknown_preferred_model_is_rejected(orchestrator, engine, source_ref):
    scene_id = _add_scene(engine, config={"preferredModel": "dall-e"})
    with pytest.raises(ValidationError):
        orchestrator.submit(OWNER, source_ref, scene_id, "")


def test_private_scene_of_another_owner_is_not_found(orchestrator, engine, source_ref):
    scene_id = _add_scene(engine, owner_id="someone-else")
    with pytest.raises(NotFoundError):
        orchestrator.submit(OWNER, source_ref, scene_id, "")


def test_generated_image_can_seed_another_job(orchestrator, fake_adapter, source_ref):
    first = _run(orchestrator, source_ref)
    image_id = orchestrator.result(first, OWNER).images[0].id

    second = _run(orchestrator, image_id, prompt="now in watercolor")
    assert orchestrator.jobs.get(second).status == "completed"
    assert orchestrator.jobs.get(second).source_image_ref == image_id


def test_download_returns_bytes_and_safe_name(orchestrator, source_ref):
    job_id = _run(orchestrator, source_ref)
    image = orchestrator.result(job_id, OWNER, include_full_images=True).images[0]

    data, mime_type, filename = orchestrator.download(job_id, image.id, OWNER)
    assert data == base64.b64decode(image.base64)
    assert mime_type == "image/png"
    assert filename == "Portrait_enhance_processed_1.png"
    with pytest.raises(NotFoundError):
        orchestrator.download(job_id, "other-image", OWNER)


def test_orphaned_jobs_are_reported(orchestrator, engine, source_ref):
    job_id = _run(orchestrator, source_ref)
    with Session(engine) as session:
        stuck = Job(
            owner_id=OWNER,
            source_image_ref=source_ref,
            scene_id=PORTRAIT_SCENE_ID,
            scene_type="portrait_enhance",
            created_at=datetime.utcnow() - timedelta(hours=1),
        )
        session.add(stuck)
        session.commit()
        stuck_id = stuck.id

    orphans = orchestrator.find_orphaned_jobs()
    assert [orphan.job_id for orphan in orphans] == [stuck_id]
    assert orchestrator.jobs.get(stuck_id).status == "processing"
    assert orchestrator.jobs.get(job_id).status == "completed"

    status = orchestrator.status(stuck_id, OWNER)
    assert status.progress_percent == 0
    assert "no live progress" in status.current_step_label


class GatedAdapter(FakeAdapter):
    """Blocks its first call until ``release`` is set; later calls answer at once."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def generate(self, prompt, image=None):
        first = not self.prompts
        result = super().generate(prompt, image)
        if first:
            self.entered.set()
            self.release.wait(5)
        return result


def test_status_reports_live_progress_while_running(make_orchestrator, source_ref):
    adapter = GatedAdapter()
    orchestrator = make_orchestrator(adapter)
    job_id = orchestrator.submit(OWNER, source_ref, PORTRAIT_SCENE_ID, "enhance portrait")
    assert adapter.entered.wait(5)

    status = orchestrator.status(job_id, OWNER)
    assert status.status == "processing"
    assert status.progress_percent == CHECKPOINTS["calling_model"]
    assert status.current_step == "calling_model"
    assert status.current_step_label == "Calling the generative model"
    assert 0 <= status.estimated_remaining_ms <= 30000
    assert status.started_at is not None
    assert status.preview is None

    adapter.release.set()
    assert orchestrator.dispatcher.drain(timeout=10)
    status = orchestrator.status(job_id, OWNER)
    assert status.status == "completed"
    assert status.progress_percent == 100


def test_hung_model_call_does_not_time_out_the_next_job(make_orchestrator, source_ref):
    adapter = GatedAdapter()
    orchestrator = make_orchestrator(adapter, timeout_s=0.3, max_workers=1)
    try:
        first = _run(orchestrator, source_ref)
        second = _run(orchestrator, source_ref)
    finally:
        adapter.release.set()

    assert orchestrator.jobs.get(first).status == "failed"
    assert orchestrator.jobs.get(second).status == "completed"
    assert len(adapter.prompts) == 2


def test_zero_byte_images_do_not_complete_a_job(make_orchestrator, source_ref):
    empty = GenerationResult(text="", images=[GeneratedImage(mime_type="image/png", data=b"")], model="fake")
    orchestrator = make_orchestrator(FakeAdapter(result=empty))
    job_id = _run(orchestrator, source_ref)

    job = orchestrator.jobs.get(job_id)
    assert job.status == "failed"
    assert "no images generated" in job.error_message


def test_deleted_job_status_has_a_label(orchestrator, source_ref):
    job_id = _run(orchestrator, source_ref)
    orchestrator.jobs.soft_delete(job_id, OWNER)
    status = orchestrator.status(job_id, OWNER)
    assert status.status == "deleted"
    assert status.current_step_label == "Moved to trash"


def test_text_to_image_job_runs_without_source(orchestrator, fake_adapter):
    job_id = orchestrator.generate(OWNER, PORTRAIT_SCENE_ID, "a lighthouse at dusk")
    assert orchestrator.dispatcher.drain(timeout=10)

    job = orchestrator.jobs.get(job_id)
    assert job.status == "completed"
    assert job.source_image_ref == ""
    assert "a lighthouse at dusk" in fake_adapter.prompts[0]


@pytest.mark.parametrize("prompt", ["", "   "])
def test_text_to_image_needs_a_prompt(orchestrator, prompt):
    with pytest.raises(ValidationError):
        orchestrator.generate(OWNER, PORTRAIT_SCENE_ID, prompt)
