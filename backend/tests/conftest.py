from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image

from photoforge.core.errors import UpstreamCategory, UpstreamError
from photoforge.db.session import create_db_engine, init_db
from photoforge.schemas.contracts import GeneratedImage, GenerationResult
from photoforge.services.jobs import JobStore
from photoforge.services.model_adapters import MockAdapter, ModelAdapter, ModelRegistry
from photoforge.services.orchestrator import JobDispatcher, JobOrchestrator
from photoforge.services.persister import ResultPersister
from photoforge.services.progress import ProgressTracker
from photoforge.services.scenes import SceneResolver
from photoforge.services.storage import SourceImageStorage

OWNER = "user-1"


def png_bytes(width: int = 64, height: int = 48, color: str = "red") -> bytes:
    buf = BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


class FakeAdapter(ModelAdapter):
    """Returns a canned result or raises a canned error, recording every prompt."""

    def __init__(self, name: str = "fake", result: GenerationResult | None = None, error: Exception | None = None):
        self.name = name
        self.result = result
        self.error = error
        self.prompts: list[str] = []

    def generate(self, prompt, image=None):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.result or GenerationResult(
            text="here you go",
            images=[GeneratedImage(mime_type="image/png", data=png_bytes(300, 200, "blue"))],
            model=self.name,
        )


def auth_failure() -> UpstreamError:
    return UpstreamError(UpstreamCategory.AUTH, "API key not valid")


@pytest.fixture
def engine(tmp_path: Path):
    eng = create_db_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(eng)
    return eng


@pytest.fixture
def storage(engine, tmp_path: Path):
    return SourceImageStorage(engine, str(tmp_path / "uploads"))


@pytest.fixture
def source_ref(storage):
    return storage.save_upload(OWNER, "portrait.png", png_bytes()).id


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def make_orchestrator(engine, storage):
    created = []

    def factory(adapter: ModelAdapter, timeout_s: float = 5, persister=None, jobs=None, progress=None, max_workers=2):
        jobs = jobs or JobStore(engine)
        orchestrator = JobOrchestrator(
            jobs=jobs,
            scenes=SceneResolver(engine),
            storage=storage,
            registry=ModelRegistry([adapter, MockAdapter(32, 32)], default=adapter.name),
            persister=persister or ResultPersister(jobs, engine),
            progress=progress if progress is not None else ProgressTracker(grace_period_s=60),
            dispatcher=JobDispatcher(max_workers=max_workers),
            generation_timeout_s=timeout_s,
        )
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        orchestrator.shutdown()


@pytest.fixture
def orchestrator(make_orchestrator, fake_adapter):
    return make_orchestrator(fake_adapter)
