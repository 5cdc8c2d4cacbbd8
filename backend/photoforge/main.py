"""FastAPI application factory."""
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from photoforge.api import history, routes
from photoforge.core.errors import PipelineError
from photoforge.core.settings import Settings, ensure_directories, settings
from photoforge.db.session import create_db_engine, init_db
from photoforge.services.favorites import FavoriteStore
from photoforge.services.jobs import JobStore
from photoforge.services.model_adapters import ModelRegistry, build_registry
from photoforge.services.orchestrator import JobDispatcher, JobOrchestrator
from photoforge.services.persister import ResultPersister
from photoforge.services.progress import ProgressTracker
from photoforge.services.scenes import SceneResolver
from photoforge.services.storage import SourceImageStorage

logger = logging.getLogger(__name__)


def create_app(cfg: Optional[Settings] = None, registry: Optional[ModelRegistry] = None) -> FastAPI:
    cfg = cfg or settings
    logging.basicConfig(
        level=cfg.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    ensure_directories(cfg)

    engine = create_db_engine(cfg.database_url)
    init_db(engine)

    jobs = JobStore(engine)
    scenes = SceneResolver(engine)
    storage = SourceImageStorage(engine, cfg.uploads_dir)
    orchestrator = JobOrchestrator(
        jobs=jobs,
        scenes=scenes,
        storage=storage,
        registry=registry or build_registry(cfg),
        persister=ResultPersister(
            jobs,
            engine,
            thumbnail_size=cfg.thumbnail_size,
            fallback_width=cfg.fallback_width,
            fallback_height=cfg.fallback_height,
        ),
        progress=ProgressTracker(grace_period_s=cfg.progress_grace_s, estimated_ms=cfg.estimated_job_ms),
        dispatcher=JobDispatcher(max_workers=cfg.max_concurrent_jobs),
        generation_timeout_s=cfg.generation_timeout_s,
        orphan_after_s=cfg.orphan_after_s,
    )

    app = FastAPI(title=cfg.app_name, description="Asynchronous scene-based image generation jobs")
    app.state.settings = cfg
    app.state.engine = engine
    app.state.jobs = jobs
    app.state.scenes = scenes
    app.state.storage = storage
    app.state.favorites = FavoriteStore(engine)
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.code})

    @app.on_event("startup")
    def report_orphans() -> None:
        orphans = orchestrator.find_orphaned_jobs()
        for orphan in orphans:
            logger.warning(orphan.message)
        logger.info(f"{cfg.app_name} started (models: {', '.join(orchestrator.registry.names())})")

    @app.on_event("shutdown")
    def shutdown() -> None:
        orchestrator.shutdown()

    app.include_router(routes.router)
    app.include_router(history.router)

    @app.get("/")
    def health():
        return {"ok": True, "service": cfg.app_name}

    return app
