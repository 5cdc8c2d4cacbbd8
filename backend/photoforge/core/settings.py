from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Photoforge"
    database_url: str = "sqlite:///./backend/photoforge.db"
    uploads_dir: str = "uploads"
    log_level: str = "INFO"

    default_model: str = "gemini"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash-image-preview"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    http_endpoint_url: str = ""
    http_proxy: str = ""
    generation_timeout_s: float = 60

    max_concurrent_jobs: int = 4
    progress_grace_s: float = 60
    estimated_job_ms: int = 30000
    orphan_after_s: int = 900

    thumbnail_size: int = 200
    fallback_width: int = 512
    fallback_height: int = 512

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()


def ensure_directories(cfg: Settings = settings) -> None:
    Path(cfg.uploads_dir).mkdir(parents=True, exist_ok=True)
