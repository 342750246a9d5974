"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env relative to the project root
_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_ENV_FILE = _PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE),
        env_file_encoding="utf-8",
        env_prefix="BOOKIMPORT_",
        extra="ignore",
    )

    # --- Supabase (batch / run / item tracking) ---
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None
    supabase_schema: str = "import"
    supabase_bucket_reports: str = "import-reports"

    # --- Remote worker queue (debugging / staging / production) ---
    remote_worker_url: str = "http://localhost:8700"
    remote_worker_token: str | None = None
    remote_timeout_s: float = 15.0

    # --- Local background executor ---
    local_pipeline_command: str = "python -m pipeline.run"
    local_run_dir: Path = Path.home() / ".bookimport" / "runs"
    log_tail_lines: int = 20

    # --- Run tracking ---
    missed_poll_limit: int = 3
    run_cache_path: Path = Path.home() / ".bookimport" / "current_run.json"
    archive_reports: bool = False

    # --- Health monitoring ---
    metrics_window_minutes: int = 60
    error_rate_warning: float = 5.0
    error_rate_critical: float = 10.0
    success_rate_warning: float = 90.0
    duplicate_rate_info: float = 30.0
    pending_backlog_info: int = 5

    # --- App ---
    app_env: str = "development"
    log_level: str = "INFO"


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
