import os
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    """
    Application configuration settings.
    """
    model_config = SettingsConfigDict(env_prefix="AUTOMATION_TRACER_", env_file=".env", extra="ignore")

    # Service Info
    service_name: str = "automation-tracer"
    environment: str = "development"
    log_level: str = "INFO"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Tracking store: empty disables tracing.
    # memory:// | sqlite:///path/to/traces.db | https://<deployment>.convex.cloud
    storage_url: Optional[str] = None
    convex_timeout_seconds: float = 10.0

    # Recorder
    tracing_system: str = "ghl"
    detail_buffer_size: int = 50
    detail_flush_interval_seconds: float = 5.0
    max_payload_size: int = 50_000

    # Middleware
    tracing_skip_paths: List[str] = [
        "/health", "/favicon.ico", "/static", "/assets", "/v1/traces", "/docs", "/redoc", "/openapi.json",
    ]
    cron_path_prefix: str = "/cron"

    # Dashboard
    trace_retention_days: int = 30

    # Paths
    base_dir: str = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    workflows_dir: str = os.path.join(base_dir, "dashboard", "workflows")

settings = Settings()
