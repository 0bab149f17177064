"""Application configuration using Pydantic Settings."""

from functools import lru_cache
import json
from pathlib import Path
from typing import Literal

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Comic Library Metadata API"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    workers: int = 1

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./comics.db",
        description="Catalog database connection URL",
    )
    database_echo: bool = False

    # Paths
    data_dir: Path = Field(default=Path("/data"), description="Base data directory")

    # Approval sessions
    session_ttl_seconds: int = Field(default=3600, ge=1, description="Idle TTL for approval sessions")
    completed_session_retention_seconds: int = Field(
        default=300,
        ge=0,
        description="How long a completed session stays available for polling",
    )
    session_sweep_interval_seconds: int = Field(default=60, ge=1, description="Expired session sweep period")

    # Series approval
    series_search_limit: int = Field(default=10, ge=1, le=100, description="Results per automatic series search")
    custom_search_limit: int = Field(default=15, ge=1, le=100, description="Results per free-text series search")
    series_auto_select_confidence: float = Field(
        default=0.8,
        ge=0.0,
        le=1.0,
        description="Top result is preselected when its confidence reaches this value",
    )

    # File review
    issue_match_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Minimum confidence (inclusive) for a file to be matched to an issue",
    )
    best_guess_enabled: bool = Field(
        default=True,
        description="Show an exact issue-number guess for files below the match threshold",
    )
    credit_batch_size: int = Field(default=10, ge=1, le=50, description="Concurrent issue detail fetches")
    credit_batch_delay_ms: int = Field(default=300, ge=0, description="Refill period of the credit fetch window")
    issue_cache_ttl_seconds: int = Field(default=86400, ge=0, description="Issue list cache lifetime")

    # Manga classification
    manga_volume_page_threshold: int = Field(
        default=60,
        ge=1,
        description="Files with at least this many pages are treated as volumes",
    )
    manga_filename_overrides_page_count: bool = Field(
        default=True,
        description="Explicit volume/chapter markers in filenames win over page count",
    )

    # Renaming
    rename_template: str = Field(
        default="{series} #{number:03} ({year})",
        description="Default filename template",
    )
    # NOTE: Kept as a string for the same reason as cors_origins.
    library_rename_templates: str = Field(
        default="{}",
        description="JSON object mapping library id to a filename template",
    )

    # Metadata sources
    comicvine_api_key: str = Field(default="", description="ComicVine API key")
    comicvine_base_url: str = Field(default="https://comicvine.gamespot.com/api")
    anilist_base_url: str = Field(default="https://graphql.anilist.co")
    http_timeout_seconds: float = Field(default=30.0, gt=0, description="Outbound HTTP timeout")
    http_user_agent: str = Field(default="comic-library-metadata/0.1")

    # CORS
    # NOTE: Keep this as a string so pydantic-settings doesn't attempt JSON parsing
    # before our validators run (which breaks on comma-separated values).
    cors_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        description='Allowed CORS origins (comma-separated or JSON array, e.g. \'["https://a","https://b"]\')',
    )

    @computed_field
    @property
    def cors_origins_list(self) -> list[str]:
        raw = (self.cors_origins or "").strip()
        if raw == "":
            return []
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
                if isinstance(parsed, list):
                    return [str(it).strip() for it in parsed if str(it).strip()]
            except json.JSONDecodeError:
                pass
        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    @computed_field
    @property
    def library_rename_templates_map(self) -> dict[str, str]:
        raw = (self.library_rename_templates or "").strip()
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        if not isinstance(parsed, dict):
            return {}
        return {str(k): str(v) for k, v in parsed.items() if str(v).strip()}

    @property
    def credit_batch_delay_seconds(self) -> float:
        return self.credit_batch_delay_ms / 1000.0

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
