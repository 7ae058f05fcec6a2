"""Settings for beacon.

Values come from ``BEACON_*`` environment variables (or a ``.env`` file);
CLI options override individual fields.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from beacon.domain.models import ServerFamily

DEFAULT_FILE_POLICIES: dict[str, str] = {
    "llms.txt": "content_analysis",
    "*.json": "content_analysis",
    "default": "never_overwrite",
}


class BeaconSettings(BaseSettings):
    document_root: Path = Field(Path("."), description="Directory the web server serves files from")
    base_url: str = "http://localhost:8000"
    # where a fronting server should proxy routed endpoints
    app_upstream: str = "http://127.0.0.1:8000"
    db_path: Optional[Path] = None

    probe_timeout: float = 5.0
    user_agent: str = "beacon-probe/0.1"
    # skip detection and trust the operator
    server_family: Optional[ServerFamily] = None

    prefer_analytics: bool = False

    site_name: str = ""
    contact_email: str = ""

    file_policies: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_FILE_POLICIES))

    model_config = SettingsConfigDict(
        env_prefix="BEACON_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def resolved_db_path(self) -> Path:
        if self.db_path is not None:
            return self.db_path.expanduser()
        return db_path_for_site(self.document_root)


def db_path_for_site(document_root: Path) -> Path:
    # kept next to, never inside, the served directory
    root = document_root.expanduser().resolve()
    return root.parent / ".beacon" / f"{root.name or 'site'}.db"


def get_settings(**overrides) -> BeaconSettings:
    clean = {k: v for k, v in overrides.items() if v is not None}
    return BeaconSettings(**clean)
