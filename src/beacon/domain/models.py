from __future__ import annotations

import hashlib
import json
import time
from enum import Enum
from typing import Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

ServerFamily = Literal["apache", "nginx", "iis", "unknown"]
RouteMode = Literal["content", "passthrough", "probe"]
ConflictStatus = Literal["pending", "resolved"]


def now_ts() -> int:
    return int(time.time())


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class EndpointKind(str, Enum):
    STATIC_MANIFEST = "static_manifest"
    APPEND_ONLY_POLICY = "append_only_policy"
    PROXY = "proxy"


class EndpointState(str, Enum):
    UNREGISTERED = "unregistered"
    PROBING = "probing"
    STRATEGY_ACTIVE = "strategy_active"
    ALL_STRATEGIES_FAILED = "all_strategies_failed"
    DEACTIVATED = "deactivated"


class EndpointDescriptor(BaseModel):
    """A logical path that must be reachable with generated content.

    Frozen once built; registering a new descriptor for the same path
    replaces the old one.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    path: str
    content_generator: Callable[[], str] = Field(exclude=True, repr=False)
    content_type: str = "text/plain; charset=utf-8"
    cors_required: bool = False
    cache_control: str = "public, max-age=3600"
    # true only for append-only policy files (robots.txt)
    allow_in_place_modification: bool = False
    # false for proxy endpoints that have no file on disk equivalent
    static_equivalent: bool = True

    @field_validator("path")
    @classmethod
    def _check_path(cls, v: str) -> str:
        v = (v or "").strip()
        if not v.startswith("/") or v == "/":
            raise ValueError(f"endpoint path must be absolute and non-root: {v!r}")
        if any(seg == ".." for seg in v.split("/")):
            raise ValueError(f"endpoint path must not contain '..': {v!r}")
        return v

    @property
    def key(self) -> str:
        return self.path

    @property
    def kind(self) -> EndpointKind:
        if self.allow_in_place_modification:
            return EndpointKind.APPEND_ONLY_POLICY
        if not self.static_equivalent:
            return EndpointKind.PROXY
        return EndpointKind.STATIC_MANIFEST

    def generate(self) -> str:
        return self.content_generator()

    def digest(self, body: Optional[str] = None) -> str:
        """Stable hash over the declared fields and the generated body."""
        if body is None:
            body = self.generate()
        payload = {
            "path": self.path,
            "content_type": self.content_type,
            "cors_required": self.cors_required,
            "cache_control": self.cache_control,
            "allow_in_place_modification": self.allow_in_place_modification,
            "static_equivalent": self.static_equivalent,
            "body_sha256": sha256_text(body),
        }
        return sha256_text(json.dumps(payload, sort_keys=True))


class CapabilityReport(BaseModel):
    supports_direct_file_serve: bool = False
    supports_application_routing: bool = False
    supports_auxiliary_server_config: bool = False
    can_write_filesystem: bool = False
    server_family: ServerFamily = "unknown"

    # diagnostics, not part of the digest
    direct_file_errors: list[str] = Field(default_factory=list)
    application_routing_errors: list[str] = Field(default_factory=list)
    generated_at: int = Field(default_factory=now_ts)

    def digest(self) -> str:
        payload = self.model_dump(
            include={
                "supports_direct_file_serve",
                "supports_application_routing",
                "supports_auxiliary_server_config",
                "can_write_filesystem",
                "server_family",
            }
        )
        return sha256_text(json.dumps(payload, sort_keys=True))


class RegistrationPreferences(BaseModel):
    model_config = ConfigDict(frozen=True)

    prefer_analytics: bool = False


class StrategyAttempt(BaseModel):
    strategy_id: str
    success: bool
    error: Optional[str] = None
    failed_block: Optional[str] = None
    rolled_back: list[str] = Field(default_factory=list)


class AttemptRecord(BaseModel):
    endpoint_key: str
    strategy_id: str
    success: bool
    last_error: Optional[str] = None
    timestamp: int = Field(default_factory=now_ts)

    descriptor_digest: str = ""
    report_digest: str = ""
    attempts: list[StrategyAttempt] = Field(default_factory=list)
    # paths of dedicated files the winning strategy wrote
    created_files: list[str] = Field(default_factory=list)
    # operator-owned files that received our managed section
    modified_files: list[str] = Field(default_factory=list)
    # auxiliary server config files the winning strategy edited
    server_config_files: list[str] = Field(default_factory=list)


class FileFingerprint(BaseModel):
    path: str
    content_hash: str
    created_at: int = Field(default_factory=now_ts)
    updated_at: int = Field(default_factory=now_ts)


class FileConflict(BaseModel):
    id: Optional[int] = None
    path: str
    proposed_content: str
    existing_content: str
    status: ConflictStatus = "pending"
    detected_at: int = Field(default_factory=now_ts)
    resolution: Optional[str] = None  # applied | rejected


class ManualConfigSuggestion(BaseModel):
    endpoint_key: str
    server_family: ServerFamily
    snippet: str
    created_at: int = Field(default_factory=now_ts)


class BackupRecord(BaseModel):
    original_path: str
    backup_path: str
    created_at: int = Field(default_factory=now_ts)


class RouteMapping(BaseModel):
    path: str
    endpoint_key: str
    mode: RouteMode = "content"
    record_access: bool = False
    content_type: str = "text/plain; charset=utf-8"
    # only for probe routes: the token served back
    probe_body: Optional[str] = None
    created_at: int = Field(default_factory=now_ts)


class AccessStat(BaseModel):
    endpoint_key: str
    hits: int = 0
    last_access: Optional[int] = None
