from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProjectFile(BaseModel):
    """One generated file. Identity is ``path``; content is replaced wholesale."""

    path: str = Field(..., min_length=1)
    content: str
    type: str = "text"


class ProjectSnapshot(BaseModel):
    """Complete persisted state of a generated project.

    Serialized with camelCase aliases so exported documents match the format
    the browser side reads and writes.
    """

    model_config = ConfigDict(populate_by_name=True)

    files: list[ProjectFile] = Field(default_factory=list)
    packages: list[str] = Field(default_factory=list)
    project_name: str = Field(default="Generated App", alias="projectName")
    last_saved_at: datetime = Field(default_factory=utcnow, alias="lastSavedAt")
    sandbox_id: str | None = Field(default=None, alias="sandboxId")

    @field_validator("files")
    @classmethod
    def _unique_paths(cls, files: list[ProjectFile]) -> list[ProjectFile]:
        # Later entries win but keep the position of the first occurrence
        by_path: dict[str, ProjectFile] = {}
        for f in files:
            by_path[f.path] = f
        return list(by_path.values())

    @field_validator("packages")
    @classmethod
    def _unique_packages(cls, packages: list[str]) -> list[str]:
        return list(dict.fromkeys(p for p in packages if p))

    def file_map(self) -> dict[str, ProjectFile]:
        return {f.path: f for f in self.files}

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ErrorCategory(str, Enum):
    CSS = "css"
    HYDRATION = "hydration"
    SYNTAX = "syntax"
    BUILD = "build"
    RUNTIME = "runtime"


UNKNOWN_CATEGORY = "unknown"


class PatchKind(str, Enum):
    """Textual transformations the executor knows how to apply unattended."""

    STRIP_CSS_MARKDOWN = "strip_css_markdown"
    SUPPRESS_HYDRATION_WARNING = "suppress_hydration_warning"
    GUARD_STREAM_CLOSE = "guard_stream_close"
    VALIDATE_SCRAPE_URL = "validate_scrape_url"


class RemediationPlan(BaseModel):
    """A proposed fix tied to one classified error.

    ``manual=False`` plans carry a ``patch_kind`` and may be applied unattended;
    ``manual=True`` plans must be routed to a human editing surface.
    """

    target_file: str
    patch_description: str
    explanation: str
    manual: bool = False
    patch_kind: PatchKind | None = None
    rule: str | None = None


class PatchResult(BaseModel):
    ok: bool
    target_file: str
    changed: bool = False
    persisted: bool = False
    message: str = ""
    error: str | None = None


class Diagnosis(BaseModel):
    category: str
    rule: str | None = None
    description: str | None = None
    plan: RemediationPlan | None = None


class LifecycleState(str, Enum):
    ACTIVE = "active"
    WARNING = "warning"
    EXPIRED = "expired"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]


_STATE_RANK = {
    LifecycleState.ACTIVE: 0,
    LifecycleState.WARNING: 1,
    LifecycleState.EXPIRED: 2,
}


class SandboxClock(BaseModel):
    """Countdown for one sandbox, anchored on a persisted ``started_at``."""

    sandbox_id: str
    started_at: datetime
    lifetime: timedelta
    warning_threshold: timedelta

    def remaining_at(self, now: datetime) -> timedelta:
        remaining = self.lifetime - (now - self.started_at)
        return max(remaining, timedelta(0))

    def state_at(self, now: datetime) -> LifecycleState:
        elapsed = now - self.started_at
        if elapsed >= self.lifetime:
            return LifecycleState.EXPIRED
        if elapsed >= self.lifetime - self.warning_threshold:
            return LifecycleState.WARNING
        return LifecycleState.ACTIVE


class LifecycleObservation(BaseModel):
    sandbox_id: str
    state: LifecycleState
    remaining_seconds: float
    started_at: datetime
    has_backup: bool = False


class LifecycleEvent(BaseModel):
    sandbox_id: str
    state: LifecycleState
    remaining_seconds: float
    observed_at: datetime = Field(default_factory=utcnow)


class RecoveryStep(str, Enum):
    LOAD_SNAPSHOT = "load_snapshot"
    CREATE_SANDBOX = "create_sandbox"
    APPLY_FILES = "apply_files"
    RESTART_PREVIEW = "restart_preview"


class RecoveryReport(BaseModel):
    ok: bool
    old_sandbox_id: str | None = None
    new_sandbox_id: str | None = None
    files_restored: int = 0
    packages_restored: int = 0
    completed_steps: list[RecoveryStep] = Field(default_factory=list)
    failed_step: RecoveryStep | None = None
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)
    preview_url: str | None = None
