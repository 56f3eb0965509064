"""Config set and artifact revision models."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field
from ulid import ULID


class ConfigSet(BaseModel):
    """Versioned bundle of generated deployment files for a project.

    Produced by upstream analysis; DockPilot never mutates it.

    Attributes:
        id: Config set identifier
        project_id: Project the files were generated for
        name: Human-readable name
        version: Config set version
        project_path: Local path of the project's source tree
        vcs_url: Repository URL, if imported from version control
        branch: Branch the project was imported from
        commit: Commit the project was imported at
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: str(ULID()))
    project_id: str
    name: str
    version: int = Field(default=1, ge=1)
    project_path: str | None = None
    vcs_url: str | None = None
    branch: str | None = None
    commit: str | None = None


class ArtifactFile(BaseModel):
    """Current head of one generated file."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    file_name: str
    content: str
    revision: str


class ArtifactRevision(BaseModel):
    """One stored revision of a generated file."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    revision: str = Field(default_factory=lambda: str(ULID()))
    file_name: str
    content: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WriteResult(BaseModel):
    """Outcome of a committed artifact write."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    revision: str
    content: str
