"""Artifact store for generated deployment files.

Every write appends a revision; history is never destroyed. Writers to the
same ``(config_set_id, file_name)`` are serialized by a per-key lock and
may guard their write with the revision they last read (``if_match``) or
require the file to be new (``if_absent``).
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Mapping
from pathlib import Path, PurePosixPath

from pydantic import ValidationError

from dockpilot.lib.errors import (
    ArtifactConflictError,
    ArtifactNotFoundError,
    ArtifactStoreError,
)
from dockpilot.lib.logging_config import get_logger
from dockpilot.models.artifacts import (
    ArtifactFile,
    ArtifactRevision,
    ConfigSet,
    WriteResult,
)

logger = get_logger(__name__)

METADATA_DIR = ".dockpilot"
CONFIG_SET_FILE = "config_set.json"
REVISIONS_FILE = "revisions.json"


def _check_file_name(file_name: str) -> None:
    path = PurePosixPath(file_name)
    if (
        not file_name
        or path.is_absolute()
        or ".." in path.parts
        or path.parts[0] == METADATA_DIR
    ):
        raise ArtifactStoreError(f"Invalid artifact file name: '{file_name}'")


class ArtifactStore(ABC):
    """Abstract store of config sets and their file revisions."""

    @abstractmethod
    async def register(
        self, config_set: ConfigSet, files: Mapping[str, str]
    ) -> ConfigSet:
        """Create a config set with an initial revision per file.

        Raises:
            ArtifactStoreError: If the config set already exists.
        """

    @abstractmethod
    async def get_config_set(self, config_set_id: str) -> ConfigSet:
        """Return a config set.

        Raises:
            ArtifactNotFoundError: If the config set is unknown.
        """

    @abstractmethod
    async def list_config_sets(self) -> list[ConfigSet]:
        """Return every registered config set."""

    @abstractmethod
    async def read(self, config_set_id: str) -> list[ArtifactFile]:
        """Return current file heads ordered by file name.

        Raises:
            ArtifactNotFoundError: If the config set is unknown.
        """

    @abstractmethod
    async def write(
        self,
        config_set_id: str,
        file_name: str,
        content: str,
        *,
        if_match: str | None = None,
        if_absent: bool = False,
    ) -> WriteResult:
        """Append a new revision of a file.

        Args:
            config_set_id: Config set to write into.
            file_name: Relative file name.
            content: Complete new content.
            if_match: Revision the current head must equal.
            if_absent: Require that the file does not exist yet.

        Returns:
            The committed revision and content.

        Raises:
            ArtifactNotFoundError: If the config set is unknown.
            ArtifactConflictError: If a revision precondition fails.
        """

    @abstractmethod
    async def history(
        self, config_set_id: str, file_name: str
    ) -> list[ArtifactRevision]:
        """Return every revision of a file, oldest first."""

    async def snapshot(self, config_set_id: str) -> dict[str, str]:
        """Return a file name to content mapping of the current heads."""
        return {f.file_name: f.content for f in await self.read(config_set_id)}

    async def materialize(self, config_set_id: str, target_dir: Path) -> list[Path]:
        """Write current heads into a directory.

        Args:
            config_set_id: Config set to export.
            target_dir: Directory to write into, created if missing.

        Returns:
            Paths of the written files.
        """
        files = await self.read(config_set_id)

        def _write_all() -> list[Path]:
            written: list[Path] = []
            for artifact in files:
                path = target_dir / artifact.file_name
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(artifact.content, encoding="utf-8")
                written.append(path)
            return written

        return await asyncio.to_thread(_write_all)


class InMemoryArtifactStore(ArtifactStore):
    """Artifact store that keeps every revision in process memory."""

    def __init__(self) -> None:
        self._config_sets: dict[str, ConfigSet] = {}
        self._revisions: dict[str, dict[str, list[ArtifactRevision]]] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _require(self, config_set_id: str) -> dict[str, list[ArtifactRevision]]:
        if config_set_id not in self._config_sets:
            raise ArtifactNotFoundError(config_set_id)
        return self._revisions[config_set_id]

    def _lock_for(self, config_set_id: str, file_name: str) -> asyncio.Lock:
        return self._locks.setdefault((config_set_id, file_name), asyncio.Lock())

    async def _persist(self, config_set_id: str, file_names: list[str]) -> None:
        """Hook called after revisions are appended."""

    async def register(
        self, config_set: ConfigSet, files: Mapping[str, str]
    ) -> ConfigSet:
        if config_set.id in self._config_sets:
            raise ArtifactStoreError(f"Config set already registered: {config_set.id}")
        for file_name in files:
            _check_file_name(file_name)

        self._config_sets[config_set.id] = config_set
        self._revisions[config_set.id] = {
            name: [ArtifactRevision(file_name=name, content=content)]
            for name, content in files.items()
        }
        await self._persist(config_set.id, list(files))
        logger.info(
            f"Registered config set {config_set.id} ({config_set.name}) "
            f"with {len(files)} files"
        )
        return config_set

    async def get_config_set(self, config_set_id: str) -> ConfigSet:
        self._require(config_set_id)
        return self._config_sets[config_set_id]

    async def list_config_sets(self) -> list[ConfigSet]:
        return list(self._config_sets.values())

    async def read(self, config_set_id: str) -> list[ArtifactFile]:
        revisions = self._require(config_set_id)
        return [
            ArtifactFile(
                file_name=name,
                content=history[-1].content,
                revision=history[-1].revision,
            )
            for name, history in sorted(revisions.items())
            if history
        ]

    async def write(
        self,
        config_set_id: str,
        file_name: str,
        content: str,
        *,
        if_match: str | None = None,
        if_absent: bool = False,
    ) -> WriteResult:
        revisions = self._require(config_set_id)
        _check_file_name(file_name)

        async with self._lock_for(config_set_id, file_name):
            history = revisions.setdefault(file_name, [])
            head = history[-1].revision if history else None
            if if_absent and head is not None:
                raise ArtifactConflictError(config_set_id, file_name, None, head)
            if if_match is not None and if_match != head:
                raise ArtifactConflictError(config_set_id, file_name, if_match, head)

            revision = ArtifactRevision(file_name=file_name, content=content)
            history.append(revision)
            await self._persist(config_set_id, [file_name])

        logger.debug(
            f"Wrote {config_set_id}/{file_name} revision {revision.revision}"
        )
        return WriteResult(revision=revision.revision, content=content)

    async def history(
        self, config_set_id: str, file_name: str
    ) -> list[ArtifactRevision]:
        revisions = self._require(config_set_id)
        return list(revisions.get(file_name, []))


def _atomic_write(path: Path, payload: str) -> None:
    """Write a file through a temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
        os.replace(tmp_name, path)
    except OSError:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class LocalArtifactStore(InMemoryArtifactStore):
    """Artifact store backed by one directory per config set.

    Layout::

        <root>/<config_set_id>/Dockerfile                (current head)
        <root>/<config_set_id>/.dockpilot/config_set.json
        <root>/<config_set_id>/.dockpilot/revisions.json (full history)
    """

    def __init__(self, root: Path) -> None:
        super().__init__()
        self.root = Path(root)
        self._disk_locks: dict[str, asyncio.Lock] = {}
        self._load()

    def _load(self) -> None:
        if not self.root.exists():
            return
        for directory in sorted(p for p in self.root.iterdir() if p.is_dir()):
            meta_dir = directory / METADATA_DIR
            config_path = meta_dir / CONFIG_SET_FILE
            if not config_path.exists():
                continue
            try:
                config_set = ConfigSet.model_validate_json(
                    config_path.read_text(encoding="utf-8")
                )
                raw = json.loads(
                    (meta_dir / REVISIONS_FILE).read_text(encoding="utf-8")
                )
                revisions = {
                    name: [ArtifactRevision.model_validate(item) for item in items]
                    for name, items in raw.items()
                }
            except (OSError, ValueError, ValidationError) as exc:
                raise ArtifactStoreError(
                    f"Invalid config set directory {directory}: {exc}"
                ) from exc
            self._config_sets[config_set.id] = config_set
            self._revisions[config_set.id] = revisions
        logger.debug(f"Loaded {len(self._config_sets)} config sets from {self.root}")

    async def _persist(self, config_set_id: str, file_names: list[str]) -> None:
        directory = self.root / config_set_id
        meta_dir = directory / METADATA_DIR
        history = self._revisions[config_set_id]

        # Payloads are built on the event loop; only file I/O runs in a thread
        config_payload = self._config_sets[config_set_id].model_dump_json(indent=2)
        revisions_payload = json.dumps(
            {
                name: [rev.model_dump(mode="json") for rev in revisions]
                for name, revisions in sorted(history.items())
            },
            indent=2,
        )
        heads = {name: history[name][-1].content for name in file_names}

        def _write_to_disk() -> None:
            _atomic_write(meta_dir / CONFIG_SET_FILE, config_payload)
            _atomic_write(meta_dir / REVISIONS_FILE, revisions_payload)
            for name, content in heads.items():
                _atomic_write(directory / name, content)

        lock = self._disk_locks.setdefault(config_set_id, asyncio.Lock())
        async with lock:
            try:
                await asyncio.to_thread(_write_to_disk)
            except OSError as exc:
                raise ArtifactStoreError(
                    f"Failed to persist config set {config_set_id}: {exc}"
                ) from exc
