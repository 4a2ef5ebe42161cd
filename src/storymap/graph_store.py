"""Versioned persistence for StoryMap graphs.

Every episode owns one StoryMap aggregate. Commits never modify a stored
version: they write version ``n + 1`` and move the active pointer, guarded by
an optimistic compare-and-swap on the version number. Only that swap is
serialised; editing sessions never hold a lock.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from .errors import ConflictError, GraphNotFoundError, GraphValidationError
from .graph import (
    Edge,
    Node,
    StoryGraph,
    StoryVariable,
    drop_unset_variables,
    edge_from_payload,
    graph_to_payload,
    load_graph_from_mapping,
    minimal_graph,
    node_from_payload,
    validate_graph,
    variable_from_payload,
)

logger = logging.getLogger(__name__)

COMMAND_HISTORY_LIMIT = 100


@dataclass(frozen=True)
class StoryMapRecord:
    """A single immutable version of an episode's StoryMap."""

    episode_id: str
    novel_id: str
    version: int
    graph: StoryGraph
    created_at: datetime
    is_active: bool = False
    is_deleted: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return {
            "episodeId": self.episode_id,
            "novelId": self.novel_id,
            "version": self.version,
            "isActive": self.is_active,
            "isDeleted": self.is_deleted,
            "createdAt": self.created_at.isoformat(),
            "storyMap": graph_to_payload(self.graph),
        }


@dataclass(frozen=True)
class CommitResult:
    """Outcome of a successful commit or an idempotent replay."""

    record: StoryMapRecord
    previous_version: int
    already_applied: bool = False

    @property
    def version(self) -> int:
        return self.record.version


@dataclass(frozen=True)
class GraphPatch:
    """Incremental change to a StoryMap, keyed by author-assigned ids.

    Upserts replace an existing entry in place (keeping its position in the
    declared order) or append a new one. Removing a node also removes every
    edge attached to it.
    """

    upsert_nodes: tuple[Node, ...] = ()
    remove_node_ids: tuple[str, ...] = ()
    upsert_edges: tuple[Edge, ...] = ()
    remove_edge_ids: tuple[str, ...] = ()
    upsert_variables: tuple[StoryVariable, ...] = ()
    remove_variable_ids: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not any(
            (
                self.upsert_nodes,
                self.remove_node_ids,
                self.upsert_edges,
                self.remove_edge_ids,
                self.upsert_variables,
                self.remove_variable_ids,
            )
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "GraphPatch":
        """Build a patch from the editor's camelCase payload."""

        if not isinstance(payload, Mapping):
            raise ValueError("Patch payloads must be objects.")

        def _ids(key: str) -> tuple[str, ...]:
            raw = payload.get(key) or ()
            if isinstance(raw, str) or not isinstance(raw, Sequence):
                raise ValueError(f"Patch field '{key}' must be a list of ids.")
            if not all(isinstance(entry, str) and entry.strip() for entry in raw):
                raise ValueError(f"Patch field '{key}' must only contain non-empty ids.")
            return tuple(entry.strip() for entry in raw)

        def _entries(key: str) -> Sequence[Any]:
            raw = payload.get(key) or ()
            if isinstance(raw, str) or not isinstance(raw, Sequence):
                raise ValueError(f"Patch field '{key}' must be a list.")
            return raw

        return cls(
            upsert_nodes=tuple(
                node_from_payload(entry, index=index)
                for index, entry in enumerate(_entries("upsertNodes"))
            ),
            remove_node_ids=_ids("removeNodeIds"),
            upsert_edges=tuple(
                edge_from_payload(entry, index=index)
                for index, entry in enumerate(_entries("upsertEdges"))
            ),
            remove_edge_ids=_ids("removeEdgeIds"),
            upsert_variables=tuple(
                variable_from_payload(entry, index=index)
                for index, entry in enumerate(_entries("upsertVariables"))
            ),
            remove_variable_ids=_ids("removeVariableIds"),
        )

    def apply(self, graph: StoryGraph) -> StoryGraph:
        removed_nodes = set(self.remove_node_ids)
        removed_edges = set(self.remove_edge_ids)
        removed_variables = set(self.remove_variable_ids)

        nodes = _upsert(
            [node for node in graph.nodes if node.node_id not in removed_nodes],
            self.upsert_nodes,
            key=lambda node: node.node_id,
        )
        edges = _upsert(
            [
                edge
                for edge in graph.edges
                if edge.edge_id not in removed_edges
                and edge.source_node_id not in removed_nodes
                and edge.target_node_id not in removed_nodes
            ],
            self.upsert_edges,
            key=lambda edge: edge.edge_id,
        )
        variables = _upsert(
            [
                variable
                for variable in graph.variables
                if variable.variable_id not in removed_variables
            ],
            self.upsert_variables,
            key=lambda variable: variable.variable_id,
        )
        return StoryGraph(nodes=tuple(nodes), edges=tuple(edges), variables=tuple(variables))


def _upsert(existing: List[Any], updates: Iterable[Any], *, key) -> List[Any]:
    result = list(existing)
    for update in updates:
        identifier = key(update)
        for index, current in enumerate(result):
            if isinstance(identifier, str) and key(current) == identifier:
                result[index] = update
                break
        else:
            result.append(update)
    return result


@dataclass
class EpisodeManifest:
    """Bookkeeping for one episode: active pointer, history and commands."""

    episode_id: str
    novel_id: str
    active_version: int
    versions: List[int] = field(default_factory=list)
    is_deleted: bool = False
    deleted_at: datetime | None = None
    commands: Dict[str, int] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "episodeId": self.episode_id,
            "novelId": self.novel_id,
            "activeVersion": self.active_version,
            "versions": list(self.versions),
            "isDeleted": self.is_deleted,
            "deletedAt": self.deleted_at.isoformat() if self.deleted_at else None,
            "commands": dict(self.commands),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "EpisodeManifest":
        deleted_at = payload.get("deletedAt")
        return cls(
            episode_id=str(payload["episodeId"]),
            novel_id=str(payload["novelId"]),
            active_version=int(payload["activeVersion"]),
            versions=[int(version) for version in payload.get("versions", [])],
            is_deleted=bool(payload.get("isDeleted", False)),
            deleted_at=datetime.fromisoformat(deleted_at) if deleted_at else None,
            commands={
                str(key): int(value)
                for key, value in (payload.get("commands") or {}).items()
            },
        )

    def remember_command(self, command_id: str, version: int) -> None:
        self.commands[command_id] = version
        while len(self.commands) > COMMAND_HISTORY_LIMIT:
            oldest = next(iter(self.commands))
            del self.commands[oldest]


class GraphStore(ABC):
    """Interface and shared commit logic for StoryMap persistence backends.

    Subclasses only provide storage primitives; validation, compare-and-swap,
    idempotency and soft deletion are implemented once here.
    """

    def __init__(self, *, strict_references: bool = False) -> None:
        self.strict_references = strict_references
        self._lock = threading.Lock()

    @abstractmethod
    def _read_manifest(self, episode_id: str) -> EpisodeManifest | None:
        """Return the manifest for ``episode_id`` or ``None`` when unknown."""

    @abstractmethod
    def _write_manifest(self, manifest: EpisodeManifest) -> None:
        """Persist ``manifest``, replacing any previous copy."""

    @abstractmethod
    def _read_version(self, episode_id: str, version: int) -> tuple[StoryGraph, datetime]:
        """Return the graph and creation time of a stored version.

        Raises:
            KeyError: If the version was never written.
        """

    @abstractmethod
    def _write_version(
        self, episode_id: str, version: int, graph: StoryGraph, created_at: datetime
    ) -> None:
        """Persist a new immutable version."""

    @abstractmethod
    def _episode_ids(self) -> List[str]:
        """Return every known episode id."""

    def create_story_map(
        self,
        episode_id: str,
        *,
        novel_id: str,
        graph: StoryGraph | None = None,
    ) -> StoryMapRecord:
        """Initialise version 1 of the StoryMap for ``episode_id``.

        Raises:
            GraphValidationError: If ``graph`` violates a structural invariant.
            ConflictError: If the episode already has a StoryMap.
        """

        key = _validate_identifier(episode_id, "episode_id")
        novel = _validate_identifier(novel_id, "novel_id")
        initial = graph if graph is not None else minimal_graph()
        self._validate(key, initial)

        created_at = _utcnow()
        with self._lock:
            existing = self._read_manifest(key)
            if existing is not None:
                raise ConflictError(key, expected=0, actual=existing.active_version)
            self._write_version(key, 1, initial, created_at)
            manifest = EpisodeManifest(
                episode_id=key, novel_id=novel, active_version=1, versions=[1]
            )
            self._write_manifest(manifest)

        logger.info("Created StoryMap for episode %s (novel %s)", key, novel)
        return StoryMapRecord(
            episode_id=key,
            novel_id=novel,
            version=1,
            graph=initial,
            created_at=created_at,
            is_active=True,
        )

    def get_active_graph(self, episode_id: str) -> StoryMapRecord:
        """Return the active version of the episode's StoryMap.

        Raises:
            GraphNotFoundError: If the episode is unknown or soft-deleted.
        """

        key = _validate_identifier(episode_id, "episode_id")
        manifest = self._require_manifest(key)
        return self._record(manifest, manifest.active_version)

    def commit_version(
        self,
        episode_id: str,
        graph: StoryGraph,
        *,
        expected_version: int,
        command_id: str | None = None,
    ) -> CommitResult:
        """Store ``graph`` as the next version if ``expected_version`` is current.

        Raises:
            GraphValidationError: If ``graph`` violates a structural invariant.
            ConflictError: If another commit moved the version first.
            GraphNotFoundError: If the episode is unknown or soft-deleted.
        """

        key = _validate_identifier(episode_id, "episode_id")
        self._validate(key, graph)

        created_at = _utcnow()
        with self._lock:
            manifest = self._require_manifest(key)
            if command_id is not None and command_id in manifest.commands:
                return self._replay(manifest, command_id)
            if manifest.active_version != expected_version:
                logger.warning(
                    "Rejected commit for episode %s: expected version %s, found %s",
                    key,
                    expected_version,
                    manifest.active_version,
                )
                raise ConflictError(
                    key, expected=expected_version, actual=manifest.active_version
                )
            previous = manifest.active_version
            version = max(manifest.versions, default=0) + 1
            self._write_version(key, version, graph, created_at)
            manifest.active_version = version
            manifest.versions.append(version)
            if command_id is not None:
                manifest.remember_command(command_id, version)
            self._write_manifest(manifest)

        logger.info("Committed StoryMap version %s for episode %s", version, key)
        record = StoryMapRecord(
            episode_id=key,
            novel_id=manifest.novel_id,
            version=version,
            graph=graph,
            created_at=created_at,
            is_active=True,
        )
        return CommitResult(record=record, previous_version=previous)

    def apply_patch(
        self,
        episode_id: str,
        patch: GraphPatch,
        *,
        expected_version: int,
        command_id: str | None = None,
    ) -> CommitResult:
        """Apply ``patch`` to the active graph and commit the result.

        A ``command_id`` that was already applied returns the original result
        without touching the graph, which makes client retries safe.
        """

        key = _validate_identifier(episode_id, "episode_id")
        if command_id is not None:
            command_id = _validate_identifier(command_id, "command_id")
            with self._lock:
                manifest = self._require_manifest(key)
                if command_id in manifest.commands:
                    return self._replay(manifest, command_id)

        current = self.get_active_graph(key)
        if current.version != expected_version:
            raise ConflictError(key, expected=expected_version, actual=current.version)
        return self.commit_version(
            key,
            patch.apply(current.graph),
            expected_version=expected_version,
            command_id=command_id,
        )

    def list_versions(self, episode_id: str) -> List[StoryMapRecord]:
        """Return every stored version, oldest first, including after deletion."""

        key = _validate_identifier(episode_id, "episode_id")
        manifest = self._read_manifest(key)
        if manifest is None:
            raise GraphNotFoundError(key)
        return [self._record(manifest, version) for version in manifest.versions]

    def get_version(self, episode_id: str, version: int) -> StoryMapRecord:
        key = _validate_identifier(episode_id, "episode_id")
        manifest = self._read_manifest(key)
        if manifest is None or version not in manifest.versions:
            raise GraphNotFoundError(
                key, f"StoryMap version {version} of episode '{key}' does not exist."
            )
        return self._record(manifest, version)

    def soft_delete_novel(self, novel_id: str) -> int:
        """Soft delete every StoryMap belonging to ``novel_id``.

        Returns the number of episodes newly marked deleted. Stored versions
        are kept so the history stays auditable.
        """

        novel = _validate_identifier(novel_id, "novel_id")
        deleted = 0
        deleted_at = _utcnow()
        with self._lock:
            for episode_id in self._episode_ids():
                manifest = self._read_manifest(episode_id)
                if manifest is None or manifest.novel_id != novel or manifest.is_deleted:
                    continue
                manifest.is_deleted = True
                manifest.deleted_at = deleted_at
                self._write_manifest(manifest)
                deleted += 1
        logger.info("Soft deleted %d StoryMap(s) of novel %s", deleted, novel)
        return deleted

    def list_episodes(self, *, novel_id: str | None = None) -> List[str]:
        """Return ids of episodes with an active StoryMap."""

        result = []
        for episode_id in self._episode_ids():
            manifest = self._read_manifest(episode_id)
            if manifest is None or manifest.is_deleted:
                continue
            if novel_id is not None and manifest.novel_id != novel_id:
                continue
            result.append(episode_id)
        return sorted(result)

    def repair_unset_variables(self) -> int:
        """Commit a cleaned version for every StoryMap holding unset variable slots.

        Returns the number of episodes repaired. Episodes whose version moves
        during the repair are skipped and logged.
        """

        repaired = 0
        for episode_id in self.list_episodes():
            record = self.get_active_graph(episode_id)
            cleaned, removed = drop_unset_variables(record.graph)
            if not removed:
                continue
            try:
                self.commit_version(episode_id, cleaned, expected_version=record.version)
            except ConflictError:
                logger.warning(
                    "Skipped unset-variable repair for episode %s after a concurrent commit",
                    episode_id,
                )
                continue
            logger.info(
                "Removed %d unset variable slot(s) from episode %s", removed, episode_id
            )
            repaired += 1
        return repaired

    def _validate(self, episode_id: str, graph: StoryGraph) -> None:
        issues = validate_graph(graph, strict_references=self.strict_references)
        if issues:
            logger.warning(
                "Rejected StoryMap for episode %s: %s",
                episode_id,
                ", ".join(issue.code for issue in issues),
            )
            raise GraphValidationError(issues)

    def _require_manifest(self, episode_id: str) -> EpisodeManifest:
        manifest = self._read_manifest(episode_id)
        if manifest is None or manifest.is_deleted:
            raise GraphNotFoundError(episode_id)
        return manifest

    def _replay(self, manifest: EpisodeManifest, command_id: str) -> CommitResult:
        version = manifest.commands[command_id]
        logger.info(
            "Command %s already applied to episode %s as version %s",
            command_id,
            manifest.episode_id,
            version,
        )
        previous_versions = [value for value in manifest.versions if value < version]
        return CommitResult(
            record=self._record(manifest, version),
            previous_version=max(previous_versions, default=0),
            already_applied=True,
        )

    def _record(self, manifest: EpisodeManifest, version: int) -> StoryMapRecord:
        graph, created_at = self._read_version(manifest.episode_id, version)
        return StoryMapRecord(
            episode_id=manifest.episode_id,
            novel_id=manifest.novel_id,
            version=version,
            graph=graph,
            created_at=created_at,
            is_active=version == manifest.active_version and not manifest.is_deleted,
            is_deleted=manifest.is_deleted,
        )


class InMemoryGraphStore(GraphStore):
    """Keep StoryMap versions in local process memory."""

    def __init__(self, *, strict_references: bool = False) -> None:
        super().__init__(strict_references=strict_references)
        self._manifests: Dict[str, EpisodeManifest] = {}
        self._versions: Dict[tuple[str, int], tuple[StoryGraph, datetime]] = {}

    def _read_manifest(self, episode_id: str) -> EpisodeManifest | None:
        manifest = self._manifests.get(episode_id)
        if manifest is None:
            return None
        return replace(
            manifest, versions=list(manifest.versions), commands=dict(manifest.commands)
        )

    def _write_manifest(self, manifest: EpisodeManifest) -> None:
        self._manifests[manifest.episode_id] = replace(
            manifest, versions=list(manifest.versions), commands=dict(manifest.commands)
        )

    def _read_version(self, episode_id: str, version: int) -> tuple[StoryGraph, datetime]:
        try:
            return self._versions[(episode_id, version)]
        except KeyError as exc:
            raise KeyError(
                f"Version {version} of episode '{episode_id}' does not exist"
            ) from exc

    def _write_version(
        self, episode_id: str, version: int, graph: StoryGraph, created_at: datetime
    ) -> None:
        self._versions[(episode_id, version)] = (graph, created_at)

    def _episode_ids(self) -> List[str]:
        return sorted(self._manifests)


class FileGraphStore(GraphStore):
    """Persist StoryMap versions as JSON files on disk.

    Layout: ``<root>/<episode_id>/manifest.json`` plus one ``v<n>.json`` per
    version. Files are written to a temporary sibling and moved into place with
    :func:`os.replace` so readers never observe a partial document.
    """

    MANIFEST_NAME = "manifest.json"

    def __init__(self, storage_dir: Path, *, strict_references: bool = False) -> None:
        super().__init__(strict_references=strict_references)
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    def _episode_dir(self, episode_id: str) -> Path:
        validated = _validate_identifier(episode_id, "episode_id")
        if validated in {".", ".."} or any(sep in validated for sep in ("/", "\\")):
            raise ValueError("episode_id must not contain path separators")
        return self.storage_dir / validated

    def _read_manifest(self, episode_id: str) -> EpisodeManifest | None:
        manifest_path = self._episode_dir(episode_id) / self.MANIFEST_NAME
        if not manifest_path.exists():
            return None
        payload = json.loads(manifest_path.read_text(encoding="utf-8"))
        return EpisodeManifest.from_payload(payload)

    def _write_manifest(self, manifest: EpisodeManifest) -> None:
        episode_dir = self._episode_dir(manifest.episode_id)
        episode_dir.mkdir(parents=True, exist_ok=True)
        _atomic_write_json(episode_dir / self.MANIFEST_NAME, manifest.to_payload())

    def _read_version(self, episode_id: str, version: int) -> tuple[StoryGraph, datetime]:
        version_path = self._episode_dir(episode_id) / f"v{version}.json"
        if not version_path.exists():
            raise KeyError(f"Version {version} of episode '{episode_id}' does not exist")
        payload = json.loads(version_path.read_text(encoding="utf-8"))
        graph = load_graph_from_mapping(payload.get("storyMap", {}))
        return graph, datetime.fromisoformat(payload["createdAt"])

    def _write_version(
        self, episode_id: str, version: int, graph: StoryGraph, created_at: datetime
    ) -> None:
        episode_dir = self._episode_dir(episode_id)
        episode_dir.mkdir(parents=True, exist_ok=True)
        version_path = episode_dir / f"v{version}.json"
        if version_path.exists():
            raise FileExistsError(f"Refusing to overwrite stored version {version_path}")
        _atomic_write_json(
            version_path,
            {
                "version": version,
                "createdAt": created_at.isoformat(),
                "storyMap": graph_to_payload(graph),
            },
        )

    def _episode_ids(self) -> List[str]:
        return sorted(
            path.name
            for path in self.storage_dir.iterdir()
            if path.is_dir() and (path / self.MANIFEST_NAME).exists()
        )


def _atomic_write_json(path: Path, payload: Mapping[str, Any]) -> None:
    descriptor, temp_name = tempfile.mkstemp(
        dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def _validate_identifier(value: str, name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{name} must be a string")
    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{name} must be a non-empty string")
    return stripped


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


__all__ = [
    "COMMAND_HISTORY_LIMIT",
    "StoryMapRecord",
    "CommitResult",
    "GraphPatch",
    "EpisodeManifest",
    "GraphStore",
    "InMemoryGraphStore",
    "FileGraphStore",
]
