"""FastAPI application exposing StoryMap editing, playback and analytics."""

from __future__ import annotations

from typing import Any, Callable, Mapping, TypeVar

from fastapi import FastAPI, Header, HTTPException, Query
from pydantic import BaseModel, Field, field_validator

from ..analytics import PlaybackEvent
from ..delivery import assemble_delivery
from ..errors import (
    ConflictError,
    GraphNotFoundError,
    GraphValidationError,
    MutationError,
    PlaybackStateError,
    StoryError,
    UnresolvedBranchError,
)
from ..graph import Edge, edge_from_payload, load_graph_from_mapping
from ..graph_store import CommitResult, GraphPatch, StoryMapRecord
from ..layout import auto_layout
from ..lint import lint_graph
from ..playback import ReaderSession, SelectionOutcome
from ..registry import ServiceRegistry, build_registry
from .settings import StoryMapSettings

_T = TypeVar("_T")


class StoryMapCreateRequest(BaseModel):
    """Payload initialising the StoryMap of an episode."""

    novel_id: str = Field(..., min_length=1, description="Owning novel identifier.")
    story_map: dict[str, Any] | None = Field(
        default=None,
        description=(
            "Initial graph with ``nodes``, ``edges`` and ``storyVariables``. "
            "A single start node is created when omitted."
        ),
    )


class StoryMapCommitRequest(BaseModel):
    """Payload replacing the active StoryMap of an episode."""

    expected_version: int = Field(
        ..., ge=1, description="Version the edit was based on."
    )
    story_map: dict[str, Any] = Field(..., description="Complete replacement graph.")


class StoryMapPatchRequest(BaseModel):
    """Payload applying an incremental edit to the active StoryMap."""

    expected_version: int = Field(..., ge=1)
    patch: dict[str, Any] = Field(
        ...,
        description=(
            "Upserts and removals keyed by ``upsertNodes``, ``removeNodeIds``, "
            "``upsertEdges``, ``removeEdgeIds``, ``upsertVariables`` and "
            "``removeVariableIds``."
        ),
    )


class StoryMapResponse(BaseModel):
    episode_id: str
    novel_id: str
    version: int
    is_active: bool
    is_deleted: bool
    created_at: str
    story_map: dict[str, Any]


class CommitResponse(BaseModel):
    """Result of a commit or of an idempotent patch replay."""

    story_map: StoryMapResponse
    previous_version: int
    already_applied: bool = False


class VersionSummary(BaseModel):
    version: int
    is_active: bool
    created_at: str
    node_count: int = Field(..., ge=0)
    edge_count: int = Field(..., ge=0)


class VersionListResponse(BaseModel):
    episode_id: str
    active_version: int | None
    versions: list[VersionSummary] = Field(default_factory=list)


class AutoLayoutRequest(BaseModel):
    """Nodes and edges to position on the editor canvas."""

    nodes: list[dict[str, Any]] = Field(default_factory=list)
    edges: list[dict[str, Any]] = Field(default_factory=list)
    algorithm: str = Field(default="dagre")
    column_gap: float | None = Field(default=None, gt=0)
    row_gap: float | None = Field(default=None, gt=0)


class NodePositionResource(BaseModel):
    node_id: str
    x: float
    y: float


class AutoLayoutResponse(BaseModel):
    algorithm_used: str
    layers: list[list[str]] = Field(default_factory=list)
    nodes: list[NodePositionResource] = Field(default_factory=list)


class ValidateRequest(BaseModel):
    story_map: dict[str, Any]


class SessionCreateRequest(BaseModel):
    """Optional variable overrides applied before the first node is entered."""

    variables: dict[str, Any] | None = None


class ChoiceSelectionRequest(BaseModel):
    choice_id: str = Field(..., min_length=1)
    prompt_token: int = Field(
        ...,
        ge=1,
        description="Token of the prompt being answered; stale tokens are ignored.",
    )


class ExpireRequest(BaseModel):
    prompt_token: int | None = Field(default=None, ge=1)


class ChoiceResource(BaseModel):
    choice_id: str
    text: str
    target_node_id: str
    time_limit_seconds: float | None = None


class SessionResponse(BaseModel):
    """Snapshot of a reader session together with the choices on offer."""

    session: dict[str, Any]
    choices: list[ChoiceResource] = Field(default_factory=list)


class SelectionResponse(BaseModel):
    applied: bool
    reason: str | None = None
    session: SessionResponse


class AnalyticsEventsRequest(BaseModel):
    events: list[dict[str, Any]]

    @field_validator("events")
    @classmethod
    def _require_events(cls, value: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not value:
            raise ValueError("At least one event is required.")
        return value


class AnalyticsIngestResponse(BaseModel):
    accepted: int = Field(..., ge=0)
    dropped: int = Field(..., ge=0)


class DeleteNovelResponse(BaseModel):
    novel_id: str
    deleted_story_maps: int = Field(..., ge=0)


def _record_response(record: StoryMapRecord) -> StoryMapResponse:
    return StoryMapResponse(
        episode_id=record.episode_id,
        novel_id=record.novel_id,
        version=record.version,
        is_active=record.is_active,
        is_deleted=record.is_deleted,
        created_at=record.created_at.isoformat(),
        story_map=record.to_payload()["storyMap"],
    )


def _commit_response(result: CommitResult) -> CommitResponse:
    return CommitResponse(
        story_map=_record_response(result.record),
        previous_version=result.previous_version,
        already_applied=result.already_applied,
    )


def _session_response(session: ReaderSession) -> SessionResponse:
    return SessionResponse(
        session=session.snapshot(),
        choices=[
            ChoiceResource(
                choice_id=choice.choice_id,
                text=choice.text,
                target_node_id=choice.target_node_id,
                time_limit_seconds=choice.time_limit_seconds,
            )
            for choice in session.visible_choices()
        ],
    )


def _validation_detail(exc: GraphValidationError) -> dict[str, Any]:
    return {
        "message": str(exc),
        "issues": [
            {
                "code": issue.code,
                "message": issue.message,
                "offending_ids": list(issue.offending_ids),
            }
            for issue in exc.issues
        ],
    }


def _conflict_detail(exc: ConflictError) -> dict[str, Any]:
    return {
        "message": str(exc),
        "expected_version": exc.expected,
        "current_version": exc.actual,
    }


def _parse_graph(payload: Mapping[str, Any]):
    try:
        return load_graph_from_mapping(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _layout_node_id(raw: Mapping[str, Any], index: int) -> str:
    for key in ("nodeId", "node_id", "id"):
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise HTTPException(status_code=400, detail=f"Node #{index} is missing 'nodeId'.")


def create_app(
    registry: ServiceRegistry | None = None,
    *,
    settings: StoryMapSettings | None = None,
) -> FastAPI:
    """Create a FastAPI app exposing the StoryMap endpoints."""

    services = registry or build_registry(settings)
    resolved_settings = services.settings
    store = services.store

    tags_metadata = [
        {
            "name": "StoryMaps",
            "description": (
                "Create, commit and patch versioned branching-narrative graphs "
                "for episodes, with optimistic concurrency."
            ),
        },
        {
            "name": "Editor Tools",
            "description": "Auto-layout and pre-publish lint for the editor canvas.",
        },
        {
            "name": "Delivery",
            "description": "Scene content joined with the graph for reader clients.",
        },
        {
            "name": "Reading Sessions",
            "description": (
                "Server-side playback with timed choices and exactly-once "
                "resolution of each prompt."
            ),
        },
        {
            "name": "Analytics",
            "description": "Node reach and choice selection rates per episode.",
        },
    ]

    app = FastAPI(
        title="StoryMap API",
        version="0.1.0",
        description=(
            "HTTP API powering the StoryMap editor, the reader runtime and "
            "reader analytics for branching interactive fiction."
        ),
        openapi_tags=tags_metadata,
    )
    app.state.registry = services

    def _session(session_id: str) -> ReaderSession:
        try:
            return services.sessions.get_session(session_id)
        except KeyError as exc:
            raise HTTPException(
                status_code=404, detail=f"Reader session '{session_id}' does not exist."
            ) from exc

    def _playback(operation: Callable[[], _T]) -> _T:
        try:
            return operation()
        except (MutationError, UnresolvedBranchError, PlaybackStateError) as exc:
            code = {
                MutationError: "mutation_error",
                UnresolvedBranchError: "unresolved_branch",
            }.get(type(exc), "invalid_state")
            raise HTTPException(
                status_code=409, detail={"code": code, "message": str(exc)}
            ) from exc

    @app.post(
        "/api/episodes/{episode_id}/storymap",
        response_model=StoryMapResponse,
        status_code=201,
        tags=["StoryMaps"],
    )
    def create_story_map(
        episode_id: str, payload: StoryMapCreateRequest
    ) -> StoryMapResponse:
        graph = _parse_graph(payload.story_map) if payload.story_map is not None else None
        try:
            record = store.create_story_map(
                episode_id, novel_id=payload.novel_id, graph=graph
            )
        except GraphValidationError as exc:
            raise HTTPException(status_code=422, detail=_validation_detail(exc)) from exc
        except ConflictError as exc:
            raise HTTPException(status_code=409, detail=_conflict_detail(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _record_response(record)

    @app.get(
        "/api/episodes/{episode_id}/storymap",
        response_model=StoryMapResponse,
        tags=["StoryMaps"],
    )
    def get_story_map(
        episode_id: str,
        version: int | None = Query(
            None, ge=1, description="Return a historical version instead of the active one."
        ),
    ) -> StoryMapResponse:
        try:
            if version is None:
                record = store.get_active_graph(episode_id)
            else:
                record = store.get_version(episode_id, version)
        except GraphNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _record_response(record)

    @app.put(
        "/api/episodes/{episode_id}/storymap",
        response_model=CommitResponse,
        tags=["StoryMaps"],
    )
    def commit_story_map(
        episode_id: str,
        payload: StoryMapCommitRequest,
        command_id: str | None = Header(None, alias="X-Command-Id"),
    ) -> CommitResponse:
        graph = _parse_graph(payload.story_map)
        try:
            result = store.commit_version(
                episode_id,
                graph,
                expected_version=payload.expected_version,
                command_id=command_id,
            )
        except GraphNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except GraphValidationError as exc:
            raise HTTPException(status_code=422, detail=_validation_detail(exc)) from exc
        except ConflictError as exc:
            raise HTTPException(status_code=409, detail=_conflict_detail(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _commit_response(result)

    @app.patch(
        "/api/episodes/{episode_id}/storymap",
        response_model=CommitResponse,
        tags=["StoryMaps"],
    )
    def patch_story_map(
        episode_id: str,
        payload: StoryMapPatchRequest,
        command_id: str | None = Header(
            None,
            alias="X-Command-Id",
            description="Client-generated id making retries of this patch safe.",
        ),
    ) -> CommitResponse:
        try:
            patch = GraphPatch.from_payload(payload.patch)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        try:
            result = store.apply_patch(
                episode_id,
                patch,
                expected_version=payload.expected_version,
                command_id=command_id,
            )
        except GraphNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except GraphValidationError as exc:
            raise HTTPException(status_code=422, detail=_validation_detail(exc)) from exc
        except ConflictError as exc:
            raise HTTPException(status_code=409, detail=_conflict_detail(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _commit_response(result)

    @app.get(
        "/api/episodes/{episode_id}/storymap/versions",
        response_model=VersionListResponse,
        tags=["StoryMaps"],
    )
    def list_story_map_versions(episode_id: str) -> VersionListResponse:
        try:
            records = store.list_versions(episode_id)
        except GraphNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        active = next((record.version for record in records if record.is_active), None)
        return VersionListResponse(
            episode_id=episode_id,
            active_version=active,
            versions=[
                VersionSummary(
                    version=record.version,
                    is_active=record.is_active,
                    created_at=record.created_at.isoformat(),
                    node_count=len(record.graph.nodes),
                    edge_count=len(record.graph.edges),
                )
                for record in records
            ],
        )

    @app.post(
        "/api/storymap/autolayout",
        response_model=AutoLayoutResponse,
        tags=["Editor Tools"],
    )
    def autolayout(payload: AutoLayoutRequest) -> AutoLayoutResponse:
        node_ids = [
            _layout_node_id(raw, index) for index, raw in enumerate(payload.nodes)
        ]
        edges: list[Edge] = []
        try:
            for index, raw in enumerate(payload.edges):
                edges.append(edge_from_payload(raw, index=index))
            result = auto_layout(
                node_ids,
                edges,
                algorithm=payload.algorithm,
                column_gap=payload.column_gap or resolved_settings.layout_column_gap,
                row_gap=payload.row_gap or resolved_settings.layout_row_gap,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        return AutoLayoutResponse(
            algorithm_used=result.algorithm_used,
            layers=[list(layer) for layer in result.layers],
            nodes=[
                NodePositionResource(
                    node_id=node_id,
                    x=result.positions[node_id].x,
                    y=result.positions[node_id].y,
                )
                for node_id in dict.fromkeys(node_ids)
            ],
        )

    @app.post("/api/storymap/validate", tags=["Editor Tools"])
    def validate_story_map(payload: ValidateRequest) -> dict[str, Any]:
        graph = _parse_graph(payload.story_map)
        return lint_graph(graph).to_payload()

    @app.delete(
        "/api/novels/{novel_id}",
        response_model=DeleteNovelResponse,
        tags=["StoryMaps"],
    )
    def delete_novel(novel_id: str) -> DeleteNovelResponse:
        try:
            deleted = store.soft_delete_novel(novel_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return DeleteNovelResponse(novel_id=novel_id, deleted_story_maps=deleted)

    @app.get("/api/episodes/{episode_id}/delivery", tags=["Delivery"])
    def get_delivery(
        episode_id: str,
        node_id: str | None = Query(
            None, description="Node to render; defaults to the start node."
        ),
        session_id: str | None = Query(
            None,
            description="Filter choices with the variables of this reader session.",
        ),
    ) -> dict[str, Any]:
        try:
            record = store.get_active_graph(episode_id)
        except GraphNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        bag = _session(session_id).bag if session_id is not None else None
        try:
            bundle = assemble_delivery(
                record.graph, node_id, services.scene_content, bag=bag
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc.args[0])) from exc
        return bundle.to_payload()

    @app.post(
        "/api/episodes/{episode_id}/sessions",
        response_model=SessionResponse,
        status_code=201,
        tags=["Reading Sessions"],
    )
    def create_session(
        episode_id: str, payload: SessionCreateRequest | None = None
    ) -> SessionResponse:
        variables = payload.variables if payload is not None else None
        try:
            session = services.sessions.create_session(episode_id, bag=variables)
        except GraphNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except StoryError as exc:
            raise HTTPException(
                status_code=409, detail={"code": "story_error", "message": str(exc)}
            ) from exc
        return _session_response(session)

    @app.get(
        "/api/sessions/{session_id}",
        response_model=SessionResponse,
        tags=["Reading Sessions"],
    )
    def get_session(session_id: str) -> SessionResponse:
        return _session_response(_session(session_id))

    @app.get("/api/sessions/{session_id}/transcript", tags=["Reading Sessions"])
    def get_session_transcript(session_id: str) -> dict[str, Any]:
        session = _session(session_id)
        return {"sessionId": session.session_id, "entries": list(session.transcript())}

    @app.post(
        "/api/sessions/{session_id}/proceed",
        response_model=SessionResponse,
        tags=["Reading Sessions"],
    )
    def proceed_session(session_id: str) -> SessionResponse:
        session = _session(session_id)
        try:
            _playback(session.proceed)
        except StoryError:
            # The failure is recorded on the session snapshot.
            pass
        return _session_response(session)

    @app.post(
        "/api/sessions/{session_id}/choices",
        response_model=SelectionResponse,
        tags=["Reading Sessions"],
    )
    def select_choice(
        session_id: str, payload: ChoiceSelectionRequest
    ) -> SelectionResponse:
        session = _session(session_id)
        try:
            outcome: SelectionOutcome | None = _playback(
                lambda: session.select(payload.choice_id, prompt_token=payload.prompt_token)
            )
        except StoryError:
            outcome = None
        return SelectionResponse(
            applied=outcome is None or outcome.applied,
            reason=outcome.reason if outcome is not None else "story_error",
            session=_session_response(session),
        )

    @app.post(
        "/api/sessions/{session_id}/expire",
        response_model=SelectionResponse,
        tags=["Reading Sessions"],
    )
    def expire_choice(
        session_id: str, payload: ExpireRequest | None = None
    ) -> SelectionResponse:
        session = _session(session_id)
        token = payload.prompt_token if payload is not None else None
        try:
            outcome: SelectionOutcome | None = _playback(
                lambda: session.expire(prompt_token=token)
            )
        except StoryError:
            outcome = None
        return SelectionResponse(
            applied=outcome is None or outcome.applied,
            reason=outcome.reason if outcome is not None else "story_error",
            session=_session_response(session),
        )

    @app.delete(
        "/api/sessions/{session_id}",
        status_code=204,
        tags=["Reading Sessions"],
    )
    def close_session(session_id: str) -> None:
        _session(session_id)
        services.sessions.close_session(session_id)

    @app.post(
        "/api/analytics/events",
        response_model=AnalyticsIngestResponse,
        status_code=202,
        tags=["Analytics"],
    )
    def ingest_events(payload: AnalyticsEventsRequest) -> AnalyticsIngestResponse:
        try:
            events = [PlaybackEvent.from_payload(raw) for raw in payload.events]
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        missing = [index for index, event in enumerate(events) if event.episode_id is None]
        if missing:
            raise HTTPException(
                status_code=400,
                detail=f"Analytics events require an 'episodeId' (entries {missing}).",
            )

        accepted = sum(1 for event in events if services.ingestor.submit(event))
        return AnalyticsIngestResponse(accepted=accepted, dropped=len(events) - accepted)

    @app.get("/api/episodes/{episode_id}/analytics", tags=["Analytics"])
    def get_analytics(episode_id: str) -> dict[str, Any]:
        try:
            store.get_active_graph(episode_id)
        except GraphNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        services.ingestor.flush(timeout=1.0)
        report = services.analytics.aggregator(episode_id).summarise()
        return {"episodeId": episode_id, **report.to_payload()}

    return app


__all__ = ["create_app"]
