"""Explicit service registry wired once at process start."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .analytics import BackgroundIngestor, EpisodeAnalytics
from .delivery import InMemorySceneContent, SceneContentProvider, load_scene_content_from_file
from .errors import GraphNotFoundError
from .graph import StoryGraph
from .graph_store import FileGraphStore, GraphStore, InMemoryGraphStore
from .playback import ReaderSessionManager, Scheduler, ThreadingScheduler

if TYPE_CHECKING:
    from .api.settings import StoryMapSettings

logger = logging.getLogger(__name__)


@dataclass
class ServiceRegistry:
    """Collaborators shared by the HTTP layer and the CLI.

    The registry is built once and handed to consumers by reference; nothing
    in the package reaches for module-level singletons.
    """

    settings: "StoryMapSettings"
    store: GraphStore
    scene_content: SceneContentProvider
    analytics: EpisodeAnalytics
    ingestor: BackgroundIngestor
    sessions: ReaderSessionManager

    def close(self) -> None:
        """Stop timers and flush pending analytics."""

        self.sessions.close_all()
        self.ingestor.flush(timeout=5.0)
        self.ingestor.stop()


def build_registry(
    settings: "StoryMapSettings | None" = None,
    *,
    store: GraphStore | None = None,
    scene_content: SceneContentProvider | None = None,
    scheduler: Scheduler | None = None,
    ingestor: BackgroundIngestor | None = None,
) -> ServiceRegistry:
    """Create every service from ``settings``, honouring explicit overrides."""

    if settings is None:
        from .api.settings import StoryMapSettings

        settings = StoryMapSettings.from_env()

    resolved_store = store
    if resolved_store is None:
        if settings.store_root is not None:
            resolved_store = FileGraphStore(
                settings.store_root, strict_references=settings.strict_references
            )
            logger.info("Using file StoryMap store at %s", settings.store_root)
        else:
            resolved_store = InMemoryGraphStore(
                strict_references=settings.strict_references
            )

    content = scene_content
    if content is None:
        if settings.scene_content_path is not None:
            content = load_scene_content_from_file(settings.scene_content_path)
        else:
            content = InMemorySceneContent()

    def _active_graph(episode_id: str) -> StoryGraph | None:
        try:
            return resolved_store.get_active_graph(episode_id).graph
        except GraphNotFoundError:
            return None

    analytics = EpisodeAnalytics(graph_lookup=_active_graph)
    resolved_ingestor = ingestor or BackgroundIngestor(
        analytics.record, max_attempts=settings.analytics_max_attempts
    )

    def _load_for_session(episode_id: str) -> tuple[StoryGraph, int]:
        record = resolved_store.get_active_graph(episode_id)
        return record.graph, record.version

    sessions = ReaderSessionManager(
        graph_loader=_load_for_session,
        scheduler=scheduler or ThreadingScheduler(),
        event_sink=resolved_ingestor.submit,
    )

    return ServiceRegistry(
        settings=settings,
        store=resolved_store,
        scene_content=content,
        analytics=analytics,
        ingestor=resolved_ingestor,
        sessions=sessions,
    )


__all__ = ["ServiceRegistry", "build_registry"]
