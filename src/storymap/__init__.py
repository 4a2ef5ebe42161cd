"""Core package for StoryMap branching-narrative graphs."""

from .errors import (
    ConflictError,
    EvaluationError,
    GraphIssue,
    GraphNotFoundError,
    GraphValidationError,
    MutationError,
    PlaybackStateError,
    StoryError,
    StoryMapError,
    UnresolvedBranchError,
)
from .graph import (
    UNSET,
    BranchNode,
    Choice,
    ChoiceNode,
    Edge,
    EndingNode,
    NodeKind,
    Position,
    SceneNode,
    StartNode,
    StoryGraph,
    StoryVariable,
    VariableMutation,
    VariableType,
    graph_to_payload,
    load_graph_from_file,
    load_graph_from_mapping,
    validate_graph,
)
from .conditions import evaluate, parse_condition
from .variables import VariableBag, apply_mutations, initial_bag
from .layout import LayoutResult, auto_layout, layout_graph
from .graph_store import (
    CommitResult,
    FileGraphStore,
    GraphPatch,
    GraphStore,
    InMemoryGraphStore,
    StoryMapRecord,
)
from .playback import (
    AtEnding,
    AtScene,
    AwaitingChoice,
    PlaybackResolver,
    ReaderSession,
    ReaderSessionManager,
    Resolving,
    SelectionOutcome,
    SessionStatus,
    Step,
    ThreadingScheduler,
)
from .analytics import (
    AnalyticsAggregator,
    AnalyticsReport,
    BackgroundIngestor,
    EpisodeAnalytics,
    PlaybackEvent,
)
from .lint import LintReport, lint_graph
from .delivery import DeliveryBundle, InMemorySceneContent, assemble_delivery
from .registry import ServiceRegistry, build_registry

__all__ = [
    "StoryMapError",
    "GraphIssue",
    "GraphValidationError",
    "ConflictError",
    "GraphNotFoundError",
    "EvaluationError",
    "MutationError",
    "UnresolvedBranchError",
    "StoryError",
    "PlaybackStateError",
    "UNSET",
    "NodeKind",
    "VariableType",
    "Position",
    "StoryVariable",
    "VariableMutation",
    "Choice",
    "StartNode",
    "SceneNode",
    "ChoiceNode",
    "BranchNode",
    "EndingNode",
    "Edge",
    "StoryGraph",
    "validate_graph",
    "load_graph_from_mapping",
    "load_graph_from_file",
    "graph_to_payload",
    "parse_condition",
    "evaluate",
    "VariableBag",
    "initial_bag",
    "apply_mutations",
    "LayoutResult",
    "auto_layout",
    "layout_graph",
    "StoryMapRecord",
    "CommitResult",
    "GraphPatch",
    "GraphStore",
    "InMemoryGraphStore",
    "FileGraphStore",
    "AtScene",
    "AwaitingChoice",
    "Resolving",
    "AtEnding",
    "Step",
    "PlaybackResolver",
    "ThreadingScheduler",
    "SessionStatus",
    "SelectionOutcome",
    "ReaderSession",
    "ReaderSessionManager",
    "PlaybackEvent",
    "AnalyticsAggregator",
    "AnalyticsReport",
    "EpisodeAnalytics",
    "BackgroundIngestor",
    "LintReport",
    "lint_graph",
    "InMemorySceneContent",
    "DeliveryBundle",
    "assemble_delivery",
    "ServiceRegistry",
    "build_registry",
]
