from importlib.metadata import version

from .dependencies import DependencyReconciler
from .errors import (
    BuildCancelledError,
    DiagnosticsError,
    FatalBuildError,
    GenerationFailedError,
    GraphInvariantError,
    IntentCodeError,
    InvalidPathError,
    ManifestDriftError,
    ProjectNotFoundError,
    ResultValidationError,
)
from .generation_cache import GenerationCache
from .graph import GraphStore
from .llm import ChatTurn, EndpointReply, GenerativeEndpoint, NormalizedMessages, OpenAIChatEndpoint, ToolConfig
from .managed_files import ManifestFiles
from .model_selection import ToolModelSelection
from .models import (
    CompileResult,
    DependencyDelta,
    EdgeType,
    ExtensionSpec,
    GenerationRecord,
    GraphEdge,
    GraphNode,
    IndexResult,
    NodeType,
    SpecsToIntentResult,
    TechStackResult,
)
from .orchestrator import DEFAULT_STAGE_SEQUENCE, BuildOrchestrator, BuildPlan, BuildServices, BuildSummary
from .projects import ProjectRoots, ProjectService
from .runner import MAX_GENERATION_ATTEMPTS, CancellationToken, TransformationRunner, TransformationUnit
from .settings import RuntimeSettings
from .stages import BuildStageType
from .state_store import GraphStateStore


def get_version() -> str:
    try:
        return version("intentcode-factory")
    except Exception:
        return "0.0.0"


__all__ = [
    "BuildCancelledError",
    "BuildOrchestrator",
    "BuildPlan",
    "BuildServices",
    "BuildStageType",
    "BuildSummary",
    "CancellationToken",
    "ChatTurn",
    "CompileResult",
    "DependencyDelta",
    "DependencyReconciler",
    "DiagnosticsError",
    "EdgeType",
    "EndpointReply",
    "ExtensionSpec",
    "FatalBuildError",
    "GenerationCache",
    "GenerationFailedError",
    "GenerationRecord",
    "GenerativeEndpoint",
    "GraphEdge",
    "GraphInvariantError",
    "GraphNode",
    "GraphStateStore",
    "GraphStore",
    "IndexResult",
    "IntentCodeError",
    "InvalidPathError",
    "ManifestDriftError",
    "ManifestFiles",
    "NodeType",
    "NormalizedMessages",
    "OpenAIChatEndpoint",
    "ProjectNotFoundError",
    "ProjectRoots",
    "ProjectService",
    "ResultValidationError",
    "RuntimeSettings",
    "SpecsToIntentResult",
    "TechStackResult",
    "ToolConfig",
    "ToolModelSelection",
    "TransformationRunner",
    "TransformationUnit",
    "DEFAULT_STAGE_SEQUENCE",
    "MAX_GENERATION_ATTEMPTS",
    "get_version",
]
