from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph

from .dependencies import DependencyReconciler
from .errors import FatalBuildError
from .extensions import ExtensionRegistry
from .generation_cache import GenerationCache
from .graph import GraphStore
from .llm import GenerativeEndpoint, OpenAIChatEndpoint
from .managed_files import ManifestFiles
from .model_selection import ToolModelSelection
from .projects import ProjectRoots, ProjectService
from .runner import CancellationToken, TransformationRunner
from .settings import RuntimeSettings
from .stages import BuildContext, BuildStages, BuildStageType, StageReport
from .state_store import GraphStateStore

logger = logging.getLogger(__name__)

DEFAULT_STAGE_SEQUENCE: tuple[BuildStageType, ...] = (
    BuildStageType.TECH_STACK,
    BuildStageType.SPECS_TO_INTENT,
    BuildStageType.UPDATE_DEPS,
    BuildStageType.INDEX,
    BuildStageType.COMPILE,
    BuildStageType.UPDATE_DEPS,
)


@dataclass
class BuildPlan:
    """Ordered stage list with a cursor; re-planning replaces everything not yet run."""

    stages: list[BuildStageType] = field(default_factory=lambda: list(DEFAULT_STAGE_SEQUENCE))
    cursor: int = 0
    replans: int = 0
    reports: list[StageReport] = field(default_factory=list)

    @property
    def pending(self) -> list[BuildStageType]:
        return self.stages[self.cursor :]

    def pop_next(self) -> BuildStageType | None:
        if self.cursor >= len(self.stages):
            return None
        stage_type = self.stages[self.cursor]
        self.cursor += 1
        return stage_type

    def replan(self) -> None:
        """Drop pending stages and queue a fresh default sequence after the cursor."""
        del self.stages[self.cursor :]
        self.stages.extend(DEFAULT_STAGE_SEQUENCE)
        self.replans += 1


@dataclass(frozen=True)
class BuildSummary:
    project: str
    stages_run: int
    replans: int
    units: int
    cache_hits: int
    generated: int
    reports: list[StageReport] = field(default_factory=list)


@dataclass(frozen=True)
class BuildServices:
    """Everything a build needs, constructed once and injected."""

    settings: RuntimeSettings
    state_store: GraphStateStore
    graph: GraphStore
    cache: GenerationCache
    reconciler: DependencyReconciler
    manifest_files: ManifestFiles
    projects: ProjectService
    extensions: ExtensionRegistry
    tools: ToolModelSelection
    endpoint: GenerativeEndpoint

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings | None = None,
        *,
        endpoint: GenerativeEndpoint | None = None,
        tools: ToolModelSelection | None = None,
        repo_root: Path | None = None,
    ) -> "BuildServices":
        settings = settings if settings is not None else RuntimeSettings.from_env()
        state_store = GraphStateStore(settings.state_store_path(repo_root))
        graph = GraphStore(state_store, instance_id=settings.instance_id)
        reconciler = DependencyReconciler(graph)
        return cls(
            settings=settings,
            state_store=state_store,
            graph=graph,
            cache=GenerationCache(state_store, history_limit=settings.generation_history_limit),
            reconciler=reconciler,
            manifest_files=ManifestFiles(reconciler),
            projects=ProjectService(graph),
            extensions=ExtensionRegistry(graph),
            tools=tools if tools is not None else ToolModelSelection.from_env(settings),
            endpoint=endpoint if endpoint is not None else OpenAIChatEndpoint(repo_root=repo_root),
        )


class BuildLoopState(TypedDict, total=False):
    plan: BuildPlan
    done: bool


class BuildOrchestrator:
    """Runs the build stages for one project as a LangGraph prepare/advance/finalize loop."""

    def __init__(
        self,
        services: BuildServices,
        project_name: str,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.services = services
        self.settings = services.settings
        self.roots: ProjectRoots = services.projects.require_project(project_name)
        self.cancel_token = cancel_token if cancel_token is not None else CancellationToken()
        self.runner = TransformationRunner(
            graph=services.graph,
            cache=services.cache,
            endpoint=services.endpoint,
            cancel_token=self.cancel_token,
            max_concurrency=self.settings.max_concurrency,
        )
        self.stages = BuildStages(
            graph=services.graph,
            runner=self.runner,
            reconciler=services.reconciler,
            manifest_files=services.manifest_files,
            tools=services.tools,
        )
        self.context: BuildContext | None = None
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(BuildLoopState)
        graph.add_node("prepare", self._prepare_node)
        graph.add_node("advance", self._advance_node)
        graph.add_node("finalize", self._finalize_node)

        graph.add_edge(START, "prepare")
        graph.add_edge("prepare", "advance")
        graph.add_conditional_edges(
            "advance",
            self._advance_route,
            {
                "advance": "advance",
                "finalize": "finalize",
            },
        )
        graph.add_edge("finalize", END)
        return graph

    def _prepare_node(self, state: BuildLoopState) -> dict[str, Any]:
        project = self.roots.project
        self.services.manifest_files.verify(project)
        self.context = BuildContext(roots=self.roots, extensions=self.services.extensions.installed(project))
        logger.info(
            "Building %r (%d extension(s) installed)",
            project.name,
            len(self.context.extensions),
        )
        return {"plan": state.get("plan") or BuildPlan(), "done": False}

    def _advance_node(self, state: BuildLoopState) -> dict[str, Any]:
        plan = state["plan"]
        if self.context is None:
            raise FatalBuildError("Build context was not prepared before advancing the plan")
        more = self.advance(plan, self.context)
        return {"plan": plan, "done": not more}

    def _advance_route(self, state: BuildLoopState) -> str:
        if state.get("done"):
            return "finalize"
        return "advance"

    def _finalize_node(self, state: BuildLoopState) -> dict[str, Any]:
        plan = state["plan"]
        logger.info(
            "Build of %r finished: %d stage(s), %d re-plan(s)",
            self.roots.project.name,
            len(plan.reports),
            plan.replans,
        )
        return {"done": True}

    def advance(self, plan: BuildPlan, context: BuildContext) -> bool:
        """Run the next planned stage.

        Returns:
            False once the plan has nothing left to run.

        Raises:
            FatalBuildError: If the dependency set is still changing after ``max_replans`` re-plans.
        """
        self.cancel_token.raise_if_cancelled("between stages")
        stage_type = plan.pop_next()
        if stage_type is None:
            return False
        logger.info("Stage: %s", stage_type.value)
        report = self.stages.run(stage_type, context)
        plan.reports.append(report)
        if report.deps_updated:
            if plan.replans >= self.settings.max_replans:
                raise FatalBuildError(
                    f"Dependencies still changing after {plan.replans} re-plan(s); giving up"
                )
            logger.info("Dependencies changed; re-planning the remaining stages")
            plan.replan()
        return bool(plan.pending)

    def run(self, plan: BuildPlan | None = None) -> BuildSummary:
        initial_state: BuildLoopState = {"plan": plan if plan is not None else BuildPlan(), "done": False}
        result = self.graph.invoke(
            initial_state,
            config={"recursion_limit": self.settings.recursion_limit},
        )
        final_plan: BuildPlan = result["plan"]
        reports = list(final_plan.reports)
        return BuildSummary(
            project=self.roots.project.name,
            stages_run=len(reports),
            replans=final_plan.replans,
            units=sum(report.units for report in reports),
            cache_hits=sum(report.cache_hits for report in reports),
            generated=sum(report.generated for report in reports),
            reports=reports,
        )
