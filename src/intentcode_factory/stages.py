from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import partial
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Callable

from .dependencies import DependencyReconciler
from .errors import FatalBuildError, GraphInvariantError, ResultValidationError
from .extensions import missing_extensions, skill_prompting
from .graph import GraphStore
from .managed_files import TECH_STACK_JSON, ManifestFiles, dot_intentcode_dir
from .model_selection import TOOL_COMPILER, TOOL_INDEXER, TOOL_SPECS_TO_INTENT, TOOL_TECH_STACK, ToolModelSelection
from .models import (
    COMPILER_DATA_NAME,
    INDEXED_DATA_NAME,
    INTENT_LOWERING_DATA_NAME,
    TECH_STACK_DATA_NAME,
    CompileResult,
    EdgeType,
    ExtensionSpec,
    GraphNode,
    IndexResult,
    IntentFileDelta,
    NodeType,
    SpecsToIntentResult,
    TechStackResult,
)
from .projects import ProjectRoots
from .prompts import (
    COMPILER_ROLE,
    INDEXER_ROLE,
    SPECS_TO_INTENT_ROLE,
    TECH_STACK_ROLE,
    build_compile_prompt,
    build_index_prompt,
    build_specs_to_intent_prompt,
    build_tech_stack_prompt,
)
from .runner import TransformationRunner, TransformationUnit, UnitOutcome
from .utils import from_json_file, list_files, strip_intent_suffix, target_extension, to_json_file, write_text_if_changed

logger = logging.getLogger(__name__)

TECH_STACK_FILENAME = "tech-stack.md"
INTENT_SUFFIX = ".md"


class BuildStageType(str, Enum):
    TECH_STACK = "resolve tech stack"
    SPECS_TO_INTENT = "lower specs to intent"
    UPDATE_DEPS = "refresh dependencies"
    INDEX = "index intent"
    COMPILE = "compile intent"


@dataclass(frozen=True)
class BuildContext:
    """Inputs that stay fixed for one build run."""

    roots: ProjectRoots
    extensions: list[ExtensionSpec] = field(default_factory=list)

    @property
    def project(self) -> GraphNode:
        return self.roots.project

    @property
    def projects(self) -> dict[int, ProjectRoots]:
        """Projects addressable by number in generated output."""
        return {1: self.roots}


@dataclass(frozen=True)
class StageReport:
    stage_type: BuildStageType
    deps_updated: bool = False
    units: int = 0
    cache_hits: int = 0
    generated: int = 0

    @classmethod
    def from_outcomes(cls, stage_type: BuildStageType, outcomes: list[UnitOutcome[Any]]) -> "StageReport":
        hits = sum(1 for outcome in outcomes if outcome.cache_hit)
        return cls(stage_type=stage_type, units=len(outcomes), cache_hits=hits, generated=len(outcomes) - hits)


class BuildStages:
    """Stage implementations; each turns project files into units for the runner."""

    def __init__(
        self,
        *,
        graph: GraphStore,
        runner: TransformationRunner,
        reconciler: DependencyReconciler,
        manifest_files: ManifestFiles,
        tools: ToolModelSelection,
    ) -> None:
        self.graph = graph
        self.runner = runner
        self.reconciler = reconciler
        self.manifest_files = manifest_files
        self.tools = tools
        self._handlers: dict[BuildStageType, Callable[[BuildContext], StageReport]] = {
            BuildStageType.TECH_STACK: self.resolve_tech_stack,
            BuildStageType.SPECS_TO_INTENT: self.lower_specs,
            BuildStageType.UPDATE_DEPS: self.refresh_dependencies,
            BuildStageType.INDEX: self.index_intent,
            BuildStageType.COMPILE: self.compile_intent,
        }

    def run(self, stage_type: BuildStageType, context: BuildContext) -> StageReport:
        return self._handlers[stage_type](context)

    # ----- tech stack -----

    def resolve_tech_stack(self, context: BuildContext) -> StageReport:
        candidates = [
            path for path in list_files(context.roots.specs_path, suffix=".md") if path.name == TECH_STACK_FILENAME
        ]
        if len(candidates) > 1:
            listed = ", ".join(str(path) for path in candidates)
            raise FatalBuildError(f"Expected one {TECH_STACK_FILENAME}, found {len(candidates)}: {listed}")
        if not candidates:
            logger.info("No %s under %s; skipping tech stack resolution", TECH_STACK_FILENAME, context.roots.specs_path)
            return StageReport(stage_type=BuildStageType.TECH_STACK)

        path = candidates[0]
        file_node = self.graph.get_or_create_path(
            context.roots.specs, path, dir_type=NodeType.SPEC_DIR, file_type=NodeType.SPEC_FILE
        )
        unit = TransformationUnit(
            label=f"tech stack ({path.name})",
            tool=self.tools.resolve(TOOL_TECH_STACK),
            role_context=TECH_STACK_ROLE,
            build_prompt=lambda: build_tech_stack_prompt(
                spec_text=path.read_text(encoding="utf-8"),
                extensions=context.extensions,
            ),
            resolve_node=lambda: self.graph.get_or_create_node(
                file_node, NodeType.TECH_STACK_DATA, TECH_STACK_DATA_NAME
            ),
            schema=TechStackResult,
            apply=lambda result: self._apply_tech_stack(context, file_node, result),
            source_path=path,
        )
        return StageReport.from_outcomes(BuildStageType.TECH_STACK, self.runner.run_all([unit]))

    def _apply_tech_stack(self, context: BuildContext, file_node: GraphNode, result: TechStackResult) -> None:
        summary = {"extensions": result.extensions, "deps": result.dependency_deltas}
        to_json_file(summary, dot_intentcode_dir(context.project) / TECH_STACK_JSON)
        self.graph.upsert_derived_data(
            file_node,
            NodeType.TECH_STACK_DATA,
            TECH_STACK_DATA_NAME,
            result.model_dump(mode="json", by_alias=True),
        )
        self.reconciler.replace_file_dependencies(context.project, file_node, result.dependency_deltas)
        for problem in missing_extensions(context.extensions, result.extensions):
            logger.warning("Tech stack: %s", problem)

    def read_tech_stack(self, context: BuildContext) -> dict[str, Any] | None:
        path = dot_intentcode_dir(context.project) / TECH_STACK_JSON
        if not path.is_file():
            return None
        return from_json_file(path)

    # ----- specs to intent -----

    def lower_specs(self, context: BuildContext) -> StageReport:
        specs_root = context.roots.specs
        spec_paths = [
            path for path in list_files(context.roots.specs_path, suffix=".md") if path.name != TECH_STACK_FILENAME
        ]
        self._prune_missing(context, specs_root, dir_type=NodeType.SPEC_DIR, file_type=NodeType.SPEC_FILE)
        tech_stack = self.read_tech_stack(context)
        tool = self.tools.resolve(TOOL_SPECS_TO_INTENT)

        units = []
        for path in spec_paths:
            file_node = self.graph.get_or_create_path(
                specs_root, path, dir_type=NodeType.SPEC_DIR, file_type=NodeType.SPEC_FILE
            )
            relative = self.graph.relative_path(specs_root, path).as_posix()
            units.append(
                TransformationUnit(
                    label=f"specs {relative}",
                    tool=tool,
                    role_context=SPECS_TO_INTENT_ROLE,
                    build_prompt=partial(
                        build_specs_to_intent_prompt,
                        spec_relative_path=relative,
                        spec_text=path.read_text(encoding="utf-8"),
                        projects={number: roots.project.name for number, roots in context.projects.items()},
                        tech_stack=tech_stack,
                        extensions=context.extensions,
                    ),
                    resolve_node=partial(
                        self.graph.get_or_create_node,
                        file_node,
                        NodeType.INTENT_LOWERING_DATA,
                        INTENT_LOWERING_DATA_NAME,
                    ),
                    schema=SpecsToIntentResult,
                    validate=partial(self._validate_intent_files, context),
                    apply=partial(self._apply_intent_files, context, file_node),
                    source_path=path,
                )
            )
        return StageReport.from_outcomes(BuildStageType.SPECS_TO_INTENT, self.runner.run_all(units))

    def _validate_intent_files(self, context: BuildContext, result: SpecsToIntentResult) -> None:
        for entry in result.intent_files:
            if entry.project_no not in context.projects:
                raise ResultValidationError(
                    f"intent file {entry.relative_path!r} references unknown projectNo {entry.project_no}"
                )
            relative = PurePosixPath(entry.relative_path)
            if relative.is_absolute() or any(part in ("", ".", "..") for part in relative.parts):
                raise ResultValidationError(f"intent file path {entry.relative_path!r} must be relative")
            if relative.suffix != INTENT_SUFFIX:
                raise ResultValidationError(f"intent file path {entry.relative_path!r} must end in {INTENT_SUFFIX}")

    def _apply_intent_files(self, context: BuildContext, spec_node: GraphNode, result: SpecsToIntentResult) -> None:
        for entry in result.intent_files:
            roots = context.projects[entry.project_no]
            full_path = roots.intent_path / entry.relative_path
            if entry.file_delta == IntentFileDelta.DELETE:
                if full_path.is_file():
                    full_path.unlink()
                    logger.info("Deleted intent file %s", full_path)
                node = self.graph.find_path(
                    roots.intent, full_path, dir_type=NodeType.INTENT_DIR, file_type=NodeType.INTENT_FILE
                )
                if node is not None:
                    self._forget_file(context, node)
                continue
            if entry.content is None:
                raise GraphInvariantError(f"Intent file {entry.relative_path!r} has no content to write")
            if write_text_if_changed(full_path, entry.content):
                logger.info("Wrote intent file %s", full_path)
            self.graph.get_or_create_path(
                roots.intent, full_path, dir_type=NodeType.INTENT_DIR, file_type=NodeType.INTENT_FILE
            )
        self.graph.upsert_derived_data(
            spec_node,
            NodeType.INTENT_LOWERING_DATA,
            INTENT_LOWERING_DATA_NAME,
            result.model_dump(mode="json", by_alias=True),
        )

    # ----- dependencies -----

    def refresh_dependencies(self, context: BuildContext) -> StageReport:
        sync = self.manifest_files.sync(context.project)
        return StageReport(stage_type=BuildStageType.UPDATE_DEPS, deps_updated=sync.changed)

    # ----- index -----

    def _intent_files(self, context: BuildContext) -> list[tuple[Path, str, str]]:
        """Intent files as ``(path, relative path, target extension)``, skipping unknown targets."""
        files = []
        for path in list_files(context.roots.intent_path, suffix=INTENT_SUFFIX):
            relative = self.graph.relative_path(context.roots.intent, path).as_posix()
            target_ext = target_extension(path.name)
            if target_ext is None:
                logger.warning("Skipping %s: no target extension in the file name", relative)
                continue
            files.append((path, relative, target_ext))
        return files

    def _intent_file_node(self, context: BuildContext, path: Path) -> GraphNode:
        return self.graph.get_or_create_path(
            context.roots.intent, path, dir_type=NodeType.INTENT_DIR, file_type=NodeType.INTENT_FILE
        )

    def index_intent(self, context: BuildContext) -> StageReport:
        self._prune_missing(
            context, context.roots.intent, dir_type=NodeType.INTENT_DIR, file_type=NodeType.INTENT_FILE
        )
        tool = self.tools.resolve(TOOL_INDEXER)
        units = []
        for path, relative, target_ext in self._intent_files(context):
            file_node = self._intent_file_node(context, path)
            units.append(
                TransformationUnit(
                    label=f"index {relative}",
                    tool=tool,
                    role_context=INDEXER_ROLE,
                    build_prompt=partial(
                        build_index_prompt,
                        intent_relative_path=relative,
                        target_ext=target_ext,
                        intent_code=path.read_text(encoding="utf-8"),
                        skill_prompting=skill_prompting(context.extensions, target_ext),
                    ),
                    resolve_node=partial(
                        self.graph.get_or_create_node, file_node, NodeType.INDEXED_DATA, INDEXED_DATA_NAME
                    ),
                    schema=IndexResult,
                    apply=partial(self._apply_index, file_node),
                    source_path=path,
                )
            )
        return StageReport.from_outcomes(BuildStageType.INDEX, self.runner.run_all(units))

    def _apply_index(self, file_node: GraphNode, result: IndexResult) -> None:
        self.graph.upsert_derived_data(
            file_node,
            NodeType.INDEXED_DATA,
            INDEXED_DATA_NAME,
            result.model_dump(mode="json", by_alias=True),
        )

    # ----- compile -----

    def compile_intent(self, context: BuildContext) -> StageReport:
        files = self._intent_files(context)
        nodes = {relative: self._intent_file_node(context, path) for path, relative, _ in files}
        indexed_data = {}
        for relative, node in sorted(nodes.items()):
            indexed = self.graph.find_child(node, NodeType.INDEXED_DATA, INDEXED_DATA_NAME)
            if indexed is not None and indexed.json_content is not None:
                indexed_data[relative] = indexed.json_content.get("astTree")
        deps = self.manifest_files.synced_deps(context.project)
        tool = self.tools.resolve(TOOL_COMPILER)

        units = []
        for path, relative, target_ext in files:
            file_node = nodes[relative]
            intent_code = path.read_text(encoding="utf-8")
            units.append(
                TransformationUnit(
                    label=f"compile {relative}",
                    tool=tool,
                    role_context=COMPILER_ROLE,
                    build_prompt=partial(
                        build_compile_prompt,
                        intent_relative_path=relative,
                        target_ext=target_ext,
                        intent_code=intent_code,
                        indexed_data=indexed_data,
                        deps=deps,
                        skill_prompting=skill_prompting(context.extensions, target_ext),
                        extensions=context.extensions,
                    ),
                    resolve_node=partial(
                        self.graph.get_or_create_node, file_node, NodeType.COMPILER_DATA, COMPILER_DATA_NAME
                    ),
                    schema=CompileResult,
                    validate=_validate_compile,
                    apply=partial(self._apply_compile, context, file_node, relative, intent_code),
                    source_path=path,
                )
            )
        return StageReport.from_outcomes(BuildStageType.COMPILE, self.runner.run_all(units))

    def _apply_compile(
        self,
        context: BuildContext,
        file_node: GraphNode,
        relative: str,
        intent_code: str,
        result: CompileResult,
    ) -> None:
        if result.target_source is not None:
            source_path = context.roots.source_path / strip_intent_suffix(relative)
            source_text = result.target_source.rstrip("\n") + "\n"
            if write_text_if_changed(source_path, source_text):
                logger.info("Wrote %s", source_path)
            source_node = self.graph.get_or_create_path(
                context.roots.source, source_path, dir_type=NodeType.SOURCE_DIR, file_type=NodeType.SOURCE_FILE
            )
            self.graph.set_content(source_node, content=source_text)
            self.graph.link(file_node, source_node, EdgeType.IMPLEMENTS)

        self.reconciler.apply_deltas(context.project, file_node, result.dependency_deltas)

        if result.fixed_intent_notation is not None:
            logger.info("compile %s: the compiler suggested a corrected IntentCode version", relative)
        self.graph.set_content(file_node, content=result.fixed_intent_notation or intent_code)
        self.graph.upsert_derived_data(
            file_node,
            NodeType.COMPILER_DATA,
            COMPILER_DATA_NAME,
            result.model_dump(mode="json", by_alias=True, exclude={"target_source"}),
        )

    # ----- housekeeping -----

    def _prune_missing(
        self, context: BuildContext, root: GraphNode, *, dir_type: NodeType, file_type: NodeType
    ) -> None:
        """Cascade-delete file nodes whose file no longer exists on disk."""
        for path, node in self.graph.file_nodes(root, dir_type=dir_type, file_type=file_type):
            if not path.is_file():
                logger.info("Removing graph entries for deleted file %s", path)
                self._forget_file(context, node)

    def _forget_file(self, context: BuildContext, node: GraphNode) -> None:
        self.graph.cascade_delete(node, including_self=True)
        # Its dependency edges went with it; drop names no other file declares.
        self.reconciler.reconcile(context.project)


def _validate_compile(result: CompileResult) -> None:
    if result.target_source is None and not result.errors:
        raise ResultValidationError("compile result has neither targetSource nor errors")
