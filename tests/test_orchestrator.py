from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from conftest import ScriptedEndpoint, intent_file_of, make_services, make_settings, project_responder, spec_file_of

from intentcode_factory.errors import DiagnosticsError, FatalBuildError, GenerationFailedError, ManifestDriftError
from intentcode_factory.models import EdgeType, ExtensionSpec, NodeType
from intentcode_factory.orchestrator import DEFAULT_STAGE_SEQUENCE, BuildOrchestrator, BuildPlan, BuildServices
from intentcode_factory.projects import ProjectRoots
from intentcode_factory.stages import BuildStageType


def _write_specs(roots: ProjectRoots) -> None:
    (roots.specs_path / "tech-stack.md").write_text("TypeScript on Node 20 with zod.\n", encoding="utf-8")
    (roots.specs_path / "calc.md").write_text("A calculator that adds numbers.\n", encoding="utf-8")


def _mtimes(root: Path) -> dict[str, int]:
    return {
        str(path.relative_to(root)): path.stat().st_mtime_ns
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


def test_build_plan_pop_and_replan() -> None:
    plan = BuildPlan()
    assert plan.pop_next() == BuildStageType.TECH_STACK
    assert plan.pop_next() == BuildStageType.SPECS_TO_INTENT

    plan.replan()

    assert plan.replans == 1
    assert plan.stages[:2] == [BuildStageType.TECH_STACK, BuildStageType.SPECS_TO_INTENT]
    assert plan.pending == list(DEFAULT_STAGE_SEQUENCE)

    empty = BuildPlan(stages=[])
    assert empty.pop_next() is None


def test_first_build_produces_artifacts(services: BuildServices, roots: ProjectRoots, endpoint: ScriptedEndpoint) -> None:
    _write_specs(roots)

    summary = BuildOrchestrator(services, "demo").run()

    intent_file = roots.intent_path / "calc.ts.md"
    source_file = roots.source_path / "calc.ts"
    assert intent_file.read_text(encoding="utf-8").startswith("# calc\n")
    assert source_file.read_text(encoding="utf-8") == "// compiled from calc.ts.md\nexport const answer = 42;\n"
    deps = json.loads((roots.path / ".intentcode" / "deps.json").read_text(encoding="utf-8"))
    assert deps == {"deps": {"lodash": "4.17.21", "zod": "3.22.0"}}
    tech_stack = json.loads((roots.path / ".intentcode" / "tech-stack.json").read_text(encoding="utf-8"))
    assert tech_stack == {"deps": {"zod": "3.22.0"}, "extensions": {}}

    # tech stack changes deps once, compile once more
    assert summary.replans == 2
    assert len(endpoint.calls_for("tech-stack")) == 1
    assert len(endpoint.calls_for("specs-to-intent")) == 1
    assert len(endpoint.calls_for("indexer")) == 1
    compile_prompts = endpoint.calls_for("compiler")
    assert len(compile_prompts) == 2
    assert "- lodash: 4.17.21" in compile_prompts[-1]

    graph = services.graph
    intent_node = graph.find_path(
        roots.intent, intent_file, dir_type=NodeType.INTENT_DIR, file_type=NodeType.INTENT_FILE
    )
    source_node = graph.find_path(
        roots.source, source_file, dir_type=NodeType.SOURCE_DIR, file_type=NodeType.SOURCE_FILE
    )
    assert intent_node is not None and source_node is not None
    assert [edge.to_id for edge in graph.edges_from(intent_node, EdgeType.IMPLEMENTS)] == [source_node.id]
    assert graph.find_child(intent_node, NodeType.INDEXED_DATA, "Indexed data") is not None
    compiler_data = graph.find_child(intent_node, NodeType.COMPILER_DATA, "Compiler data")
    assert compiler_data is not None and compiler_data.json_content is not None
    assert "targetSource" not in compiler_data.json_content


def test_rebuild_without_changes_is_idempotent(
    tmp_path: Path, services: BuildServices, roots: ProjectRoots, endpoint: ScriptedEndpoint
) -> None:
    _write_specs(roots)
    BuildOrchestrator(services, "demo").run()
    calls_after_first = len(endpoint.calls)
    before = _mtimes(roots.path)

    # a fresh process: everything is reloaded from the state store on disk
    summary = BuildOrchestrator(make_services(tmp_path, endpoint), "demo").run()

    assert len(endpoint.calls) == calls_after_first
    assert summary.replans == 0
    assert summary.generated == 0
    assert summary.cache_hits == summary.units == 4
    assert _mtimes(roots.path) == before


def test_extension_version_change_misses_the_cache(
    services: BuildServices, roots: ProjectRoots, endpoint: ScriptedEndpoint
) -> None:
    services.extensions.install(roots.project, ExtensionSpec(id="ts-skills", name="TS", version="1.0.0"))
    _write_specs(roots)
    BuildOrchestrator(services, "demo").run()
    endpoint.calls.clear()
    before = _mtimes(roots.source_path)

    services.extensions.install(roots.project, ExtensionSpec(id="ts-skills", name="TS", version="1.1.0"))
    summary = BuildOrchestrator(services, "demo").run()

    # the indexer prompt carries skill prompting only, not extension versions
    calls = {tool: len(endpoint.calls_for(tool)) for tool in ("tech-stack", "specs-to-intent", "indexer", "compiler")}
    assert calls == {"tech-stack": 1, "specs-to-intent": 1, "indexer": 0, "compiler": 1}
    assert "ts-skills@1.1.0" in endpoint.calls_for("tech-stack")[0]
    assert "ts-skills@1.1.0" in endpoint.calls_for("compiler")[0]
    assert (summary.generated, summary.cache_hits, summary.replans) == (3, 1, 0)
    assert _mtimes(roots.source_path) == before


def test_editing_a_spec_regenerates_only_dependent_units(
    services: BuildServices, roots: ProjectRoots, endpoint: ScriptedEndpoint
) -> None:
    _write_specs(roots)
    (roots.specs_path / "lib").mkdir()
    (roots.specs_path / "lib" / "fmt.md").write_text("Formats numbers.\n", encoding="utf-8")
    BuildOrchestrator(services, "demo").run()
    endpoint.calls.clear()

    (roots.specs_path / "calc.md").write_text("A calculator that adds and subtracts numbers.\n", encoding="utf-8")
    BuildOrchestrator(services, "demo").run()

    assert endpoint.calls_for("tech-stack") == []
    assert [spec_file_of(prompt) for prompt in endpoint.calls_for("specs-to-intent")] == ["calc.md"]
    # the intent text is unchanged, so indexing and compiling are served from the cache
    assert endpoint.calls_for("indexer") == []
    assert endpoint.calls_for("compiler") == []


def test_deleted_spec_drops_its_graph_entries(services: BuildServices, roots: ProjectRoots) -> None:
    _write_specs(roots)
    BuildOrchestrator(services, "demo").run()
    spec_node = services.graph.find_path(
        roots.specs, roots.specs_path / "calc.md", dir_type=NodeType.SPEC_DIR, file_type=NodeType.SPEC_FILE
    )
    assert spec_node is not None

    (roots.specs_path / "calc.md").unlink()
    BuildOrchestrator(services, "demo").run()

    assert services.graph.get_node(spec_node.id) is None
    assert services.graph.find_orphans() == ([], [])


def test_deleted_intent_file_retracts_its_dependencies(services: BuildServices, roots: ProjectRoots) -> None:
    _write_specs(roots)
    BuildOrchestrator(services, "demo").run()
    (roots.specs_path / "calc.md").unlink()
    (roots.intent_path / "calc.ts.md").unlink()

    BuildOrchestrator(services, "demo").run()

    deps = json.loads((roots.path / ".intentcode" / "deps.json").read_text(encoding="utf-8"))
    assert deps == {"deps": {"zod": "3.22.0"}}


def test_specs_stage_deletes_intent_files(tmp_path: Path) -> None:
    def _responder(tool_id: str, prompt: str) -> dict[str, Any]:
        if tool_id.startswith("specs-to-intent:"):
            return {"intentFiles": [{"projectNo": 1, "relativePath": "old.ts.md", "fileDelta": "delete"}]}
        return project_responder(tool_id, prompt)

    endpoint = ScriptedEndpoint(_responder)
    services = make_services(tmp_path, endpoint)
    roots = services.projects.setup_project("demo", tmp_path / "demo")
    (roots.specs_path / "calc.md").write_text("Remove the old module.\n", encoding="utf-8")
    (roots.intent_path / "old.ts.md").write_text("# old\n", encoding="utf-8")

    BuildOrchestrator(services, "demo").run()

    assert not (roots.intent_path / "old.ts.md").exists()
    assert services.graph.find_child(roots.intent, NodeType.INTENT_FILE, "old.ts.md") is None
    assert endpoint.calls_for("indexer") == []


def test_invalid_intent_paths_exhaust_the_retry_budget(tmp_path: Path) -> None:
    def _responder(tool_id: str, prompt: str) -> dict[str, Any]:
        if tool_id.startswith("specs-to-intent:"):
            return {"intentFiles": [{"projectNo": 1, "relativePath": "../escape.ts.md", "content": "x"}]}
        return project_responder(tool_id, prompt)

    endpoint = ScriptedEndpoint(_responder)
    services = make_services(tmp_path, endpoint)
    roots = services.projects.setup_project("demo", tmp_path / "demo")
    (roots.specs_path / "calc.md").write_text("Spec.\n", encoding="utf-8")

    with pytest.raises(GenerationFailedError, match="must be relative"):
        BuildOrchestrator(services, "demo").run()
    assert len(endpoint.calls_for("specs-to-intent")) == 5
    assert not (tmp_path / "demo" / "escape.ts.md").exists()


def test_unknown_project_number_is_rejected(tmp_path: Path) -> None:
    def _responder(tool_id: str, prompt: str) -> dict[str, Any]:
        if tool_id.startswith("specs-to-intent:"):
            return {"intentFiles": [{"projectNo": 2, "relativePath": "calc.ts.md", "content": "x"}]}
        return project_responder(tool_id, prompt)

    services = make_services(tmp_path, ScriptedEndpoint(_responder))
    roots = services.projects.setup_project("demo", tmp_path / "demo")
    (roots.specs_path / "calc.md").write_text("Spec.\n", encoding="utf-8")

    with pytest.raises(GenerationFailedError, match="unknown projectNo 2"):
        BuildOrchestrator(services, "demo").run()


def test_compile_errors_abort_after_writing_source(tmp_path: Path) -> None:
    def _responder(tool_id: str, prompt: str) -> dict[str, Any]:
        if tool_id.startswith("compiler:"):
            return {
                "targetSource": "export const broken = ;",
                "errors": [{"text": "unknown type Money", "line": 2}],
                "dependencyDeltas": [],
            }
        return project_responder(tool_id, prompt)

    services = make_services(tmp_path, ScriptedEndpoint(_responder))
    roots = services.projects.setup_project("demo", tmp_path / "demo")
    _write_specs(roots)

    with pytest.raises(DiagnosticsError, match="compile calc.ts.md"):
        BuildOrchestrator(services, "demo").run()
    assert (roots.source_path / "calc.ts").read_text(encoding="utf-8") == "export const broken = ;\n"


def test_fixed_intent_notation_stays_in_the_graph(tmp_path: Path) -> None:
    def _responder(tool_id: str, prompt: str) -> dict[str, Any]:
        if tool_id.startswith("compiler:"):
            return {"targetSource": "export {};", "fixedIntentNotation": "# calc (fixed)\n"}
        return project_responder(tool_id, prompt)

    services = make_services(tmp_path, ScriptedEndpoint(_responder))
    roots = services.projects.setup_project("demo", tmp_path / "demo")
    _write_specs(roots)
    BuildOrchestrator(services, "demo").run()

    intent_file = roots.intent_path / "calc.ts.md"
    node = services.graph.find_path(
        roots.intent, intent_file, dir_type=NodeType.INTENT_DIR, file_type=NodeType.INTENT_FILE
    )
    assert node is not None
    assert node.content == "# calc (fixed)\n"
    assert "fixed" not in intent_file.read_text(encoding="utf-8")


def test_intent_files_without_target_extension_are_skipped(
    services: BuildServices, roots: ProjectRoots, endpoint: ScriptedEndpoint
) -> None:
    (roots.intent_path / "NOTES.md").write_text("scratch\n", encoding="utf-8")
    (roots.intent_path / "util.py.md").write_text("# util\n", encoding="utf-8")

    BuildOrchestrator(services, "demo").run()

    assert [intent_file_of(prompt) for prompt in endpoint.calls_for("indexer")] == ["util.py.md"]
    assert (roots.source_path / "util.py").is_file()


def test_multiple_tech_stack_files_are_fatal(services: BuildServices, roots: ProjectRoots) -> None:
    (roots.specs_path / "tech-stack.md").write_text("a\n", encoding="utf-8")
    (roots.specs_path / "web").mkdir()
    (roots.specs_path / "web" / "tech-stack.md").write_text("b\n", encoding="utf-8")

    with pytest.raises(FatalBuildError, match="Expected one tech-stack.md"):
        BuildOrchestrator(services, "demo").run()


def test_missing_required_extension_is_a_warning(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    def _responder(tool_id: str, prompt: str) -> dict[str, Any]:
        if tool_id.startswith("tech-stack:"):
            return {"extensions": {"react-skills": "2.0.0", "ts-skills": "1.0.0"}, "dependencyDeltas": {}}
        return project_responder(tool_id, prompt)

    services = make_services(tmp_path, ScriptedEndpoint(_responder))
    roots = services.projects.setup_project("demo", tmp_path / "demo")
    services.extensions.install(
        roots.project, ExtensionSpec(id="react-skills", version="1.5.0", skill_prompting={"tsx": "Use hooks."})
    )
    (roots.specs_path / "tech-stack.md").write_text("React.\n", encoding="utf-8")

    BuildOrchestrator(services, "demo").run()

    assert "'ts-skills' (>= 1.0.0) is not installed" in caplog.text
    assert "'react-skills' is at 1.5.0, but 2.0.0 is required" in caplog.text


def test_skill_prompting_reaches_index_and_compile_prompts(
    services: BuildServices, roots: ProjectRoots, endpoint: ScriptedEndpoint
) -> None:
    services.extensions.install(
        roots.project,
        ExtensionSpec(id="ts-skills", version="1.0.0", skill_prompting={"ts": "Prefer readonly arrays."}),
    )
    (roots.intent_path / "calc.ts.md").write_text("# calc\n", encoding="utf-8")

    BuildOrchestrator(services, "demo").run()

    assert "Prefer readonly arrays." in endpoint.calls_for("indexer")[0]
    assert "Prefer readonly arrays." in endpoint.calls_for("compiler")[0]


def test_manifest_drift_aborts_before_any_stage(
    services: BuildServices, roots: ProjectRoots, endpoint: ScriptedEndpoint
) -> None:
    _write_specs(roots)
    BuildOrchestrator(services, "demo").run()
    endpoint.calls.clear()
    (roots.path / ".intentcode" / "deps.json").write_text('{"deps": {}}\n', encoding="utf-8")

    with pytest.raises(ManifestDriftError):
        BuildOrchestrator(services, "demo").run()
    assert endpoint.calls == []


def test_replan_limit_is_fatal(tmp_path: Path, endpoint: ScriptedEndpoint) -> None:
    services = make_services(tmp_path, endpoint, settings=make_settings(tmp_path, max_replans=0))
    roots = services.projects.setup_project("demo", tmp_path / "demo")
    _write_specs(roots)

    with pytest.raises(FatalBuildError, match="re-plan"):
        BuildOrchestrator(services, "demo").run()


def test_parallel_build_matches_sequential_output(tmp_path: Path, endpoint: ScriptedEndpoint) -> None:
    services = make_services(tmp_path, endpoint, settings=make_settings(tmp_path, max_concurrency=4))
    roots = services.projects.setup_project("demo", tmp_path / "demo")
    _write_specs(roots)
    for name in ("a", "b", "c"):
        (roots.specs_path / f"{name}.md").write_text(f"Module {name}.\n", encoding="utf-8")

    BuildOrchestrator(services, "demo").run()

    assert sorted(path.name for path in roots.source_path.iterdir()) == ["a.ts", "b.ts", "c.ts", "calc.ts"]
    deps = json.loads((roots.path / ".intentcode" / "deps.json").read_text(encoding="utf-8"))
    assert deps == {"deps": {"lodash": "4.17.21", "zod": "3.22.0"}}


def test_advance_requires_a_prepared_context(services: BuildServices, roots: ProjectRoots) -> None:
    orchestrator = BuildOrchestrator(services, "demo")
    with pytest.raises(FatalBuildError, match="not prepared"):
        orchestrator._advance_node({"plan": BuildPlan()})
