from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Callable, Sequence

import pytest

from intentcode_factory.llm import ChatTurn, EndpointReply, NormalizedMessages, ToolConfig, normalize_turns
from intentcode_factory.model_selection import VALID_TOOLS, ToolModelSelection
from intentcode_factory.orchestrator import BuildServices
from intentcode_factory.projects import ProjectRoots
from intentcode_factory.settings import RuntimeSettings

Responder = Callable[[str, str], Any]

_SPEC_FILE_RE = re.compile(r"^## Spec file: (.+)$", re.MULTILINE)
_INTENT_FILE_RE = re.compile(r"^## Intent file: (.+)$", re.MULTILINE)


class ScriptedEndpoint:
    """Generative endpoint double; replies come from ``responder(tool_id, prompt)``.

    A responder may return a dict (sent as JSON), a raw string, or an
    exception instance, which is raised from ``send``.
    """

    def __init__(self, responder: Responder) -> None:
        self.responder = responder
        self.calls: list[tuple[str, str]] = []

    def prepare_messages(
        self,
        tool: ToolConfig,
        role_context: str,
        prior_turns: Sequence[ChatTurn],
    ) -> NormalizedMessages:
        turns = normalize_turns(
            role_context,
            prior_turns,
            supports_system_role=tool.supports_system_role,
            forbid_consecutive_roles=tool.forbid_consecutive_roles,
        )
        return NormalizedMessages(tool=tool, turns=turns)

    def send(self, messages: NormalizedMessages) -> EndpointReply:
        prompt = messages.turns[-1].text
        self.calls.append((messages.tool.tool_id, prompt))
        reply = self.responder(messages.tool.tool_id, prompt)
        if isinstance(reply, Exception):
            raise reply
        text = reply if isinstance(reply, str) else json.dumps(reply)
        return EndpointReply(reply_texts=[text], input_tokens=len(prompt), output_tokens=len(text))

    def calls_for(self, tool: str) -> list[str]:
        return [prompt for tool_id, prompt in self.calls if tool_id.startswith(f"{tool}:")]


def spec_file_of(prompt: str) -> str:
    match = _SPEC_FILE_RE.search(prompt)
    assert match is not None, prompt
    return match.group(1).strip()


def intent_file_of(prompt: str) -> str:
    match = _INTENT_FILE_RE.search(prompt)
    assert match is not None, prompt
    return match.group(1).strip()


def project_responder(tool_id: str, prompt: str) -> dict[str, Any]:
    """Deterministic replies for a small TypeScript project."""
    tool = tool_id.split(":", 1)[0]
    if tool == "tech-stack":
        return {"extensions": {}, "dependencyDeltas": {"zod": "3.22.0"}}
    if tool == "specs-to-intent":
        spec_path = spec_file_of(prompt)
        stem = spec_path[: -len(".md")]
        return {
            "intentFiles": [
                {
                    "projectNo": 1,
                    "relativePath": f"{stem}.ts.md",
                    "fileDelta": "set",
                    "content": f"# {stem}\nexport function {stem.replace('/', '_')}(): number\n",
                }
            ]
        }
    if tool == "indexer":
        return {"astTree": {"file": intent_file_of(prompt), "functions": ["main"]}}
    if tool == "compiler":
        intent_path = intent_file_of(prompt)
        return {
            "assumptions": [{"text": "numbers are integers", "level": "low"}],
            "warnings": [],
            "errors": [],
            "targetSource": f"// compiled from {intent_path}\nexport const answer = 42;\n",
            "dependencyDeltas": [{"operation": "add", "name": "lodash", "minVersion": "4.17.21"}],
        }
    raise AssertionError(f"unexpected tool {tool_id}")


def make_settings(tmp_path: Path, **overrides: Any) -> RuntimeSettings:
    values: dict[str, Any] = {"state_store_root": str(tmp_path / "state_store")}
    values.update(overrides)
    return RuntimeSettings(**values).normalized()


def make_services(
    tmp_path: Path,
    endpoint: ScriptedEndpoint,
    *,
    settings: RuntimeSettings | None = None,
) -> BuildServices:
    return BuildServices.from_settings(
        settings if settings is not None else make_settings(tmp_path),
        endpoint=endpoint,
        tools=ToolModelSelection(by_tool={tool: "fake-model" for tool in VALID_TOOLS}),
        repo_root=tmp_path,
    )


@pytest.fixture
def endpoint() -> ScriptedEndpoint:
    return ScriptedEndpoint(project_responder)


@pytest.fixture
def services(tmp_path: Path, endpoint: ScriptedEndpoint) -> BuildServices:
    return make_services(tmp_path, endpoint)


@pytest.fixture
def roots(services: BuildServices, tmp_path: Path) -> ProjectRoots:
    return services.projects.setup_project("demo", tmp_path / "demo")
