"""Prompt builders for each generative tool.

Every builder is a pure function of its arguments and renders maps in sorted
order: the prompt text is the cache key, so the same inputs must always
produce the same bytes.
"""

from __future__ import annotations

import json
from typing import Any, Mapping, Sequence

from .models import ExtensionSpec

TECH_STACK_ROLE = (
    "You are a software architect. You read a project's tech-stack specification and "
    "resolve it into the extensions and external library dependencies the project needs. "
    "Reply with a single JSON object only."
)

SPECS_TO_INTENT_ROLE = (
    "You translate natural-language specifications into IntentCode: concise, structured "
    "pseudo-code with one file per source file, named <name>.<target extension>.md. "
    "Reply with a single JSON object only."
)

INDEXER_ROLE = (
    "You index IntentCode files. You extract an abstract syntax tree of the declared "
    "types, functions, their parameters and return types, and what each file imports. "
    "Reply with a single JSON object only."
)

COMPILER_ROLE = (
    "You compile IntentCode into production source code in the target language. "
    "You only use the dependencies you declare. Reply with a single JSON object only."
)

_MESSAGES_SCHEMA = '"warnings": [{"text": "...", "line": 1, "from": 0, "to": 5}], "errors": []'


def _json_block(value: Any) -> str:
    return json.dumps(value, indent=2, sort_keys=True)


def render_extensions(extensions: Sequence[ExtensionSpec]) -> str:
    if not extensions:
        return "(no extensions installed)"
    return "\n".join(
        f"- {extension.id}@{extension.version}" + (f": {extension.name}" if extension.name else "")
        for extension in sorted(extensions, key=lambda item: item.id)
    )


def build_tech_stack_prompt(*, spec_text: str, extensions: Sequence[ExtensionSpec]) -> str:
    return "\n".join(
        [
            "## Task",
            "Resolve the tech stack described below.",
            "",
            "## Installed extensions",
            render_extensions(extensions),
            "",
            "## Output format",
            "{" + _MESSAGES_SCHEMA + ', "extensions": {"<extension id>": "<min version>"}, '
            '"dependencyDeltas": {"<library name>": "<min version>"}}',
            "Report problems with the specification as warnings or errors.",
            "",
            "## Tech stack specification",
            spec_text,
        ]
    )


def build_specs_to_intent_prompt(
    *,
    spec_relative_path: str,
    spec_text: str,
    projects: Mapping[int, str],
    tech_stack: Mapping[str, Any] | None,
    extensions: Sequence[ExtensionSpec],
) -> str:
    project_lines = [f"- projectNo {number}: {name}" for number, name in sorted(projects.items())]
    return "\n".join(
        [
            "## Task",
            "Write the IntentCode files that implement the specification below.",
            "",
            "## Projects",
            *project_lines,
            "",
            "## Tech stack",
            _json_block(dict(tech_stack)) if tech_stack is not None else "(not resolved)",
            "",
            "## Installed extensions",
            render_extensions(extensions),
            "",
            "## Output format",
            "{" + _MESSAGES_SCHEMA + ', "intentFiles": [{"projectNo": 1, '
            '"relativePath": "<dir>/<name>.<target ext>.md", "fileDelta": "set", "content": "..."}]}',
            'Use "fileDelta": "delete" (without content) to remove an IntentCode file.',
            "",
            f"## Spec file: {spec_relative_path}",
            spec_text,
        ]
    )


def build_index_prompt(
    *,
    intent_relative_path: str,
    target_ext: str,
    intent_code: str,
    skill_prompting: str,
) -> str:
    return "\n".join(
        [
            "## Task",
            "Index the IntentCode file below.",
            "",
            f"## Target language: {target_ext}",
            skill_prompting or "(no target language guidance)",
            "",
            "## Output format",
            "{" + _MESSAGES_SCHEMA + ', "astTree": {"imports": [], "types": [], "functions": []}}',
            "",
            f"## Intent file: {intent_relative_path}",
            intent_code,
        ]
    )


def build_compile_prompt(
    *,
    intent_relative_path: str,
    target_ext: str,
    intent_code: str,
    indexed_data: Mapping[str, Any],
    deps: Mapping[str, str],
    skill_prompting: str,
    extensions: Sequence[ExtensionSpec],
) -> str:
    dependency_lines = [f"- {name}: {version}" for name, version in sorted(deps.items())] or ["(none yet)"]
    return "\n".join(
        [
            "## Task",
            "Compile the IntentCode file below into source code.",
            "",
            f"## Target language: {target_ext}",
            skill_prompting or "(no target language guidance)",
            "",
            "## Installed extensions",
            render_extensions(extensions),
            "",
            "## Project dependencies",
            *dependency_lines,
            "Declare any library the source needs as a dependency delta; remove ones it no longer uses.",
            "",
            "## Index of all IntentCode files",
            _json_block(dict(indexed_data)),
            "",
            "## Output format",
            '{"assumptions": [{"text": "...", "level": "low"}], ' + _MESSAGES_SCHEMA + ", "
            '"fixedIntentNotation": null, "targetSource": "...", '
            '"dependencyDeltas": [{"operation": "add", "name": "...", "minVersion": "1.0.0"}]}',
            "Set fixedIntentNotation only when the IntentCode needs a correction.",
            "",
            f"## Intent file: {intent_relative_path}",
            intent_code,
        ]
    )
