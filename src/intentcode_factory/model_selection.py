from __future__ import annotations

import json
import os
from dataclasses import dataclass

from .llm import ToolConfig
from .settings import RuntimeSettings

TOOL_TECH_STACK = "tech-stack"
TOOL_SPECS_TO_INTENT = "specs-to-intent"
TOOL_INDEXER = "indexer"
TOOL_COMPILER = "compiler"

VALID_TOOLS: frozenset[str] = frozenset({TOOL_TECH_STACK, TOOL_SPECS_TO_INTENT, TOOL_INDEXER, TOOL_COMPILER})

TOOL_ENV_KEYS: dict[str, str] = {
    tool: "INTENTCODE_MODEL_" + tool.upper().replace("-", "_") for tool in sorted(VALID_TOOLS)
}


@dataclass(frozen=True)
class ToolModelSelection:
    """Maps each generative tool to the concrete model that serves it.

    The resolved ``tool_id`` embeds the model name, so switching a tool to a
    different model never serves generations cached under the old one.
    """

    by_tool: dict[str, str]
    timeout: int = 120

    def __post_init__(self) -> None:
        """Validate that every tool is present and no tool maps to an empty model name."""
        missing = VALID_TOOLS - set(self.by_tool)
        if missing:
            raise ValueError(f"ToolModelSelection missing tools: {', '.join(sorted(missing))}")
        unknown = set(self.by_tool) - VALID_TOOLS
        if unknown:
            raise ValueError(
                f"Unknown tools {', '.join(sorted(unknown))}. Valid tools: {', '.join(sorted(VALID_TOOLS))}"
            )
        for tool, model_name in self.by_tool.items():
            if not model_name or not model_name.strip():
                raise ValueError(f"ToolModelSelection tool '{tool}' has empty model name")

    @classmethod
    def from_env(cls, settings: RuntimeSettings | None = None) -> "ToolModelSelection":
        """Build the selection from settings and environment overrides.

        Environment variables:
            INTENTCODE_MODEL_TECH_STACK, INTENTCODE_MODEL_SPECS_TO_INTENT,
            INTENTCODE_MODEL_INDEXER, INTENTCODE_MODEL_COMPILER: per-tool model.
            INTENTCODE_MODEL_OVERRIDES_JSON: JSON object of tool -> model,
                applied last.

        Raises:
            ValueError: If the overrides are not a JSON object of strings or name unknown tools.
        """
        settings = settings if settings is not None else RuntimeSettings.from_env()
        by_tool = {tool: settings.default_model for tool in VALID_TOOLS}
        for tool, env_key in TOOL_ENV_KEYS.items():
            configured = os.getenv(env_key)
            if configured and configured.strip():
                by_tool[tool] = configured.strip()

        raw_overrides = os.getenv("INTENTCODE_MODEL_OVERRIDES_JSON")
        if raw_overrides:
            try:
                overrides = json.loads(raw_overrides)
            except json.JSONDecodeError as exc:
                raise ValueError(f"INTENTCODE_MODEL_OVERRIDES_JSON is not valid JSON: {exc}") from exc
            if not isinstance(overrides, dict) or not all(
                isinstance(key, str) and isinstance(value, str) for key, value in overrides.items()
            ):
                raise ValueError("INTENTCODE_MODEL_OVERRIDES_JSON must be a JSON object of tool -> model name")
            by_tool.update({key: value.strip() for key, value in overrides.items()})

        return cls(by_tool=by_tool, timeout=settings.llm_timeout_seconds)

    def resolve(self, tool: str) -> ToolConfig:
        """Return the call configuration for *tool*.

        Raises:
            ValueError: If *tool* is not a known tool.
        """
        if tool not in self.by_tool:
            raise ValueError(f"Unknown tool '{tool}'. Valid tools: {', '.join(sorted(self.by_tool))}")
        model_name = self.by_tool[tool]
        return ToolConfig(tool_id=f"{tool}:{model_name}", model_name=model_name, timeout=self.timeout)
