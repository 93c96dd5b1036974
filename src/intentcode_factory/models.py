from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .utils import parse_min_version


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Graph records
# ---------------------------------------------------------------------------

class NodeType(str, Enum):
    PROJECT = "project"
    SPECS_ROOT = "specs root"
    SPEC_DIR = "spec dir"
    SPEC_FILE = "spec file"
    INTENT_ROOT = "intent root"
    INTENT_DIR = "intent dir"
    INTENT_FILE = "intent file"
    SOURCE_ROOT = "source root"
    SOURCE_DIR = "source dir"
    SOURCE_FILE = "source file"
    TECH_STACK_DATA = "tech stack data"
    INTENT_LOWERING_DATA = "intent lowering data"
    INDEXED_DATA = "indexed data"
    COMPILER_DATA = "compiler data"
    DEPS = "deps"
    EXTENSIONS = "extensions"
    EXTENSION = "extension"


class NodeStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class EdgeType(str, Enum):
    IMPLEMENTS = "implements"
    DEPENDS_ON = "depends on"


# Well-known names of singleton children.
SPECS_ROOT_NAME = "Specs"
INTENT_ROOT_NAME = "Intent"
SOURCE_ROOT_NAME = "Source"
TECH_STACK_DATA_NAME = "Tech stack"
INTENT_LOWERING_DATA_NAME = "Intent lowering"
INDEXED_DATA_NAME = "Indexed data"
COMPILER_DATA_NAME = "Compiler data"
DEPS_NAME = "Dependencies"
EXTENSIONS_NAME = "Extensions"


class GraphNode(BaseModel):
    """A directory, file or derived artifact in the build graph.

    ``(parent_id, instance_id, type, name)`` is unique across the graph.
    """

    id: str = Field(default_factory=_new_id)
    parent_id: str | None = None
    instance_id: str
    status: NodeStatus = NodeStatus.ACTIVE
    type: NodeType
    name: str = Field(min_length=1)
    content: str | None = None
    content_hash: str | None = None
    json_content: dict[str, Any] | None = None
    json_content_hash: str | None = None
    content_updated: datetime | None = None
    created: datetime = Field(default_factory=_utc_now)
    updated: datetime = Field(default_factory=_utc_now)

    @property
    def unique_key(self) -> tuple[str | None, str, str, str]:
        return (self.parent_id, self.instance_id, self.type.value, self.name)

    @property
    def path(self) -> Path | None:
        """Filesystem path recorded on root and project nodes, if any."""
        if not self.json_content or not self.json_content.get("path"):
            return None
        return Path(self.json_content["path"])


class GraphEdge(BaseModel):
    id: str = Field(default_factory=_new_id)
    from_id: str
    to_id: str
    type: EdgeType
    name: str = ""
    created: datetime = Field(default_factory=_utc_now)

    @property
    def unique_key(self) -> tuple[str, str, str, str]:
        return (self.from_id, self.to_id, self.type.value, self.name)


class GenerationRecord(BaseModel):
    """Last validated output for one prompt under one tool, scoped to a derived-data node."""

    id: str = Field(default_factory=_new_id)
    node_id: str
    tool_id: str
    prompt_hash: str
    prompt: str
    content: str
    json_content: dict[str, Any] | None = None
    created: datetime = Field(default_factory=_utc_now)

    @property
    def unique_key(self) -> tuple[str, str, str]:
        return (self.node_id, self.tool_id, self.prompt_hash)


class GraphSnapshot(BaseModel):
    """On-disk document holding the whole graph."""

    version: int = 1
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)
    generations: list[GenerationRecord] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Generated result schemas
# ---------------------------------------------------------------------------

class _ResponseModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Message(_ResponseModel):
    text: str
    line: int | None = None
    from_: int | None = Field(default=None, alias="from")
    to: int | None = None


class Assumption(_ResponseModel):
    text: str
    level: str | None = None


class DependencyOperation(str, Enum):
    ADD = "add"
    REMOVE = "remove"


class DependencyDelta(_ResponseModel):
    operation: DependencyOperation
    name: str = Field(min_length=1)
    min_version: str | None = Field(default=None, alias="minVersion")

    @model_validator(mode="after")
    def _add_requires_version(self) -> "DependencyDelta":
        if self.operation == DependencyOperation.ADD and not (self.min_version or "").strip():
            raise ValueError(f"dependency delta 'add {self.name}' is missing minVersion")
        if self.min_version is not None and parse_min_version(self.min_version) is None:
            raise ValueError(f"dependency delta '{self.name}' has an unreadable minVersion {self.min_version!r}")
        return self


class StageResult(_ResponseModel):
    """Diagnostics shared by every stage result."""

    warnings: list[Message] = Field(default_factory=list)
    errors: list[Message] = Field(default_factory=list)


class TechStackResult(StageResult):
    extensions: dict[str, str] = Field(default_factory=dict)
    dependency_deltas: dict[str, str] = Field(default_factory=dict, alias="dependencyDeltas")

    @field_validator("dependency_deltas")
    @classmethod
    def _readable_versions(cls, value: dict[str, str]) -> dict[str, str]:
        unreadable = sorted(name for name, version in value.items() if parse_min_version(version) is None)
        if unreadable:
            raise ValueError(f"unreadable dependency versions: {', '.join(unreadable)}")
        return value


class IntentFileDelta(str, Enum):
    SET = "set"
    DELETE = "delete"


class IntentFileEntry(_ResponseModel):
    project_no: int = Field(alias="projectNo")
    relative_path: str = Field(alias="relativePath")
    content: str | None = None
    file_delta: IntentFileDelta = Field(default=IntentFileDelta.SET, alias="fileDelta")

    @field_validator("relative_path")
    @classmethod
    def _relative_path_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("relativePath must be non-empty")
        return value.strip()

    @model_validator(mode="after")
    def _set_requires_content(self) -> "IntentFileEntry":
        if self.file_delta == IntentFileDelta.SET and self.content is None:
            raise ValueError(f"intent file {self.relative_path!r} has fileDelta=set but no content")
        return self


class SpecsToIntentResult(StageResult):
    intent_files: list[IntentFileEntry] = Field(default_factory=list, alias="intentFiles")


class IndexResult(StageResult):
    ast_tree: dict[str, Any] | list[Any] = Field(alias="astTree")


class CompileResult(StageResult):
    assumptions: list[Assumption] = Field(default_factory=list)
    fixed_intent_notation: str | None = Field(default=None, alias="fixedIntentNotation")
    target_source: str | None = Field(default=None, alias="targetSource")
    dependency_deltas: list[DependencyDelta] = Field(default_factory=list, alias="dependencyDeltas")


# ---------------------------------------------------------------------------
# Extensions
# ---------------------------------------------------------------------------

class ExtensionSpec(_ResponseModel):
    """An installed extension: skill prompting per target file extension plus hook names.

    ``hooks`` is informational. The pipeline runs no hooks; ``extensions list``
    shows them so users can see what an extension expects of its host.
    """

    id: str = Field(min_length=1)
    name: str = ""
    version: str = Field(min_length=1)
    skill_prompting: dict[str, str] = Field(default_factory=dict, alias="skillPrompting")
    hooks: list[str] = Field(default_factory=list)
