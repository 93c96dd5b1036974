from __future__ import annotations

import logging
from pathlib import Path

from pydantic import ValidationError

from .graph import GraphStore
from .models import EXTENSIONS_NAME, ExtensionSpec, GraphNode, NodeType
from .utils import is_higher_version

logger = logging.getLogger(__name__)


def load_extension_file(path: Path) -> ExtensionSpec:
    """Parse an extension manifest (JSON) from disk.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not a valid extension manifest.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Extension file not found: {path}")
    try:
        return ExtensionSpec.model_validate_json(path.read_text(encoding="utf-8"))
    except ValidationError as exc:
        raise ValueError(f"Invalid extension file {path}: {exc}") from exc


def skill_prompting(extensions: list[ExtensionSpec], target_ext: str) -> str:
    """Concatenate the guidance every extension provides for *target_ext*, ordered by extension id."""
    sections = [
        f"### {extension.name or extension.id}\n{extension.skill_prompting[target_ext]}"
        for extension in sorted(extensions, key=lambda item: item.id)
        if target_ext in extension.skill_prompting
    ]
    return "\n\n".join(sections)


def missing_extensions(installed: list[ExtensionSpec], required: dict[str, str]) -> list[str]:
    """Describe required extensions that are absent or older than their minimum version."""
    by_id = {extension.id: extension for extension in installed}
    problems = []
    for extension_id, min_version in sorted(required.items()):
        extension = by_id.get(extension_id)
        if extension is None:
            problems.append(f"extension {extension_id!r} (>= {min_version}) is not installed")
        elif is_higher_version(min_version, extension.version):
            problems.append(
                f"extension {extension_id!r} is at {extension.version}, but {min_version} is required"
            )
    return problems


class ExtensionRegistry:
    """Extensions installed into a project, stored as graph nodes under an ``extensions`` container."""

    def __init__(self, graph: GraphStore) -> None:
        self.graph = graph

    def _container(self, project: GraphNode) -> GraphNode:
        return self.graph.get_or_create_node(project, NodeType.EXTENSIONS, EXTENSIONS_NAME)

    def install(self, project: GraphNode, extension: ExtensionSpec) -> GraphNode:
        """Install or upgrade an extension; its JSON content is replaced wholesale."""
        with self.graph.state_store.transaction():
            node = self.graph.upsert_derived_data(
                self._container(project),
                NodeType.EXTENSION,
                extension.id,
                extension.model_dump(mode="json", by_alias=True),
            )
        logger.info("Installed extension %s@%s into %r", extension.id, extension.version, project.name)
        return node

    def remove(self, project: GraphNode, extension_id: str) -> bool:
        container = self.graph.find_child(project, NodeType.EXTENSIONS, EXTENSIONS_NAME)
        if container is None:
            return False
        node = self.graph.find_child(container, NodeType.EXTENSION, extension_id)
        if node is None:
            return False
        self.graph.cascade_delete(node, including_self=True)
        logger.info("Removed extension %s from %r", extension_id, project.name)
        return True

    def installed(self, project: GraphNode) -> list[ExtensionSpec]:
        container = self.graph.find_child(project, NodeType.EXTENSIONS, EXTENSIONS_NAME)
        if container is None:
            return []
        extensions = [
            ExtensionSpec.model_validate(node.json_content or {})
            for node in self.graph.children(container, NodeType.EXTENSION)
        ]
        return sorted(extensions, key=lambda extension: extension.id)
