from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from .dependencies import DependencyReconciler
from .errors import GraphInvariantError, ManifestDriftError
from .models import GraphNode
from .utils import from_json_file, is_higher_version, write_text_if_changed

logger = logging.getLogger(__name__)

DOT_INTENTCODE_DIR = ".intentcode"
DEPS_JSON = "deps.json"
TECH_STACK_JSON = "tech-stack.json"
PACKAGE_JSON = "package.json"


@dataclass(frozen=True)
class ManifestSync:
    """Outcome of mirroring the dependency manifest to disk."""

    changed: bool
    path: Path
    deps: dict[str, str] = field(default_factory=dict)


def dot_intentcode_dir(project: GraphNode) -> Path:
    if project.path is None:
        raise GraphInvariantError(f"Project node {project.name!r} has no path")
    return project.path / DOT_INTENTCODE_DIR


def render_deps_json(deps: dict[str, str]) -> str:
    return json.dumps({"deps": dict(sorted(deps.items()))}, indent=2) + "\n"


def update_package_json(path: Path, deps: dict[str, str]) -> bool:
    """Raise ``dependencies`` entries in a package.json to at least ``^minVersion``.

    Entries are only ever added or upgraded, never lowered or removed. A
    missing package.json is left alone.

    Returns:
        True when the file was rewritten.
    """
    if not path.is_file():
        return False
    data = from_json_file(path)
    section = data.setdefault("dependencies", {})
    if not isinstance(section, dict):
        raise ValueError(f"'dependencies' in {path} is not an object")
    updated = False
    for name, min_version in sorted(deps.items()):
        current = section.get(name)
        if current is None or is_higher_version(min_version, str(current)):
            section[name] = f"^{min_version}"
            updated = True
    if updated:
        write_text_if_changed(path, json.dumps(data, indent=2) + "\n")
        logger.info("Updated dependencies in %s", path)
    return updated


class ManifestFiles:
    """Keeps ``.intentcode/deps.json`` (and package.json, if any) in step with the graph's manifest.

    The graph is authoritative. ``json_content["synced"]`` on the manifest
    node records what was last written to disk, which is what :meth:`verify`
    checks the file against.
    """

    def __init__(self, reconciler: DependencyReconciler) -> None:
        self.reconciler = reconciler

    def deps_json_path(self, project: GraphNode) -> Path:
        return dot_intentcode_dir(project) / DEPS_JSON

    def synced_deps(self, project: GraphNode) -> dict[str, str]:
        manifest = self.reconciler.manifest_node(project)
        return dict((manifest.json_content or {}).get("synced", {}))

    def sync(self, project: GraphNode) -> ManifestSync:
        """Reconcile the manifest and mirror it to disk if it changed since the last sync.

        Returns:
            ``ManifestSync`` with ``changed=True`` when the dependency set differs
            from the last synced one.
        """
        deps = self.reconciler.reconcile(project)
        manifest = self.reconciler.manifest_node(project)
        manifest_json = dict(manifest.json_content or {})
        synced = manifest_json.get("synced", {})
        path = self.deps_json_path(project)
        changed = synced != deps
        if changed or not path.is_file():
            write_text_if_changed(path, render_deps_json(deps))
            update_package_json(dot_intentcode_dir(project).parent / PACKAGE_JSON, deps)
        if changed:
            manifest_json["synced"] = deps
            self.reconciler.graph.set_content(manifest, json_content=manifest_json)
            logger.info("Dependency manifest changed: %s", ", ".join(f"{k}@{v}" for k, v in deps.items()) or "(empty)")
        return ManifestSync(changed=changed, path=path, deps=deps)

    def verify(self, project: GraphNode) -> None:
        """Check the mirrored deps.json against the graph's last synced copy.

        A missing file means nothing has been synced yet and is not drift.

        Raises:
            ManifestDriftError: If the file content differs from the synced manifest.
        """
        path = self.deps_json_path(project)
        if not path.is_file():
            return
        try:
            on_disk = from_json_file(path)
        except (json.JSONDecodeError, ValueError) as exc:
            raise ManifestDriftError(f"{path} is not a valid manifest: {exc}") from exc
        expected = {"deps": dict(sorted(self.synced_deps(project).items()))}
        if on_disk != expected:
            logger.error("Manifest drift: graph has %s, %s has %s", expected, path, on_disk)
            raise ManifestDriftError(f"{path} does not match the project's dependency manifest")
