from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from pathlib import Path

import semver

_RANGE_OPERATOR_RE = re.compile(r"^\s*(?:[~^=v]|[<>]=?)*\s*")


def file_modified_time(path: Path) -> datetime:
    """Return the file's modification time as an aware UTC datetime."""
    return datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)


def list_files(root: Path, *, suffix: str) -> list[Path]:
    """Return files under *root* ending in *suffix*, sorted, skipping hidden entries."""
    if not root.is_dir():
        return []
    found = []
    for path in root.rglob(f"*{suffix}"):
        relative = path.relative_to(root)
        if any(part.startswith(".") for part in relative.parts):
            continue
        if path.is_file():
            found.append(path)
    return sorted(found)


def target_extension(filename: str | Path) -> str | None:
    """Return the target language extension of an intent file.

    ``calc.ts.md`` targets ``ts``; a name without a target part returns None.
    """
    parts = Path(filename).name.split(".")
    if len(parts) < 3 or not parts[-2]:
        return None
    return parts[-2]


def strip_intent_suffix(relative_path: str) -> str:
    """Map ``lib/calc.ts.md`` to the source path ``lib/calc.ts``."""
    if relative_path.endswith(".md"):
        return relative_path[: -len(".md")]
    return relative_path


def write_text_if_changed(path: Path, content: str) -> bool:
    """Write *content* unless the file already holds exactly that text.

    Unchanged files keep their modification time. Returns True when written.
    """
    if path.is_file() and path.read_text(encoding="utf-8") == content:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return True


def parse_min_version(spec: str) -> semver.Version | None:
    """Lowest version a simple range such as ``^1.2.0``, ``~3.1`` or ``>=2`` admits.

    Missing minor and patch parts default to zero. Returns None for anything
    semver cannot read (``*``, ``latest``, git urls).
    """
    text = _RANGE_OPERATOR_RE.sub("", spec).strip()
    try:
        return semver.Version.parse(text, optional_minor_and_patch=True)
    except ValueError:
        return None


def is_higher_version(candidate: str, current: str | None) -> bool:
    """True when *candidate*'s minimum sorts strictly above *current*'s.

    Prereleases sort below their release. When either side is unreadable the
    current value is kept.
    """
    if current is None:
        return True
    candidate_min = parse_min_version(candidate)
    current_min = parse_min_version(current)
    if candidate_min is None or current_min is None:
        return False
    return candidate_min > current_min


def to_json_file(data: dict[str, object], path: Path) -> bool:
    """Write pretty JSON (sorted keys, trailing newline) if it differs from the file."""
    return write_text_if_changed(path, json.dumps(data, indent=2, sort_keys=True) + "\n")


def from_json_file(path: Path) -> dict[str, object]:
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"Expected a JSON object in {path}")
    return payload
