"""TOML reading and writing utilities.

Every file stack-builder reads or writes is TOML: the stack manifest, the
projects' pyproject.toml files, the release roadmap and the bootstrap
cache. tomlkit keeps their formatting and comments when they are
rewritten, so the diffs stay readable.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomlkit
from packaging.utils import canonicalize_name


def load_toml(path: Path, missing_ok: bool = False) -> tomlkit.TOMLDocument:
    """Parse a TOML file. A missing file reads as an empty document when ``missing_ok``."""
    if missing_ok and not path.exists():
        return tomlkit.document()
    return tomlkit.parse(path.read_text())


def save_toml(path: Path, doc: tomlkit.TOMLDocument) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(tomlkit.dumps(doc))


def get_project_name(doc: tomlkit.TOMLDocument, fallback: str) -> str:
    """Canonical (PEP 503) package name from [project].name."""
    return canonicalize_name(doc.get("project", {}).get("name", fallback))


def dependency_lists(doc: tomlkit.TOMLDocument) -> list[Any]:
    """The arrays of a pyproject.toml that hold PEP 508 requirements.

    They are returned as the document's own arrays, so that pinning an
    entry in place edits the document:
    - [project].dependencies
    - [project].optional-dependencies.*
    - [dependency-groups].*
    - [build-system].requires
    """
    project = doc.get("project", {})
    found: list[Any] = [project.get("dependencies")]
    found.extend(project.get("optional-dependencies", {}).values())
    found.extend(doc.get("dependency-groups", {}).values())
    found.append(doc.get("build-system", {}).get("requires"))
    return [deps for deps in found if isinstance(deps, list)]
