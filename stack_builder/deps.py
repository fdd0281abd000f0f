"""Package reference handling for Python solutions.

Parses PEP 508 dependency strings and rewrites pyproject.toml files so that
package references to other solutions of the stack are pinned to the exact
versions being built.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, cast

from packaging.requirements import Requirement
from packaging.utils import canonicalize_name

from .models import Artifact, ArtifactInstance
from .toml import dependency_lists, load_toml, save_toml
from .versions import from_pep440


def dep_canonical_name(dep_str: str) -> str:
    """Extract the canonical package name from a PEP 508 dependency string.

    Examples:
        "requests>=2.0" → "requests"
        "My_Package[extra]~=1.0" → "my-package"
    """
    return canonicalize_name(Requirement(dep_str).name)


def pin_dep(dep_str: str, version: str) -> str:
    """Pin a PEP 508 dependency to an exact version.

    Preserves extras and environment markers, replaces the version
    specifier with an exact pin.

    Examples:
        pin_dep("requests>=2.0", "2.31.0") → "requests==2.31.0"
        pin_dep("pkg[z,a]~=1.0", "1.5.0") → "pkg[a,z]==1.5.0"
    """
    req = Requirement(dep_str)
    extras = f"[{','.join(sorted(req.extras))}]" if req.extras else ""
    marker = f"; {req.marker}" if req.marker else ""
    return f"{req.name}{extras}=={version}{marker}"


def referenced_version(dep_str: str) -> str | None:
    """The version a dependency string refers to, if it names one.

    An exact pin gives its version; a lower bound gives the bound. Anything
    else (no specifier, ranges without lower bound) gives None.
    """
    for spec in Requirement(dep_str).specifier:
        if spec.operator in ("==", "===", ">=", "~="):
            return spec.version
    return None


def read_package_references(pyproject_path: Path) -> list[ArtifactInstance]:
    """Package references of a project, for the dependencies that name a version.

    Versions are read the way they are written; a reference without
    version is reported at 0.0.0 so that any stack version upgrades it.
    """
    doc = load_toml(pyproject_path)
    refs: dict[str, ArtifactInstance] = {}
    for dep_str in (d for deps in dependency_lists(doc) for d in deps):
        name = dep_canonical_name(str(dep_str))
        version = referenced_version(str(dep_str)) or "0.0.0"
        refs.setdefault(
            name, Artifact(type="pypi", name=name).with_version(from_pep440(version))
        )
    return list(refs.values())


def rewrite_pyproject(
    pyproject_path: Path,
    internal_dep_versions: dict[str, str],
    new_version: str | None = None,
) -> bool:
    """Pin internal dependencies and optionally update the package version.

    Internal deps are pinned wherever requirements are listed (see
    :func:`dependency_lists`).

    Args:
        pyproject_path: Path to the pyproject.toml file.
        internal_dep_versions: Map of package name → version for internal deps.
        new_version: New [project].version, if it must change.

    Returns:
        True if the file was modified.
    """
    doc = load_toml(pyproject_path)
    # Cast needed because tomlkit types are complex unions
    project = cast(dict[str, Any], doc["project"])
    changed = False
    if new_version is not None and project.get("version") != new_version:
        project["version"] = new_version
        changed = True

    if internal_dep_versions:
        for deps in dependency_lists(doc):
            changed |= _pin_dep_list(deps, internal_dep_versions)

    if changed:
        save_toml(pyproject_path, doc)
    return changed


def _pin_dep_list(deps: list, versions: dict[str, str]) -> bool:
    """Pin internal dependencies in a list, modifying in place."""
    changed = False
    for i, dep_str in enumerate(deps):
        name = dep_canonical_name(str(dep_str))
        if name in versions:
            pinned = pin_dep(str(dep_str), versions[name])
            if pinned != str(dep_str):
                deps[i] = pinned
                changed = True
    return changed
