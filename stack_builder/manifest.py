"""Stack manifest (stack.toml) loading.

The manifest lists the solutions of the stack and their projects::

    [config]
    develop_branch = "develop"

    [[solution]]
    name = "core"
    path = "core"

    [[solution.project]]
    name = "core-lib"
    path = "lib"

Projects default to a single one at the solution root. What a project
generates and references is read from its pyproject.toml unless the
manifest lists ``packages`` (generated package ids) and ``references``
(PEP 508 strings) itself.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from .config import StackConfig
from .deps import dep_canonical_name, read_package_references, referenced_version
from .models import Artifact, Project, Solution
from .toml import get_project_name, load_toml
from .versions import from_pep440

MANIFEST_NAME = "stack.toml"


def _project(entry: dict[str, Any], solution: str, solution_dir: Path) -> Project:
    name = str(entry.get("name", solution))
    path = str(entry.get("path", ""))
    package_type = str(entry.get("type", "pypi"))
    pyproject = solution_dir / path / "pyproject.toml"
    doc = load_toml(pyproject) if pyproject.exists() else None

    if "packages" in entry:
        packages = [str(p) for p in entry["packages"]]
    elif doc is not None:
        packages = [get_project_name(doc, name)]
    else:
        packages = []

    if "references" in entry:
        references = [
            Artifact(type=package_type, name=dep_canonical_name(r)).with_version(
                from_pep440(referenced_version(r) or "0.0.0")
            )
            for r in entry["references"]
        ]
    elif doc is not None:
        references = read_package_references(pyproject)
    else:
        references = []

    return Project(
        name=name,
        solution=solution,
        path=path,
        is_published=bool(entry.get("published", True)),
        is_build_project=bool(entry.get("build_project", False)),
        package_references=tuple(references),
        generated_artifacts=tuple(Artifact(type=package_type, name=p) for p in packages),
    )


def load_stack(path: Path) -> tuple[StackConfig, list[Solution]]:
    """Read a stack manifest.

    Args:
        path: The manifest file, or the folder holding ``stack.toml``.

    Raises:
        FileNotFoundError: If there is no manifest.
        ValueError: If solution names are missing or duplicated.
    """
    path = Path(path)
    if path.is_dir():
        path = path / MANIFEST_NAME
    root = path.parent.resolve()
    doc = load_toml(path).unwrap()
    config = StackConfig.from_table(doc.get("config"), root)

    solutions: list[Solution] = []
    seen: set[str] = set()
    for entry in doc.get("solution", []):
        if "name" not in entry:
            raise ValueError(f"{path}: every [[solution]] needs a name")
        name = str(entry["name"])
        if name in seen:
            raise ValueError(f"{path}: solution {name} is declared twice")
        seen.add(name)
        solution_path = str(entry.get("path", name))
        projects = entry.get("project") or [{"name": name}]
        solutions.append(
            Solution(
                name=name,
                path=solution_path,
                projects=tuple(_project(p, name, root / solution_path) for p in projects),
            )
        )
    return config, solutions

