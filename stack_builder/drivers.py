"""Solution driver for Python projects built with uv.

Each project of a solution is a folder holding a pyproject.toml. Package
upgrades pin dependencies in those files, builds run ``uv build`` into the
solution's ``dist/`` folder and, when asked, the project's test suite.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

import semver

from .deps import rewrite_pyproject
from .feeds import LocalFeed
from .git import GitRepository
from .models import Artifact, BuildProjectInfo, Project, Solution, UpdatePackageInfo
from .shell import error, run
from .versions import ZERO_VERSION, pep440_version


class PythonSolutionDriver:
    def __init__(
        self,
        solution: Solution,
        root: Path,
        feed: LocalFeed,
        zero_feed: LocalFeed,
        repository: GitRepository | None = None,
    ) -> None:
        self.solution = solution
        self.path = Path(root) / solution.path
        self.repository = repository or GitRepository(self.path)
        self.feed = feed
        self.zero_feed = zero_feed
        self.dist_dir = self.path / "dist"
        self.zero_dist_dir = self.dist_dir / "zero"
        self.version: semver.Version | None = None
        self._lock = threading.RLock()

    def project_dir(self, project_name: str) -> Path:
        for p in self.solution.projects:
            if p.name == project_name:
                return self.path / p.path
        raise KeyError(f"{self.solution.name} has no project {project_name}")

    def _pyprojects(self) -> Iterator[tuple[Project, Path]]:
        for p in self.solution.projects:
            pyproject = self.path / p.path / "pyproject.toml"
            if pyproject.exists():
                yield p, pyproject

    @contextmanager
    def protected_scope(self) -> Iterator[PythonSolutionDriver]:
        with self._lock:
            yield self

    @contextmanager
    def restoring_scope(self) -> Iterator[PythonSolutionDriver]:
        """Protected scope that gives every pyproject.toml its content back on exit."""
        with self.protected_scope():
            saved = {path: path.read_text() for _, path in self._pyprojects()}
            try:
                yield self
            finally:
                for path, text in saved.items():
                    if path.read_text() != text:
                        path.write_text(text)

    def apply_package_upgrades(self, upgrades: Sequence[UpdatePackageInfo]) -> bool:
        """Pin each upgraded package in its project's pyproject.toml."""
        by_project: dict[str, dict[str, str]] = {}
        for u in upgrades:
            by_project.setdefault(u.project_name, {})[u.package_id] = pep440_version(
                u.target_version
            )
        with self.protected_scope():
            for project_name, versions in by_project.items():
                pyproject = self.project_dir(project_name) / "pyproject.toml"
                if not pyproject.exists():
                    error(f"{self.solution.name}/{project_name}: no pyproject.toml to upgrade.")
                    return False
                if rewrite_pyproject(pyproject, versions):
                    pins = ", ".join(f"{k}=={v}" for k, v in versions.items())
                    print(f"  {self.solution.name}/{project_name}: {pins}")
        return True

    def set_version(self, version: semver.Version) -> bool:
        """Write the solution's version in every published project."""
        self.version = version
        with self.protected_scope():
            for p, pyproject in self._pyprojects():
                if p.is_published:
                    rewrite_pyproject(pyproject, {}, pep440_version(version))
        return True

    def _find_links(self, with_bootstrap: bool) -> list[str]:
        folders = [self.feed.path, *([self.zero_feed.path] if with_bootstrap else [])]
        return [arg for f in folders if f.is_dir() for arg in ("--find-links", str(f))]

    def build(self, with_tests: bool, with_bootstrap: bool, with_push: bool) -> bool:
        find_links = self._find_links(with_bootstrap)
        for p, pyproject in self._pyprojects():
            project_dir = pyproject.parent
            print(f"\n  {p.full_name} ({project_dir})")
            if with_tests and (project_dir / "tests").is_dir():
                result = run("uv", "run", "--directory", str(project_dir), *find_links, "pytest", check=False)
                if result.returncode != 0:
                    error(f"Tests of {p.full_name} failed.")
                    return False
            if not p.is_published:
                continue
            result = run(
                "uv", "build", str(project_dir), "--out-dir", str(self.dist_dir), *find_links,
                check=False,
            )
            if result.returncode != 0:
                error(f"Failed to build {p.full_name}")
                return False
        if with_push and self.version is not None:
            for a in self.solution.generated_artifacts:
                if not self.feed.push(a.with_version(self.version)):
                    error(f"Unable to push {a} {self.version}.")
                    return False
        return True

    def zero_build_project(self, project: BuildProjectInfo) -> bool:
        """Build one build project in zero version and publish it to the zero feed."""
        project_dir = self.project_dir(project.project_name)
        pyproject = project_dir / "pyproject.toml"
        if not pyproject.exists():
            error(f"{project.full_name}: no pyproject.toml in {project_dir}.")
            return False
        original = pyproject.read_text()
        try:
            rewrite_pyproject(pyproject, {}, pep440_version(ZERO_VERSION))
            result = run(
                "uv", "build", str(project_dir), "--out-dir", str(self.zero_dist_dir),
                *self._find_links(True),
                check=False,
            )
        finally:
            pyproject.write_text(original)
        if result.returncode != 0:
            error(f"Zero build of {project.full_name} failed.")
            return False
        if project.must_pack:
            if not self.zero_feed.push(
                Artifact(type=project.package_type, name=project.full_name).with_version(
                    ZERO_VERSION
                )
            ):
                error(f"Zero build of {project.full_name} produced no package.")
                return False
        return True
