"""Shared test fixtures and in-memory collaborators."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import pytest
import semver

from stack_builder.graph import SolutionDependencyContext, analyze
from stack_builder.models import (
    Artifact,
    ArtifactInstance,
    CommitVersionInfo,
    Project,
    Solution,
)
from stack_builder.release import ReleaseLevel
from stack_builder.versions import parse_version, successors


def v(text: str) -> semver.Version:
    return parse_version(text)


def ref(name: str, version: str) -> ArtifactInstance:
    return Artifact(type="pypi", name=name).with_version(version)


def solution(name: str, *projects: Project) -> Solution:
    return Solution(name=name, path=name, projects=projects or (project(name, name),))


def project(
    solution_name: str,
    name: str,
    produces: tuple[str, ...] = (),
    refs: tuple[ArtifactInstance, ...] = (),
    **kwargs,
) -> Project:
    return Project(
        name=name,
        solution=solution_name,
        path=name,
        package_references=refs,
        generated_artifacts=tuple(Artifact(type="pypi", name=p) for p in produces),
        **kwargs,
    )


def abc_solutions() -> list[Solution]:
    """A (no deps), B (uses A), C (uses B and A)."""
    return [
        solution("C", project("C", "c", ("c-lib",), (ref("b-lib", "1.0.0"), ref("a-lib", "1.0.0")))),
        solution("B", project("B", "b", ("b-lib",), (ref("a-lib", "1.0.0"),))),
        solution("A", project("A", "a", ("a-lib",))),
    ]


class FakeRepository:
    """Version control double. Commits only happen when something is pending."""

    def __init__(
        self,
        name: str = "repo",
        *,
        amendable: bool = True,
        previous: str | None = None,
        release_tag: str | None = None,
        count: int = 1,
    ) -> None:
        self.name = name
        self.serial = 0
        self.head = f"{name}-0"
        self.amendable = amendable
        self.pending = False
        self.previous = v(previous) if previous else None
        self.release_tag = v(release_tag) if release_tag else None
        self.count = count
        self.messages: list[str] = []
        self.amends = 0
        self.tags: set[semver.Version] = set()
        self.tagged_at: dict[semver.Version, str] = {}
        self.deleted_tags: list[semver.Version] = []
        self.trees: dict[str, str] = {}
        self.merges: list[tuple[str, str]] = []
        self.branch = "develop"
        self.merge_ok = True

    def head_id(self) -> str:
        return self.head

    def commit(self, message: str) -> str | None:
        self.messages.append(message)
        if self.pending:
            self.serial += 1
            self.head = f"{self.name}-{self.serial}"
            self.count += 1
            self.pending = False
            self.amendable = True
        return self.head

    def can_amend(self) -> bool:
        return self.amendable

    def amend_commit(self) -> str | None:
        if not self.amendable:
            return None
        self.amends += 1
        self.pending = False
        return self.head

    def tag(self, version: semver.Version) -> bool:
        self.tags.add(version)
        self.tagged_at[version] = self.head
        return True

    def delete_tag(self, version: semver.Version) -> bool:
        self.tags.discard(version)
        self.deleted_tags.append(version)
        return True

    def tree_hash(self, relative_path: str) -> str | None:
        return self.trees.get(relative_path)

    def merge(self, source_line: str, into_line: str) -> bool:
        self.merges.append((source_line, into_line))
        self.branch = into_line
        return self.merge_ok

    def checkout(self, line: str) -> bool:
        self.branch = line
        return True


class FakeOracle:
    """Reads the version state a FakeRepository carries."""

    def __init__(self) -> None:
        self.reads = 0

    def read(self, repository: FakeRepository) -> CommitVersionInfo | None:
        self.reads += 1
        possible = successors(repository.previous)
        next_possible = (
            successors(repository.release_tag) if repository.release_tag else possible
        )
        return CommitVersionInfo(
            commit_id=repository.head,
            release_tag=repository.release_tag,
            previous_version=repository.previous,
            commits_since_previous=repository.count,
            possible_versions=tuple(possible),
            next_possible_versions=tuple(next_possible),
        )


class FakeDriver:
    def __init__(self, repository: FakeRepository | None = None) -> None:
        self.repository = repository or FakeRepository()
        self.upgrades: list = []
        self.versions: list[semver.Version] = []
        self.builds: list[tuple[bool, bool, bool]] = []
        self.zero_builds: list[str] = []
        self.build_ok = True
        self.upgrade_ok = True
        self.zero_fail: set[str] = set()
        self.scopes = 0
        self.in_scope = False
        self.events: list[str] = []
        self.restores = 0

    def apply_package_upgrades(self, upgrades) -> bool:
        self.upgrades.extend(upgrades)
        self.events.append("upgrade")
        if upgrades:
            self.repository.pending = True
        return self.upgrade_ok

    def set_version(self, version: semver.Version) -> bool:
        if not self.versions or self.versions[-1] != version:
            self.repository.pending = True
        self.versions.append(version)
        return True

    def build(self, with_tests: bool, with_bootstrap: bool, with_push: bool) -> bool:
        self.builds.append((with_tests, with_bootstrap, with_push))
        self.events.append("build")
        return self.build_ok

    def zero_build_project(self, project) -> bool:
        self.zero_builds.append(project.full_name)
        self.events.append(f"zero:{project.full_name}:{self.in_scope}")
        return project.full_name not in self.zero_fail

    @contextmanager
    def protected_scope(self) -> Iterator[FakeDriver]:
        self.scopes += 1
        self.in_scope = True
        try:
            yield self
        finally:
            self.in_scope = False

    @contextmanager
    def restoring_scope(self) -> Iterator[FakeDriver]:
        pending = self.repository.pending
        with self.protected_scope():
            try:
                yield self
            finally:
                self.repository.pending = pending
                self.restores += 1


class FakeFeed:
    def __init__(self, *existing: ArtifactInstance) -> None:
        self.artifacts: set[ArtifactInstance] = set(existing)
        self.pushed: list[ArtifactInstance] = []
        self.push_ok = True

    def exists(self, artifact: ArtifactInstance) -> bool:
        return artifact in self.artifacts

    def push(self, artifact: ArtifactInstance) -> bool:
        self.pushed.append(artifact)
        if self.push_ok:
            self.artifacts.add(artifact)
        return self.push_ok


class ScriptedSelector:
    """Answers from scripted values; None in a script cancels."""

    def __init__(self, levels=None, versions=None, version_levels=None) -> None:
        self.levels: dict[str, ReleaseLevel | None] = levels or {}
        self.versions: dict[str, semver.Version | None] = versions or {}
        self.version_levels: dict[str, ReleaseLevel | None] = version_levels or {}
        self.calls: list[tuple[str, str]] = []

    def choose_release_level(self, solution, minimum, candidates):
        self.calls.append(("level", solution.name))
        return self.levels.get(solution.name, minimum)

    def choose_final_version(self, solution, level, candidates):
        self.calls.append(("version", solution.name))
        return self.versions.get(solution.name, min(candidates))

    def choose_level_for_version(self, solution, version, minimum):
        self.calls.append(("version-level", solution.name))
        return self.version_levels.get(solution.name, minimum)


@pytest.fixture
def abc_context() -> SolutionDependencyContext:
    return analyze(abc_solutions())


@pytest.fixture
def abc_drivers(abc_context: SolutionDependencyContext) -> dict[str, FakeDriver]:
    return {
        s.name: FakeDriver(FakeRepository(s.name, previous="1.0.0"))
        for s in abc_context.solutions
    }


@pytest.fixture
def tmp_pyproject(tmp_path: Path) -> Path:
    """Create a temporary pyproject.toml file."""
    content = """\
[build-system]
requires = ["hatchling", "internal-plugin>=0.1"]
build-backend = "hatchling.build"

[project]
name = "test-package"
version = "1.0.0"
dependencies = [
    "requests>=2.0",
    "internal-dep>=1.0",
]

[project.optional-dependencies]
dev = ["pytest>=8.0", "another-internal>=0.5"]

[dependency-groups]
test = ["pytest>=8.0", "group-internal>=0.1"]
"""
    pyproject = tmp_path / "pyproject.toml"
    pyproject.write_text(content)
    return pyproject
