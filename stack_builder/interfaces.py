"""Collaborator contracts.

The stack builder only reasons about versions and ordering; everything that
touches a repository, a build tool or a package feed goes through one of
these narrow interfaces. Concrete implementations live in ``git.py``,
``oracle.py``, ``drivers.py`` and ``feeds.py``; tests use in-memory fakes.
"""

from __future__ import annotations

from collections.abc import Sequence
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Protocol

import semver

from .models import ArtifactInstance, BuildProjectInfo, CommitVersionInfo, UpdatePackageInfo

if TYPE_CHECKING:
    from .graph import DependentSolution
    from .release import ReleaseLevel


class VersionControl(Protocol):
    """A version-control repository (one per solution)."""

    def head_id(self) -> str: ...

    def commit(self, message: str) -> str | None:
        """Commit pending changes if any. Returns the head id, None on error."""

    def can_amend(self) -> bool: ...

    def amend_commit(self) -> str | None:
        """Amend the head commit. Returns the new head id, None if not supported."""

    def tag(self, version: semver.Version) -> bool: ...

    def delete_tag(self, version: semver.Version) -> bool: ...

    def tree_hash(self, relative_path: str) -> str | None: ...

    def merge(self, source_line: str, into_line: str) -> bool:
        """Merge ``source_line`` into ``into_line`` and leave ``into_line`` checked out."""

    def checkout(self, line: str) -> bool: ...


class CommitVersionOracle(Protocol):
    def read(self, repository: VersionControl) -> CommitVersionInfo | None: ...


class SolutionDriver(Protocol):
    """Drives one solution: package references, builds and zero builds."""

    repository: VersionControl

    def apply_package_upgrades(self, upgrades: Sequence[UpdatePackageInfo]) -> bool: ...

    def set_version(self, version: semver.Version) -> bool:
        """Make every package the solution generates carry ``version``."""

    def build(self, with_tests: bool, with_bootstrap: bool, with_push: bool) -> bool: ...

    def zero_build_project(self, project: BuildProjectInfo) -> bool: ...

    def protected_scope(self) -> AbstractContextManager[object]:
        """Exclusive access to the driver while its files are being patched."""

    def restoring_scope(self) -> AbstractContextManager[object]:
        """A protected scope whose file changes are undone when it exits."""


class ArtifactRepository(Protocol):
    def exists(self, artifact: ArtifactInstance) -> bool: ...

    def push(self, artifact: ArtifactInstance) -> bool: ...


class VersionSelector(Protocol):
    """Resolves what the shape of the possible versions cannot decide.

    Any method may return None to cancel the whole operation.
    """

    def choose_release_level(
        self,
        solution: DependentSolution,
        minimum: ReleaseLevel,
        candidates: Sequence[semver.Version],
    ) -> ReleaseLevel | None:
        """Pick a level, not lower than ``minimum``."""

    def choose_final_version(
        self,
        solution: DependentSolution,
        level: ReleaseLevel,
        candidates: Sequence[semver.Version],
    ) -> semver.Version | None:
        """Pick one of ``candidates``."""

    def choose_level_for_version(
        self,
        solution: DependentSolution,
        version: semver.Version,
        minimum: ReleaseLevel,
    ) -> ReleaseLevel | None:
        """Qualify the only possible version when it is a pre-release or on
        the zero major line, where its shape says nothing about the change."""
