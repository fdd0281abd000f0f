"""Data models for stack-builder.

These Pydantic models represent the core data structures shared by the
dependency analysis, the release roadmap and the build orchestration.
Records are frozen: they are rebuilt, never patched.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated

import semver
from packaging.utils import canonicalize_name
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    PlainValidator,
    field_validator,
)

from .versions import parse_version

Version = Annotated[
    semver.Version,
    PlainValidator(parse_version),
    PlainSerializer(str, return_type=str),
]


class Record(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class Artifact(Record):
    """A kind of package (e.g. "pypi", "npm") and its package id.

    Package ids are normalized per PEP 503 so that "My_Package" and
    "my-package" designate the same artifact.
    """

    type: str
    name: str

    @field_validator("name")
    @classmethod
    def _canonical_name(cls, value: str) -> str:
        return canonicalize_name(value)

    def with_version(self, version: semver.Version | str) -> ArtifactInstance:
        return ArtifactInstance(artifact=self, version=version)

    def __str__(self) -> str:
        return f"{self.type}:{self.name}"


class ArtifactInstance(Record):
    """An artifact at a given version. Compared by equality only."""

    artifact: Artifact
    version: Version

    def __str__(self) -> str:
        return f"{self.artifact}/{self.version}"


class Project(Record):
    """A project of a solution.

    Attributes:
        name: Project name, unique in its solution.
        solution: Name of the owning solution.
        path: Solution-relative folder of the project.
        is_published: Whether the project's package is published (test and
                      tooling projects usually are not).
        is_build_project: Whether this project is build tooling, built once
                          per source state by the bootstrap builder.
        package_references: Packages consumed by this project.
        generated_artifacts: Packages produced by this project. Their version
                             is the one of the solution.
    """

    name: str
    solution: str
    path: str = ""
    is_published: bool = True
    is_build_project: bool = False
    package_references: tuple[ArtifactInstance, ...] = ()
    generated_artifacts: tuple[Artifact, ...] = ()

    @property
    def full_name(self) -> str:
        return f"{self.solution}/{self.name}"

    def __str__(self) -> str:
        return self.full_name


class Solution(Record):
    """A named, ordered collection of projects.

    ``index`` is assigned by the solution sorter: lower index is built
    earlier. It is -1 until the solution has been sorted.
    """

    name: str
    path: str = ""
    projects: tuple[Project, ...] = ()
    index: int = -1

    @property
    def generated_artifacts(self) -> list[Artifact]:
        return [a for p in self.projects for a in p.generated_artifacts]

    def __str__(self) -> str:
        return self.name


class DependencyRow(Record):
    """One inter-solution reference edge.

    ``origin`` references at least one package generated by ``target``.
    Both are None for the single row of a solution that requires no other
    solution.
    """

    solution: str
    origin: Project | None = None
    target: Project | None = None

    def references(self) -> list[ArtifactInstance]:
        """The actual package references from origin to target."""
        if self.origin is None or self.target is None:
            return []
        produced = set(self.target.generated_artifacts)
        return [r for r in self.origin.package_references if r.artifact in produced]

    def __str__(self) -> str:
        target = self.target.full_name if self.target else "<no dependency>"
        origin = self.origin.full_name if self.origin else self.solution
        return f"{origin} => {target}"


class UpdatePackageInfo(Record):
    """One package reference that must be rewritten to a new version."""

    solution_name: str
    project_name: str
    package_id: str
    target_version: Version

    def __str__(self) -> str:
        return f"{self.solution_name}/{self.project_name}: {self.package_id} → {self.target_version}"


class BuildProjectInfo(Record):
    """A build-tooling project handled by the bootstrap (zero) builder.

    Attributes:
        index: Position in the dependencies-first ordering of build projects.
        full_name: The package id when the project must be packed, else
                   "solution/project".
        folder: Solution-relative folder whose tree hash identifies the
                project's source state.
        dependencies: Full names of the build projects this one (transitively)
                      consumes.
        must_pack: Whether this project is consumed by another build project
                   and must be published in zero version.
        upgrade_packages: Local package ids referenced by this project, that
                          the orchestrator upgrades to the versions it builds.
    """

    index: int
    full_name: str
    solution_name: str
    project_name: str
    folder: str = ""
    must_pack: bool = False
    package_type: str = "pypi"
    dependencies: tuple[str, ...] = ()
    upgrade_packages: tuple[str, ...] = ()

    def __str__(self) -> str:
        return self.full_name


class CommitVersionInfo(Record):
    """What the commit version oracle knows about a commit point.

    Attributes:
        commit_id: The commit these versions apply to.
        release_tag: Release version tagged on this very commit, if any.
        previous_version: Closest release below this commit, if any.
        commits_since_previous: Commits between previous_version and this one.
        possible_versions: Versions this commit may be tagged with.
        next_possible_versions: Versions a commit created above this one may
                                be tagged with.
    """

    commit_id: str
    release_tag: Version | None = None
    previous_version: Version | None = None
    commits_since_previous: int = 0
    possible_versions: tuple[Version, ...] = ()
    next_possible_versions: tuple[Version, ...] = ()


class BuildResultType(str, Enum):
    LOCAL = "local"
    CI = "ci"
    RELEASE = "release"


class GeneratedArtifact(Record):
    artifact: ArtifactInstance
    solution_name: str


class BuildResult(Record):
    """Artifacts produced by a successful orchestrated run."""

    type: BuildResultType
    generated_artifacts: tuple[GeneratedArtifact, ...] = ()
    release_notes: dict[str, str] | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
