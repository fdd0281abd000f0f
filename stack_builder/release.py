"""Release decisions: which level and which version for each solution.

The roadmap visits every solution after all of its requirements. A
solution must be released when one of its package references has to be
upgraded or when its commit carries no release tag yet. The level of the
release is driven by the requirements (a breaking dependency makes a
breaking dependent) and the version is chosen among what the commit can
legally carry. When the shape of the remaining versions cannot decide, a
version selector (a human or a policy) is asked.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import IntEnum, IntFlag
from pathlib import Path
from typing import Annotated, Any, cast

import semver
import tomlkit
from pydantic import PlainSerializer, PlainValidator

from .graph import DependentSolution, SolutionDependencyContext
from .interfaces import CommitVersionOracle, SolutionDriver, VersionSelector
from .models import CommitVersionInfo, Record, UpdatePackageInfo, Version
from .shell import error, step, warn
from .toml import load_toml, save_toml
from .versions import is_patch, is_prerelease, is_zero_major, parse_version


class ReleaseLevel(IntEnum):
    NONE = 0
    FIX = 1
    FEATURE = 2
    BREAKING_CHANGE = 3

    def __str__(self) -> str:
        return self.name.replace("_", " ").title().replace(" ", "")


class ReleaseConstraint(IntFlag):
    NONE = 0
    MUST_BE_PRE_RELEASE = 1
    HAS_FEATURES = 2
    HAS_BREAKING_CHANGES = 4


Constraint = Annotated[
    ReleaseConstraint,
    PlainValidator(lambda v: ReleaseConstraint(int(v))),
    PlainSerializer(int, return_type=int),
]


class ReleaseInfo(Record):
    """Level, constraint and final version of a release.

    A ReleaseInfo is valid once its version is set. Combinators return new
    infos and never lower the level.
    """

    level: ReleaseLevel = ReleaseLevel.NONE
    constraint: Constraint = ReleaseConstraint.NONE
    version: Version | None = None

    @property
    def is_valid(self) -> bool:
        return self.version is not None

    def combine_requirement(self, other: ReleaseInfo) -> ReleaseInfo:
        """Raise this requirement so that it satisfies a dependency's info.

        Raises:
            RuntimeError: If this info already has a version.
        """
        if self.version is not None:
            raise RuntimeError(
                "Version has been set. No more requirement combination can be done."
            )
        return ReleaseInfo(
            level=max(self.level, other.level),
            constraint=self.constraint | other.constraint,
        )

    def with_level(self, level: ReleaseLevel) -> ReleaseInfo:
        """Return an info with at least ``level``. The level never decreases."""
        if level <= self.level:
            return self
        constraint = self.constraint
        if level == ReleaseLevel.BREAKING_CHANGE:
            constraint |= ReleaseConstraint.HAS_BREAKING_CHANGES
        elif level == ReleaseLevel.FEATURE:
            constraint |= ReleaseConstraint.HAS_FEATURES
        return ReleaseInfo(level=level, constraint=constraint, version=self.version)

    def with_version(self, version: semver.Version) -> ReleaseInfo:
        """Return a valid info. A pre-release on a non zero major line forces
        every dependent to be a pre-release too."""
        constraint = self.constraint
        if is_prerelease(version) and not is_zero_major(version):
            constraint |= ReleaseConstraint.MUST_BE_PRE_RELEASE
        return ReleaseInfo(level=self.level, constraint=constraint, version=version)

    def is_compatible_with(
        self, level: ReleaseLevel, constraint: ReleaseConstraint
    ) -> bool:
        return self.level >= level and (self.constraint & constraint) == constraint

    def lower_for_single_major(self) -> ReleaseInfo:
        """At most a feature: breaking changes are demoted to features."""
        if self.version is not None:
            raise RuntimeError("Version has been set.")
        level = min(self.level, ReleaseLevel.FEATURE)
        constraint = self.constraint & ~ReleaseConstraint.HAS_BREAKING_CHANGES
        if constraint != self.constraint:
            constraint |= ReleaseConstraint.HAS_FEATURES
        return ReleaseInfo(level=level, constraint=constraint)

    def lower_for_only_patch(self) -> ReleaseInfo:
        """At most a fix, without feature nor breaking change constraint."""
        if self.version is not None:
            raise RuntimeError("Version has been set.")
        return ReleaseInfo(
            level=min(self.level, ReleaseLevel.FIX),
            constraint=self.constraint
            & ~(ReleaseConstraint.HAS_FEATURES | ReleaseConstraint.HAS_BREAKING_CHANGES),
        )

    def __str__(self) -> str:
        text = f"Level = {self.level}, Constraint = {self.constraint!r}"
        return text if self.version is None else f"{self.version} - {text}"


def filter_versions(
    candidates: Sequence[semver.Version],
    constraint: ReleaseConstraint,
    final_level_is_known: bool,
) -> list[semver.Version]:
    """Keep the candidate versions that satisfy a release constraint.

    1. MUST_BE_PRE_RELEASE keeps pre-releases only. Versions on the zero
       major line are exempt: they may carry anything.
    2. A feature or a breaking change can never be a patch. Without them,
       once the final level is known (a fix), only patches remain.
    3. A breaking change on an official, non zero major, version must bump
       the major: only X.0.0 on the highest major line offered remains.
       Once the final level is known to be a feature (no breaking change),
       official non zero major versions must bump the minor.
    """
    filtered = list(candidates)
    if constraint & ReleaseConstraint.MUST_BE_PRE_RELEASE:
        filtered = [v for v in filtered if is_zero_major(v) or is_prerelease(v)]

    features = ReleaseConstraint.HAS_FEATURES | ReleaseConstraint.HAS_BREAKING_CHANGES
    if constraint & features:
        filtered = [v for v in filtered if not is_patch(v)]
    elif final_level_is_known:
        filtered = [v for v in filtered if is_patch(v)]

    def exempt(v: semver.Version) -> bool:
        return is_prerelease(v) or is_zero_major(v)

    if constraint & ReleaseConstraint.HAS_BREAKING_CHANGES:
        top = max((v.major for v in filtered if not exempt(v)), default=None)
        filtered = [
            v
            for v in filtered
            if exempt(v) or (v.major == top and v.minor == 0 and v.patch == 0)
        ]
    elif constraint & ReleaseConstraint.HAS_FEATURES and final_level_is_known:
        filtered = [v for v in filtered if exempt(v) or v.minor != 0]
    return filtered


def level_of_shape(version: semver.Version) -> ReleaseLevel:
    """The level an official, non zero major, version stands for."""
    if is_patch(version):
        return ReleaseLevel.FIX
    if version.minor == 0:
        return ReleaseLevel.BREAKING_CHANGE
    return ReleaseLevel.FEATURE


class AutomaticVersionSelector:
    """Policy selector: the lowest acceptable level, official versions first.

    Never cancels. Suited to unattended runs and scripted roadmaps.
    """

    def choose_release_level(self, solution, minimum, candidates):
        return max(minimum, ReleaseLevel.FIX)

    def choose_final_version(self, solution, level, candidates):
        officials = [v for v in candidates if not is_prerelease(v)]
        return min(officials or candidates)

    def choose_level_for_version(self, solution, version, minimum):
        return max(minimum, ReleaseLevel.FIX)


class ReleaseRoadmap:
    """The release decisions for every solution of a dependency context.

    Release infos are computed once and memoized by solution index; the
    package upgrades they imply are recomputed with them.
    """

    def __init__(
        self,
        context: SolutionDependencyContext,
        commit_infos: Sequence[CommitVersionInfo | None],
        release_infos: Sequence[ReleaseInfo] | None = None,
        release_notes: Mapping[str, str] | None = None,
    ) -> None:
        if context.has_error:
            raise ValueError(f"Invalid dependency context: {context.error}")
        self.context = context
        self._commits = list(commit_infos)
        count = len(context.solutions)
        self._infos: list[ReleaseInfo] = list(release_infos or [ReleaseInfo()] * count)
        self._upgrades: list[list[UpdatePackageInfo]] = [[] for _ in range(count)]
        self.release_notes: dict[str, str] = dict(release_notes or {})
        self.cancelled = False

    @classmethod
    def create(
        cls,
        context: SolutionDependencyContext,
        drivers: Mapping[str, SolutionDriver],
        oracle: CommitVersionOracle,
    ) -> ReleaseRoadmap | None:
        """Read the commit version info of every solution.

        Returns:
            The roadmap, or None if a commit could not be read.
        """
        if context.has_error:
            error(f"Invalid dependency context: {context.error}")
            return None
        infos: list[CommitVersionInfo | None] = []
        for s in context.solutions:
            info = oracle.read(drivers[s.name].repository)
            if info is None:
                error(f"Unable to get commit version information for {s.name}.")
                return None
            infos.append(info)
        return cls(context, infos)

    @property
    def release_infos(self) -> list[ReleaseInfo]:
        return list(self._infos)

    @property
    def is_valid(self) -> bool:
        return all(i.is_valid for i in self._infos)

    def commit_info(self, solution: DependentSolution) -> CommitVersionInfo | None:
        return self._commits[solution.index]

    def upgrades(self, solution: DependentSolution) -> list[UpdatePackageInfo]:
        """Package upgrades required by the current release info of ``solution``."""
        return list(self._upgrades[solution.index])

    def release_info(self, solution: DependentSolution) -> ReleaseInfo:
        return self._infos[solution.index]

    def clear(self) -> None:
        self._infos = [ReleaseInfo()] * len(self._infos)
        self._upgrades = [[] for _ in self._infos]
        self.cancelled = False

    def update_roadmap(self, selector: VersionSelector, *, keep_resolved: bool = False) -> bool:
        """Compute the release info of every solution.

        Returns:
            True on success, False on error or cancellation.
        """
        if not keep_resolved:
            self.clear()
        step(f"Computing release roadmap for {len(self._infos)} solutions")
        for s in self.context.solutions:
            info = self.ensure_release_info(s, selector)
            if not info.is_valid:
                return False
            print(f"  {s.name}: {info}")
            if s.name not in self.release_notes:
                self.release_notes[s.name] = self._default_note(s, info)
        return True

    def ensure_release_info(
        self, solution: DependentSolution, selector: VersionSelector
    ) -> ReleaseInfo:
        """Compute (once) the release info of a solution and its requirements.

        Returns:
            The release info. It is invalid on error or cancellation.
        """
        current = self._infos[solution.index]
        if current.is_valid:
            return current
        info = self._compute(solution, selector)
        self._infos[solution.index] = info
        return info

    def _compute(self, s: DependentSolution, selector: VersionSelector) -> ReleaseInfo:
        requirements = ReleaseInfo()
        # Every requirement is visited, not only the minimal ones: a package
        # reference to a transitively implied solution must be upgraded too.
        for r in self.context.resolve(s.requirements):
            r_info = self.ensure_release_info(r, selector)
            if not r_info.is_valid:
                return ReleaseInfo()
            requirements = requirements.combine_requirement(r_info)
        upgrades = self._requirement_upgrades(s)
        self._upgrades[s.index] = upgrades

        commit = self._commits[s.index]
        if commit is None:
            error(f"{s.name}: no commit version information.")
            return ReleaseInfo()
        if upgrades:
            # Upgrading references requires a new commit above the current one.
            requirements = requirements.with_level(ReleaseLevel.FIX)
            candidates = commit.next_possible_versions
        elif commit.release_tag is not None:
            print(f"  {s.name}: commit already released as {commit.release_tag}.")
            return ReleaseInfo().with_version(commit.release_tag)
        else:
            requirements = requirements.with_level(ReleaseLevel.FIX)
            candidates = commit.possible_versions
        return self._select(s, requirements, candidates, selector)

    def _requirement_upgrades(self, s: DependentSolution) -> list[UpdatePackageInfo]:
        """References of ``s`` to set to the release versions of its requirements."""
        upgrades: list[UpdatePackageInfo] = []
        for dep in s.imported_local_packages:
            target = self._infos[dep.target].version
            if target is not None and dep.reference.version != target:
                upgrades.append(
                    UpdatePackageInfo(
                        solution_name=s.name,
                        project_name=dep.project.name,
                        package_id=dep.reference.artifact.name,
                        target_version=target,
                    )
                )
        return upgrades

    def _select(
        self,
        s: DependentSolution,
        requirements: ReleaseInfo,
        candidates: Sequence[semver.Version],
        selector: VersionSelector,
    ) -> ReleaseInfo:
        filtered = filter_versions(candidates, requirements.constraint, False)
        if not filtered:
            error(f"{s.name}: no possible version for {requirements}.")
            return ReleaseInfo()

        if len(filtered) == 1:
            version = filtered[0]
            if is_prerelease(version) or is_zero_major(version):
                level = selector.choose_level_for_version(s, version, requirements.level)
                if level is None:
                    return self._cancel(s)
                _check_level(level, requirements.level)
                requirements = requirements.with_level(level)
            elif not is_patch(version) and requirements.level < ReleaseLevel.FEATURE:
                requirements = requirements.with_level(level_of_shape(version))
            return requirements.with_version(version)

        level = selector.choose_release_level(s, requirements.level, filtered)
        if level is None:
            return self._cancel(s)
        _check_level(level, requirements.level)
        requirements = requirements.with_level(level)
        filtered = filter_versions(filtered, requirements.constraint, True)
        if not filtered:
            error(f"{s.name}: no possible version for {requirements}.")
            return ReleaseInfo()
        if len(filtered) == 1:
            return requirements.with_version(filtered[0])

        version = selector.choose_final_version(s, requirements.level, filtered)
        if version is None:
            return self._cancel(s)
        if version not in filtered:
            raise ValueError(
                f"Version {version} is not one of {', '.join(map(str, filtered))}."
            )
        return requirements.with_version(version)

    def _cancel(self, s: DependentSolution) -> ReleaseInfo:
        warn(f"Release of {s.name} cancelled.")
        self.cancelled = True
        return ReleaseInfo()

    def _default_note(self, s: DependentSolution, info: ReleaseInfo) -> str:
        ups = self._upgrades[s.index]
        if not ups:
            return ""
        return "Upgraded " + ", ".join(
            f"{u.package_id} to {u.target_version}" for u in ups
        ) + "."

    def save(self, path: Path) -> None:
        """Write the roadmap to a TOML file."""
        doc = tomlkit.document()
        doc.add(tomlkit.comment("Release roadmap computed by stack-builder."))
        solutions = tomlkit.aot()
        for s, info in zip(self.context.solutions, self._infos):
            entry = tomlkit.table()
            entry["name"] = s.name
            commit = self._commits[s.index]
            if commit is not None:
                entry["commit"] = commit.commit_id
            if info.version is not None:
                entry["version"] = str(info.version)
            entry["level"] = info.level.name
            entry["constraint"] = int(info.constraint)
            entry["release_note"] = tomlkit.string(
                self.release_notes.get(s.name, ""), multiline=True
            )
            solutions.append(entry)
        doc["solution"] = solutions
        save_toml(path, doc)

    @classmethod
    def load(
        cls,
        path: Path,
        context: SolutionDependencyContext,
        drivers: Mapping[str, SolutionDriver],
        oracle: CommitVersionOracle,
    ) -> ReleaseRoadmap:
        """Read a roadmap saved by :meth:`save` and check it still applies.

        Commits are read again. The roadmap is stale when a solution's head
        is not the commit the roadmap was computed on, or when its saved
        version can no longer be carried by that commit.

        Raises:
            ValueError: If the file does not describe the context's
                solutions, or if it is stale.
        """
        roadmap = cls.create(context, drivers, oracle)
        if roadmap is None:
            raise ValueError(f"Unable to read the commits roadmap {path} applies to.")
        doc = load_toml(path)
        entries: dict[str, dict[str, Any]] = {
            str(e["name"]): cast(dict[str, Any], e) for e in doc.get("solution", [])
        }
        missing = [s.name for s in context.solutions if s.name not in entries]
        if missing:
            raise ValueError(f"Roadmap {path} has no entry for: {', '.join(missing)}")
        stale: list[str] = []
        for s in context.solutions:
            e = entries[s.name]
            version = e.get("version")
            info = ReleaseInfo(
                level=ReleaseLevel[str(e.get("level", "NONE"))],
                constraint=int(e.get("constraint", 0)),
                version=parse_version(str(version)) if version else None,
            )
            commit = cast(CommitVersionInfo, roadmap.commit_info(s))
            if str(e.get("commit", "")) != commit.commit_id:
                stale.append(f"{s.name} moved to {commit.commit_id}")
            elif not _can_carry(commit, info):
                stale.append(f"{s.name} cannot be released as {info.version}")
            roadmap._infos[s.index] = info
            roadmap.release_notes[s.name] = str(e.get("release_note", ""))
        if stale:
            raise ValueError(f"Roadmap {path} is outdated ({'; '.join(stale)}): compute it again.")
        for s in context.solutions:
            roadmap._upgrades[s.index] = roadmap._requirement_upgrades(s)
        return roadmap


def _can_carry(commit: CommitVersionInfo, info: ReleaseInfo) -> bool:
    if info.version is None:
        return False
    if info.level == ReleaseLevel.NONE:
        return info.version == commit.release_tag
    return info.version in (*commit.possible_versions, *commit.next_possible_versions)


def _check_level(chosen: ReleaseLevel, minimum: ReleaseLevel) -> None:
    if chosen < minimum:
        raise ValueError(f"Release level {chosen} is lower than the required {minimum}.")
