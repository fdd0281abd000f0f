"""Build orchestration: prepare → build, solutions in dependency order.

A run has two phases, each visiting the solutions by ascending index:

1. Prepare: upgrade each solution's references to the versions chosen for
   the solutions it consumes (a release commits them right away), then
   choose its own version and record the commit it was chosen for.
2. Build: pin the build tooling, check that nothing moved the repository
   since phase 1, finalize the commit and run the solution's build.

The policies (local, develop, release) only differ in where versions come
from and in how commits are finalized.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum

import semver

from .bootstrap import ZeroBuilder
from .config import StackConfig
from .graph import DependentSolution, SolutionDependencyContext
from .interfaces import ArtifactRepository, CommitVersionOracle, SolutionDriver
from .models import BuildResult, BuildResultType, GeneratedArtifact, UpdatePackageInfo
from .release import ReleaseLevel, ReleaseRoadmap
from .shell import error, step, warn
from .versions import build_version, is_prerelease


class BuildState(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    MUST_RETRY = "must-retry"


class Builder:
    """Template of an orchestrated run. Subclasses provide the policy."""

    result_type: BuildResultType

    def __init__(
        self,
        context: SolutionDependencyContext,
        drivers: Mapping[str, SolutionDriver],
        config: StackConfig | None = None,
        zero_builder: ZeroBuilder | None = None,
        with_tests: bool | None = None,
    ) -> None:
        self.context = context
        self.drivers = drivers
        self.config = config or StackConfig()
        self.zero_builder = zero_builder
        self.with_tests = self.config.with_tests if with_tests is None else with_tests
        count = len(context.solutions)
        self.upgrades: list[list[UpdatePackageInfo]] = [[] for _ in range(count)]
        self.versions: list[semver.Version | None] = [None] * count
        self.commits: list[str | None] = [None] * count
        self.package_versions: dict[str, semver.Version] = {}

    # Policy hooks.

    def solution_version(
        self, s: DependentSolution, driver: SolutionDriver
    ) -> semver.Version | None:
        raise NotImplementedError

    def finalize_commit(self, s: DependentSolution, driver: SolutionDriver) -> BuildState:
        raise NotImplementedError

    def must_build(self, s: DependentSolution) -> bool:
        return True

    def build_solution(self, s: DependentSolution, driver: SolutionDriver) -> BuildState:
        # Consumers built later install these packages from the feed.
        if not driver.build(self.with_tests, True, True):
            error(f"Build of {s.name} failed.")
            return BuildState.FAILED
        return BuildState.SUCCESS

    def commit_upgrades(self, s: DependentSolution, driver: SolutionDriver) -> bool:
        """Called in phase 1 once package references of ``s`` are upgraded."""
        return True

    def release_notes(self) -> dict[str, str] | None:
        return None

    # Run.

    def run(self) -> BuildResult | None:
        """Build the whole stack.

        Returns:
            The build result, or None if the run failed. Nothing is built
            past the first failing solution.
        """
        if self.context.has_error:
            error(f"Invalid dependency context: {self.context.error}")
            return None
        if self.zero_builder is not None and not self.zero_builder.run():
            return None
        start = 0
        retries = 0
        while True:
            if not self.prepare(start):
                return None
            state, index = self.build_all(start)
            if state is BuildState.SUCCESS:
                break
            if state is BuildState.FAILED:
                return None
            retries += 1
            name = self.context[index].name
            if retries > self.config.max_retries:
                error(f"{name} still moves after {self.config.max_retries} retries.")
                return None
            warn(f"{name} has a new commit: restarting from it (retry {retries}).")
            start = index
        if self.zero_builder is not None:
            self.zero_builder.register_tree_hash_aliases()
        return self.result()

    def prepare(self, start: int = 0) -> bool:
        """Phase 1, from solution ``start`` on."""
        step(f"Preparing builds of {len(self.context) - start} solutions")
        self.package_versions = {}
        for s in self.context.solutions[:start]:
            self._publish_versions(s)
        for s in self.context.solutions[start:]:
            driver = self.drivers.get(s.name)
            if driver is None:
                error(f"No driver for solution {s.name}.")
                return False
            upgrades = self.package_upgrades(s)
            if upgrades is None:
                return False
            if upgrades and not driver.apply_package_upgrades(upgrades):
                error(f"Unable to upgrade package references of {s.name}.")
                return False
            if upgrades and not self.commit_upgrades(s, driver):
                return False
            self.upgrades[s.index] = upgrades
            version = self.solution_version(s, driver)
            if version is None:
                error(f"Unable to compute the version of {s.name}.")
                return False
            self.versions[s.index] = version
            self.commits[s.index] = driver.repository.head_id()
            self._publish_versions(s)
            print(f"  {s.name} {version}" + (f" ({len(upgrades)} upgrades)" if upgrades else ""))
        return True

    def _publish_versions(self, s: DependentSolution) -> None:
        version = self.versions[s.index]
        if version is not None:
            for a in s.solution.generated_artifacts:
                self.package_versions[a.name] = version

    def package_upgrades(self, s: DependentSolution) -> list[UpdatePackageInfo] | None:
        """References of ``s`` to packages of earlier solutions that change version.

        Policies return None to stop the run.
        """
        upgrades: list[UpdatePackageInfo] = []
        for dep in s.imported_local_packages:
            version = self.package_versions.get(dep.reference.artifact.name)
            if version is not None and version != dep.reference.version:
                upgrades.append(
                    UpdatePackageInfo(
                        solution_name=s.name,
                        project_name=dep.project.name,
                        package_id=dep.reference.artifact.name,
                        target_version=version,
                    )
                )
        return upgrades

    def build_tool_upgrades(self, s: DependentSolution) -> list[UpdatePackageInfo]:
        """Pins of the build projects of ``s`` to the versions of this run."""
        upgrades: list[UpdatePackageInfo] = []
        for bp in self.context.build_projects:
            if bp.solution_name != s.name:
                continue
            for package_id in bp.upgrade_packages:
                version = self.package_versions.get(package_id)
                if version is not None:
                    upgrades.append(
                        UpdatePackageInfo(
                            solution_name=s.name,
                            project_name=bp.project_name,
                            package_id=package_id,
                            target_version=version,
                        )
                    )
        return upgrades

    def build_all(self, start: int = 0) -> tuple[BuildState, int]:
        """Phase 2, from solution ``start`` on.

        Returns:
            The state of the run and the index of the solution that stopped
            it (-1 on success).
        """
        step(f"Building {len(self.context) - start} solutions")
        for s in self.context.solutions[start:]:
            state = self.build_one(s)
            if state is not BuildState.SUCCESS:
                return state, s.index
        return BuildState.SUCCESS, -1

    def build_one(self, s: DependentSolution) -> BuildState:
        print(f"\n  {s.name} {self.versions[s.index]}")
        if not self.must_build(s):
            print("  Already released: nothing to build.")
            return BuildState.SUCCESS
        driver = self.drivers[s.name]
        upgrades = self.build_tool_upgrades(s)
        if upgrades and not driver.apply_package_upgrades(upgrades):
            error(f"Unable to upgrade build tools of {s.name}.")
            return BuildState.FAILED
        version = self.versions[s.index]
        if version is None or not driver.set_version(version):
            error(f"Unable to set version of {s.name}.")
            return BuildState.FAILED
        head = driver.repository.head_id()
        if head != self.commits[s.index]:
            error(
                f"{s.name} moved from {self.commits[s.index]} to {head} "
                "since its build was prepared."
            )
            return BuildState.FAILED
        state = self.finalize_commit(s, driver)
        if state is not BuildState.SUCCESS:
            return state
        return self.build_solution(s, driver)

    def result(self) -> BuildResult:
        artifacts = [
            GeneratedArtifact(artifact=a.with_version(version), solution_name=s.name)
            for s in self.context.solutions
            if self.must_build(s) and (version := self.versions[s.index]) is not None
            for a in s.solution.generated_artifacts
        ]
        return BuildResult(
            type=self.result_type,
            generated_artifacts=tuple(artifacts),
            release_notes=self.release_notes(),
        )


class _OracleVersionBuilder(Builder):
    """Versions made from the commit version oracle and a pre-release label."""

    label = ""

    def __init__(self, context, drivers, oracle: CommitVersionOracle, **kwargs) -> None:
        super().__init__(context, drivers, **kwargs)
        self.oracle = oracle

    def solution_version(self, s, driver):
        info = self.oracle.read(driver.repository)
        if info is None:
            return None
        previous = info.release_tag or info.previous_version
        return build_version(previous, info.commits_since_previous, self.label)


class LocalBuilder(_OracleVersionBuilder):
    """Builds on the local line: every change is amended into the head commit."""

    result_type = BuildResultType.LOCAL

    @property
    def label(self) -> str:
        return self.config.local_prerelease

    def finalize_commit(self, s, driver):
        if driver.repository.amend_commit() is None:
            error(f"Unable to amend the head commit of {s.name}.")
            return BuildState.FAILED
        return BuildState.SUCCESS


class DevelopBuilder(_OracleVersionBuilder):
    """CI builds of the develop line.

    When the head commit cannot be amended (it was already pushed, or the
    repository is a fresh clone), a new commit is created. Its version
    differs from the one prepared, so the run restarts from this solution.
    """

    result_type = BuildResultType.CI

    @property
    def label(self) -> str:
        return self.config.ci_prerelease

    def finalize_commit(self, s, driver):
        repository = driver.repository
        if repository.can_amend():
            if repository.amend_commit() is None:
                error(f"Unable to amend the head commit of {s.name}.")
                return BuildState.FAILED
            return BuildState.SUCCESS
        head = repository.commit(f"Upgrade stack references for {self.versions[s.index]}.")
        if head is None:
            error(f"Unable to commit {s.name}.")
            return BuildState.FAILED
        if head != self.commits[s.index]:
            return BuildState.MUST_RETRY
        return BuildState.SUCCESS


class ReleaseBuilder(Builder):
    """Releases the stack along a precomputed roadmap.

    Solutions whose level is None are already released by their tag and
    are not rebuilt. Official versions are merged into the master line and
    tagged there; pre-releases are tagged on the develop line.
    """

    result_type = BuildResultType.RELEASE

    def __init__(self, context, drivers, roadmap: ReleaseRoadmap, **kwargs) -> None:
        super().__init__(context, drivers, **kwargs)
        self.roadmap = roadmap

    def run(self) -> BuildResult | None:
        if not self.roadmap.is_valid:
            error("The release roadmap is incomplete: compute it first.")
            return None
        return super().run()

    def solution_version(self, s, driver):
        return self.roadmap.release_info(s).version

    def package_upgrades(self, s):
        upgrades = super().package_upgrades(s)
        planned = self.roadmap.upgrades(s)
        if set(upgrades or ()) != set(planned):
            error(
                f"{s.name}: the upgrades of this run differ from the roadmap ("
                + ", ".join(map(str, planned))
                + ")."
            )
            return None
        return upgrades

    def commit_upgrades(self, s, driver):
        # The roadmap version of an upgraded solution stands above its head.
        head = driver.repository.commit(f"Upgrade stack references of {s.name}.")
        if head is None:
            error(f"Unable to commit the package upgrades of {s.name}.")
            return False
        return True

    def must_build(self, s):
        return self.roadmap.release_info(s).level != ReleaseLevel.NONE

    def release_notes(self) -> dict[str, str]:
        return {
            s.name: self.roadmap.release_notes.get(s.name, "")
            for s in self.context.solutions
            if self.must_build(s)
        }

    def finalize_commit(self, s, driver):
        repository = driver.repository
        version = self.versions[s.index]
        note = self.roadmap.release_notes.get(s.name, "")
        head = None
        if repository.can_amend():
            head = repository.amend_commit()
        if head is None:
            head = repository.commit(f"Release {version}.\n\n{note}".strip())
        if head is None:
            error(f"Unable to commit the release of {s.name}.")
            return BuildState.FAILED
        return BuildState.SUCCESS

    def build_solution(self, s, driver):
        repository = driver.repository
        version = self.versions[s.index]
        official = not is_prerelease(version)
        if official and not repository.merge(
            self.config.develop_branch, self.config.master_branch
        ):
            error(f"Unable to merge {s.name} into {self.config.master_branch}.")
            return BuildState.FAILED
        try:
            if not repository.tag(version):
                error(f"Unable to tag {s.name} with {version}.")
                return BuildState.FAILED
            state = super().build_solution(s, driver)
            if state is not BuildState.SUCCESS:
                repository.delete_tag(version)
            return state
        finally:
            if official:
                repository.checkout(self.config.develop_branch)


def publish_build_result(result: BuildResult, repository: ArtifactRepository) -> bool:
    """Push every generated artifact the repository does not hold yet."""
    step(f"Publishing {len(result.generated_artifacts)} artifacts")
    for generated in result.generated_artifacts:
        if repository.exists(generated.artifact):
            print(f"  {generated.artifact}: already published")
            continue
        if not repository.push(generated.artifact):
            error(f"Unable to publish {generated.artifact}.")
            return False
    return True
