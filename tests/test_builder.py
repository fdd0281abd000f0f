"""Tests for stack_builder.builder."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from conftest import (
    FakeDriver,
    FakeFeed,
    FakeOracle,
    FakeRepository,
    ScriptedSelector,
    project,
    ref,
    solution,
    v,
)

from stack_builder.builder import (
    BuildState,
    DevelopBuilder,
    LocalBuilder,
    ReleaseBuilder,
    publish_build_result,
)
from stack_builder.config import StackConfig
from stack_builder.graph import SolutionDependencyContext, analyze
from stack_builder.models import Artifact, BuildResult, BuildResultType, GeneratedArtifact
from stack_builder.release import AutomaticVersionSelector, ReleaseRoadmap


def release_builder(context, drivers, selector=None, **kwargs) -> ReleaseBuilder:
    plan = ReleaseRoadmap.create(context, drivers, FakeOracle())
    assert plan is not None
    assert plan.update_roadmap(selector or AutomaticVersionSelector())
    return ReleaseBuilder(context, drivers, plan, config=StackConfig(), **kwargs)


class TestLocalBuilder:
    def test_builds_every_solution(
        self, abc_context: SolutionDependencyContext, abc_drivers: dict[str, FakeDriver]
    ) -> None:
        builder = LocalBuilder(abc_context, abc_drivers, FakeOracle())

        result = builder.run()

        assert result is not None
        assert result.type is BuildResultType.LOCAL
        assert builder.versions == [v("1.0.1-local.1")] * 3
        assert {g.artifact.artifact.name for g in result.generated_artifacts} == {
            "a-lib",
            "b-lib",
            "c-lib",
        }
        for driver in abc_drivers.values():
            assert driver.builds == [(True, True, True)]
            assert driver.repository.amends == 1

    def test_upgrades_reference_earlier_versions(
        self, abc_context: SolutionDependencyContext, abc_drivers: dict[str, FakeDriver]
    ) -> None:
        LocalBuilder(abc_context, abc_drivers, FakeOracle()).run()

        assert abc_drivers["A"].upgrades == []
        c_upgrades = {(u.package_id, u.target_version) for u in abc_drivers["C"].upgrades}
        assert c_upgrades == {("a-lib", v("1.0.1-local.1")), ("b-lib", v("1.0.1-local.1"))}

    def test_without_tests(
        self, abc_context: SolutionDependencyContext, abc_drivers: dict[str, FakeDriver]
    ) -> None:
        LocalBuilder(abc_context, abc_drivers, FakeOracle(), with_tests=False).run()

        assert abc_drivers["A"].builds == [(False, True, True)]

    def test_driver_failure_stops_the_run(
        self, abc_context: SolutionDependencyContext, abc_drivers: dict[str, FakeDriver]
    ) -> None:
        abc_drivers["B"].build_ok = False

        assert LocalBuilder(abc_context, abc_drivers, FakeOracle()).run() is None

        assert abc_drivers["A"].builds
        assert abc_drivers["C"].builds == []

    def test_upgrade_failure_aborts_before_building(
        self, abc_context: SolutionDependencyContext, abc_drivers: dict[str, FakeDriver]
    ) -> None:
        abc_drivers["C"].upgrade_ok = False

        assert LocalBuilder(abc_context, abc_drivers, FakeOracle()).run() is None

        assert all(d.builds == [] for d in abc_drivers.values())

    def test_missing_driver(self, abc_context: SolutionDependencyContext) -> None:
        assert LocalBuilder(abc_context, {}, FakeOracle()).run() is None

    def test_head_moved_between_phases(
        self, abc_context: SolutionDependencyContext, abc_drivers: dict[str, FakeDriver]
    ) -> None:
        builder = LocalBuilder(abc_context, abc_drivers, FakeOracle())
        assert builder.prepare()
        abc_drivers["B"].repository.head = "someone-else"

        state, index = builder.build_all()

        assert state is BuildState.FAILED
        assert index == 1
        assert abc_drivers["B"].builds == []

    def test_invalid_context(self) -> None:
        context = analyze(
            [
                solution("X", project("X", "x", ("x-lib",), (ref("y-lib", "1.0.0"),))),
                solution("Y", project("Y", "y", ("y-lib",), (ref("x-lib", "1.0.0"),))),
            ]
        )
        assert LocalBuilder(context, {}, FakeOracle()).run() is None

    def test_build_tools_are_pinned_before_build(self) -> None:
        context = analyze(
            [
                solution("Tools", project("Tools", "plugin", ("stack-plugin",))),
                solution(
                    "App",
                    project(
                        "App", "builder", (), (ref("stack-plugin", "1.0.0"),), is_build_project=True
                    ),
                    project("App", "app", ("app",)),
                ),
            ]
        )
        drivers = {
            s.name: FakeDriver(FakeRepository(s.name, previous="1.0.0"))
            for s in context.solutions
        }

        assert LocalBuilder(context, drivers, FakeOracle()).run() is not None

        last = drivers["App"].upgrades[-1]
        assert (last.project_name, last.package_id) == ("builder", "stack-plugin")
        assert last.target_version == v("1.0.1-local.1")


class TestZeroBuilderHooks:
    def test_runs_bootstrap_first_and_registers_aliases(
        self, abc_context: SolutionDependencyContext, abc_drivers: dict[str, FakeDriver]
    ) -> None:
        zero = MagicMock()
        zero.run.return_value = True

        assert LocalBuilder(abc_context, abc_drivers, FakeOracle(), zero_builder=zero).run()

        zero.run.assert_called_once_with()
        zero.register_tree_hash_aliases.assert_called_once_with()

    def test_bootstrap_failure_aborts(
        self, abc_context: SolutionDependencyContext, abc_drivers: dict[str, FakeDriver]
    ) -> None:
        zero = MagicMock()
        zero.run.return_value = False

        assert LocalBuilder(abc_context, abc_drivers, FakeOracle(), zero_builder=zero).run() is None

        zero.register_tree_hash_aliases.assert_not_called()
        assert all(d.builds == [] for d in abc_drivers.values())


class TestDevelopBuilder:
    @pytest.fixture
    def fresh_drivers(self, abc_context: SolutionDependencyContext) -> dict[str, FakeDriver]:
        """Fresh clones: the head commits are on the remote and cannot be amended."""
        return {
            s.name: FakeDriver(FakeRepository(s.name, amendable=False, previous="1.0.0"))
            for s in abc_context.solutions
        }

    def test_amendable_heads_need_no_retry(
        self, abc_context: SolutionDependencyContext, abc_drivers: dict[str, FakeDriver]
    ) -> None:
        oracle = FakeOracle()
        result = DevelopBuilder(abc_context, abc_drivers, oracle).run()

        assert result is not None
        assert result.type is BuildResultType.CI
        assert oracle.reads == 3
        assert result.generated_artifacts[0].artifact.version == v("1.0.1-ci.1")

    def test_new_commit_restarts_from_the_solution(
        self, abc_context: SolutionDependencyContext, fresh_drivers: dict[str, FakeDriver]
    ) -> None:
        builder = DevelopBuilder(abc_context, fresh_drivers, FakeOracle())

        result = builder.run()

        assert result is not None
        # Each solution got one new commit, so its CI version moved once.
        assert builder.versions == [v("1.0.1-ci.2")] * 3
        for driver in fresh_drivers.values():
            assert driver.repository.head.endswith("-1")
            assert len(driver.builds) == 1

    def test_retries_are_bounded(
        self, abc_context: SolutionDependencyContext, fresh_drivers: dict[str, FakeDriver]
    ) -> None:
        builder = DevelopBuilder(
            abc_context, fresh_drivers, FakeOracle(), config=StackConfig(max_retries=2)
        )

        assert builder.run() is None

        assert fresh_drivers["C"].builds == []


class TestReleaseBuilder:
    def test_official_release(
        self, abc_context: SolutionDependencyContext, abc_drivers: dict[str, FakeDriver]
    ) -> None:
        builder = release_builder(abc_context, abc_drivers)

        result = builder.run()

        assert result is not None
        assert result.type is BuildResultType.RELEASE
        assert set(result.release_notes) == {"A", "B", "C"}
        for driver in abc_drivers.values():
            repo = driver.repository
            assert repo.tags == {v("1.0.1")}
            assert repo.merges == [("develop", "master")]
            assert repo.branch == "develop"
            assert driver.versions == [v("1.0.1")]

    def test_prerelease_is_not_merged(
        self, abc_context: SolutionDependencyContext, abc_drivers: dict[str, FakeDriver]
    ) -> None:
        builder = release_builder(abc_context, abc_drivers, ScriptedSelector())

        assert builder.run() is not None

        for driver in abc_drivers.values():
            assert driver.repository.merges == []
            assert driver.repository.tags == {v("1.0.1-rc.1")}

    def test_already_released_solution_is_skipped(self) -> None:
        context = analyze(
            [
                solution("A", project("A", "a", ("a-lib",))),
                solution("B", project("B", "b", ("b-lib",), (ref("a-lib", "1.3.0"),))),
            ]
        )
        drivers = {
            "A": FakeDriver(FakeRepository("A", previous="1.2.0", release_tag="1.3.0")),
            "B": FakeDriver(FakeRepository("B", previous="1.0.0")),
        }
        builder = release_builder(context, drivers)

        result = builder.run()

        assert result is not None
        assert drivers["A"].builds == []
        assert drivers["A"].repository.tags == set()
        assert drivers["B"].upgrades == []
        assert [g.solution_name for g in result.generated_artifacts] == ["B"]

    def test_upgrades_of_a_released_commit_get_their_own_commit(self) -> None:
        context = analyze(
            [
                solution("A", project("A", "a", ("a-lib",))),
                solution("B", project("B", "b", ("b-lib",), (ref("a-lib", "1.0.0"),))),
            ]
        )
        drivers = {
            "A": FakeDriver(FakeRepository("A", previous="1.0.0")),
            "B": FakeDriver(FakeRepository("B", previous="1.2.0", release_tag="1.3.0")),
        }
        builder = release_builder(context, drivers)

        assert builder.run() is not None

        repo = drivers["B"].repository
        assert repo.messages == ["Upgrade stack references of B."]
        assert repo.tagged_at == {v("1.3.1"): "B-1"}
        assert builder.commits[1] == "B-1"
        assert drivers["A"].repository.messages == []
        assert drivers["A"].repository.tagged_at == {v("1.0.1"): "A-0"}

    def test_references_moved_since_the_roadmap(self) -> None:
        def stack(a_version: str) -> SolutionDependencyContext:
            return analyze(
                [
                    solution("A", project("A", "a", ("a-lib",))),
                    solution("B", project("B", "b", ("b-lib",), (ref("a-lib", a_version),))),
                ]
            )

        drivers = {
            "A": FakeDriver(FakeRepository("A", previous="1.0.0")),
            "B": FakeDriver(FakeRepository("B", previous="1.0.0")),
        }
        plan = ReleaseRoadmap.create(stack("1.0.0"), drivers, FakeOracle())
        assert plan is not None
        assert plan.update_roadmap(AutomaticVersionSelector())

        # B was pinned by hand to the coming version after the roadmap was computed.
        builder = ReleaseBuilder(stack("1.0.1"), drivers, plan)

        assert builder.run() is None

        assert drivers["B"].upgrades == []
        assert drivers["B"].repository.messages == []
        assert all(d.builds == [] for d in drivers.values())

    def test_failed_build_removes_its_tag(
        self, abc_context: SolutionDependencyContext, abc_drivers: dict[str, FakeDriver]
    ) -> None:
        builder = release_builder(abc_context, abc_drivers)
        abc_drivers["B"].build_ok = False

        assert builder.run() is None

        repo = abc_drivers["B"].repository
        assert repo.tags == set()
        assert repo.deleted_tags == [v("1.0.1")]
        assert repo.branch == "develop"
        assert abc_drivers["C"].repository.tags == set()

    def test_failed_merge_stops_the_run(
        self, abc_context: SolutionDependencyContext, abc_drivers: dict[str, FakeDriver]
    ) -> None:
        builder = release_builder(abc_context, abc_drivers)
        abc_drivers["A"].repository.merge_ok = False

        assert builder.run() is None

        assert abc_drivers["A"].repository.tags == set()
        assert abc_drivers["A"].builds == []

    def test_incomplete_roadmap(
        self, abc_context: SolutionDependencyContext, abc_drivers: dict[str, FakeDriver]
    ) -> None:
        plan = ReleaseRoadmap.create(abc_context, abc_drivers, FakeOracle())

        assert ReleaseBuilder(abc_context, abc_drivers, plan).run() is None

        assert all(d.builds == [] for d in abc_drivers.values())


class TestPublishBuildResult:
    @pytest.fixture
    def result(self) -> BuildResult:
        return BuildResult(
            type=BuildResultType.RELEASE,
            generated_artifacts=tuple(
                GeneratedArtifact(
                    artifact=Artifact(type="pypi", name=n).with_version("1.0.1"),
                    solution_name=n,
                )
                for n in ("a", "b")
            ),
        )

    def test_pushes_missing_artifacts(self, result: BuildResult) -> None:
        existing = result.generated_artifacts[0].artifact
        feed = FakeFeed(existing)

        assert publish_build_result(result, feed)

        assert feed.pushed == [result.generated_artifacts[1].artifact]

    def test_push_failure(self, result: BuildResult) -> None:
        feed = FakeFeed()
        feed.push_ok = False

        assert not publish_build_result(result, feed)

        assert len(feed.pushed) == 1
