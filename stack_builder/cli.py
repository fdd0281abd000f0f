"""CLI entry point for stack-builder."""

from __future__ import annotations

from pathlib import Path

import click

from .bootstrap import ZeroBuilder
from .builder import DevelopBuilder, LocalBuilder, ReleaseBuilder, publish_build_result
from .config import StackConfig
from .drivers import PythonSolutionDriver
from .feeds import LocalFeed
from .graph import SolutionDependencyContext, analyze
from .manifest import MANIFEST_NAME, load_stack
from .oracle import GitTagVersionOracle
from .release import AutomaticVersionSelector, ReleaseLevel, ReleaseRoadmap, level_of_shape
from .versions import is_prerelease, is_zero_major

CANCEL = "cancel"


class PromptVersionSelector:
    """Asks the user on the terminal. Answering "cancel" cancels the roadmap."""

    def choose_release_level(self, solution, minimum, candidates):
        levels = [lvl for lvl in ReleaseLevel if lvl >= max(minimum, ReleaseLevel.FIX)]
        click.echo(f"\n{solution.name} can be released as: {', '.join(map(str, candidates))}")
        return self._choose(f"Release level of {solution.name}", levels, minimum)

    def choose_final_version(self, solution, level, candidates):
        choices = {str(v): v for v in candidates}
        answer = click.prompt(
            f"Version of {solution.name} ({level})",
            type=click.Choice([*choices, CANCEL]),
            default=next(iter(choices)),
        )
        return choices.get(answer)

    def choose_level_for_version(self, solution, version, minimum):
        kind = "pre-release" if is_prerelease(version) else "zero major version"
        click.echo(f"\n{solution.name} will be released as {version} ({kind}).")
        levels = [lvl for lvl in ReleaseLevel if lvl >= max(minimum, ReleaseLevel.FIX)]
        default = minimum
        if not is_zero_major(version):
            default = max(minimum, level_of_shape(version))
        return self._choose(f"What does {solution.name} {version} contain", levels, default)

    def _choose(self, prompt, levels, default):
        names = {lvl.name.lower(): lvl for lvl in levels}
        answer = click.prompt(
            prompt,
            type=click.Choice([*names, CANCEL]),
            default=max(default, levels[0]).name.lower(),
        )
        return names.get(answer)


class Stack:
    """Everything the commands need, built from the manifest."""

    def __init__(self, manifest: Path) -> None:
        manifest = Path(manifest)
        if not manifest.exists():
            raise click.ClickException(f"No stack manifest at {manifest}.")
        self.root = (manifest if manifest.is_dir() else manifest.parent).resolve()
        self.config, solutions = load_stack(manifest)
        self.context: SolutionDependencyContext = analyze(solutions)
        if self.context.has_error:
            raise click.ClickException(self.context.error or "Invalid stack.")
        dist_dirs = [self.root / s.solution.path / "dist" for s in self.context.solutions]
        self.feed = LocalFeed(self.config.feed_dir, sources=dist_dirs)
        self.zero_feed = LocalFeed(
            self.config.zero_feed_dir, sources=[d / "zero" for d in dist_dirs]
        )
        self.drivers = {
            s.name: PythonSolutionDriver(s.solution, self.root, self.feed, self.zero_feed)
            for s in self.context.solutions
        }
        self.oracle = GitTagVersionOracle()

    def zero_builder(self) -> ZeroBuilder:
        return ZeroBuilder(self.context, self.drivers, self.zero_feed, self.config.cache_file)


stack_option = click.option(
    "--stack",
    "manifest",
    type=click.Path(path_type=Path),
    default=MANIFEST_NAME,
    show_default=True,
    help="Stack manifest file.",
)


@click.group()
@click.version_option(package_name="stack-builder")
def cli() -> None:
    """Build and release a stack of interdependent solutions."""


@cli.command()
@stack_option
def order(manifest: Path) -> None:
    """Show the solutions in build order, grouped by rank."""
    stack = Stack(manifest)
    for line in stack.context.describe():
        click.echo(line)


@cli.command()
@stack_option
@click.option("--auto", is_flag=True, help="Choose levels and versions without asking.")
def roadmap(manifest: Path, auto: bool) -> None:
    """Compute the release roadmap and save it for the release command."""
    stack = Stack(manifest)
    plan = ReleaseRoadmap.create(stack.context, stack.drivers, stack.oracle)
    if plan is None:
        raise click.ClickException("Unable to read the commit versions.")
    selector = AutomaticVersionSelector() if auto else PromptVersionSelector()
    if not plan.update_roadmap(selector):
        raise click.ClickException(
            "Operation cancelled." if plan.cancelled else "Unable to compute the roadmap."
        )
    plan.save(stack.config.roadmap_file)
    click.echo(f"\nRoadmap saved to {stack.config.roadmap_file}")


@cli.command()
@stack_option
@click.option("--no-tests", is_flag=True, help="Skip the test suites.")
def build(manifest: Path, no_tests: bool) -> None:
    """Build the stack: local line builds or develop line (CI) builds."""
    stack = Stack(manifest)
    first = stack.context.solutions[0].name if stack.context.solutions else None
    if first is None:
        raise click.ClickException("The stack has no solution.")
    branch = stack.drivers[first].repository.current_branch()
    config: StackConfig = stack.config
    kwargs = dict(
        config=config, zero_builder=stack.zero_builder(), with_tests=not no_tests
    )
    if branch == config.local_branch:
        builder = LocalBuilder(stack.context, stack.drivers, stack.oracle, **kwargs)
    elif branch == config.develop_branch:
        builder = DevelopBuilder(stack.context, stack.drivers, stack.oracle, **kwargs)
    else:
        raise click.ClickException(
            f"Builds run on {config.local_branch} or {config.develop_branch}, not {branch}."
        )
    result = builder.run()
    if result is None:
        raise click.ClickException("Build failed.")
    click.echo(result.model_dump_json(indent=2))


@cli.command()
@stack_option
@click.option("--no-tests", is_flag=True, help="Skip the test suites.")
def release(manifest: Path, no_tests: bool) -> None:
    """Release the stack along the saved roadmap and publish it."""
    stack = Stack(manifest)
    if not stack.config.roadmap_file.exists():
        raise click.ClickException("No roadmap: run `stack-builder roadmap` first.")
    try:
        plan = ReleaseRoadmap.load(
            stack.config.roadmap_file, stack.context, stack.drivers, stack.oracle
        )
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    builder = ReleaseBuilder(
        stack.context,
        stack.drivers,
        plan,
        config=stack.config,
        zero_builder=stack.zero_builder(),
        with_tests=not no_tests,
    )
    result = builder.run()
    if result is None:
        raise click.ClickException("Release failed.")
    if not publish_build_result(result, stack.feed):
        raise click.ClickException("Publishing failed.")
    click.echo(result.model_dump_json(indent=2))


@cli.command("zero-build")
@stack_option
def zero_build(manifest: Path) -> None:
    """Build the build-tooling projects that changed, in zero version."""
    stack = Stack(manifest)
    if not stack.zero_builder().run():
        raise click.ClickException("Zero build failed.")
