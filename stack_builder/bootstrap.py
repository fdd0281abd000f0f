"""Bootstrap (zero) builds of the build-tooling projects.

Build projects change rarely and cannot depend on the versions they help
producing. They are built once per distinct source-tree state, in the
placeholder zero version, and published to a dedicated feed. A TOML cache
remembers, for each build project, the tree hashes already built.
"""

from __future__ import annotations

from collections.abc import Mapping
from contextlib import ExitStack
from pathlib import Path

import tomlkit

from .graph import SolutionDependencyContext
from .interfaces import ArtifactRepository, SolutionDriver
from .models import Artifact, BuildProjectInfo, UpdatePackageInfo
from .shell import error, step
from .toml import load_toml, save_toml
from .versions import ZERO_VERSION


class ZeroBuilder:
    def __init__(
        self,
        context: SolutionDependencyContext,
        drivers: Mapping[str, SolutionDriver],
        zero_feed: ArtifactRepository,
        cache_file: Path,
    ) -> None:
        if context.has_error:
            raise ValueError(f"Invalid dependency context: {context.error}")
        self.context = context
        self.drivers = drivers
        self.zero_feed = zero_feed
        self.cache_file = Path(cache_file)
        self.projects = list(context.build_projects)
        self.cache: dict[str, set[str]] = {}
        self.must_build: set[str] = {p.full_name for p in self.projects}

    def _driver(self, project: BuildProjectInfo) -> SolutionDriver:
        return self.drivers[project.solution_name]

    def tree_hash(self, project: BuildProjectInfo) -> str | None:
        return self._driver(project).repository.tree_hash(project.folder)

    def load_cache(self) -> None:
        """Read the cache, keeping only entries of current build projects."""
        self.cache = {}
        known = {p.full_name for p in self.projects}
        projects = load_toml(self.cache_file, missing_ok=True).get("projects", {})
        for name, hashes in projects.items():
            if name in known:
                self.cache[name] = {str(h) for h in hashes}

    def save_cache(self) -> None:
        doc = tomlkit.document()
        doc.add(tomlkit.comment("Source-tree hashes of zero-built build projects."))
        projects = tomlkit.table()
        for name in sorted(self.cache):
            projects[name] = sorted(self.cache[name])
        doc["projects"] = projects
        save_toml(self.cache_file, doc)

    def _is_up_to_date(self, project: BuildProjectInfo, tree_hash: str | None) -> bool:
        if tree_hash is None or tree_hash not in self.cache.get(project.full_name, set()):
            return False
        if any(d in self.must_build for d in project.dependencies):
            return False
        if project.must_pack:
            zero = Artifact(type=project.package_type, name=project.full_name)
            return self.zero_feed.exists(zero.with_version(ZERO_VERSION))
        return True

    def analyze(self) -> list[BuildProjectInfo]:
        """Compute which build projects must be built.

        Build projects are visited dependencies first, so a dependency's
        status is known when its consumers are checked.
        """
        self.must_build = {p.full_name for p in self.projects}
        pending: list[BuildProjectInfo] = []
        for p in self.projects:
            if self._is_up_to_date(p, self.tree_hash(p)):
                self.must_build.discard(p.full_name)
                print(f"  {p.full_name}: up to date")
            else:
                pending.append(p)
                print(f"  {p.full_name}: must build")
        return pending

    def _zero_pins(self) -> dict[str, list[UpdatePackageInfo]]:
        packed = {p.full_name for p in self.projects if p.must_pack}
        pins: dict[str, list[UpdatePackageInfo]] = {}
        for p in self.projects:
            for package_id in p.upgrade_packages:
                if package_id in packed:
                    pins.setdefault(p.solution_name, []).append(
                        UpdatePackageInfo(
                            solution_name=p.solution_name,
                            project_name=p.project_name,
                            package_id=package_id,
                            target_version=ZERO_VERSION,
                        )
                    )
        return pins

    def run(self) -> bool:
        """Build every build project that is not up to date.

        The cache is always saved, even on failure, so that the projects
        built before the failure are not built again.
        """
        step(f"Bootstrap analysis of {len(self.projects)} build projects")
        self.load_cache()
        try:
            pending = self.analyze()
            if not pending:
                print("  All build projects are up to date.")
                return True
            step(f"Zero building {len(pending)} build projects")
            with ExitStack() as stack:
                drivers = {p.solution_name: self._driver(p) for p in self.projects}
                for driver in drivers.values():
                    stack.enter_context(driver.restoring_scope())
                # Every build project is pinned, including those that are
                # up to date, so that they all see zero versions. The pins
                # are undone when the scopes exit.
                for solution_name, pins in self._zero_pins().items():
                    if not drivers[solution_name].apply_package_upgrades(pins):
                        error(f"Unable to pin zero versions in {solution_name}.")
                        return False
                for p in pending:
                    tree_hash = self.tree_hash(p)
                    print(f"\n  {p.full_name}")
                    if not self._driver(p).zero_build_project(p):
                        self.cache.pop(p.full_name, None)
                        error(f"Zero build of {p.full_name} failed.")
                        return False
                    if tree_hash is not None:
                        self.cache.setdefault(p.full_name, set()).add(tree_hash)
                    self.must_build.discard(p.full_name)
            return True
        finally:
            self.save_cache()

    def register_tree_hash_aliases(self) -> None:
        """Record the current tree hash of every build project as known.

        Called after an orchestrated run: the commits it made only change
        package references and versions, never what the tooling does.
        """
        if not self.cache:
            self.load_cache()
        for p in self.projects:
            tree_hash = self.tree_hash(p)
            if tree_hash is not None and p.full_name not in self.must_build:
                self.cache.setdefault(p.full_name, set()).add(tree_hash)
        self.save_cache()
