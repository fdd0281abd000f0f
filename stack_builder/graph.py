"""Dependency graph utilities.

Turns solutions and their package references into a ranked dependency
graph of solutions. Solutions must be processed in dependency order so that
when solution A consumes a package produced by solution B, B comes first.

The graph is an arena: every DependentSolution is addressed by its stable
index, and requirement / impact sets are stored as index tuples. It is
built in two passes: an ascending pass computes requirements from already
built records, then a descending pass adds the impacts.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from .models import (
    Artifact,
    ArtifactInstance,
    BuildProjectInfo,
    DependencyRow,
    Project,
    Record,
    Solution,
)


def topo_sort(deps: dict[str, set[str]]) -> tuple[list[str], set[str]]:
    """Topologically sort names by their dependencies.

    Uses Kahn's algorithm to produce an order where dependencies come
    before dependents. Names with no pending dependencies are taken
    alphabetically for deterministic output. Dependencies outside ``deps``
    are ignored.

    Returns:
        The order and the set of names that could not be ordered (members
        of, or dependent on, a cycle). The set is empty on success.
    """
    # Count incoming edges (dependencies) for each name
    in_degree = {n: 0 for n in deps}
    # Track reverse dependencies (who depends on each name)
    reverse_deps: dict[str, list[str]] = {n: [] for n in deps}

    for name, required in deps.items():
        for dep in required:
            if dep in deps and dep != name:
                in_degree[name] += 1
                reverse_deps[dep].append(name)

    queue = sorted(n for n, d in in_degree.items() if d == 0)
    order: list[str] = []

    while queue:
        node = queue.pop(0)
        order.append(node)
        for dependent in sorted(reverse_deps[node]):
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)
        queue.sort()

    return order, set(deps) - set(order)


class SorterResult(Record):
    """Outcome of sorting the solutions.

    ``cycle`` holds the names that could not be ordered; the ordering is
    complete only when it is empty.
    """

    order: tuple[str, ...] = ()
    cycle: frozenset[str] = frozenset()

    @property
    def is_complete(self) -> bool:
        return not self.cycle


def _producers(solutions: Iterable[Solution]) -> dict[Artifact, Project]:
    return {a: p for s in solutions for p in s.projects for a in p.generated_artifacts}


def sort_solutions(solutions: Sequence[Solution]) -> SorterResult:
    """Order solutions so that package producers come before consumers."""
    producers = _producers(solutions)
    deps: dict[str, set[str]] = {s.name: set() for s in solutions}
    for s in solutions:
        for p in s.projects:
            for ref in p.package_references:
                target = producers.get(ref.artifact)
                if target is not None and target.solution != s.name:
                    deps[s.name].add(target.solution)
    order, cycle = topo_sort(deps)
    return SorterResult(order=tuple(order), cycle=frozenset(cycle))


def build_dependency_table(solutions: Sequence[Solution]) -> list[DependencyRow]:
    """Expand solutions into their inter-solution reference rows.

    One row per (solution, origin project, target project) where the origin
    project consumes a package generated by the target project of another
    solution. A solution without such reference gets one row with no
    origin nor target.
    """
    producers = _producers(solutions)
    table: list[DependencyRow] = []
    for s in solutions:
        rows: list[DependencyRow] = []
        seen: set[tuple[str, str]] = set()
        for p in s.projects:
            for ref in p.package_references:
                target = producers.get(ref.artifact)
                if target is None or target.solution == s.name:
                    continue
                key = (p.name, target.full_name)
                if key not in seen:
                    seen.add(key)
                    rows.append(DependencyRow(solution=s.name, origin=p, target=target))
        table.extend(rows or [DependencyRow(solution=s.name)])
    return table


class LocalPackageDependency(Record):
    """A package produced in the stack and consumed by another solution.

    Attributes:
        origin: Index of the consuming solution.
        target: Index of the producing solution.
        project: The consuming project.
        reference: The package reference as currently recorded in ``project``.
        is_published: Whether the consuming project is published.
    """

    origin: int
    target: int
    project: Project
    reference: ArtifactInstance
    is_published: bool


class SolutionRequirements(Record):
    """Forward view of a solution: what it requires (first pass)."""

    index: int
    solution: Solution
    rank: int = 0
    requirements: tuple[int, ...] = ()
    minimal_requirements: tuple[int, ...] = ()
    transitive_requirements: tuple[int, ...] = ()
    published_requirements: tuple[int, ...] = ()

    @property
    def name(self) -> str:
        return self.solution.name

    def __str__(self) -> str:
        return self.solution.name


class DependentSolution(SolutionRequirements):
    """Complete view of a solution in the stack: requirements and impacts.

    All sets are tuples of solution indices in ascending order.
    """

    impacts: tuple[int, ...] = ()
    minimal_impacts: tuple[int, ...] = ()
    transitive_impacts: tuple[int, ...] = ()
    imported_local_packages: tuple[LocalPackageDependency, ...] = ()
    exported_local_packages: tuple[LocalPackageDependency, ...] = ()


def _minimal(direct: Sequence[int], transitive_of: dict[int, tuple[int, ...]]) -> tuple[int, ...]:
    implied = {t for d in direct for t in transitive_of[d]}
    return tuple(d for d in direct if d not in implied)


def _closure(direct: Sequence[int], transitive_of: dict[int, tuple[int, ...]]) -> tuple[int, ...]:
    closure = set(direct)
    for d in direct:
        closure.update(transitive_of[d])
    return tuple(sorted(closure))


def _forward_pass(
    solutions: Sequence[Solution], table: Sequence[DependencyRow]
) -> list[SolutionRequirements]:
    index_of = {s.name: s.index for s in solutions}
    forward: list[SolutionRequirements] = []
    transitive_of: dict[int, tuple[int, ...]] = {}
    rank_of: dict[int, int] = {}
    for s in solutions:
        rows = [r for r in table if r.solution == s.name and r.target is not None]
        requirements = sorted({index_of[r.target.solution] for r in rows})
        published = sorted(
            {index_of[r.target.solution] for r in rows if r.origin.is_published}
        )
        # Requirements always have a lower index: they are already computed.
        minimal = _minimal(requirements, transitive_of)
        rank = max((rank_of[r] for r in minimal), default=-1) + 1
        transitive_of[s.index] = _closure(requirements, transitive_of)
        rank_of[s.index] = rank
        forward.append(
            SolutionRequirements(
                index=s.index,
                solution=s,
                rank=rank,
                requirements=tuple(requirements),
                minimal_requirements=minimal,
                transitive_requirements=transitive_of[s.index],
                published_requirements=tuple(published),
            )
        )
    return forward


def _package_dependencies(
    solutions: Sequence[Solution], table: Sequence[DependencyRow]
) -> list[LocalPackageDependency]:
    index_of = {s.name: s.index for s in solutions}
    return [
        LocalPackageDependency(
            origin=index_of[row.solution],
            target=index_of[row.target.solution],
            project=row.origin,
            reference=ref,
            is_published=row.origin.is_published,
        )
        for row in table
        if row.target is not None
        for ref in row.references()
    ]


def _reverse_pass(
    forward: Sequence[SolutionRequirements],
    packages: Sequence[LocalPackageDependency],
) -> list[DependentSolution]:
    impacts_of: dict[int, list[int]] = {f.index: [] for f in forward}
    for f in forward:
        for r in f.requirements:
            impacts_of[r].append(f.index)
    transitive_of: dict[int, tuple[int, ...]] = {}
    result: dict[int, DependentSolution] = {}
    for f in reversed(forward):
        # Impacts always have a greater index: they are already computed.
        impacts = sorted(impacts_of[f.index])
        transitive_of[f.index] = _closure(impacts, transitive_of)
        result[f.index] = DependentSolution(
            **dict(f),
            impacts=tuple(impacts),
            minimal_impacts=_minimal(impacts, transitive_of),
            transitive_impacts=transitive_of[f.index],
            imported_local_packages=tuple(p for p in packages if p.origin == f.index),
            exported_local_packages=tuple(p for p in packages if p.target == f.index),
        )
    return [result[f.index] for f in forward]


def _closure_of_build_projects(
    solutions: Sequence[Solution], producers: dict[Artifact, Project]
) -> dict[str, Project]:
    members: dict[str, Project] = {}
    pending = [p for s in solutions for p in s.projects if p.is_build_project]
    while pending:
        p = pending.pop()
        if p.full_name in members:
            continue
        members[p.full_name] = p
        for ref in p.package_references:
            producer = producers.get(ref.artifact)
            if producer is not None:
                pending.append(producer)
    return members


def build_projects_info(
    solutions: Sequence[Solution],
) -> tuple[list[BuildProjectInfo], str | None]:
    """Compute the build projects handled by the bootstrap builder.

    These are the build-tooling projects plus every local project they
    (transitively) consume. Projects consumed by another member must be
    packed in zero version.

    Returns:
        The build projects, dependencies first, and an error message if
        they could not be ordered.
    """
    producers = _producers(solutions)
    members = _closure_of_build_projects(solutions, producers)
    direct: dict[str, set[str]] = {}
    for key, p in members.items():
        direct[key] = {
            producers[ref.artifact].full_name
            for ref in p.package_references
            if ref.artifact in producers and producers[ref.artifact].full_name != key
        }
    order, cycle = topo_sort(direct)
    if cycle:
        return [], f"Build projects dependency cycle detected involving: {sorted(cycle)}"

    consumed = {d for deps in direct.values() for d in deps}
    transitive: dict[str, set[str]] = {}
    for key in order:
        transitive[key] = set(direct[key])
        for d in direct[key]:
            transitive[key] |= transitive[d]

    def full_name(key: str) -> str:
        p = members[key]
        if key in consumed and p.generated_artifacts:
            return p.generated_artifacts[0].name
        return key

    infos: list[BuildProjectInfo] = []
    for i, key in enumerate(order):
        p = members[key]
        must_pack = key in consumed and bool(p.generated_artifacts)
        infos.append(
            BuildProjectInfo(
                index=i,
                full_name=full_name(key),
                solution_name=p.solution,
                project_name=p.name,
                folder=p.path,
                must_pack=must_pack,
                package_type=(
                    p.generated_artifacts[0].type if p.generated_artifacts else "pypi"
                ),
                dependencies=tuple(sorted(full_name(d) for d in transitive[key])),
                upgrade_packages=tuple(
                    sorted(
                        {
                            ref.artifact.name
                            for ref in p.package_references
                            if ref.artifact in producers
                        }
                    )
                ),
            )
        )
    return infos, None


class SolutionDependencyContext:
    """The ranked graph of every solution of the stack.

    The context is immutable. Whenever solutions or projects change, a new
    context must be obtained from :func:`analyze`; it is never patched.
    When ``has_error`` is true (cycle among solutions or build projects),
    the dependency table and solutions are empty and nothing else may be
    used.
    """

    def __init__(
        self,
        sorter_result: SorterResult,
        dependency_table: Sequence[DependencyRow] = (),
        solutions: Sequence[DependentSolution] = (),
        package_dependencies: Sequence[LocalPackageDependency] = (),
        build_projects: Sequence[BuildProjectInfo] = (),
        error: str | None = None,
    ) -> None:
        self.sorter_result = sorter_result
        self.error = error
        if error is not None:
            dependency_table, solutions, package_dependencies = (), (), ()
        self.dependency_table: tuple[DependencyRow, ...] = tuple(dependency_table)
        self.solutions: tuple[DependentSolution, ...] = tuple(solutions)
        self.package_dependencies: tuple[LocalPackageDependency, ...] = tuple(
            package_dependencies
        )
        self.build_projects: tuple[BuildProjectInfo, ...] = tuple(build_projects)
        self._by_name = {s.name: s for s in self.solutions}

    @property
    def has_error(self) -> bool:
        return self.error is not None

    def __getitem__(self, key: int | str) -> DependentSolution:
        if isinstance(key, str):
            return self._by_name[key]
        return self.solutions[key]

    def __len__(self) -> int:
        return len(self.solutions)

    def get(self, name: str) -> DependentSolution | None:
        return self._by_name.get(name)

    def resolve(self, indices: Iterable[int]) -> list[DependentSolution]:
        """Map a tuple of indices back to their solutions."""
        return [self.solutions[i] for i in indices]

    def names(self, indices: Iterable[int]) -> list[str]:
        return [self.solutions[i].name for i in indices]

    def describe(self, current: DependentSolution | None = None) -> list[str]:
        """One line per solution, grouped by rank, current one starred."""
        lines: list[str] = []
        rank = -1
        for s in sorted(self.solutions, key=lambda s: (s.rank, s.index)):
            if s.rank != rank:
                rank = s.rank
                lines.append(f" -- Rank {rank}")
            star = "*" if current is not None and s.index == current.index else " "
            lines.append(f"{star}   {s.index} - {s.name}")
        return lines


def analyze(solutions: Iterable[Solution]) -> SolutionDependencyContext:
    """Sort solutions and build their dependency context.

    Assigns each solution its index, then computes the dependency table,
    the dependent solutions in two passes and the build projects.
    """
    solutions = list(solutions)
    sorter_result = sort_solutions(solutions)
    if not sorter_result.is_complete:
        return SolutionDependencyContext(
            sorter_result,
            error=f"Dependency cycle detected involving: {sorted(sorter_result.cycle)}",
        )
    by_name = {s.name: s for s in solutions}
    ordered = [
        by_name[name].model_copy(update={"index": i})
        for i, name in enumerate(sorter_result.order)
    ]
    table = build_dependency_table(ordered)
    forward = _forward_pass(ordered, table)
    packages = _package_dependencies(ordered, table)
    dependents = _reverse_pass(forward, packages)
    build_projects, build_error = build_projects_info(ordered)
    return SolutionDependencyContext(
        sorter_result,
        dependency_table=table,
        solutions=dependents,
        package_dependencies=packages,
        build_projects=build_projects,
        error=build_error,
    )
