"""Commit version oracle over release tags.

Release tags follow the ``v<semver>`` pattern. A commit's possible
versions are the successors of the closest release below it; a commit
created above it may use the successors of that same release, unless the
commit itself is released, in which case the successors of its own tag.
"""

from __future__ import annotations

import semver

from .git import TAG_PREFIX, GitRepository
from .models import CommitVersionInfo
from .shell import warn
from .versions import parse_version, successors


def _release_tags(repository: GitRepository, *args: str) -> list[semver.Version]:
    versions: list[semver.Version] = []
    for tag in repository.run_git("tag", "--list", f"{TAG_PREFIX}*", *args, check=False).splitlines():
        try:
            versions.append(parse_version(tag))
        except ValueError:
            warn(f"Ignoring tag {tag}: not a semantic version.")
    return sorted(versions, reverse=True)


class GitTagVersionOracle:
    def read(self, repository: GitRepository) -> CommitVersionInfo | None:
        head = repository.head_id()
        if not head:
            return None
        on_head = _release_tags(repository, "--points-at", "HEAD")
        release_tag = on_head[0] if on_head else None
        below = [v for v in _release_tags(repository, "--merged", "HEAD") if v not in on_head]
        previous = below[0] if below else None
        since = f"{TAG_PREFIX}{previous}..HEAD" if previous is not None else "HEAD"
        count = int(repository.run_git("rev-list", "--count", since))
        possible = successors(previous)
        next_possible = successors(release_tag) if release_tag is not None else possible
        return CommitVersionInfo(
            commit_id=head,
            release_tag=release_tag,
            previous_version=previous,
            commits_since_previous=count,
            possible_versions=tuple(possible),
            next_possible_versions=tuple(next_possible),
        )
