"""Git-backed version control for a solution's working tree."""

from __future__ import annotations

import subprocess
from pathlib import Path

import semver

from .shell import error, git

TAG_PREFIX = "v"


def tag_name(version: semver.Version) -> str:
    return f"{TAG_PREFIX}{version}"


class GitRepository:
    """One git working tree, driven through the ``git`` executable.

    Commands that may legitimately fail (amend on a fresh repository, tag
    deletion, merge conflicts) return a status instead of raising.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def run_git(self, *args: str, check: bool = True) -> str:
        return git(*args, cwd=self.path, check=check)

    def head_id(self) -> str:
        return self.run_git("rev-parse", "HEAD")

    def current_branch(self) -> str:
        return self.run_git("rev-parse", "--abbrev-ref", "HEAD")

    def has_changes(self) -> bool:
        return bool(self.run_git("status", "--porcelain"))

    def commit(self, message: str) -> str | None:
        """Commit every pending change. Nothing to commit is not an error."""
        if self.has_changes():
            self.run_git("add", "--all")
            try:
                self.run_git("commit", "-m", message)
            except subprocess.CalledProcessError as e:
                error(f"git commit failed in {self.path}: {e.stderr or e}")
                return None
        return self.head_id()

    def can_amend(self) -> bool:
        """Amending is allowed when the head commit is not on any remote yet."""
        if not self.run_git("rev-parse", "--verify", "--quiet", "HEAD", check=False):
            return False
        remotes = self.run_git("branch", "--remotes", "--contains", "HEAD", check=False)
        return not remotes

    def amend_commit(self) -> str | None:
        if not self.can_amend():
            return None
        if self.has_changes():
            self.run_git("add", "--all")
            self.run_git("commit", "--amend", "--no-edit")
        return self.head_id()

    def tag(self, version: semver.Version) -> bool:
        result = subprocess.run(
            ["git", "tag", tag_name(version)], cwd=self.path, capture_output=True
        )
        return result.returncode == 0

    def delete_tag(self, version: semver.Version) -> bool:
        result = subprocess.run(
            ["git", "tag", "--delete", tag_name(version)], cwd=self.path, capture_output=True
        )
        return result.returncode == 0

    def tree_hash(self, relative_path: str) -> str | None:
        """Hash of the committed tree at ``relative_path`` (the root when empty)."""
        spec = f"HEAD:{relative_path.strip('/')}" if relative_path.strip("/") else "HEAD^{tree}"
        return self.run_git("rev-parse", spec, check=False) or None

    def checkout(self, line: str) -> bool:
        result = subprocess.run(["git", "checkout", line], cwd=self.path, capture_output=True)
        return result.returncode == 0

    def merge(self, source_line: str, into_line: str) -> bool:
        if not self.checkout(into_line):
            error(f"Unable to checkout {into_line} in {self.path}.")
            return False
        result = subprocess.run(
            ["git", "merge", "--no-ff", "--no-edit", source_line],
            cwd=self.path,
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            self.run_git("merge", "--abort", check=False)
            error(f"Merge of {source_line} into {into_line} failed: {result.stderr.strip()}")
            return False
        return True
