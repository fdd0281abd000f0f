"""Stack configuration, read from the [config] table of stack.toml."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class StackConfig(BaseModel):
    """Settings of a stack. Relative paths are resolved against the stack root.

    Attributes:
        develop_branch: Line CI builds and releases start from.
        master_branch: Line official releases are merged into and tagged on.
        local_branch: Line local builds are made on.
        feed_dir: Local artifact feed that receives published packages.
        zero_feed_dir: Feed that receives bootstrap (zero version) packages.
        cache_file: Bootstrap cache of known source-tree hashes.
        roadmap_file: Where ``roadmap`` saves and ``release`` reads the roadmap.
        max_retries: Bound on develop builds restarted after a new commit.
        with_tests: Whether builds run the test suites.
        ci_prerelease: Pre-release label of CI build versions.
        local_prerelease: Pre-release label of local build versions.
    """

    model_config = ConfigDict(extra="forbid")

    develop_branch: str = "develop"
    master_branch: str = "master"
    local_branch: str = "local"
    feed_dir: Path = Path(".stack/feed")
    zero_feed_dir: Path = Path(".stack/zero-feed")
    cache_file: Path = Path(".stack/zero-cache.toml")
    roadmap_file: Path = Path(".stack/roadmap.toml")
    max_retries: int = Field(default=3, ge=0)
    with_tests: bool = True
    ci_prerelease: str = "ci"
    local_prerelease: str = "local"

    @classmethod
    def from_table(cls, table: dict[str, Any] | None, root: Path) -> StackConfig:
        """Build the configuration from a [config] table, paths made absolute."""
        config = cls.model_validate(dict(table or {}))
        return config.model_copy(
            update={
                name: root / getattr(config, name)
                for name in ("feed_dir", "zero_feed_dir", "cache_file", "roadmap_file")
            }
        )
