"""Artifact repository backed by a local directory of built distributions."""

from __future__ import annotations

import shutil
from collections.abc import Iterable
from pathlib import Path

from packaging.utils import (
    InvalidSdistFilename,
    InvalidWheelFilename,
    canonicalize_name,
    parse_sdist_filename,
    parse_wheel_filename,
)
from packaging.version import Version

from .models import ArtifactInstance
from .versions import pep440_version


def _distribution(path: Path) -> tuple[str, Version] | None:
    try:
        if path.name.endswith(".whl"):
            name, version, _, _ = parse_wheel_filename(path.name)
        elif path.name.endswith(".tar.gz"):
            name, version = parse_sdist_filename(path.name)
        else:
            return None
    except (InvalidWheelFilename, InvalidSdistFilename):
        return None
    return canonicalize_name(name), version


def find_distributions(folders: Iterable[Path], artifact: ArtifactInstance) -> list[Path]:
    """Wheels and sdists of ``artifact`` found in ``folders``."""
    wanted = (artifact.artifact.name, Version(pep440_version(artifact.version)))
    found: list[Path] = []
    for folder in folders:
        if not folder.is_dir():
            continue
        for path in sorted(folder.iterdir()):
            if _distribution(path) == wanted:
                found.append(path)
    return found


class LocalFeed:
    """A folder of distributions usable as ``--find-links`` source.

    ``sources`` are the folders built distributions are picked from when
    an artifact is pushed.
    """

    def __init__(self, path: Path, sources: Iterable[Path] = ()) -> None:
        self.path = Path(path)
        self.sources = list(sources)

    def exists(self, artifact: ArtifactInstance) -> bool:
        return bool(find_distributions([self.path], artifact))

    def push(self, artifact: ArtifactInstance) -> bool:
        files = find_distributions(self.sources, artifact)
        if not files:
            return False
        self.path.mkdir(parents=True, exist_ok=True)
        for f in files:
            shutil.copy2(f, self.path / f.name)
            print(f"  Published: {f.name}")
        return True
