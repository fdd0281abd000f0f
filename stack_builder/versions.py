"""Version parsing and shape utilities.

Handles conversion between version strings and semver objects, with
special handling for incomplete version strings (e.g., "1.0" → "1.0.0"),
plus the few questions the release engine asks about a version's shape
(is it a patch, a pre-release, on the zero major line?).
"""

from __future__ import annotations

import packaging.version
import semver

PRERELEASE_LABEL = "rc"

# Placeholder version every bootstrap (zero) build is published with.
ZERO_VERSION = semver.Version(0, 0, 0, prerelease="0")


def parse_version(version: str | semver.Version) -> semver.Version:
    """Parse a version string into a semver.Version object.

    Handles incomplete versions by padding with zeros:
    - "1" → "1.0.0"
    - "1.2" → "1.2.0"
    - "1.2.3-rc.1" → "1.2.3-rc.1"

    A leading "v" (as found in release tags) is ignored.
    """
    if isinstance(version, semver.Version):
        return version
    text = version.strip().removeprefix("v")
    core, sep, suffix = text.partition("-")
    if not sep:
        core, sep, suffix = text.partition("+")
    parts = core.split(".")
    # Pad with zeros to ensure we have at least 3 parts
    while len(parts) < 3:
        parts.append("0")
    return semver.Version.parse(".".join(parts[:3]) + sep + suffix)


def is_prerelease(version: semver.Version) -> bool:
    return version.prerelease is not None


def is_patch(version: semver.Version) -> bool:
    """A patch version only increments the patch number of its line."""
    return version.patch != 0


def is_zero_major(version: semver.Version) -> bool:
    return version.major == 0


def successors(previous: semver.Version | None) -> list[semver.Version]:
    """Versions that may directly follow ``previous``, lowest first.

    Official releases get their patch, minor and major bumps, each with a
    ``-rc.1`` pre-release in front of it. A pre-release may be followed by
    its next pre-release or by its official version.
    """
    if previous is None:
        officials = [
            semver.Version(0, 0, 1),
            semver.Version(0, 1, 0),
            semver.Version(1, 0, 0),
        ]
    elif is_prerelease(previous):
        return sorted({previous.bump_prerelease(), previous.finalize_version()})
    else:
        officials = [
            previous.bump_patch(),
            previous.bump_minor(),
            previous.bump_major(),
        ]
    candidates: set[semver.Version] = set(officials)
    for v in officials:
        candidates.add(v.replace(prerelease=f"{PRERELEASE_LABEL}.1"))
    return sorted(candidates)


def build_version(
    previous: semver.Version | None, commit_count: int, label: str
) -> semver.Version:
    """Version for an unreleased build (CI or local) of a commit.

    The version sits right above ``previous`` and carries a pre-release
    made of ``label`` and the number of commits since ``previous``, so
    each new commit yields a greater version:

        build_version(1.2.3, 4, "ci") → 1.2.4-ci.4
        build_version(2.0.0-rc.1, 1, "ci") → 2.0.0-rc.1.ci.1
    """
    if previous is None:
        return semver.Version(0, 0, 1, prerelease=f"{label}.{commit_count}")
    if is_prerelease(previous):
        return previous.replace(
            prerelease=f"{previous.prerelease}.{label}.{commit_count}"
        )
    return previous.bump_patch().replace(prerelease=f"{label}.{commit_count}")


_PEP440_PRE = {"a": "a", "alpha": "a", "b": "b", "beta": "b", "rc": "rc"}


def pep440_version(version: semver.Version) -> str:
    """Spell a semantic version the way Python packaging accepts it.

    A leading alpha/beta/rc pre-release becomes a PEP 440 pre-release; any
    other pre-release label becomes a dev release numbered by its last
    numeric part:

        1.2.3-rc.2 → 1.2.3rc2
        1.2.4-ci.4 → 1.2.4.dev4
        2.0.0-rc.1.ci.3 → 2.0.0rc1.dev3
        0.0.0-0 → 0.0.0.dev0
    """
    text = f"{version.major}.{version.minor}.{version.patch}"
    if version.prerelease is None:
        return text
    parts = str(version.prerelease).split(".")
    if len(parts) > 1 and parts[0] in _PEP440_PRE and parts[1].isdigit():
        text += f"{_PEP440_PRE[parts[0]]}{parts[1]}"
        parts = parts[2:]
    if parts:
        numbers = [p for p in parts if p.isdigit()]
        text += f".dev{numbers[-1] if numbers else 0}"
    return text


def from_pep440(text: str) -> semver.Version:
    """Read back a PEP 440 version. Dev, post and local parts are dropped."""
    version = packaging.version.Version(text)
    major, minor, patch = (list(version.release) + [0, 0])[:3]
    prerelease = None
    if version.pre is not None:
        label = {"a": "alpha", "b": "beta"}.get(version.pre[0], version.pre[0])
        prerelease = f"{label}.{version.pre[1]}"
    return semver.Version(major, minor, patch, prerelease=prerelease)
