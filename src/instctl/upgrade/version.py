"""
Server versions and version queries.

A Version is ``MAJOR.MINOR.PATCH[-PRERELEASE][+BUILD]`` (the patch component
may be omitted on input). Versions are totally ordered; build metadata does
not take part in the ordering.

A VersionQuery is what the user asks for: a channel (stable, testing,
nightly) and either an optional version filter such as ``3`` or ``3.1``, or
one exact prerelease build such as ``4.0-rc.1``.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from instctl.errors import InvalidArgumentError

# Accepts: 3.0, 3.0.1, 4.0.0-rc.1, 5.0.0-dev.8123+d20240105
VERSION_PATTERN = re.compile(
    r"^(?P<major>0|[1-9]\d*)"
    r"\.(?P<minor>0|[1-9]\d*)"
    r"(?:\.(?P<patch>0|[1-9]\d*))?"
    r"(?:-(?P<prerelease>[0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?"
    r"(?:\+(?P<buildmetadata>[0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)

# Accepts: 3, 3.1, 3.1.2
FILTER_PATTERN = re.compile(r"^\d+(?:\.\d+){0,2}$")


def parse_semantic_version(version: str) -> dict[str, Any]:
    """
    Parse and validate a version string.

    Args:
        version: Version string (e.g., "3.0", "4.0.0-rc.1").

    Returns:
        Dictionary with major, minor, patch, prerelease and buildmetadata.

    Raises:
        InvalidArgumentError: If version string is invalid.
    """
    if not version:
        raise InvalidArgumentError(
            "Version string cannot be empty",
            details={"version": version},
        )

    match = VERSION_PATTERN.match(version.strip())
    if not match:
        raise InvalidArgumentError(
            f"Invalid version: {version}",
            details={
                "version": version,
                "format": "MAJOR.MINOR[.PATCH][-PRERELEASE][+BUILDMETADATA]",
                "examples": ["3.0", "3.1.2", "4.0.0-rc.1"],
            },
        )

    return {
        "major": int(match.group("major")),
        "minor": int(match.group("minor")),
        "patch": int(match.group("patch") or 0),
        "prerelease": match.group("prerelease"),
        "buildmetadata": match.group("buildmetadata"),
    }


def _prerelease_key(prerelease: str | None) -> tuple[Any, ...]:
    # A release sorts above every prerelease of the same triple
    if prerelease is None:
        return (1,)
    parts: list[tuple[int, int | str]] = []
    for ident in prerelease.split("."):
        if ident.isdigit():
            parts.append((0, int(ident)))
        else:
            parts.append((1, ident))
    return (0, tuple(parts))


class Channel(str, Enum):
    """Release channels a version can belong to."""

    STABLE = "stable"
    TESTING = "testing"
    NIGHTLY = "nightly"


# Channels whose builds a query on the key channel accepts
_ADMITTED_CHANNELS: dict[Channel, frozenset[Channel]] = {
    Channel.STABLE: frozenset({Channel.STABLE}),
    Channel.TESTING: frozenset({Channel.STABLE, Channel.TESTING}),
    Channel.NIGHTLY: frozenset({Channel.NIGHTLY}),
}


class Version(BaseModel):
    """
    A concrete server version.

    Attributes:
        major: Major version; data formats only change across majors.
        minor: Minor version.
        patch: Patch version.
        prerelease: Prerelease identifier (``rc.1``, ``dev.8123``).
        build: Build metadata, ignored for ordering.
    """

    model_config = ConfigDict(frozen=True)

    major: int = Field(..., ge=0)
    minor: int = Field(default=0, ge=0)
    patch: int = Field(default=0, ge=0)
    prerelease: str | None = None
    build: str | None = None

    @classmethod
    def parse(cls, text: str) -> Version:
        """Parse a version string."""
        parts = parse_semantic_version(text)
        return cls(
            major=parts["major"],
            minor=parts["minor"],
            patch=parts["patch"],
            prerelease=parts["prerelease"],
            build=parts["buildmetadata"],
        )

    @property
    def sort_key(self) -> tuple[Any, ...]:
        return (self.major, self.minor, self.patch, _prerelease_key(self.prerelease))

    @property
    def channel(self) -> Channel:
        """Channel the version is published on."""
        if self.prerelease is None:
            return Channel.STABLE
        if self.prerelease.startswith("dev"):
            return Channel.NIGHTLY
        return Channel.TESTING

    @property
    def is_stable(self) -> bool:
        return self.prerelease is None

    def is_compatible(self, other: Version) -> bool:
        """
        Check whether this version can use data written by ``other``.

        Stable releases share the on-disk format within a major version.
        Prereleases (testing and nightly) may change the format between any
        two builds, so they are only compatible with the exact same version.
        """
        if self.is_stable and other.is_stable:
            return self.major == other.major
        return self.sort_key == other.sort_key

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.sort_key == other.sort_key

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.sort_key < other.sort_key

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.sort_key <= other.sort_key

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.sort_key > other.sort_key

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.sort_key >= other.sort_key

    def __hash__(self) -> int:
        return hash(self.sort_key)

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}"
        if self.patch:
            text += f".{self.patch}"
        if self.prerelease:
            text += f"-{self.prerelease}"
        if self.build:
            text += f"+{self.build}"
        return text


def compare_versions(v1: str, v2: str) -> int:
    """
    Compare two version strings.

    Returns:
        -1 if v1 < v2, 0 if v1 == v2, 1 if v1 > v2

    Raises:
        InvalidArgumentError: If either version is invalid.
    """
    a, b = Version.parse(v1), Version.parse(v2)
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


# =============================================================================
# Version Query
# =============================================================================


class VersionQuery(BaseModel):
    """
    A version filter resolved against a package catalog.

    Attributes:
        channel: Channel to pick builds from.
        version: Optional prefix filter (``3``, ``3.1``, ``3.1.2``).
        exact: A single build to select, for prereleases named in full.
    """

    model_config = ConfigDict(frozen=True)

    channel: Channel = Channel.STABLE
    version: str | None = None
    exact: Version | None = None

    @field_validator("version")
    @classmethod
    def validate_filter(cls, v: str | None) -> str | None:
        """Validate the version filter."""
        if v is not None and not FILTER_PATTERN.match(v):
            raise ValueError(f"Invalid version filter: {v}")
        return v

    @model_validator(mode="after")
    def check_exact(self) -> VersionQuery:
        """An exact build excludes a prefix filter and fixes the channel."""
        if self.exact is None:
            return self
        if self.version is not None:
            raise ValueError("exact and version cannot both be set")
        if self.exact.channel is not self.channel:
            raise ValueError(
                f"{self.exact} is on the {self.exact.channel.value} channel, "
                f"not {self.channel.value}"
            )
        return self

    @classmethod
    def stable(cls) -> VersionQuery:
        """Latest stable release."""
        return cls(channel=Channel.STABLE)

    @classmethod
    def from_version(cls, version: Version) -> VersionQuery:
        """Track the major version of ``version`` on its own channel."""
        if version.channel is Channel.NIGHTLY:
            return cls(channel=Channel.NIGHTLY)
        return cls(channel=version.channel, version=str(version.major))

    @classmethod
    def from_options(
        cls,
        *,
        to_latest: bool = False,
        to_nightly: bool = False,
        to_testing: bool = False,
        to_channel: str | None = None,
        to_version: str | None = None,
        default: VersionQuery | None = None,
    ) -> tuple[VersionQuery | None, bool]:
        """
        Build a query from command-line options.

        Returns:
            Tuple of (query, version_option_given). The query is ``default``
            when no option was given.

        Raises:
            InvalidArgumentError: If more than one option is given or a value
                is invalid.
        """
        given = [
            name
            for name, value in (
                ("--to-latest", to_latest),
                ("--to-nightly", to_nightly),
                ("--to-testing", to_testing),
                ("--to-channel", to_channel),
                ("--to-version", to_version),
            )
            if value
        ]
        if len(given) > 1:
            raise InvalidArgumentError(
                f"Options {', '.join(given)} are mutually exclusive",
                details={"options": given},
            )

        if to_latest:
            return cls.stable(), True
        if to_nightly:
            return cls(channel=Channel.NIGHTLY), True
        if to_testing:
            return cls(channel=Channel.TESTING), True
        if to_channel:
            try:
                return cls(channel=Channel(to_channel.lower())), True
            except ValueError as e:
                raise InvalidArgumentError(
                    f"Unknown channel: {to_channel}",
                    details={"channels": [c.value for c in Channel]},
                ) from e

        if to_version:
            if FILTER_PATTERN.match(to_version):
                return cls(channel=Channel.STABLE, version=to_version), True
            # A prerelease such as 4.0-rc.1 names one build on its own channel
            exact = Version.parse(to_version)
            if exact.is_stable:
                version = f"{exact.major}.{exact.minor}.{exact.patch}"
                return cls(channel=Channel.STABLE, version=version), True
            return cls(channel=exact.channel, exact=exact), True

        return default, False

    def matches(self, version: Version) -> bool:
        """Check whether ``version`` satisfies this query."""
        if self.exact is not None:
            return version == self.exact
        if version.channel not in _ADMITTED_CHANNELS[self.channel]:
            return False
        if self.version is None:
            return True
        wanted = [int(p) for p in self.version.split(".")]
        actual = [version.major, version.minor, version.patch]
        return actual[: len(wanted)] == wanted

    def upgrade_flag(self) -> str:
        """Command-line flag that reproduces this query."""
        if self.exact is not None:
            return f"--to-version={self.exact}"
        if self.channel is Channel.NIGHTLY:
            return "--to-nightly"
        if self.channel is Channel.TESTING:
            return "--to-testing"
        if self.version is not None:
            return f"--to-version={self.version}"
        return "--to-latest"

    def __str__(self) -> str:
        if self.exact is not None:
            return f"{self.channel.value} ={self.exact}"
        if self.version is None:
            return self.channel.value
        return f"{self.channel.value} {self.version}"
