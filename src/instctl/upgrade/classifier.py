"""
Choosing how a local instance is upgraded.

The decision is made once per upgrade and never revisited mid-flow.
"""

from __future__ import annotations

from enum import Enum

from instctl.upgrade.version import Version


class UpgradePath(str, Enum):
    """How the data directory is carried over to the new version."""

    # New binary reads the existing data directory as is
    COMPATIBLE = "compatible"
    # Full dump of the old server, restore into a fresh data directory
    INCOMPATIBLE = "incompatible"


def is_up_to_date(current: Version, target: Version, *, force: bool = False) -> bool:
    """True when there is nothing to do: the target is not newer and not forced."""
    return target <= current and not force


def classify(
    current: Version,
    target: Version,
    *,
    force: bool = False,
    version_option: bool = False,
    force_dump_restore: bool = False,
) -> UpgradePath:
    """
    Pick the upgrade path.

    A forced upgrade with an explicit version option always takes the
    dump/restore path, even to the same version; that is how the migration
    path itself gets exercised.

    Args:
        current: Installed version.
        target: Version to install.
        force: Upgrade even if ``target`` is not newer.
        version_option: A version-selecting option was given explicitly.
        force_dump_restore: The user asked for a dump/restore upgrade.
    """
    if force_dump_restore or (force and version_option):
        return UpgradePath.INCOMPATIBLE
    if not target.is_compatible(current):
        return UpgradePath.INCOMPATIBLE
    return UpgradePath.COMPATIBLE
