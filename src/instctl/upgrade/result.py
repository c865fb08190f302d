"""
Outcome of one upgrade invocation and the matching process exit codes.
"""

from __future__ import annotations

from enum import Enum, IntEnum

from pydantic import BaseModel, ConfigDict

from instctl.upgrade.classifier import UpgradePath
from instctl.upgrade.version import Version


class UpgradeAction(str, Enum):
    NONE = "none"
    UPGRADED = "upgraded"
    CANCELLED = "cancelled"


class UpgradeResult(BaseModel):
    """
    What an upgrade invocation did.

    Attributes:
        action: none (already up to date), upgraded or cancelled.
        prior_version: Version before the invocation.
        requested_version: Version that was resolved as the target.
        available_upgrade: A newer version the user could move to, if known.
        path: Upgrade path taken by a local upgrade.
    """

    model_config = ConfigDict(frozen=True)

    action: UpgradeAction
    prior_version: Version
    requested_version: Version
    available_upgrade: Version | None = None
    path: UpgradePath | None = None


class ExitCode(IntEnum):
    SUCCESS = 0
    FAILURE = 1
    # Incompatible upgrade failed after the data directory was moved aside
    NEEDS_REVERT = 7
