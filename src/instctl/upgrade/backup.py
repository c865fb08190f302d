"""
Backup and revert of an instance data directory.

Before an incompatible upgrade touches the data directory, the
BackupManager:

1. writes the upgrade marker (UpgradeMeta),
2. writes BackupMeta into the live data directory,
3. removes a stale backup directory left by an earlier attempt,
4. renames the data directory to the backup directory.

The marker is written first, so whenever the process dies before step 4 the
marker alone shows that no upgrade completed and the data directory is still
the original one. The marker is removed only after the upgraded instance is
fully operational.

Revert undoes a backup: drop the half-created data directory, rename the
backup back into place and remove the marker.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime

import psutil
from pydantic import BaseModel, Field

from instctl.errors import (
    BackupFailedError,
    FailedPreconditionError,
    InstctlError,
    UpgradeAlreadyInProgressError,
)
from instctl.logging import get_logger
from instctl.upgrade.instance import BACKUP_META_FILE, InstallInfo, InstanceInfo, Paths
from instctl.upgrade.operations import (
    read_json,
    remove_directory,
    remove_file,
    rename_directory,
    write_json,
)

logger = get_logger(__name__)


class UpgradeMeta(BaseModel):
    """
    Upgrade marker contents.

    Attributes:
        source: Version the instance was upgraded from.
        target: Version being installed.
        started: ISO 8601 timestamp when the upgrade started.
        pid: Process id of the upgrading process.
    """

    source: str
    target: str
    started: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    pid: int = Field(default_factory=os.getpid)


class BackupMeta(BaseModel):
    """Written into a data directory right before it becomes a backup."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())


class BackupManager:
    """
    Owns the data, backup and marker paths of one instance during an upgrade.

    Attributes:
        paths: Filesystem locations of the instance.
    """

    def __init__(self, paths: Paths) -> None:
        self.paths = paths

    def is_upgrade_in_progress(self) -> bool:
        """True while an upgrade marker exists."""
        return self.paths.upgrade_marker.exists()

    def read_upgrade_meta(self) -> UpgradeMeta | None:
        """Return the marker contents, or None if there is no marker."""
        if not self.is_upgrade_in_progress():
            return None
        return read_json(self.paths.upgrade_marker, "upgrade marker", UpgradeMeta)

    def read_backup_meta(self) -> BackupMeta | None:
        """Return the metadata of a complete backup, or None."""
        path = self.paths.backup_dir / BACKUP_META_FILE
        if not path.exists():
            return None
        return read_json(path, "backup metadata", BackupMeta)

    def begin_backup(self, instance: InstanceInfo, install: InstallInfo) -> UpgradeMeta:
        """
        Move the live data directory aside before it is reinitialized.

        After this call ``data_dir`` no longer exists.

        Args:
            instance: Instance being upgraded (still describing the old build).
            install: The newly installed build.

        Returns:
            The marker record that was written.

        Raises:
            UpgradeAlreadyInProgressError: If the marker already exists.
            BackupFailedError: If any filesystem step fails.
        """
        if self.is_upgrade_in_progress():
            raise UpgradeAlreadyInProgressError(
                "Upgrade is already in progress",
                details={
                    "instance": instance.name,
                    "marker": str(self.paths.upgrade_marker),
                },
            )

        meta = UpgradeMeta(source=str(instance.version), target=install.version)
        logger.info(
            "Backing up data directory",
            extra={
                "instance": instance.name,
                "data_dir": str(self.paths.data_dir),
                "backup_dir": str(self.paths.backup_dir),
            },
        )

        try:
            write_json(self.paths.upgrade_marker, "upgrade marker", meta)
            write_json(
                self.paths.data_dir / BACKUP_META_FILE,
                "backup metadata",
                BackupMeta(),
            )
            if self.paths.backup_dir.exists():
                logger.info(
                    "Removing stale backup",
                    extra={"backup_dir": str(self.paths.backup_dir)},
                )
                remove_directory(self.paths.backup_dir)
            rename_directory(self.paths.data_dir, self.paths.backup_dir)
        except InstctlError as e:
            raise BackupFailedError(
                f"cannot back up {instance.name!r}: {e.message}",
                details={"instance": instance.name, "cause": e.message, **e.details},
            ) from e

        return meta

    def finish(self) -> None:
        """Remove the upgrade marker once the upgraded instance is operational."""
        remove_file(self.paths.upgrade_marker)
        logger.info(
            "Upgrade marker removed",
            extra={"marker": str(self.paths.upgrade_marker)},
        )

    def discard_backup(self) -> bool:
        """Delete the backup directory. Refused while an upgrade is in progress."""
        if self.is_upgrade_in_progress():
            raise FailedPreconditionError(
                "Cannot discard the backup while an upgrade is in progress",
                details={"marker": str(self.paths.upgrade_marker)},
            )
        return remove_directory(self.paths.backup_dir)

    def revert(self, *, force: bool = False, ignore_pid_check: bool = False) -> UpgradeMeta | None:
        """
        Restore the pre-upgrade data directory from the backup.

        Args:
            force: Revert even though the upgrade completed (no marker).
            ignore_pid_check: Skip the check that the upgrading process is gone.

        Returns:
            The marker contents if an unfinished upgrade was reverted.

        Raises:
            FailedPreconditionError: If there is no backup, the upgrade
                completed and ``force`` is not set, or the upgrading process is
                still running.
        """
        upgrade_meta = self.read_upgrade_meta()
        backup_meta = self.read_backup_meta()

        if (
            backup_meta is not None
            and upgrade_meta is not None
            and datetime.fromisoformat(backup_meta.timestamp)
            < datetime.fromisoformat(upgrade_meta.started)
        ):
            # Left over from an earlier upgrade, not taken by this attempt
            backup_meta = None

        if backup_meta is None:
            if upgrade_meta is not None and self.paths.data_dir.is_dir():
                # Interrupted before the rename: data_dir is still the original
                self._check_not_running(upgrade_meta, ignore_pid_check)
                remove_file(self.paths.data_dir / BACKUP_META_FILE, missing_ok=True)
                remove_file(self.paths.upgrade_marker)
                logger.info(
                    "Upgrade was interrupted before backup; marker removed",
                    extra={"data_dir": str(self.paths.data_dir)},
                )
                return upgrade_meta
            raise FailedPreconditionError(
                "No backup found",
                details={"backup_dir": str(self.paths.backup_dir)},
            )

        if upgrade_meta is None and not force:
            raise FailedPreconditionError(
                "The last upgrade completed; use force to revert it anyway",
                details={"backup_timestamp": backup_meta.timestamp},
            )

        if upgrade_meta is not None:
            self._check_not_running(upgrade_meta, ignore_pid_check)

        logger.info(
            "Reverting data directory",
            extra={
                "backup_dir": str(self.paths.backup_dir),
                "data_dir": str(self.paths.data_dir),
            },
        )
        remove_directory(self.paths.data_dir)
        rename_directory(self.paths.backup_dir, self.paths.data_dir)
        remove_file(self.paths.data_dir / BACKUP_META_FILE)
        remove_file(self.paths.upgrade_marker, missing_ok=True)

        return upgrade_meta

    @staticmethod
    def _check_not_running(meta: UpgradeMeta, ignore_pid_check: bool) -> None:
        if ignore_pid_check or meta.pid == os.getpid():
            return
        if psutil.pid_exists(meta.pid):
            raise FailedPreconditionError(
                f"Upgrade is still running in process {meta.pid}",
                details={
                    "pid": meta.pid,
                    "hint": "Wait for it to finish or pass --ignore-pid-check",
                },
            )
