"""
Local instance upgrades.

An upgrade follows one of two fixed step sequences, chosen once by
:func:`instctl.upgrade.classifier.classify`:

- compatible: install → persist metadata → register service → restart → done
- incompatible: install → dump and stop → backup → reinit data dir →
  restore → persist metadata → copy TLS material → register service →
  restart → delete upgrade marker → done

The incompatible sequence has a revert region. From the moment the data
directory has been moved aside until the new instance's metadata and TLS
material are in place, a failure leaves no usable data directory; it is
reported as NeedsRevertError and the operator reverts from the backup. Nothing
is rolled back automatically.

The upgrade marker is deleted last, after the new server has been restarted,
so an interrupted upgrade is always visible as an upgrade in progress.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel

from instctl.errors import (
    InstctlError,
    InternalError,
    NeedsRevertError,
    UpgradeAlreadyInProgressError,
)
from instctl.logging import get_logger
from instctl.upgrade.backup import BackupManager
from instctl.upgrade.catalog import PackageInfo, version_hint
from instctl.upgrade.classifier import UpgradePath, classify, is_up_to_date
from instctl.upgrade.instance import TLS_FILES, InstallInfo, InstanceInfo
from instctl.upgrade.operations import copy_file
from instctl.upgrade.result import UpgradeAction, UpgradeResult
from instctl.upgrade.service import ServiceRegistration, register_service, restart_instance
from instctl.upgrade.version import VersionQuery

if TYPE_CHECKING:
    from instctl.context import UpgradeContext

logger = get_logger(__name__)


class UpgradeStep(str, Enum):
    """Steps of a local upgrade."""

    INSTALL = "install"
    DUMP_AND_STOP = "dump_and_stop"
    BACKUP = "backup"
    REINIT_DATA_DIR = "reinit_data_dir"
    RESTORE = "restore"
    PERSIST_METADATA = "persist_metadata"
    COPY_TLS_MATERIAL = "copy_tls_material"
    REGISTER_SERVICE = "register_service"
    RESTART = "restart"
    DELETE_UPGRADE_MARKER = "delete_upgrade_marker"
    DONE = "done"


COMPATIBLE_STEPS: tuple[UpgradeStep, ...] = (
    UpgradeStep.INSTALL,
    UpgradeStep.PERSIST_METADATA,
    UpgradeStep.REGISTER_SERVICE,
    UpgradeStep.RESTART,
    UpgradeStep.DONE,
)

INCOMPATIBLE_STEPS: tuple[UpgradeStep, ...] = (
    UpgradeStep.INSTALL,
    UpgradeStep.DUMP_AND_STOP,
    UpgradeStep.BACKUP,
    UpgradeStep.REINIT_DATA_DIR,
    UpgradeStep.RESTORE,
    UpgradeStep.PERSIST_METADATA,
    UpgradeStep.COPY_TLS_MATERIAL,
    UpgradeStep.REGISTER_SERVICE,
    UpgradeStep.RESTART,
    UpgradeStep.DELETE_UPGRADE_MARKER,
    UpgradeStep.DONE,
)

# Failing here leaves the instance without a usable data directory
REVERT_REQUIRED_STEPS = frozenset(
    {
        UpgradeStep.REINIT_DATA_DIR,
        UpgradeStep.RESTORE,
        UpgradeStep.PERSIST_METADATA,
        UpgradeStep.COPY_TLS_MATERIAL,
    }
)


class UpgradeProgress(BaseModel):
    """Reported to progress callbacks when a step starts."""

    instance: str
    path: UpgradePath
    step: UpgradeStep
    target_version: str


ProgressCallback = Callable[[UpgradeProgress], None]


class LocalUpgradeExecutor:
    """
    Runs one local upgrade through a fixed sequence of steps.

    Subclasses define the sequence and implement each step as a
    ``_step_<name>`` coroutine.

    Attributes:
        instance: The instance as it was before the upgrade.
        package: Package being installed.
        step: Step currently executing, None before start.
        install: The new installation, set by the install step.
        registration: Outcome of the service registration step.
    """

    path: UpgradePath
    steps: tuple[UpgradeStep, ...] = ()

    def __init__(
        self,
        ctx: UpgradeContext,
        instance: InstanceInfo,
        package: PackageInfo,
    ) -> None:
        self.ctx = ctx
        self.instance = instance
        self.package = package
        self.paths = ctx.registry.paths(instance.name)
        self.step: UpgradeStep | None = None
        self.install: InstallInfo | None = None
        self.registration: ServiceRegistration | None = None
        self._progress_callbacks: list[ProgressCallback] = []

    @property
    def installed(self) -> InstallInfo:
        """The new installation; only available once the install step ran."""
        if self.install is None:
            raise InternalError(
                "install step has not run",
                details={"instance": self.instance.name, "step": self.step},
            )
        return self.install

    @property
    def upgraded(self) -> InstanceInfo:
        """The instance pointing at the new installation."""
        return self.instance.model_copy(update={"installation": self.installed})

    def add_progress_callback(self, callback: ProgressCallback) -> None:
        """Add a callback to be notified when a step starts."""
        self._progress_callbacks.append(callback)

    def _notify_progress(self, progress: UpgradeProgress) -> None:
        for callback in self._progress_callbacks:
            try:
                callback(progress)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    def _transition_to(self, step: UpgradeStep) -> None:
        previous = self.step.value if self.step else "start"
        logger.info(
            f"Upgrade step: {previous} -> {step.value}",
            extra={
                "instance": self.instance.name,
                "path": self.path.value,
                "old_step": previous,
                "new_step": step.value,
                "target_version": self.package.version,
            },
        )
        self.step = step
        self._notify_progress(
            UpgradeProgress(
                instance=self.instance.name,
                path=self.path,
                step=step,
                target_version=self.package.version,
            )
        )

    async def run(self) -> InstanceInfo:
        """
        Execute every step in order.

        Returns:
            The upgraded instance.
        """
        for step in self.steps:
            self._transition_to(step)
            if step is UpgradeStep.DONE:
                break
            await self._run_step(step)

        logger.info(
            "Instance upgraded",
            extra={"instance": self.instance.name, "version": self.package.version},
        )
        return self.upgraded

    async def _run_step(self, step: UpgradeStep) -> None:
        handler = getattr(self, f"_step_{step.value}")
        await handler()

    # Steps shared by both sequences

    async def _step_install(self) -> None:
        self.install = await self.ctx.installer.install(self.package)

    async def _step_persist_metadata(self) -> None:
        self.ctx.registry.write(self.upgraded)

    async def _step_register_service(self) -> None:
        self.registration = await register_service(self.ctx.controller, self.upgraded)

    async def _step_restart(self) -> None:
        registration = self.registration or ServiceRegistration(registered=True)
        await restart_instance(self.ctx.controller, self.upgraded, registration)


class CompatibleUpgrade(LocalUpgradeExecutor):
    """Swap the server binary and keep the data directory as is."""

    path = UpgradePath.COMPATIBLE
    steps = COMPATIBLE_STEPS


class IncompatibleUpgrade(LocalUpgradeExecutor):
    """Dump the old server and restore into a fresh data directory."""

    path = UpgradePath.INCOMPATIBLE
    steps = INCOMPATIBLE_STEPS

    @property
    def backup(self) -> BackupManager:
        return BackupManager(self.paths)

    async def run(self) -> InstanceInfo:
        """
        Execute every step in order.

        Raises:
            UpgradeAlreadyInProgressError: If the upgrade marker exists; the
                check happens before the first step so nothing is touched.
        """
        if self.backup.is_upgrade_in_progress():
            raise UpgradeAlreadyInProgressError(
                "Upgrade is already in progress",
                details={
                    "instance": self.instance.name,
                    "marker": str(self.paths.upgrade_marker),
                    "revert_command": self.ctx.revert_command(self.instance.name),
                },
            )
        return await super().run()

    async def _run_step(self, step: UpgradeStep) -> None:
        if step not in REVERT_REQUIRED_STEPS:
            await super()._run_step(step)
            return

        # The data directory has been moved aside, so every failure needs a revert
        try:
            await super()._run_step(step)
        except Exception as e:
            cause = e.message if isinstance(e, InstctlError) else f"{type(e).__name__}: {e}"
            revert_command = self.ctx.revert_command(self.instance.name)
            logger.error(
                f"Upgrade failed at {step.value}: {cause}",
                extra={
                    "instance": self.instance.name,
                    "step": step.value,
                    "revert_command": revert_command,
                },
            )
            raise NeedsRevertError(
                self.instance.name,
                revert_command,
                message=cause,
                details={"step": step.value},
            ) from e

    async def _step_dump_and_stop(self) -> None:
        await self.ctx.pipeline.dump(self.instance, self.paths)

    async def _step_backup(self) -> None:
        self.backup.begin_backup(self.instance, self.installed)

    async def _step_reinit_data_dir(self) -> None:
        self.ctx.pipeline.reinit_data_dir(self.paths)

    async def _step_restore(self) -> None:
        await self.ctx.pipeline.restore(self.upgraded, self.paths)

    async def _step_copy_tls_material(self) -> None:
        # Keep the old certificate so clients that pinned it still connect
        for name in TLS_FILES:
            copy_file(self.paths.backup_dir / name, self.paths.data_dir / name)

    async def _step_delete_upgrade_marker(self) -> None:
        self.backup.finish()


def create_executor(
    path: UpgradePath,
    ctx: UpgradeContext,
    instance: InstanceInfo,
    package: PackageInfo,
) -> LocalUpgradeExecutor:
    """Executor implementing ``path``."""
    if path is UpgradePath.COMPATIBLE:
        return CompatibleUpgrade(ctx, instance, package)
    return IncompatibleUpgrade(ctx, instance, package)


async def upgrade_local(
    name: str,
    query: VersionQuery | None,
    ctx: UpgradeContext,
    *,
    version_option: bool = False,
    force: bool = False,
    force_dump_restore: bool = False,
    progress: ProgressCallback | None = None,
) -> UpgradeResult:
    """
    Upgrade local instance ``name``.

    Args:
        name: Instance name.
        query: Target query; None tracks the instance's current major version.
        ctx: Collaborators.
        version_option: A version-selecting option was given explicitly.
        force: Upgrade even if the target is not newer.
        force_dump_restore: Always take the dump/restore path.
        progress: Called whenever a step starts.

    Returns:
        ``none`` if already up to date (nothing was touched), otherwise
        ``upgraded``.

    Raises:
        InstanceNotFoundError: If the instance does not exist.
        NoMatchingPackageError: If no package matches ``query``.
        NeedsRevertError: If an incompatible upgrade failed after its backup.
    """
    instance = ctx.registry.read(name)
    current = instance.version
    package = await ctx.resolver.resolve_package(query, current)
    target = package.specific
    available = await ctx.resolver.available_upgrade(target)

    if is_up_to_date(current, target, force=force):
        logger.info(
            "Already up to date",
            extra={"instance": name, "current": str(current), "latest": str(target)},
        )
        return UpgradeResult(
            action=UpgradeAction.NONE,
            prior_version=current,
            requested_version=target,
            available_upgrade=available,
        )

    hint = version_hint(target, query)
    if hint:
        logger.warning(hint, extra={"instance": name})

    path = classify(
        current,
        target,
        force=force,
        version_option=version_option,
        force_dump_restore=force_dump_restore,
    )
    executor = create_executor(path, ctx, instance, package)
    if progress is not None:
        executor.add_progress_callback(progress)
    await executor.run()

    return UpgradeResult(
        action=UpgradeAction.UPGRADED,
        prior_version=current,
        requested_version=target,
        available_upgrade=available,
        path=path,
    )
