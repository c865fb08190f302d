"""
Collaborator wiring for one upgrade invocation.

UpgradeContext bundles the configuration with every collaborator the upgrade
flows use. ``from_config`` builds the default implementations; tests build
the dataclass directly with in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from instctl.config import AppConfig
from instctl.upgrade.backup import BackupManager
from instctl.upgrade.catalog import HttpPackageCatalog, VersionResolver
from instctl.upgrade.cloud import CloudClient, HttpCloudClient
from instctl.upgrade.dump_restore import CommandProtocolClient, DumpRestorePipeline
from instctl.upgrade.installer import CommandPackageInstaller, PackageInstaller
from instctl.upgrade.instance import InstanceRegistry
from instctl.upgrade.service import ServiceController, SystemdServiceController


@dataclass
class UpgradeContext:
    """
    Everything an upgrade flow needs.

    Attributes:
        config: Application configuration.
        registry: Local instance metadata store.
        resolver: Target version resolution.
        installer: Server package installer.
        controller: Server process management.
        pipeline: Dump and restore of instance data.
        cloud: Cloud control plane client.
    """

    config: AppConfig
    registry: InstanceRegistry
    resolver: VersionResolver
    installer: PackageInstaller
    controller: ServiceController
    pipeline: DumpRestorePipeline
    cloud: CloudClient

    @classmethod
    def from_config(cls, config: AppConfig) -> UpgradeContext:
        controller = SystemdServiceController(config.paths, config.upgrade)
        return cls(
            config=config,
            registry=InstanceRegistry(config.paths),
            resolver=VersionResolver(HttpPackageCatalog(config.catalog)),
            installer=CommandPackageInstaller(config.installer, config.paths),
            controller=controller,
            pipeline=DumpRestorePipeline(
                CommandProtocolClient(config.protocol),
                controller,
                config.protocol,
                config.upgrade,
            ),
            cloud=HttpCloudClient(config.cloud),
        )

    def backup_manager(self, name: str) -> BackupManager:
        return BackupManager(self.registry.paths(name))

    @property
    def projects_root(self) -> Path:
        return Path(self.config.paths.projects_root).expanduser()

    def revert_command(self, name: str) -> str:
        """Operator command that reverts instance ``name``."""
        return self.config.upgrade.revert_command.format(name=name)
