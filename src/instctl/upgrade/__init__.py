"""
Instance upgrade orchestration.

This package implements upgrades of local and cloud instances:
- Version model, queries and target resolution against the package catalog
- Classification into compatible and incompatible upgrades
- Backup of the data directory with an upgrade marker, and revert
- Dump and restore through a running server
- The two local step sequences and the cloud upgrade flow
"""

from instctl.upgrade.backup import BackupManager, BackupMeta, UpgradeMeta
from instctl.upgrade.catalog import (
    HttpPackageCatalog,
    PackageCatalog,
    PackageInfo,
    VersionResolver,
)
from instctl.upgrade.classifier import UpgradePath, classify, is_up_to_date
from instctl.upgrade.cloud import (
    CloudClient,
    CloudInstance,
    CloudInstanceUpgrade,
    HttpCloudClient,
    upgrade_cloud,
)
from instctl.upgrade.dump_restore import (
    CommandProtocolClient,
    ConnectionParams,
    DumpRestorePipeline,
    ProtocolClient,
)
from instctl.upgrade.installer import CommandPackageInstaller, PackageInstaller
from instctl.upgrade.instance import InstallInfo, InstanceInfo, InstanceRegistry, Paths
from instctl.upgrade.local import (
    COMPATIBLE_STEPS,
    INCOMPATIBLE_STEPS,
    CompatibleUpgrade,
    IncompatibleUpgrade,
    LocalUpgradeExecutor,
    UpgradeProgress,
    UpgradeStep,
    upgrade_local,
)
from instctl.upgrade.project import check_project, find_project_dirs_by_instance
from instctl.upgrade.result import ExitCode, UpgradeAction, UpgradeResult
from instctl.upgrade.service import (
    ServiceController,
    ServiceRegistration,
    SystemdServiceController,
    register_service,
)
from instctl.upgrade.version import Channel, Version, VersionQuery

__all__ = [
    # Versions
    "Version",
    "VersionQuery",
    "Channel",
    # Catalog
    "PackageCatalog",
    "HttpPackageCatalog",
    "PackageInfo",
    "VersionResolver",
    # Classification
    "UpgradePath",
    "classify",
    "is_up_to_date",
    # Instances
    "InstanceInfo",
    "InstallInfo",
    "InstanceRegistry",
    "Paths",
    # Backup
    "BackupManager",
    "BackupMeta",
    "UpgradeMeta",
    # Dump and restore
    "ProtocolClient",
    "CommandProtocolClient",
    "ConnectionParams",
    "DumpRestorePipeline",
    # Installation and services
    "PackageInstaller",
    "CommandPackageInstaller",
    "ServiceController",
    "SystemdServiceController",
    "ServiceRegistration",
    "register_service",
    # Executors
    "LocalUpgradeExecutor",
    "CompatibleUpgrade",
    "IncompatibleUpgrade",
    "UpgradeStep",
    "UpgradeProgress",
    "COMPATIBLE_STEPS",
    "INCOMPATIBLE_STEPS",
    "upgrade_local",
    # Cloud
    "CloudClient",
    "HttpCloudClient",
    "CloudInstance",
    "CloudInstanceUpgrade",
    "upgrade_cloud",
    # Projects
    "check_project",
    "find_project_dirs_by_instance",
    # Results
    "UpgradeAction",
    "UpgradeResult",
    "ExitCode",
]
