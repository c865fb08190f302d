"""
Local instance records.

An instance's metadata lives inside its own data directory as
``instance_info.json``; everything else about it is derived from its name
and the configured roots (see :class:`Paths`).
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from instctl.config import PathsConfig
from instctl.errors import FailedPreconditionError, InstanceNotFoundError
from instctl.logging import get_logger
from instctl.upgrade.operations import read_json, write_json
from instctl.upgrade.version import Version, parse_semantic_version

logger = get_logger(__name__)

METADATA_FILE = "instance_info.json"
BACKUP_META_FILE = "backup.json"
TLS_FILES = ("edbtlscert.pem", "edbprivkey.pem")


class InstallInfo(BaseModel):
    """
    An installed server build.

    Attributes:
        version: Version of the build.
        package_url: Where the build was downloaded from.
        install_dir: Installation directory.
        server_path: Server executable.
        installed_at: ISO 8601 timestamp of the installation.
    """

    version: str
    package_url: str | None = None
    install_dir: str
    server_path: str
    installed_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        parse_semantic_version(v)
        return v


class InstanceInfo(BaseModel):
    """
    Identity of a local instance as persisted in ``instance_info.json``.

    Attributes:
        name: Instance name.
        port: TCP port the server listens on.
        installation: Server build serving the instance.
    """

    name: str
    port: int = Field(..., gt=0, lt=65536)
    installation: InstallInfo | None = None

    @property
    def version(self) -> Version:
        """Installed server version."""
        if self.installation is None:
            raise FailedPreconditionError(
                f"instance {self.name!r} has no installation recorded",
                details={"instance": self.name},
            )
        return Version.parse(self.installation.version)


class Paths(BaseModel):
    """
    Filesystem locations of one instance.

    ``data_dir`` and ``backup_dir`` are siblings so that moving one onto the
    other is a single same-filesystem rename.
    """

    data_dir: Path
    backup_dir: Path
    dump_path: Path
    upgrade_marker: Path
    runstate_dir: Path

    @classmethod
    def for_instance(cls, name: str, config: PathsConfig) -> Paths:
        data_root = Path(config.data_root).expanduser()
        return cls(
            data_dir=data_root / name,
            backup_dir=data_root / f"{name}.backup",
            dump_path=data_root / f"{name}.dump",
            upgrade_marker=data_root / f"{name}.UPGRADE_IN_PROGRESS",
            runstate_dir=Path(config.runstate_root).expanduser() / name,
        )

    @property
    def metadata_path(self) -> Path:
        return self.data_dir / METADATA_FILE


class InstanceRegistry:
    """Reads and writes local instance metadata."""

    def __init__(self, config: PathsConfig) -> None:
        self._config = config

    def paths(self, name: str) -> Paths:
        return Paths.for_instance(name, self._config)

    def exists(self, name: str) -> bool:
        return self.paths(name).metadata_path.exists()

    def read(self, name: str) -> InstanceInfo:
        """
        Load an instance's metadata.

        Raises:
            InstanceNotFoundError: If the instance has no metadata file.
            FailedPreconditionError: If the metadata file is invalid.
        """
        path = self.paths(name).metadata_path
        if not path.exists():
            raise InstanceNotFoundError(
                f"instance {name!r} not found",
                details={"instance": name, "path": str(path)},
            )
        return read_json(path, "instance metadata", InstanceInfo)

    def write(self, instance: InstanceInfo) -> None:
        """Persist ``instance`` into its data directory."""
        write_json(
            self.paths(instance.name).metadata_path,
            "new instance metadata",
            instance,
        )
