"""
Server package installation.

Downloading and unpacking a server build is done by an external installer
command; this module only runs it and records the result as an InstallInfo.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path

from instctl.config import InstallerConfig, PathsConfig
from instctl.errors import InstallationError
from instctl.logging import get_logger
from instctl.upgrade.catalog import PackageInfo
from instctl.upgrade.instance import InstallInfo

logger = get_logger(__name__)


class PackageInstaller(ABC):
    """Installs server builds."""

    @abstractmethod
    async def install(self, package: PackageInfo) -> InstallInfo:
        """
        Install ``package`` (or reuse an existing installation of it).

        Raises:
            InstallationError: If the installation fails.
        """


class CommandPackageInstaller(PackageInstaller):
    """
    PackageInstaller running a configured installer command.

    Each version is installed into ``<install_root>/<version>``. A version
    whose server binary already exists there is not installed again.
    """

    def __init__(self, installer_config: InstallerConfig, paths_config: PathsConfig) -> None:
        self.config = installer_config
        self.install_root = Path(paths_config.install_root).expanduser()

    def install_dir(self, package: PackageInfo) -> Path:
        return self.install_root / package.version

    async def install(self, package: PackageInfo) -> InstallInfo:
        install_dir = self.install_dir(package)
        server_path = install_dir / self.config.server_binary

        if server_path.exists():
            logger.info(
                "Package already installed",
                extra={"version": package.version, "install_dir": str(install_dir)},
            )
        else:
            await self._run_installer(package, install_dir)
            if not server_path.exists():
                raise InstallationError(
                    f"installer finished but {server_path} does not exist",
                    details={"version": package.version, "install_dir": str(install_dir)},
                )

        return InstallInfo(
            version=package.version,
            package_url=package.url,
            install_dir=str(install_dir),
            server_path=str(server_path),
        )

    async def _run_installer(self, package: PackageInfo, install_dir: Path) -> None:
        values = {
            "version": package.version,
            "url": package.url,
            "sha256": package.sha256 or "",
            "install_dir": str(install_dir),
        }
        argv = [arg.format(**values) for arg in self.config.command]
        logger.info("Installing package", extra={"version": package.version, "command": argv})

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.config.timeout
            )
        except TimeoutError as e:
            raise InstallationError(
                f"installer timed out after {self.config.timeout}s",
                details={"command": " ".join(argv)},
            ) from e
        except OSError as e:
            raise InstallationError(
                f"cannot run installer: {e}",
                details={"command": " ".join(argv)},
            ) from e

        if process.returncode:
            output = stderr.decode("utf-8", errors="replace") or stdout.decode(
                "utf-8", errors="replace"
            )
            raise InstallationError(
                output.strip() or f"installer exited with code {process.returncode}",
                details={"command": " ".join(argv), "returncode": process.returncode},
            )
