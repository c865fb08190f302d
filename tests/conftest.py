"""
Pytest configuration and in-memory collaborators for the instctl tests.

The fakes implement the collaborator ABCs without processes or network, so
the upgrade flows run end to end against a real directory tree in tmp_path.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest

from instctl.config import AppConfig
from instctl.context import UpgradeContext
from instctl.errors import NoMatchingPackageError, PermissionDeniedError, UnavailableError
from instctl.upgrade.catalog import PackageCatalog, PackageInfo, VersionResolver
from instctl.upgrade.cloud import CloudClient, CloudInstance, CloudInstanceUpgrade
from instctl.upgrade.dump_restore import (
    Connection,
    ConnectionParams,
    DumpRestorePipeline,
    ProtocolClient,
)
from instctl.upgrade.installer import PackageInstaller
from instctl.upgrade.instance import TLS_FILES, InstallInfo, InstanceInfo, InstanceRegistry
from instctl.upgrade.service import ServiceController, Work
from instctl.upgrade.version import Channel, Version, VersionQuery

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]

# Single file written by FakeProtocolClient.dump_all
DUMP_FILE = "records.json"


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


# =============================================================================
# Fake collaborators
# =============================================================================


class FakeCatalog(PackageCatalog):
    """Catalog serving packages from a dict keyed by channel."""

    def __init__(self, versions: dict[Channel, list[str]] | None = None) -> None:
        self.packages = {
            channel: [
                PackageInfo(version=v, url=f"https://example.invalid/{v}.tar.zst")
                for v in vs
            ]
            for channel, vs in (versions or {}).items()
        }
        self.calls: list[Channel] = []

    async def list_packages(self, channel: Channel) -> list[PackageInfo]:
        self.calls.append(channel)
        return list(self.packages.get(channel, []))


class FakeInstaller(PackageInstaller):
    """Installer that creates an empty server binary under install_root."""

    def __init__(self, install_root: Path) -> None:
        self.install_root = install_root
        self.installed: list[str] = []
        self.error: Exception | None = None

    async def install(self, package: PackageInfo) -> InstallInfo:
        if self.error is not None:
            raise self.error
        install_dir = self.install_root / package.version
        server = install_dir / "bin" / "server"
        server.parent.mkdir(parents=True, exist_ok=True)
        server.touch()
        self.installed.append(package.version)
        return InstallInfo(
            version=package.version,
            package_url=package.url,
            install_dir=str(install_dir),
            server_path=str(server),
        )


class FakeController(ServiceController):
    """
    Records every call; errors can be injected per operation.

    Like a real service manager, restart only works for instances whose
    service was created.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.services: set[str] = set()
        self.start_error: Exception | None = None
        self.stop_error: Exception | None = None
        self.restart_error: Exception | None = None
        self.create_error: Exception | None = None
        self.detached_error: Exception | None = None
        self.spawned: list[tuple[str, str | None, bool]] = []

    async def start(self, instance: InstanceInfo) -> None:
        self.calls.append(("start", instance.name))
        if self.start_error is not None:
            raise self.start_error

    async def stop(self, name: str) -> None:
        self.calls.append(("stop", name))
        if self.stop_error is not None:
            raise self.stop_error

    async def restart(self, instance: InstanceInfo) -> None:
        self.calls.append(("restart", instance.name))
        if self.restart_error is not None:
            raise self.restart_error
        if instance.name not in self.services:
            raise UnavailableError(f"Unit instctl-{instance.name}.service not found")

    async def create_service(self, instance: InstanceInfo) -> None:
        self.calls.append(("create_service", instance.name))
        if self.create_error is not None:
            raise self.create_error
        self.services.add(instance.name)

    async def start_detached(self, instance: InstanceInfo) -> None:
        self.calls.append(("start_detached", instance.name))
        if self.detached_error is not None:
            raise self.detached_error

    async def ensure_runstate_dir(self, name: str) -> Path:
        self.calls.append(("ensure_runstate_dir", name))
        return Path("/nonexistent/run") / name

    async def spawn_background(
        self,
        instance: InstanceInfo,
        work: Work,
        *,
        self_signed: bool = False,
    ) -> None:
        self.calls.append(("spawn_background", instance.name))
        server = instance.installation.server_path if instance.installation else None
        self.spawned.append((instance.name, server, self_signed))
        await work()


class FakeConnection(Connection):
    def __init__(self, params: ConnectionParams) -> None:
        self.params = params
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class FakeProtocolClient(ProtocolClient):
    """
    Dumps the ``*.db`` records of an instance's data directory into one JSON
    file and restores them into the data directory present at restore time.
    """

    def __init__(self, data_root: Path) -> None:
        self.data_root = data_root
        self.connections: list[FakeConnection] = []
        self.dumps: list[tuple[Path, bool]] = []
        self.restores: list[Path] = []
        self.dump_error: Exception | None = None
        self.restore_error: Exception | None = None

    def records(self, name: str) -> dict[str, str]:
        """Record file name -> content in the data directory of ``name``."""
        data_dir = self.data_root / name
        return {path.name: path.read_text() for path in sorted(data_dir.glob("*.db"))}

    async def connect(self, params: ConnectionParams) -> Connection:
        connection = FakeConnection(params)
        self.connections.append(connection)
        return connection

    async def dump_all(
        self,
        connection: Connection,
        destination: Path,
        *,
        include_secrets: bool,
    ) -> None:
        if self.dump_error is not None:
            raise self.dump_error
        destination.mkdir(parents=True)
        records = self.records(connection.params.instance)
        (destination / DUMP_FILE).write_text(json.dumps(records))
        self.dumps.append((destination, include_secrets))

    async def restore_all(self, connection: Connection, source: Path) -> None:
        if self.restore_error is not None:
            raise self.restore_error
        records = json.loads((source / DUMP_FILE).read_text())
        data_dir = self.data_root / connection.params.instance
        for name, content in records.items():
            (data_dir / name).write_text(content)
        self.restores.append(source)


class FakeCloudClient(CloudClient):
    """Cloud with a fixed set of instances and offered versions."""

    def __init__(
        self,
        instances: list[CloudInstance] | None = None,
        versions: list[str] | None = None,
    ) -> None:
        self.instances = instances or []
        self.versions = [Version.parse(v) for v in versions or []]
        self.upgrades: list[CloudInstanceUpgrade] = []
        self.authenticated = True

    async def find_instance_by_name(self, name: str, org: str) -> CloudInstance | None:
        for instance in self.instances:
            if instance.name == name and instance.org_slug == org:
                return instance
        return None

    async def upgrade_instance(self, request: CloudInstanceUpgrade) -> None:
        self.upgrades.append(request)

    async def resolve_version(self, query: VersionQuery) -> Version:
        matching = [v for v in self.versions if query.matches(v)]
        if not matching:
            raise NoMatchingPackageError("no cloud version found according to your criteria")
        return max(matching)

    def ensure_authenticated(self) -> None:
        if not self.authenticated:
            raise PermissionDeniedError("Not authenticated to the cloud")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration with every path under tmp_path."""
    return AppConfig(
        paths={
            "data_root": str(tmp_path / "data"),
            "runstate_root": str(tmp_path / "run"),
            "projects_root": str(tmp_path / "projects"),
            "install_root": str(tmp_path / "portable"),
            "systemd_unit_dir": str(tmp_path / "systemd"),
        },
        upgrade={"restore_wait_timeout": 5.0},
    )


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog(
        {
            Channel.STABLE: ["2.9", "3.0", "3.1", "3.2", "4.0", "4.1"],
            Channel.TESTING: ["5.0-beta.1", "5.0-rc.1"],
            Channel.NIGHTLY: ["5.0-dev.8120", "5.0-dev.8123"],
        }
    )


@pytest.fixture
def ctx(app_config: AppConfig, catalog: FakeCatalog, tmp_path: Path) -> UpgradeContext:
    """UpgradeContext wired with in-memory fakes."""
    controller = FakeController()
    return UpgradeContext(
        config=app_config,
        registry=InstanceRegistry(app_config.paths),
        resolver=VersionResolver(catalog),
        installer=FakeInstaller(tmp_path / "portable"),
        controller=controller,
        pipeline=DumpRestorePipeline(
            FakeProtocolClient(Path(app_config.paths.data_root)),
            controller,
            app_config.protocol,
            app_config.upgrade,
        ),
        cloud=FakeCloudClient(),
    )


@pytest.fixture
def make_instance(ctx: UpgradeContext, tmp_path: Path) -> Callable[..., InstanceInfo]:
    """
    Create a local instance with a populated data directory.

    The data directory holds ``instance_info.json``, a data file and the TLS
    material.
    """

    def _make(name: str = "main", version: str = "3.1", port: int = 10700) -> InstanceInfo:
        install_dir = tmp_path / "portable" / version
        server = install_dir / "bin" / "server"
        server.parent.mkdir(parents=True, exist_ok=True)
        server.touch()
        instance = InstanceInfo(
            name=name,
            port=port,
            installation=InstallInfo(
                version=version,
                install_dir=str(install_dir),
                server_path=str(server),
            ),
        )
        paths = ctx.registry.paths(name)
        paths.data_dir.mkdir(parents=True)
        (paths.data_dir / "data.db").write_text(f"data of {name}")
        for tls_file in TLS_FILES:
            (paths.data_dir / tls_file).write_text(f"{tls_file} of {name}")
        ctx.registry.write(instance)
        return instance

    return _make


def snapshot(root: Path) -> dict[str, str]:
    """Relative path -> content of every file below ``root``."""
    return {
        str(path.relative_to(root)): path.read_text()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


@pytest.fixture
def tree_snapshot() -> Callable[[Path], dict[str, str]]:
    return snapshot
