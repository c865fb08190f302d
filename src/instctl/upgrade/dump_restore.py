"""
Logical dump and restore of a whole instance.

The dump format is opaque here: a ProtocolClient turns a live server into a
dump directory and a dump directory back into a live server's contents.

Dump runs against the old server before anything on disk is changed, so a
failed dump leaves the instance exactly as it was. Restore runs against the
newly installed server on a freshly created data directory.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from instctl.config import ProtocolConfig, UpgradeConfig
from instctl.errors import (
    DumpFailedError,
    InstctlError,
    RestoreFailedError,
    UnavailableError,
)
from instctl.logging import get_logger
from instctl.upgrade.instance import InstanceInfo, Paths
from instctl.upgrade.operations import ensure_directory, remove_directory
from instctl.upgrade.service import (
    ManagedServiceRunner,
    ServiceController,
    SpawnedProcessRunner,
    run_with_server,
)

logger = get_logger(__name__)

RETRY_INTERVAL_SECONDS = 1.0


class ConnectionParams(BaseModel):
    """
    Administrative connection parameters for one instance.

    Attributes:
        instance: Instance name.
        host: Server host.
        port: Server port.
        user: Administrative user.
        wait_timeout: Seconds to keep retrying until the server accepts
            connections; 0 means a single attempt.
    """

    model_config = ConfigDict(frozen=True)

    instance: str
    host: str = "localhost"
    port: int
    user: str
    wait_timeout: float = Field(default=0.0, ge=0)

    def wait_until_available(self, timeout: float) -> ConnectionParams:
        """Return a copy that waits up to ``timeout`` seconds when connecting."""
        return self.model_copy(update={"wait_timeout": timeout})


def admin_conn_params(instance: InstanceInfo, config: ProtocolConfig) -> ConnectionParams:
    """Administrative connection parameters of a local instance."""
    return ConnectionParams(
        instance=instance.name,
        host=config.host,
        port=instance.port,
        user=config.admin_user,
    )


class Connection(ABC):
    """An open administrative connection."""

    params: ConnectionParams

    async def close(self) -> None:
        """Close the connection."""


class ProtocolClient(ABC):
    """Client side of the database protocol, as far as upgrades need it."""

    @abstractmethod
    async def connect(self, params: ConnectionParams) -> Connection:
        """
        Open an administrative connection.

        Raises:
            UnavailableError: If the server is not reachable within
                ``params.wait_timeout``.
        """

    @abstractmethod
    async def dump_all(
        self,
        connection: Connection,
        destination: Path,
        *,
        include_secrets: bool,
    ) -> None:
        """Dump every database of the server into ``destination``."""

    @abstractmethod
    async def restore_all(self, connection: Connection, source: Path) -> None:
        """Restore every database from the dump directory ``source``."""


# =============================================================================
# Command-line protocol client
# =============================================================================


class CommandConnection(Connection):
    """Connection of the CommandProtocolClient: a verified reachable endpoint."""

    def __init__(self, params: ConnectionParams) -> None:
        self.params = params


class CommandProtocolClient(ProtocolClient):
    """
    ProtocolClient that drives the database's command-line client.

    ``connect`` waits for the server's TCP port; dump and restore run the
    configured argv templates.
    """

    def __init__(self, config: ProtocolConfig) -> None:
        self.config = config

    async def connect(self, params: ConnectionParams) -> Connection:
        deadline = time.monotonic() + params.wait_timeout
        while True:
            try:
                _, writer = await asyncio.wait_for(
                    asyncio.open_connection(params.host, params.port),
                    timeout=self.config.connect_timeout,
                )
                writer.close()
                await writer.wait_closed()
                return CommandConnection(params)
            except (OSError, TimeoutError) as e:
                if time.monotonic() >= deadline:
                    raise UnavailableError(
                        f"cannot connect to {params.host}:{params.port}: {e}",
                        details={
                            "instance": params.instance,
                            "waited_seconds": params.wait_timeout,
                        },
                    ) from e
                logger.debug(
                    "Server not reachable yet, retrying",
                    extra={"instance": params.instance, "port": params.port},
                )
                await asyncio.sleep(RETRY_INTERVAL_SECONDS)

    def _render(self, template: list[str], params: ConnectionParams, path: Path) -> list[str]:
        values = {
            "host": params.host,
            "port": str(params.port),
            "user": params.user,
            "path": str(path),
            "instance": params.instance,
        }
        return [arg.format(**values) for arg in template]

    async def _run_command(self, *args: str) -> None:
        """
        Run a client command to completion.

        Raises:
            UnavailableError: If the command cannot run, times out or fails.
        """
        timeout = self.config.command_timeout
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError as e:
            raise UnavailableError(
                f"Command timed out after {timeout}s",
                details={"command": " ".join(args)},
            ) from e
        except OSError as e:
            raise UnavailableError(
                f"Failed to execute command: {e}",
                details={"command": " ".join(args), "error": str(e)},
            ) from e

        if process.returncode:
            output = stderr.decode("utf-8", errors="replace") or stdout.decode(
                "utf-8", errors="replace"
            )
            raise UnavailableError(
                f"{args[0]} exited with code {process.returncode}: {output.strip()}",
                details={"command": " ".join(args), "returncode": process.returncode},
            )

    async def dump_all(
        self,
        connection: Connection,
        destination: Path,
        *,
        include_secrets: bool,
    ) -> None:
        argv = self._render(self.config.dump_command, connection.params, destination)
        if not include_secrets:
            argv = [arg for arg in argv if arg != "--include-secrets"]
        await self._run_command(*argv)

    async def restore_all(self, connection: Connection, source: Path) -> None:
        argv = self._render(self.config.restore_command, connection.params, source)
        await self._run_command(*argv)


# =============================================================================
# Pipeline
# =============================================================================


class DumpRestorePipeline:
    """
    Drives a server through a full dump and a full restore.

    Attributes:
        client: Protocol client performing dump and restore.
        controller: Service controller used to run the server.
    """

    def __init__(
        self,
        client: ProtocolClient,
        controller: ServiceController,
        protocol_config: ProtocolConfig,
        upgrade_config: UpgradeConfig,
    ) -> None:
        self.client = client
        self.controller = controller
        self._protocol_config = protocol_config
        self._upgrade_config = upgrade_config

    async def dump(self, instance: InstanceInfo, paths: Paths) -> Path:
        """
        Dump ``instance`` into ``paths.dump_path`` and leave the server stopped.

        Returns:
            The dump directory.

        Raises:
            DumpFailedError: If the server cannot be reached or the dump fails.
        """
        destination = paths.dump_path

        async def work() -> None:
            await self._dump_instance(instance, destination)

        try:
            if destination.exists():
                logger.info("Removing old dump", extra={"path": str(destination)})
                remove_directory(destination)
            await run_with_server(
                [
                    ManagedServiceRunner(self.controller),
                    SpawnedProcessRunner(self.controller),
                ],
                instance,
                work,
            )
        except (InstctlError, OSError) as e:
            cause = e.message if isinstance(e, InstctlError) else str(e)
            raise DumpFailedError(
                f"cannot dump {instance.name!r} -> {destination}: {cause}",
                details={"instance": instance.name, "path": str(destination), "cause": cause},
            ) from e

        return destination

    async def _dump_instance(self, instance: InstanceInfo, destination: Path) -> None:
        logger.info("Dumping instance", extra={"instance": instance.name})
        params = admin_conn_params(instance, self._protocol_config)
        connection = await self.client.connect(params)
        try:
            await self.client.dump_all(connection, destination, include_secrets=True)
        finally:
            await connection.close()

    def reinit_data_dir(self, paths: Paths) -> Path:
        """Create the empty data directory the new server initializes."""
        return ensure_directory(paths.data_dir)

    async def restore(self, instance: InstanceInfo, paths: Paths) -> None:
        """
        Restore ``paths.dump_path`` into a freshly started new server.

        ``instance`` must already describe the new installation. The server is
        spawned in self-signed TLS mode and given up to
        ``restore_wait_timeout`` seconds to finish first-run initialization.

        Raises:
            RestoreFailedError: If the server cannot be reached or the restore fails.
        """

        async def work() -> None:
            await self._restore_instance(instance, paths.dump_path)

        try:
            await run_with_server(
                [SpawnedProcessRunner(self.controller, self_signed=True)],
                instance,
                work,
            )
        except (InstctlError, OSError) as e:
            cause = e.message if isinstance(e, InstctlError) else str(e)
            raise RestoreFailedError(
                f"cannot restore {instance.name!r}: {cause}",
                details={"instance": instance.name, "cause": cause},
            ) from e

    async def _restore_instance(self, instance: InstanceInfo, source: Path) -> None:
        params = admin_conn_params(instance, self._protocol_config).wait_until_available(
            self._upgrade_config.restore_wait_timeout
        )
        logger.info("Restoring instance", extra={"instance": instance.name})
        connection = await self.client.connect(params)
        try:
            await self.client.restore_all(connection, source)
        finally:
            await connection.close()
        logger.info(
            "Restore finished; the instance is restarted to apply it",
            extra={"instance": instance.name},
        )
