"""
Server process management for upgrades.

The upgrade only needs one capability from process management: "run the
server, execute some work while it is up, then stop it". Two strategies
provide it:

- ManagedServiceRunner: start and stop through the service manager
- SpawnedProcessRunner: spawn the server binary directly as a child process

:func:`run_with_server` tries them in order and moves on to the next one when
a strategy cannot bring the server up. Not every platform supports every
service-manager feature, and an upgrade must not be blocked by that.

The same holds after the upgrade: :func:`restart_instance` starts the server
directly when it could not be registered as a service.

SystemdServiceController is the default ServiceController, using systemd
user units.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path

import psutil
from pydantic import BaseModel

from instctl.config import PathsConfig, UpgradeConfig
from instctl.errors import InstctlError, ServerStartError, UnavailableError
from instctl.logging import get_logger
from instctl.upgrade.instance import InstanceInfo, Paths
from instctl.upgrade.operations import ensure_directory
from instctl.upgrade.version import Version

logger = get_logger(__name__)

Work = Callable[[], Awaitable[None]]

# Files in the runstate dir of a server started outside the service manager
DETACHED_PID_FILE = "server.pid"
DETACHED_LOG_FILE = "server.log"


def self_signed_args(version: Version) -> list[str]:
    """Server arguments that make a fresh data directory generate its own TLS cert."""
    if version.major >= 2:
        return ["--tls-cert-mode=generate_self_signed"]
    return ["--generate-self-signed-cert"]


def server_command(
    instance: InstanceInfo, paths: Paths, *, self_signed: bool = False
) -> list[str]:
    """Command line that runs ``instance`` in the foreground."""
    if instance.installation is None:
        raise ServerStartError(
            f"instance {instance.name!r} has no installation recorded",
            details={"instance": instance.name},
        )
    cmd = [
        instance.installation.server_path,
        "--data-dir",
        str(paths.data_dir),
        "--runstate-dir",
        str(paths.runstate_dir),
        "--port",
        str(instance.port),
    ]
    if self_signed:
        cmd.extend(self_signed_args(instance.version))
    return cmd


class ServiceController(ABC):
    """Lifecycle operations on a local instance's server process."""

    @abstractmethod
    async def start(self, instance: InstanceInfo) -> None:
        """Start the instance through the service manager."""

    @abstractmethod
    async def stop(self, name: str) -> None:
        """Stop the named instance."""

    @abstractmethod
    async def restart(self, instance: InstanceInfo) -> None:
        """Restart the instance so it runs the currently recorded build."""

    @abstractmethod
    async def create_service(self, instance: InstanceInfo) -> None:
        """Register the instance with the OS service manager."""

    @abstractmethod
    async def start_detached(self, instance: InstanceInfo) -> None:
        """
        Start the server as a background process outside the service manager.

        Used when the instance is not registered as a service. The process
        keeps running after instctl exits; ``stop`` terminates it.

        Raises:
            ServerStartError: If the server process cannot be spawned.
        """

    @abstractmethod
    async def ensure_runstate_dir(self, name: str) -> Path:
        """Create the runtime directory of the named instance."""

    @abstractmethod
    async def spawn_background(
        self,
        instance: InstanceInfo,
        work: Work,
        *,
        self_signed: bool = False,
    ) -> None:
        """
        Run ``work`` while a directly spawned server process is up.

        The process is stopped after ``work`` finishes, whether it succeeded
        or not.

        Raises:
            ServerStartError: If the server process cannot be spawned.
        """


# =============================================================================
# Server runner strategies
# =============================================================================


class ServerRunner(ABC):
    """Runs work against a live server."""

    name = "runner"

    def __init__(self, controller: ServiceController) -> None:
        self.controller = controller

    @abstractmethod
    async def run(self, instance: InstanceInfo, work: Work) -> None:
        """
        Bring the server up, await ``work``, stop the server.

        Raises:
            ServerStartError: If the server cannot be brought up. Errors from
                ``work`` propagate unchanged.
        """


class ManagedServiceRunner(ServerRunner):
    """Start and stop through the service manager."""

    name = "service manager"

    async def run(self, instance: InstanceInfo, work: Work) -> None:
        logger.info("Ensuring instance is started", extra={"instance": instance.name})
        try:
            await self.controller.start(instance)
        except ServerStartError:
            raise
        except InstctlError as e:
            raise ServerStartError(
                f"cannot start {instance.name!r}: {e.message}",
                details={"instance": instance.name, "cause": e.message},
            ) from e

        await work()

        logger.info(
            "Stopping instance before executable upgrade",
            extra={"instance": instance.name},
        )
        await self.controller.stop(instance.name)


class SpawnedProcessRunner(ServerRunner):
    """Spawn the server binary directly for the duration of the work."""

    name = "spawned process"

    def __init__(self, controller: ServiceController, *, self_signed: bool = False) -> None:
        super().__init__(controller)
        self.self_signed = self_signed

    async def run(self, instance: InstanceInfo, work: Work) -> None:
        await self.controller.ensure_runstate_dir(instance.name)
        await self.controller.spawn_background(
            instance, work, self_signed=self.self_signed
        )


async def run_with_server(
    runners: Sequence[ServerRunner],
    instance: InstanceInfo,
    work: Work,
) -> None:
    """
    Run ``work`` with the first strategy that can start the server.

    Raises:
        ServerStartError: If no strategy could start the server.
    """
    last_error: ServerStartError | None = None
    for runner in runners:
        try:
            await runner.run(instance, work)
            return
        except ServerStartError as e:
            last_error = e
            logger.warning(
                f"Error starting server via {runner.name}: {e.message}. "
                "Trying the next method.",
                extra={"instance": instance.name},
            )
    raise ServerStartError(
        f"cannot start {instance.name!r}",
        details={
            "instance": instance.name,
            "cause": last_error.message if last_error else "no start method configured",
        },
    ) from last_error


# =============================================================================
# Best-effort service registration
# =============================================================================


class ServiceRegistration(BaseModel):
    """Outcome of registering an instance as an OS service."""

    registered: bool
    error: str | None = None


async def register_service(
    controller: ServiceController, instance: InstanceInfo
) -> ServiceRegistration:
    """
    Register ``instance`` with the service manager without failing the upgrade.

    The instance stays usable when registration is not possible; it is just
    not started automatically by the OS.
    """
    try:
        await controller.create_service(instance)
    except (InstctlError, OSError) as e:
        message = e.message if isinstance(e, InstctlError) else str(e)
        logger.warning(
            f"Error running instance as a service: {message}",
            extra={"instance": instance.name},
        )
        return ServiceRegistration(registered=False, error=message)
    return ServiceRegistration(registered=True)


async def restart_instance(
    controller: ServiceController,
    instance: InstanceInfo,
    registration: ServiceRegistration,
) -> None:
    """
    Restart ``instance`` on its current build.

    A registered instance is restarted by the service manager. Otherwise the
    old server is stopped if possible and the new one is started directly.
    """
    if registration.registered:
        await controller.restart(instance)
        return

    logger.warning(
        "Instance is not registered as a service, starting the server directly",
        extra={"instance": instance.name, "cause": registration.error},
    )
    try:
        await controller.stop(instance.name)
    except (InstctlError, OSError) as e:
        message = e.message if isinstance(e, InstctlError) else str(e)
        logger.info(f"Nothing stopped before start: {message}", extra={"instance": instance.name})
    await controller.start_detached(instance)


# =============================================================================
# systemd
# =============================================================================


async def _run_systemctl(
    *args: str,
    timeout: float = 30.0,
) -> tuple[int, str, str]:
    """
    Run a ``systemctl --user`` command.

    Returns:
        Tuple of (return_code, stdout, stderr).

    Raises:
        UnavailableError: If systemctl is not available or times out.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            "systemctl",
            "--user",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        stdout, stderr = await asyncio.wait_for(
            proc.communicate(),
            timeout=timeout,
        )

        return (
            proc.returncode or 0,
            stdout.decode() if stdout else "",
            stderr.decode() if stderr else "",
        )

    except FileNotFoundError as exc:
        raise UnavailableError(
            "systemctl not available",
            details={"hint": "This system may not use systemd"},
        ) from exc
    except TimeoutError as exc:
        raise UnavailableError(
            f"systemctl command timed out after {timeout}s",
            details={"args": args},
        ) from exc


UNIT_TEMPLATE = """\
[Unit]
Description=instctl database instance {name}
Documentation=https://instctl.dev
After=network-online.target

[Service]
Type=simple
ExecStart={exec_start}
ExecReload=/bin/kill -HUP $MAINPID
KillMode=mixed
TimeoutSec=0
Restart=on-failure

[Install]
WantedBy=default.target
"""


class SystemdServiceController(ServiceController):
    """ServiceController backed by systemd user units (``instctl-<name>``)."""

    def __init__(self, paths_config: PathsConfig, upgrade_config: UpgradeConfig) -> None:
        self._paths_config = paths_config
        self._upgrade_config = upgrade_config

    @staticmethod
    def unit_name(name: str) -> str:
        return f"instctl-{name}"

    def unit_path(self, name: str) -> Path:
        return (
            Path(self._paths_config.systemd_unit_dir).expanduser()
            / f"{self.unit_name(name)}.service"
        )

    async def _systemctl(self, verb: str, name: str) -> None:
        returncode, stdout, stderr = await _run_systemctl(
            verb, self.unit_name(name), timeout=60.0
        )
        if returncode != 0:
            output = (stderr or stdout).strip()
            raise UnavailableError(
                f"systemctl {verb} {self.unit_name(name)} failed: {output}",
                details={"instance": name, "returncode": returncode},
            )

    async def start(self, instance: InstanceInfo) -> None:
        try:
            await self._systemctl("start", instance.name)
        except UnavailableError as e:
            raise ServerStartError(e.message, details=e.details) from e
        logger.info("Service started", extra={"instance": instance.name})

    async def stop(self, name: str) -> None:
        if await self._stop_detached(name):
            return
        await self._systemctl("stop", name)
        logger.info("Service stopped", extra={"instance": name})

    def _pid_file(self, name: str) -> Path:
        return Paths.for_instance(name, self._paths_config).runstate_dir / DETACHED_PID_FILE

    async def _stop_detached(self, name: str) -> bool:
        """Terminate a server started by start_detached; False if there is none."""
        pid_file = self._pid_file(name)
        try:
            pid = int(pid_file.read_text().strip())
        except (OSError, ValueError):
            return False

        try:
            proc = psutil.Process(pid)
            proc.terminate()
            try:
                await asyncio.to_thread(proc.wait, self._upgrade_config.stop_timeout)
            except psutil.TimeoutExpired:
                logger.warning("Server did not stop, killing it", extra={"instance": name})
                proc.kill()
        except psutil.NoSuchProcess:
            pid_file.unlink(missing_ok=True)
            return False
        except psutil.AccessDenied as e:
            raise UnavailableError(
                f"cannot stop server process {pid}",
                details={"instance": name, "pid": pid},
            ) from e

        pid_file.unlink(missing_ok=True)
        logger.info("Server process stopped", extra={"instance": name, "pid": pid})
        return True

    async def restart(self, instance: InstanceInfo) -> None:
        # A server started outside systemd would hold the port
        await self._stop_detached(instance.name)
        await self._systemctl("restart", instance.name)
        logger.info("Service restarted", extra={"instance": instance.name})

    async def create_service(self, instance: InstanceInfo) -> None:
        paths = Paths.for_instance(instance.name, self._paths_config)
        unit = UNIT_TEMPLATE.format(
            name=instance.name,
            exec_start=" ".join(server_command(instance, paths)),
        )
        unit_path = self.unit_path(instance.name)
        unit_path.parent.mkdir(parents=True, exist_ok=True)
        unit_path.write_text(unit)

        returncode, stdout, stderr = await _run_systemctl("daemon-reload")
        if returncode != 0:
            raise UnavailableError(
                f"systemctl daemon-reload failed: {(stderr or stdout).strip()}",
                details={"returncode": returncode},
            )
        await self._systemctl("enable", instance.name)
        logger.info(
            "Service registered",
            extra={"instance": instance.name, "unit": str(unit_path)},
        )

    async def start_detached(self, instance: InstanceInfo) -> None:
        runstate_dir = await self.ensure_runstate_dir(instance.name)
        paths = Paths.for_instance(instance.name, self._paths_config)
        cmd = server_command(instance, paths)
        logger.info("Starting detached server", extra={"instance": instance.name, "command": cmd})
        try:
            with open(runstate_dir / DETACHED_LOG_FILE, "ab") as log:
                proc = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log,
                    stderr=log,
                    start_new_session=True,
                )
        except OSError as e:
            raise ServerStartError(
                f"cannot run {cmd[0]}: {e}",
                details={"instance": instance.name, "command": cmd},
            ) from e
        (runstate_dir / DETACHED_PID_FILE).write_text(f"{proc.pid}\n")

    async def ensure_runstate_dir(self, name: str) -> Path:
        return ensure_directory(Paths.for_instance(name, self._paths_config).runstate_dir)

    async def spawn_background(
        self,
        instance: InstanceInfo,
        work: Work,
        *,
        self_signed: bool = False,
    ) -> None:
        paths = Paths.for_instance(instance.name, self._paths_config)
        cmd = server_command(instance, paths, self_signed=self_signed)
        logger.info("Spawning server", extra={"instance": instance.name, "command": cmd})
        try:
            proc = await asyncio.create_subprocess_exec(*cmd)
        except OSError as e:
            raise ServerStartError(
                f"cannot run {cmd[0]}: {e}",
                details={"instance": instance.name, "command": cmd},
            ) from e

        try:
            await work()
        finally:
            await self._terminate(proc, instance.name)

    async def _terminate(self, proc: asyncio.subprocess.Process, name: str) -> None:
        if proc.returncode is not None:
            logger.warning(
                "Server exited early",
                extra={"instance": name, "returncode": proc.returncode},
            )
            return
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._upgrade_config.stop_timeout)
        except TimeoutError:
            logger.warning("Server did not stop, killing it", extra={"instance": name})
            proc.kill()
            await proc.wait()
