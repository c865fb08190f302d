"""
Tests for server process management.

Tests cover:
- self_signed_args and server_command
- Server runner strategies and run_with_server fallback
- register_service best-effort outcome
- restart_instance with and without a registered service
- _run_systemctl and SystemdServiceController with mocked subprocesses
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import psutil
import pytest

from instctl.config import AppConfig
from instctl.context import UpgradeContext
from instctl.errors import ServerStartError, UnavailableError
from instctl.upgrade.instance import InstanceInfo
from instctl.upgrade.service import (
    DETACHED_LOG_FILE,
    DETACHED_PID_FILE,
    ManagedServiceRunner,
    ServiceRegistration,
    SpawnedProcessRunner,
    SystemdServiceController,
    _run_systemctl,
    register_service,
    restart_instance,
    run_with_server,
    self_signed_args,
    server_command,
)
from instctl.upgrade.version import Version


def mock_process(returncode: int = 0, stdout: bytes = b"", stderr: bytes = b"") -> MagicMock:
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout, stderr))
    return proc


@pytest.fixture
def instance(make_instance: Callable[..., InstanceInfo]) -> InstanceInfo:
    return make_instance("main", "3.1", port=10701)


# =============================================================================
# Server command line
# =============================================================================


class TestServerCommand:
    """Tests for self_signed_args and server_command."""

    def test_self_signed_args_by_major(self) -> None:
        assert self_signed_args(Version.parse("2.0")) == ["--tls-cert-mode=generate_self_signed"]
        assert self_signed_args(Version.parse("1.4")) == ["--generate-self-signed-cert"]

    def test_server_command(self, ctx: UpgradeContext, instance: InstanceInfo) -> None:
        paths = ctx.registry.paths("main")

        cmd = server_command(instance, paths, self_signed=True)

        assert instance.installation is not None
        assert cmd == [
            instance.installation.server_path,
            "--data-dir",
            str(paths.data_dir),
            "--runstate-dir",
            str(paths.runstate_dir),
            "--port",
            "10701",
            "--tls-cert-mode=generate_self_signed",
        ]

    def test_server_command_without_installation(self, ctx: UpgradeContext) -> None:
        instance = InstanceInfo(name="bare", port=10702)

        with pytest.raises(ServerStartError):
            server_command(instance, ctx.registry.paths("bare"))


# =============================================================================
# Runner strategies
# =============================================================================


class TestRunWithServer:
    """Tests for run_with_server and the runner strategies."""

    @pytest.mark.asyncio
    async def test_managed_runner_starts_and_stops(
        self, ctx: UpgradeContext, instance: InstanceInfo
    ) -> None:
        work = AsyncMock()

        await run_with_server([ManagedServiceRunner(ctx.controller)], instance, work)

        work.assert_awaited_once()
        assert ctx.controller.calls == [("start", "main"), ("stop", "main")]

    @pytest.mark.asyncio
    async def test_falls_back_to_spawned_process(
        self, ctx: UpgradeContext, instance: InstanceInfo
    ) -> None:
        ctx.controller.start_error = ServerStartError("unit not found")
        work = AsyncMock()

        await run_with_server(
            [ManagedServiceRunner(ctx.controller), SpawnedProcessRunner(ctx.controller)],
            instance,
            work,
        )

        work.assert_awaited_once()
        assert ctx.controller.calls == [
            ("start", "main"),
            ("ensure_runstate_dir", "main"),
            ("spawn_background", "main"),
        ]

    @pytest.mark.asyncio
    async def test_start_error_of_other_kind_is_wrapped(
        self, ctx: UpgradeContext, instance: InstanceInfo
    ) -> None:
        ctx.controller.start_error = UnavailableError("systemctl not available")

        with pytest.raises(ServerStartError) as exc_info:
            await ManagedServiceRunner(ctx.controller).run(instance, AsyncMock())

        assert "systemctl not available" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_all_strategies_fail(self, ctx: UpgradeContext, instance: InstanceInfo) -> None:
        ctx.controller.start_error = ServerStartError("unit not found")
        work = AsyncMock()

        with pytest.raises(ServerStartError) as exc_info:
            await run_with_server([ManagedServiceRunner(ctx.controller)], instance, work)

        assert exc_info.value.details["cause"] == "unit not found"
        work.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_work_errors_propagate_without_fallback(
        self, ctx: UpgradeContext, instance: InstanceInfo
    ) -> None:
        work = AsyncMock(side_effect=UnavailableError("dump failed"))

        with pytest.raises(UnavailableError):
            await run_with_server(
                [ManagedServiceRunner(ctx.controller), SpawnedProcessRunner(ctx.controller)],
                instance,
                work,
            )

        assert ("spawn_background", "main") not in ctx.controller.calls

    @pytest.mark.asyncio
    async def test_spawned_runner_self_signed(
        self, ctx: UpgradeContext, instance: InstanceInfo
    ) -> None:
        await SpawnedProcessRunner(ctx.controller, self_signed=True).run(instance, AsyncMock())

        assert ctx.controller.spawned[0][2] is True


class TestRegisterService:
    """Tests for register_service."""

    @pytest.mark.asyncio
    async def test_registered(self, ctx: UpgradeContext, instance: InstanceInfo) -> None:
        outcome = await register_service(ctx.controller, instance)

        assert outcome.registered is True
        assert outcome.error is None

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(
        self, ctx: UpgradeContext, instance: InstanceInfo
    ) -> None:
        ctx.controller.create_error = UnavailableError("systemctl not available")

        outcome = await register_service(ctx.controller, instance)

        assert outcome.registered is False
        assert outcome.error == "systemctl not available"


class TestRestartInstance:
    """Tests for restart_instance."""

    @pytest.mark.asyncio
    async def test_registered_uses_service_manager(
        self, ctx: UpgradeContext, instance: InstanceInfo
    ) -> None:
        registration = await register_service(ctx.controller, instance)

        await restart_instance(ctx.controller, instance, registration)

        assert ctx.controller.calls == [("create_service", "main"), ("restart", "main")]

    @pytest.mark.asyncio
    async def test_unregistered_starts_server_directly(
        self, ctx: UpgradeContext, instance: InstanceInfo
    ) -> None:
        ctx.controller.create_error = UnavailableError("systemctl not available")
        ctx.controller.stop_error = UnavailableError("systemctl not available")
        registration = await register_service(ctx.controller, instance)

        await restart_instance(ctx.controller, instance, registration)

        assert ctx.controller.calls == [
            ("create_service", "main"),
            ("stop", "main"),
            ("start_detached", "main"),
        ]

    @pytest.mark.asyncio
    async def test_direct_start_failure_propagates(
        self, ctx: UpgradeContext, instance: InstanceInfo
    ) -> None:
        ctx.controller.detached_error = ServerStartError("cannot run server")

        with pytest.raises(ServerStartError):
            await restart_instance(
                ctx.controller, instance, ServiceRegistration(registered=False, error="no")
            )


# =============================================================================
# systemd
# =============================================================================


class TestRunSystemctl:
    """Tests for _run_systemctl."""

    @pytest.mark.asyncio
    async def test_success(self) -> None:
        with patch(
            "asyncio.create_subprocess_exec",
            AsyncMock(return_value=mock_process(0, b"active", b"")),
        ) as exec_mock:
            returncode, stdout, stderr = await _run_systemctl("is-active", "instctl-main")

        assert (returncode, stdout, stderr) == (0, "active", "")
        assert exec_mock.call_args.args[:4] == ("systemctl", "--user", "is-active", "instctl-main")

    @pytest.mark.asyncio
    async def test_not_found(self) -> None:
        with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError()):
            with pytest.raises(UnavailableError) as exc_info:
                await _run_systemctl("start", "instctl-main")

        assert exc_info.value.message == "systemctl not available"

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        proc = mock_process()
        proc.communicate = AsyncMock(side_effect=TimeoutError())
        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            with pytest.raises(UnavailableError) as exc_info:
                await _run_systemctl("start", "instctl-main", timeout=1.0)

        assert "timed out" in exc_info.value.message


class TestSystemdServiceController:
    """Tests for SystemdServiceController."""

    @pytest.fixture
    def controller(self, app_config: AppConfig) -> SystemdServiceController:
        return SystemdServiceController(app_config.paths, app_config.upgrade)

    @pytest.mark.asyncio
    async def test_start_failure_is_server_start_error(
        self, controller: SystemdServiceController, instance: InstanceInfo
    ) -> None:
        with patch(
            "instctl.upgrade.service._run_systemctl",
            AsyncMock(return_value=(5, "", "Unit instctl-main.service not found.")),
        ):
            with pytest.raises(ServerStartError) as exc_info:
                await controller.start(instance)

        assert "not found" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_create_service_writes_unit_and_enables(
        self,
        controller: SystemdServiceController,
        instance: InstanceInfo,
        app_config: AppConfig,
    ) -> None:
        systemctl = AsyncMock(return_value=(0, "", ""))
        with patch("instctl.upgrade.service._run_systemctl", systemctl):
            await controller.create_service(instance)

        unit = Path(app_config.paths.systemd_unit_dir) / "instctl-main.service"
        content = unit.read_text()
        assert "Description=instctl database instance main" in content
        assert "--port 10701" in content
        verbs = [c.args[0] for c in systemctl.call_args_list]
        assert verbs == ["daemon-reload", "enable"]

    @pytest.mark.asyncio
    async def test_ensure_runstate_dir(
        self, controller: SystemdServiceController, app_config: AppConfig
    ) -> None:
        path = await controller.ensure_runstate_dir("main")

        assert path == Path(app_config.paths.runstate_root) / "main"
        assert path.is_dir()

    @pytest.mark.asyncio
    async def test_spawn_background_terminates_after_work(
        self, controller: SystemdServiceController, instance: InstanceInfo
    ) -> None:
        proc = MagicMock()
        proc.returncode = None
        proc.wait = AsyncMock(return_value=0)
        work = AsyncMock()

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as exec_mock:
            await controller.spawn_background(instance, work, self_signed=True)

        work.assert_awaited_once()
        proc.terminate.assert_called_once()
        proc.kill.assert_not_called()
        assert "--tls-cert-mode=generate_self_signed" in exec_mock.call_args.args

    @pytest.mark.asyncio
    async def test_spawn_background_stops_on_work_failure(
        self, controller: SystemdServiceController, instance: InstanceInfo
    ) -> None:
        proc = MagicMock()
        proc.returncode = None
        proc.wait = AsyncMock(return_value=0)

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            with pytest.raises(UnavailableError):
                await controller.spawn_background(
                    instance, AsyncMock(side_effect=UnavailableError("restore failed"))
                )

        proc.terminate.assert_called_once()

    @pytest.mark.asyncio
    async def test_spawn_failure_is_server_start_error(
        self, controller: SystemdServiceController, instance: InstanceInfo
    ) -> None:
        with patch("asyncio.create_subprocess_exec", side_effect=PermissionError("denied")):
            with pytest.raises(ServerStartError):
                await controller.spawn_background(instance, AsyncMock())

    @pytest.mark.asyncio
    async def test_start_detached_records_pid(
        self,
        controller: SystemdServiceController,
        instance: InstanceInfo,
        app_config: AppConfig,
    ) -> None:
        proc = MagicMock()
        proc.pid = 4242

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)) as exec_mock:
            await controller.start_detached(instance)

        runstate_dir = Path(app_config.paths.runstate_root) / "main"
        assert (runstate_dir / DETACHED_PID_FILE).read_text() == "4242\n"
        assert (runstate_dir / DETACHED_LOG_FILE).exists()
        assert exec_mock.call_args.kwargs["start_new_session"] is True
        assert "--tls-cert-mode=generate_self_signed" not in exec_mock.call_args.args

    @pytest.mark.asyncio
    async def test_stop_terminates_detached_server(
        self, controller: SystemdServiceController
    ) -> None:
        runstate_dir = await controller.ensure_runstate_dir("main")
        (runstate_dir / DETACHED_PID_FILE).write_text("4242\n")
        process = MagicMock()
        systemctl = AsyncMock(return_value=(0, "", ""))

        with (
            patch("instctl.upgrade.service.psutil.Process", return_value=process) as process_cls,
            patch("instctl.upgrade.service._run_systemctl", systemctl),
        ):
            await controller.stop("main")

        process_cls.assert_called_once_with(4242)
        process.terminate.assert_called_once()
        process.kill.assert_not_called()
        systemctl.assert_not_awaited()
        assert not (runstate_dir / DETACHED_PID_FILE).exists()

    @pytest.mark.asyncio
    async def test_stop_with_stale_pid_uses_systemctl(
        self, controller: SystemdServiceController
    ) -> None:
        runstate_dir = await controller.ensure_runstate_dir("main")
        (runstate_dir / DETACHED_PID_FILE).write_text("4242\n")
        systemctl = AsyncMock(return_value=(0, "", ""))

        with (
            patch(
                "instctl.upgrade.service.psutil.Process",
                side_effect=psutil.NoSuchProcess(4242),
            ),
            patch("instctl.upgrade.service._run_systemctl", systemctl),
        ):
            await controller.stop("main")

        assert systemctl.call_args.args[:2] == ("stop", "instctl-main")
        assert not (runstate_dir / DETACHED_PID_FILE).exists()

    @pytest.mark.asyncio
    async def test_restart_without_unit_fails(
        self, controller: SystemdServiceController, instance: InstanceInfo
    ) -> None:
        with patch(
            "instctl.upgrade.service._run_systemctl",
            AsyncMock(return_value=(5, "", "Unit instctl-main.service not found.")),
        ):
            with pytest.raises(UnavailableError) as exc_info:
                await controller.restart(instance)

        assert "systemctl restart instctl-main failed" in exc_info.value.message
