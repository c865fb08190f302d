"""
Command-line interface.

Commands:

- ``instctl upgrade [NAME] [-I INSTANCE] [version options] [--force]
  [--force-dump-restore] [--non-interactive]``
- ``instctl instance revert -I NAME [--no-confirm] [--ignore-pid-check]
  [--force]``

``org/name`` instance names address cloud instances, anything else a local
instance. User-facing messages go to stdout, logs to stderr.

Exit statuses: 0 success, 1 failure, 7 when an upgrade must be reverted.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Callable
from typing import Any

import yaml
from pydantic import ValidationError

from instctl import __version__
from instctl.config import load_config
from instctl.context import UpgradeContext
from instctl.errors import InstctlError, InvalidArgumentError, NeedsRevertError
from instctl.logging import get_logger, setup_logging
from instctl.upgrade.catalog import version_hint
from instctl.upgrade.classifier import UpgradePath
from instctl.upgrade.cloud import upgrade_cloud
from instctl.upgrade.local import UpgradeProgress, UpgradeStep, upgrade_local
from instctl.upgrade.project import check_project, find_current_project
from instctl.upgrade.result import ExitCode, UpgradeAction
from instctl.upgrade.service import register_service, restart_instance
from instctl.upgrade.version import Version, VersionQuery

logger = get_logger(__name__)

Prompt = Callable[[str], str]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="instctl",
        description="Database instance lifecycle manager",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    upgrade = commands.add_parser("upgrade", help="Upgrade an instance")
    upgrade.add_argument("name", nargs="?", help="Instance name (org/name for cloud)")
    upgrade.add_argument("-I", "--instance", dest="instance", help="Instance name")
    upgrade.add_argument(
        "--to-latest", action="store_true", help="Upgrade to the latest stable release"
    )
    upgrade.add_argument(
        "--to-nightly", action="store_true", help="Upgrade to the latest nightly build"
    )
    upgrade.add_argument(
        "--to-testing", action="store_true", help="Upgrade to the latest testing release"
    )
    upgrade.add_argument(
        "--to-channel",
        choices=["stable", "testing", "nightly"],
        help="Upgrade to the latest release on a channel",
    )
    upgrade.add_argument("--to-version", help="Upgrade to a version (3, 3.1, 3.1.2 or 4.0-rc.1)")
    upgrade.add_argument(
        "--force",
        action="store_true",
        help="Upgrade even if already up to date or linked to projects",
    )
    upgrade.add_argument(
        "--force-dump-restore",
        action="store_true",
        help="Migrate through dump and restore even for compatible versions",
    )
    upgrade.add_argument(
        "--non-interactive",
        action="store_true",
        help="Do not ask for confirmation",
    )

    instance = commands.add_parser("instance", help="Manage local instances")
    instance_commands = instance.add_subparsers(dest="instance_command", required=True)
    revert = instance_commands.add_parser(
        "revert", help="Revert an interrupted or failed upgrade from its backup"
    )
    revert.add_argument("-I", "--instance", dest="instance", required=True)
    revert.add_argument("--no-confirm", action="store_true", help="Do not ask for confirmation")
    revert.add_argument(
        "--ignore-pid-check",
        action="store_true",
        help="Revert even if the upgrading process looks alive",
    )
    revert.add_argument(
        "--force",
        action="store_true",
        help="Revert even though the last upgrade completed",
    )

    return parser


def instance_arg(name: str | None, instance: str | None) -> tuple[str | None, str]:
    """
    Resolve the instance argument into (org, name); org is None for local.

    Raises:
        InvalidArgumentError: If the name is missing, given twice or malformed.
    """
    if name and instance:
        raise InvalidArgumentError("Specify the instance name either as argument or with -I")
    value = name or instance
    if not value:
        raise InvalidArgumentError("Instance name argument is required, use '-I name'")

    if "/" not in value:
        return None, value
    org, _, cloud_name = value.partition("/")
    if not org or not cloud_name or "/" in cloud_name:
        raise InvalidArgumentError(
            f"Invalid cloud instance name {value!r}, expected 'org/name'",
            details={"name": value},
        )
    return org, cloud_name


def _query_options(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "to_latest": args.to_latest,
        "to_nightly": args.to_nightly,
        "to_testing": args.to_testing,
        "to_channel": args.to_channel,
        "to_version": args.to_version,
    }


def _ask(prompt: Prompt, question: str) -> bool:
    try:
        answer = prompt(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _print_progress(progress: UpgradeProgress) -> None:
    if progress.step is UpgradeStep.INSTALL:
        kind = "minor" if progress.path is UpgradePath.COMPATIBLE else "major"
        print(f"Upgrading to a {kind} version {progress.target_version}")
    elif progress.step is UpgradeStep.DUMP_AND_STOP:
        print("Dumping the database...")
    elif progress.step is UpgradeStep.RESTORE:
        print("Restoring the database...")


# =============================================================================
# upgrade
# =============================================================================


async def upgrade_local_cmd(args: argparse.Namespace, name: str, ctx: UpgradeContext) -> None:
    instance = ctx.registry.read(name)
    current = instance.version
    default = VersionQuery.from_version(current)
    query, version_option = VersionQuery.from_options(**_query_options(args), default=default)
    query = query or default
    check_project(
        name,
        args.force,
        query,
        ctx.projects_root,
        current_project=find_current_project(),
    )

    result = await upgrade_local(
        name,
        query,
        ctx,
        version_option=version_option,
        force=args.force,
        force_dump_restore=args.force_dump_restore,
        progress=_print_progress,
    )

    if result.action is UpgradeAction.NONE:
        print(
            f"Latest version found {result.requested_version}, "
            f"current instance version is {result.prior_version}. Already up to date."
        )
    else:
        print(f"Instance {name} successfully upgraded to {result.requested_version}")
    if result.available_upgrade is not None:
        print(
            f"A newer version {result.available_upgrade} is available. "
            "Run with --to-latest to upgrade to it."
        )


async def upgrade_cloud_cmd(
    args: argparse.Namespace,
    org: str,
    name: str,
    ctx: UpgradeContext,
    prompt: Prompt,
) -> None:
    query, _ = VersionQuery.from_options(
        **_query_options(args),
        default=VersionQuery.stable(),
    )
    ctx.cloud.ensure_authenticated()
    inst_name = f"{org}/{name}"

    def confirm(target: Version) -> bool:
        hint = version_hint(target, query)
        if hint:
            print(hint)
        if args.non_interactive:
            return True
        return _ask(prompt, f"This will upgrade {inst_name} to version {target}.\nConfirm?")

    result = await upgrade_cloud(org, name, query, ctx.cloud, args.force, confirm)

    if result.action is UpgradeAction.UPGRADED:
        print(
            f"Cloud instance {inst_name} has been successfully upgraded "
            f"to version {result.requested_version}."
        )
    elif result.action is UpgradeAction.CANCELLED:
        print("Canceled.")
    else:
        print(
            "Already up to date.\n"
            f"Requested upgrade version is {result.requested_version}, "
            f"current instance version is {result.prior_version}."
        )


# =============================================================================
# instance revert
# =============================================================================


async def revert_cmd(args: argparse.Namespace, ctx: UpgradeContext, prompt: Prompt) -> None:
    name = args.instance
    backup = ctx.backup_manager(name)

    meta = backup.read_upgrade_meta()
    if meta is not None:
        print(
            f"Pending upgrade of {name!r} from {meta.source} to {meta.target} "
            f"started at {meta.started} by process {meta.pid}."
        )
    elif not args.force:
        print(f"No pending upgrade found for {name!r}.")

    if not args.no_confirm and not _ask(
        prompt, f"Do you really want to revert instance {name!r}?"
    ):
        print("Canceled.")
        return

    try:
        await ctx.controller.stop(name)
    except InstctlError as e:
        logger.warning(
            f"Cannot stop instance before revert: {e.message}",
            extra={"instance": name},
        )

    backup.revert(force=args.force, ignore_pid_check=args.ignore_pid_check)
    instance = ctx.registry.read(name)
    print(f"Instance {name} reverted to {instance.version}")
    # Point the service unit back at the old build
    registration = await register_service(ctx.controller, instance)
    await restart_instance(ctx.controller, instance, registration)


# =============================================================================
# Entry point
# =============================================================================


async def execute(
    args: argparse.Namespace,
    ctx: UpgradeContext,
    prompt: Prompt = input,
) -> int:
    """Run a parsed command and map its outcome to an exit status."""
    try:
        if args.command == "upgrade":
            org, name = instance_arg(args.name, args.instance)
            if org is None:
                await upgrade_local_cmd(args, name, ctx)
            else:
                await upgrade_cloud_cmd(args, org, name, ctx, prompt)
        else:
            await revert_cmd(args, ctx, prompt)
    except NeedsRevertError as e:
        print(f"error: {e.message}", file=sys.stderr)
        print(f"To undo run:\n  {e.revert_command}", file=sys.stderr)
        return ExitCode.NEEDS_REVERT
    except InstctlError as e:
        logger.debug("Command failed", extra={"error": e.to_dict()})
        print(f"error: {e.message}", file=sys.stderr)
        return ExitCode.FAILURE
    return ExitCode.SUCCESS


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    overrides: dict[str, Any] = {}
    if args.log_level:
        overrides["logging"] = {"level": args.log_level}
    try:
        config = load_config(args.config, overrides=overrides)
    except (OSError, yaml.YAMLError, ValidationError) as e:
        print(f"error: invalid configuration: {e}", file=sys.stderr)
        return ExitCode.FAILURE

    setup_logging(config.logging)
    ctx = UpgradeContext.from_config(config)
    return asyncio.run(execute(args, ctx))


if __name__ == "__main__":
    sys.exit(main())
