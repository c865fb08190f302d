"""
Projects linked to a local instance.

Each project stash lives in ``<projects_root>/<id>/`` and records the
instance it uses in ``instance-name`` and its source directory in
``project-path``. Upgrading an instance out from under a project would leave
the project's own version pin stale, so the upgrade is refused unless forced
and the user is shown the project-level command to run instead.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from instctl.errors import FailedPreconditionError, ProjectInUseError
from instctl.logging import get_logger
from instctl.upgrade.version import VersionQuery

logger = get_logger(__name__)

INSTANCE_NAME_FILE = "instance-name"
PROJECT_PATH_FILE = "project-path"

# Marks the root directory of a project
PROJECT_MANIFEST = "edgedb.toml"


def find_current_project(start: Path | None = None) -> Path | None:
    """Nearest directory at or above ``start`` (default: cwd) with a project manifest."""
    directory = (start or Path.cwd()).resolve()
    for candidate in (directory, *directory.parents):
        if (candidate / PROJECT_MANIFEST).is_file():
            return candidate
    return None


def find_project_dirs_by_instance(projects_root: Path, name: str) -> list[Path]:
    """Return the stash directories of every project using instance ``name``."""
    if not projects_root.is_dir():
        return []

    found = []
    for stash in sorted(projects_root.iterdir()):
        marker = stash / INSTANCE_NAME_FILE
        if not marker.is_file():
            continue
        try:
            if marker.read_text().strip() == name:
                found.append(stash)
        except OSError as e:
            logger.warning(
                f"Cannot read {marker}: {e}",
                extra={"stash": str(stash)},
            )
    return found


def read_project_path(stash_dir: Path) -> Path:
    """
    Read the source directory recorded in a project stash.

    Raises:
        FailedPreconditionError: If the stash has no readable ``project-path``.
    """
    path = stash_dir / PROJECT_PATH_FILE
    try:
        return Path(path.read_text().strip())
    except OSError as e:
        raise FailedPreconditionError(
            f"cannot read project path from {path}: {e}",
            details={"stash": str(stash_dir)},
        ) from e


def project_upgrade_command(
    query: VersionQuery,
    project_dir: Path,
    current_project: Path | None = None,
) -> str:
    """Command that upgrades the project in ``project_dir`` to ``query``."""
    cmd = f"instctl project upgrade {query.upgrade_flag()}"
    if current_project is None or current_project != project_dir:
        cmd += f" --project-dir '{project_dir}'"
    return cmd


def check_project(
    name: str,
    force: bool,
    query: VersionQuery,
    projects_root: Path,
    *,
    current_project: Path | None = None,
    echo: Callable[[str], None] = print,
) -> list[Path]:
    """
    Warn about projects using instance ``name`` before it is upgraded.

    Args:
        name: Instance about to be upgraded.
        force: Continue even if projects use the instance.
        query: Target of the upgrade, reused for the suggested commands.
        projects_root: Directory holding project stashes.
        current_project: Project directory of the working directory, if any;
            its command is printed without ``--project-dir``.
        echo: Output function for the user-facing messages.

    Returns:
        Source directories of the linked projects.

    Raises:
        ProjectInUseError: If projects use the instance and ``force`` is off.
    """
    stashes = find_project_dirs_by_instance(projects_root, name)
    if not stashes:
        return []

    project_dirs = [read_project_path(stash) for stash in stashes]
    echo(
        f"Instance {name!r} is used by the following project"
        f"{'s' if len(project_dirs) > 1 else ''}:"
    )
    for project_dir in project_dirs:
        echo(f"  {project_dir}")

    if force:
        echo(
            f"To update the project{'s' if len(project_dirs) > 1 else ''} "
            "after the instance upgrade, run:"
        )
    else:
        echo("To continue with the upgrade, run:")
    for project_dir in project_dirs:
        echo(f"  {project_upgrade_command(query, project_dir, current_project)}")

    if not force:
        raise ProjectInUseError(
            "Upgrade aborted.",
            details={"instance": name, "projects": [str(p) for p in project_dirs]},
        )
    return project_dirs
