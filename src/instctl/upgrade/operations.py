"""
Filesystem operations used while upgrading an instance.

- Directory creation and recursive removal
- Atomic directory rename (the single operation that swaps the live data
  directory with its backup)
- Atomic JSON metadata writes (temp file + fsync + rename)

On POSIX ``os.rename`` within one filesystem is atomic: after a crash either
the old or the new name exists, never both and never neither.
"""

from __future__ import annotations

import json
import os
import shutil
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from instctl.errors import FailedPreconditionError, InternalError
from instctl.logging import get_logger

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def ensure_directory(path: Path, *, parents: bool = True, mode: int = 0o700) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Args:
        path: Path to the directory.
        parents: If True, create parent directories as needed.
        mode: Directory permissions (default 0o700, data directories are private).

    Returns:
        The directory path.

    Raises:
        FailedPreconditionError: If directory cannot be created.
    """
    try:
        path.mkdir(parents=parents, mode=mode, exist_ok=True)
        return path
    except OSError as e:
        raise FailedPreconditionError(
            f"cannot create {path}",
            details={"path": str(path), "cause": str(e)},
        ) from e


def remove_directory(path: Path) -> bool:
    """
    Remove a directory and its contents.

    Returns:
        True if directory was removed, False if it didn't exist.

    Raises:
        FailedPreconditionError: If removal fails.
    """
    if not path.exists():
        return False

    try:
        shutil.rmtree(path)
    except OSError as e:
        raise FailedPreconditionError(
            f"cannot remove {path}",
            details={"path": str(path), "cause": str(e)},
        ) from e

    logger.debug("Removed directory", extra={"path": str(path)})
    return True


def remove_file(path: Path, *, missing_ok: bool = False) -> None:
    """Remove a single file, wrapping OS errors."""
    try:
        path.unlink(missing_ok=missing_ok)
    except OSError as e:
        raise FailedPreconditionError(
            f"cannot remove {path}",
            details={"path": str(path), "cause": str(e)},
        ) from e


def rename_directory(source: Path, destination: Path) -> None:
    """
    Atomically rename ``source`` to ``destination``.

    Raises:
        FailedPreconditionError: If the source is missing or the destination exists.
        InternalError: If the rename itself fails.
    """
    if not source.is_dir():
        raise FailedPreconditionError(
            f"directory does not exist: {source}",
            details={"source": str(source)},
        )
    if destination.exists():
        raise FailedPreconditionError(
            f"destination already exists: {destination}",
            details={"destination": str(destination)},
        )

    try:
        os.rename(source, destination)
    except OSError as e:
        raise InternalError(
            f"cannot rename {source} -> {destination}",
            details={
                "source": str(source),
                "destination": str(destination),
                "cause": str(e),
            },
        ) from e

    logger.info(
        "Renamed directory",
        extra={"source": str(source), "destination": str(destination)},
    )


def copy_file(source: Path, destination: Path) -> None:
    """Copy a file with its permission bits."""
    try:
        shutil.copy2(source, destination)
    except OSError as e:
        raise FailedPreconditionError(
            f"cannot copy {source} -> {destination}",
            details={
                "source": str(source),
                "destination": str(destination),
                "cause": str(e),
            },
        ) from e


def write_json(path: Path, description: str, value: BaseModel) -> None:
    """
    Write a model to ``path`` as JSON with an atomic replace.

    Args:
        path: Destination file.
        description: What the file holds, used in error messages.
        value: Model to serialize.

    Raises:
        FailedPreconditionError: If the file cannot be written.
    """
    temp_path = path.with_name(f".{path.name}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(temp_path, "w") as f:
            f.write(value.model_dump_json(indent=2))
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except OSError as e:
        temp_path.unlink(missing_ok=True)
        raise FailedPreconditionError(
            f"cannot write {description} {path}",
            details={"path": str(path), "cause": str(e)},
        ) from e

    logger.debug(f"Wrote {description}", extra={"path": str(path)})


def read_json(path: Path, description: str, model: type[ModelT]) -> ModelT:
    """
    Read and validate a JSON record written by :func:`write_json`.

    Raises:
        FailedPreconditionError: If the file is missing, unreadable or invalid.
    """
    try:
        with open(path) as f:
            data = json.load(f)
        return model.model_validate(data)
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        raise FailedPreconditionError(
            f"cannot read {description} {path}",
            details={"path": str(path), "cause": str(e)},
        ) from e
