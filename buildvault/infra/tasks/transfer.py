# buildvault/infra/tasks/transfer.py
"""
Artifact transfer between environments and to the host.

The environment provider hands out file contents wrapped in tar archives.
This module unpacks the first regular file of such an archive and either
re-packs it for another environment or writes it to the host filesystem.
Only single files are supported, directory trees are out of scope.
"""
from __future__ import annotations

import io
import logging
import os
import posixpath
import tarfile
import time
from pathlib import Path
from typing import Optional, Tuple

from buildvault.infra.tasks.errors import ProviderError, TransferError
from buildvault.infra.tasks.models import EnvironmentProvider

logger = logging.getLogger(__name__)


# ============================================================
#                   ARCHIVE HELPERS
# ============================================================
def extract_file_from_archive(
    archive: bytes, path: str, task_name: Optional[str] = None
) -> Tuple[str, bytes]:
    """
    Read the first regular file from a tar archive.

    Directory entries (and any other non-regular entry) are skipped.

    Args:
        archive: Tar archive bytes
        path: Path the archive was read from, used in error messages
        task_name: Task performing the transfer, used in error messages

    Returns:
        Tuple of (entry name, file content)

    Raises:
        TransferError: If the archive is corrupt or holds no regular file
    """
    try:
        with tarfile.open(fileobj=io.BytesIO(archive), mode="r:*") as tar:
            for member in tar:
                if not member.isreg():
                    continue
                extracted = tar.extractfile(member)
                if extracted is None:
                    continue
                return member.name, extracted.read()
    except (tarfile.TarError, EOFError, OSError) as e:
        raise TransferError(path, f"corrupt or truncated archive ({e})", task_name) from e

    raise TransferError(path, "archive contains no regular file", task_name)


def pack_file(name: str, content: bytes, mode: int = 0o644) -> bytes:
    """
    Build a tar archive holding a single regular file.

    Args:
        name: Entry name inside the archive
        content: File content
        mode: Permission bits of the entry

    Returns:
        Tar archive bytes
    """
    buffer = io.BytesIO()
    info = tarfile.TarInfo(name=name)
    info.size = len(content)
    info.mode = mode
    info.mtime = int(time.time())
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def write_host_file(content: bytes, destination: os.PathLike | str) -> Path:
    """
    Write content to a host path, creating parent directories and overwriting.

    Returns:
        The written path
    """
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(content)
    return destination


# ============================================================
#                   ENVIRONMENT TRANSFERS
# ============================================================
async def ensure_directory(
    provider: EnvironmentProvider,
    environment_id: str,
    directory: str,
    task_name: Optional[str] = None,
) -> None:
    """
    Create a directory inside an environment with ``mkdir -p``.

    Nothing is done for the current directory.

    Raises:
        TransferError: If the directory could not be created
    """
    if directory in ("", "."):
        return
    try:
        exit_code = await provider.exec(environment_id, ["mkdir", "-p", directory])
    except ProviderError as e:
        raise TransferError(directory, f"could not create directory ({e})", task_name) from e
    if exit_code != 0:
        raise TransferError(
            directory, f"could not create directory (mkdir exited with code {exit_code})", task_name
        )


async def copy_artifact(
    provider: EnvironmentProvider,
    source_environment_id: str,
    destination_environment_id: str,
    from_path: str,
    to_path: str,
    task_name: Optional[str] = None,
) -> None:
    """
    Copy one file from an environment into another.

    Args:
        provider: Environment provider holding both environments
        source_environment_id: Environment to read ``from_path`` from
        destination_environment_id: Environment to write ``to_path`` into
        from_path: File path in the source environment
        to_path: File path in the destination environment
        task_name: Task receiving the artifact, used in error messages

    Raises:
        TransferError: If reading, unpacking or writing the file fails
    """
    logger.debug(
        f"Copying artifact: {source_environment_id[:12]}:{from_path} -> "
        f"{destination_environment_id[:12]}:{to_path}"
    )
    try:
        archive = await provider.copy_from_environment(source_environment_id, from_path)
    except ProviderError as e:
        raise TransferError(from_path, f"could not read from source environment ({e})", task_name) from e

    _, content = extract_file_from_archive(archive, from_path, task_name)

    target_dir = posixpath.dirname(to_path) or "."
    await ensure_directory(provider, destination_environment_id, target_dir, task_name)

    try:
        await provider.copy_to_environment(
            destination_environment_id,
            target_dir,
            pack_file(posixpath.basename(to_path), content),
        )
    except ProviderError as e:
        raise TransferError(to_path, f"could not write to destination environment ({e})", task_name) from e


async def export_artifact(
    provider: EnvironmentProvider,
    environment_id: str,
    path: str,
    artifacts_dir: os.PathLike | str,
    task_name: Optional[str] = None,
) -> Path:
    """
    Materialize a file from an environment to ``artifacts_dir/<basename(path)>``.

    Returns:
        The host path written

    Raises:
        TransferError: If the file cannot be read or written
    """
    output_path = Path(artifacts_dir) / posixpath.basename(path)
    try:
        archive = await provider.copy_from_environment(environment_id, path)
    except ProviderError as e:
        raise TransferError(path, f"could not read from environment ({e})", task_name) from e

    _, content = extract_file_from_archive(archive, path, task_name)
    try:
        return write_host_file(content, output_path)
    except OSError as e:
        raise TransferError(str(output_path), f"could not write host file ({e})", task_name) from e


async def import_host_file(
    provider: EnvironmentProvider,
    environment_id: str,
    host_path: os.PathLike | str,
    environment_path: str,
    task_name: Optional[str] = None,
) -> None:
    """
    Copy a host file into an environment at ``environment_path``.

    Raises:
        TransferError: If the host file cannot be read or written to the environment
    """
    try:
        content = Path(host_path).read_bytes()
    except OSError as e:
        raise TransferError(str(host_path), f"could not read host file ({e})", task_name) from e

    target_dir = posixpath.dirname(environment_path) or "."
    await ensure_directory(provider, environment_id, target_dir, task_name)
    try:
        await provider.copy_to_environment(
            environment_id,
            target_dir,
            pack_file(posixpath.basename(environment_path), content),
        )
    except ProviderError as e:
        raise TransferError(environment_path, f"could not write to environment ({e})", task_name) from e
