# buildvault/infra/tasks/docker_provider.py
"""
Docker implementation of the environment provider.

Wraps the blocking docker SDK in worker threads so every call can be awaited
from the event loop. Docker and transport errors are translated into
ProviderError / NotFoundError. A cancelled exec kills its container, since a
worker thread cannot be interrupted while it waits on the exec stream.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import threading
from typing import Any, Callable, List, Optional

import docker
import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.utils import parse_repository_tag

from buildvault.infra.tasks.errors import NotFoundError, ProviderError
from buildvault.infra.tasks.models import EnvironmentSummary, OutputSink

logger = logging.getLogger(__name__)


def _translate_errors(operation: str) -> Callable:
    """Decorator converting docker SDK exceptions into provider errors."""

    def decorator(method: Callable) -> Callable:
        @functools.wraps(method)
        def wrapper(*args, **kwargs):
            try:
                return method(*args, **kwargs)
            except NotFound as e:
                raise NotFoundError(f"{operation}: {e.explanation or e}") from e
            except APIError as e:
                raise ProviderError(f"{operation}: {e.explanation or e}") from e
            except DockerException as e:
                raise ProviderError(f"{operation}: {e}") from e
            except requests.exceptions.RequestException as e:
                raise ProviderError(f"{operation}: {e}") from e

        return wrapper

    return decorator


class DockerEnvironmentProvider:
    """
    Environment provider backed by a Docker daemon.

    Environments are containers created with an init process (so signals
    stop them cleanly) and a TTY-less exec channel for commands.
    """

    def __init__(self, client: Optional[docker.DockerClient] = None):
        """
        Initialize the provider.

        Args:
            client: Docker client to use (defaults to docker.from_env())
        """
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise ProviderError(f"connecting to docker: {e}") from e
        return self._client

    def close(self) -> None:
        """Close the underlying docker client."""
        if self._client is not None:
            self._client.close()
            self._client = None

    async def _run(self, function: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(function, *args)

    # ---------- Images ----------

    async def image_exists_locally(self, image: str) -> bool:
        return await self._run(self._image_exists_locally, image)

    @_translate_errors("inspecting image")
    def _image_exists_locally(self, image: str) -> bool:
        try:
            self.client.images.get(image)
        except ImageNotFound:
            return False
        return True

    async def pull_image(self, image: str) -> None:
        await self._run(self._pull_image, image)

    @_translate_errors("pulling image")
    def _pull_image(self, image: str) -> None:
        repository, tag = parse_repository_tag(image)
        for progress in self.client.api.pull(repository, tag=tag or "latest", stream=True, decode=True):
            if "error" in progress:
                raise ProviderError(f"pulling image: {progress['error']}")
            logger.debug(f"Pull progress: image={image}, status={progress.get('status')}, id={progress.get('id', '')}")

    # ---------- Environments ----------

    async def find_environments_by_name(self, name: str) -> List[EnvironmentSummary]:
        return await self._run(self._find_environments_by_name, name)

    @_translate_errors("listing containers")
    def _find_environments_by_name(self, name: str) -> List[EnvironmentSummary]:
        containers = self.client.containers.list(all=True, filters={"name": name})
        return [
            EnvironmentSummary(id=container.id, name=container.name, state=container.status)
            for container in containers
        ]

    async def create_environment(self, image: str, command: List[str], name: str) -> str:
        return await self._run(self._create_environment, image, command, name)

    @_translate_errors("creating container")
    def _create_environment(self, image: str, command: List[str], name: str) -> str:
        container = self.client.containers.create(
            image,
            command=command,
            name=name,
            tty=True,
            init=True,
        )
        return container.id

    async def start_environment(self, environment_id: str) -> None:
        await self._run(self._start_environment, environment_id)

    @_translate_errors("starting container")
    def _start_environment(self, environment_id: str) -> None:
        self.client.api.start(environment_id)

    async def stop_environment(self, environment_id: str, signal: Optional[str] = None) -> None:
        await self._run(self._stop_environment, environment_id, signal)

    @_translate_errors("stopping container")
    def _stop_environment(self, environment_id: str, signal: Optional[str]) -> None:
        if signal is None:
            self.client.api.stop(environment_id)
        else:
            self.client.api.kill(environment_id, signal=signal)

    async def remove_environment(self, environment_id: str) -> None:
        await self._run(self._remove_environment, environment_id)

    @_translate_errors("killing container")
    def _kill_environment(self, environment_id: str) -> None:
        self.client.api.kill(environment_id)

    @_translate_errors("removing container")
    def _remove_environment(self, environment_id: str) -> None:
        self.client.api.remove_container(environment_id)

    # ---------- Exec ----------

    async def exec(
        self,
        environment_id: str,
        command: List[str],
        output: Optional[OutputSink] = None,
    ) -> int:
        """
        Run a command in the environment, streaming its output.

        If the awaiting task is cancelled the environment is killed, which
        ends the exec stream and releases the worker thread. Output arriving
        after the cancellation is dropped.
        """
        cancelled = threading.Event()
        try:
            return await self._run(self._exec, environment_id, command, output, cancelled)
        except asyncio.CancelledError:
            cancelled.set()
            logger.warning(f"Exec cancelled, killing environment: environment_id={environment_id[:12]}")
            try:
                await self._run(self._kill_environment, environment_id)
            except ProviderError as e:
                logger.warning(f"Could not kill environment {environment_id[:12]} after cancellation. Error: {e}")
            raise

    @_translate_errors("executing command")
    def _exec(
        self,
        environment_id: str,
        command: List[str],
        output: Optional[OutputSink],
        cancelled: threading.Event,
    ) -> int:
        api = self.client.api
        exec_id = api.exec_create(environment_id, command, stdout=True, stderr=True, tty=False)["Id"]
        for stdout_chunk, stderr_chunk in api.exec_start(exec_id, stream=True, demux=True):
            if cancelled.is_set():
                break
            if output is None:
                continue
            if stdout_chunk:
                output("stdout", stdout_chunk)
            if stderr_chunk:
                output("stderr", stderr_chunk)
        if cancelled.is_set():
            return -1
        exit_code = api.exec_inspect(exec_id).get("ExitCode")
        if exit_code is None:
            raise ProviderError(f"executing command: no exit code reported for exec {exec_id[:12]}")
        return int(exit_code)

    # ---------- Files ----------

    async def copy_from_environment(self, environment_id: str, path: str) -> bytes:
        return await self._run(self._copy_from_environment, environment_id, path)

    @_translate_errors("copying from container")
    def _copy_from_environment(self, environment_id: str, path: str) -> bytes:
        bits, _ = self.client.api.get_archive(environment_id, path)
        return b"".join(bits)

    async def copy_to_environment(self, environment_id: str, dest_dir: str, archive: bytes) -> None:
        await self._run(self._copy_to_environment, environment_id, dest_dir, archive)

    @_translate_errors("copying to container")
    def _copy_to_environment(self, environment_id: str, dest_dir: str, archive: bytes) -> None:
        if not self.client.api.put_archive(environment_id, dest_dir, archive):
            raise ProviderError(f"copying to container: archive rejected for '{dest_dir}'")
