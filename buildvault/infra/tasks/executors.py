# buildvault/infra/tasks/executors.py
"""
Execution engine for container task graphs.

This module contains the control loop that runs a task to completion:
its dependency subtree first, then artifact copies, then its own commands,
each inside a freshly provisioned environment.
"""
from __future__ import annotations

import asyncio
import logging
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, TextIO

from buildvault.infra.tasks.config import ExecutorConfig
from buildvault.infra.tasks.errors import (
    CommandError,
    DependencyError,
    ProviderError,
    ProvisioningError,
)
from buildvault.infra.tasks.fingerprint import environment_name, fingerprint
from buildvault.infra.tasks.graph import ensure_acyclic, iter_tasks, validate_graph
from buildvault.infra.tasks.models import (
    BuildRun,
    Dependency,
    EnvironmentProvider,
    ExecutionState,
    Store,
    Task,
    TaskExecution,
)
from buildvault.infra.tasks.transfer import copy_artifact, export_artifact, import_host_file

# Configure logger for executors
logger = logging.getLogger(__name__)


@dataclass
class _RunContext:
    """
    Per-run execution state threaded through the recursive calls.

    Attributes:
        run: The build run being executed
        futures: One future per Task object, so a shared task executes once per run
        semaphore: Limits concurrent provisioning and command phases (None = sequential)
    """
    run: BuildRun
    futures: Dict[Task, asyncio.Future] = field(default_factory=dict)
    semaphore: Optional[asyncio.Semaphore] = None


class TaskExecutor:
    """
    Runs a task and its full dependency subtree in isolated environments.

    Every task gets a fresh environment named after its fingerprint. Any
    existing environment with that name is removed first. Successful
    environments are stopped but kept, so their filesystem stays inspectable.

    Example:
        ```python
        producer = Task("producer", "alpine", ["mkdir -p /out", "echo hi > /out/a.txt"])
        consumer = Task(
            "consumer",
            "alpine",
            ["cat /in/a.txt"],
            dependencies=[Dependency(producer, [Artifact("/out/a.txt", "/in/a.txt")])],
        )
        run = await TaskExecutor(DockerEnvironmentProvider()).execute(consumer)
        ```
    """

    def __init__(
        self,
        provider: EnvironmentProvider,
        config: Optional[ExecutorConfig] = None,
        store: Optional[Store] = None,
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
    ):
        """
        Initialize the task executor.

        Args:
            provider: Environment provider running the tasks
            config: Executor settings (defaults to ExecutorConfig())
            store: Optional storage backend recording build runs
            stdout: Stream receiving command stdout (defaults to sys.stdout)
            stderr: Stream receiving command stderr (defaults to sys.stderr)
        """
        self.provider = provider
        self.config = config or ExecutorConfig()
        self.store = store
        self._stdout = stdout
        self._stderr = stderr

    # ================================================================
    #                   PUBLIC API
    # ================================================================

    async def execute(self, task: Task, run_id: Optional[str] = None) -> BuildRun:
        """
        Execute a task graph from its root task.

        The graph is checked for cycles and invalid definitions before any
        environment is touched.

        Args:
            task: Root task of the graph
            run_id: Optional id for the build run

        Returns:
            The completed build run

        Raises:
            CycleError: If the graph contains a cycle
            ConfigurationError: If a task definition is invalid
            BuildVaultError: The first error aborting the run
        """
        ensure_acyclic(task)
        validate_graph(task)

        run = self.init_run(task, run_id)
        context = _RunContext(
            run=run,
            semaphore=asyncio.Semaphore(self.config.max_concurrency)
            if self.config.max_concurrency > 1
            else None,
        )

        run.state = ExecutionState.RUNNING
        self._save(run)
        logger.info(f"Starting build run: run_id={run.id}, root_task={task.name}, tasks={len(run.tasks)}")

        try:
            await self._run_task(context, task)
        except BaseException as e:
            run.state = ExecutionState.FAILED
            run.end_date = datetime.now()
            self._save(run)
            logger.error(
                f"Build run failed: run_id={run.id}, root_task={task.name}. "
                f"Error: {e.__class__.__name__}: {e}"
            )
            raise

        run.state = ExecutionState.SUCCESS
        run.end_date = datetime.now()
        self._save(run)
        logger.info(f"Build run completed successfully: run_id={run.id}, root_task={task.name}")
        return run

    def init_run(self, task: Task, run_id: Optional[str] = None) -> BuildRun:
        """
        Create a build run with a pending TaskExecution for every task of the graph.

        Args:
            task: Root task of an acyclic graph
            run_id: Optional id for the build run

        Returns:
            The new build run
        """
        run = BuildRun(id=run_id or str(uuid.uuid4()), root_task=task.name)
        for current in iter_tasks(task):
            run.tasks[current.name] = TaskExecution(
                task_name=current.name,
                fingerprint=fingerprint(current),
                environment_name=environment_name(current, self.config.name_prefix),
            )
        return run

    # ================================================================
    #                   TASK EXECUTION
    # ================================================================

    async def _run_task(self, context: _RunContext, task: Task) -> None:
        """Execute a task once per run, awaiting the first execution if already started."""
        future = context.futures.get(task)
        if future is None:
            future = asyncio.ensure_future(self._execute_task(context, task))
            context.futures[task] = future
        else:
            logger.debug(f"Task already scheduled in this run, reusing it: run_id={context.run.id}, task={task.name}")
        await future

    async def _execute_task(self, context: _RunContext, task: Task) -> None:
        """
        Run one task through its lifecycle.

        Reclaim, provision the image, create and start the environment, copy
        input artifacts, execute dependencies, copy their artifacts, run the
        commands, export host artifacts, and stop the environment.

        Args:
            context: Execution state of the current run
            task: Task to execute
        """
        run = context.run
        execution = run.tasks[task.name]
        execution.state = ExecutionState.RUNNING
        execution.start_date = datetime.now()
        self._update_task(run, execution)

        logger.debug(
            f"Starting task execution: run_id={run.id}, task={task.name}, "
            f"environment={execution.environment_name}"
        )

        try:
            execution.environment_id = await self._execute_with_semaphore(
                context, self._provision(task, execution.environment_name)
            )
            self._update_task(run, execution)

            if task.dependencies:
                await self._resolve_dependencies(context, task)

            await self._execute_with_semaphore(
                context, self._run_workload(context, task, execution.environment_id)
            )
        except Exception as e:
            execution.state = ExecutionState.FAILED
            execution.error = f"{e.__class__.__name__}: {e}"
            execution.end_date = datetime.now()
            self._update_task(run, execution)
            logger.error(
                f"Task failed: run_id={run.id}, task={task.name}. "
                f"Error: {e.__class__.__name__}: {e}"
            )
            raise

        execution.state = ExecutionState.SUCCESS
        execution.end_date = datetime.now()
        self._update_task(run, execution)
        logger.info(f"Task completed successfully: run_id={run.id}, task={task.name}")

    async def _provision(self, task: Task, name: str) -> str:
        """
        Prepare a clean, running environment for a task.

        Returns:
            The new environment id
        """
        await self._reclaim(name)
        await self._provision_image(task)

        try:
            environment_id = await self.provider.create_environment(
                task.base_image, list(self.config.keep_alive_command), name
            )
        except ProviderError as e:
            raise ProvisioningError(task.name, "creating environment", str(e)) from e

        try:
            await self.provider.start_environment(environment_id)
        except ProviderError as e:
            raise ProvisioningError(task.name, "starting environment", str(e)) from e
        logger.info(f"Environment started: task={task.name}, environment_id={environment_id[:12]}")

        for host_path, environment_path in task.input_artifacts.items():
            logger.info(f"Copying input artifact: task={task.name}, {host_path} -> {environment_path}")
            await import_host_file(self.provider, environment_id, host_path, environment_path, task.name)

        return environment_id

    async def _reclaim(self, name: str) -> None:
        """
        Stop and remove any existing environment with the given name.

        Cleanup is best effort: failures are logged and provisioning goes on.
        """
        try:
            existing = await self.provider.find_environments_by_name(name)
        except ProviderError as e:
            logger.warning(f"Could not list existing environments: name={name}. Error: {e}")
            return

        for summary in existing:
            # Name filters match substrings, keep exact matches only
            if summary.name.lstrip("/") != name:
                continue
            logger.info(f"Found existing environment {summary.id[:12]}, removing it: name={name}")
            try:
                if summary.is_running:
                    await self.provider.stop_environment(summary.id, self.config.stop_signal)
                await self.provider.remove_environment(summary.id)
            except ProviderError as e:
                logger.warning(f"Could not remove existing environment {summary.id[:12]}: name={name}. Error: {e}")

    async def _provision_image(self, task: Task) -> None:
        """Pull the task base image unless it is already present locally."""
        try:
            if await self.provider.image_exists_locally(task.base_image):
                logger.debug(f"Image already present locally: image={task.base_image}")
                return
            logger.info(f"Pulling image: image={task.base_image}")
            await self.provider.pull_image(task.base_image)
        except ProviderError as e:
            raise ProvisioningError(task.name, "pulling image", str(e)) from e

    async def _resolve_dependencies(self, context: _RunContext, task: Task) -> None:
        """
        Execute all upstream tasks, in declared order.

        Sequential runs stop at the first failing dependency. Concurrent runs
        wait for every dependency and report the first failure in declared order.
        """
        if context.semaphore is None:
            for dependency in task.dependencies:
                await self._execute_dependency(context, task, dependency)
            return

        results = await asyncio.gather(
            *(self._execute_dependency(context, task, dependency) for dependency in task.dependencies),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _execute_dependency(self, context: _RunContext, task: Task, dependency: Dependency) -> None:
        try:
            await self._run_task(context, dependency.task)
        except Exception as e:
            raise DependencyError(task.name, dependency.task.name, e) from e

    async def _run_workload(self, context: _RunContext, task: Task, environment_id: str) -> None:
        """Copy dependency artifacts, run commands, export artifacts and stop the environment."""
        for dependency in task.dependencies:
            source_environment_id = context.run.environment_id(dependency.task.name)
            for artifact in dependency.artifacts:
                logger.info(
                    f"Copying artifact: task={task.name}, from={dependency.task.name}:{artifact.source}, "
                    f"to={artifact.destination}"
                )
                await copy_artifact(
                    self.provider,
                    source_environment_id,
                    environment_id,
                    artifact.source,
                    artifact.destination,
                    task.name,
                )

        await self._run_commands(task, environment_id)

        if task.artifacts:
            artifacts_dir = task.artifacts_dir or self.config.artifacts_dir
            for path in task.artifacts:
                output_path = await export_artifact(self.provider, environment_id, path, artifacts_dir, task.name)
                logger.info(f"Extracted artifact: task={task.name}, {path} -> {output_path}")

        try:
            await self.provider.stop_environment(environment_id, self.config.stop_signal)
        except ProviderError as e:
            raise ProvisioningError(task.name, "stopping environment", str(e)) from e
        logger.debug(f"Environment stopped and preserved: task={task.name}, environment_id={environment_id[:12]}")

    async def _run_commands(self, task: Task, environment_id: str) -> None:
        """
        Run the task commands in order, aborting on the first non-zero exit code.

        Raises:
            CommandError: If a command cannot be executed or fails
        """
        for index, command in enumerate(task.commands, start=1):
            logger.info(f"Executing command {index}/{len(task.commands)}: task={task.name}, command={command}")
            try:
                exit_code = await self.provider.exec(
                    environment_id,
                    [self.config.shell, "-c", command],
                    output=self._write_output,
                )
            except ProviderError as e:
                raise CommandError(task.name, command, None, str(e)) from e

            if exit_code != 0:
                raise CommandError(task.name, command, exit_code)

    # ================================================================
    #                   INTERNAL HELPERS
    # ================================================================

    async def _execute_with_semaphore(self, context: _RunContext, coro: Any) -> Any:
        """
        Execute a coroutine with optional concurrency limiting.

        Args:
            context: Execution state of the current run
            coro: Coroutine to execute

        Returns:
            Result of the coroutine
        """
        if context.semaphore:
            async with context.semaphore:
                return await coro
        return await coro

    def _write_output(self, stream: str, chunk: bytes) -> None:
        """Forward a chunk of command output to the configured stream."""
        target = (self._stderr or sys.stderr) if stream == "stderr" else (self._stdout or sys.stdout)
        target.write(chunk.decode("utf-8", errors="replace"))
        target.flush()

    def _save(self, run: BuildRun) -> None:
        if self.store is not None:
            self.store.save(run)

    def _update_task(self, run: BuildRun, execution: TaskExecution) -> None:
        if self.store is not None:
            self.store.update_task(run.id, execution)


async def execute_task(
    task: Task,
    provider: EnvironmentProvider,
    config: Optional[ExecutorConfig] = None,
    store: Optional[Store] = None,
) -> BuildRun:
    """
    Convenience wrapper running a task graph with a one-off TaskExecutor.

    Raises:
        BuildVaultError: The first error aborting the run
    """
    return await TaskExecutor(provider, config=config, store=store).execute(task)
