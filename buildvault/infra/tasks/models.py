# buildvault/infra/tasks/models.py
"""
Core data models and types for the container task engine.

This module contains the task graph definitions, the runtime execution
records, and the protocols for environment providers and run storage.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol


# ============================================================
#                   EXECUTION STATES
# ============================================================
class ExecutionState:
    """
    Enumeration of possible execution states for build runs and task executions.
    """
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @classmethod
    def is_terminal(cls, state: str) -> bool:
        """
        Check if the given state represents a terminal (final) status.

        Args:
            state: The state to check

        Returns:
            True if the state is terminal (SUCCESS or FAILED)
        """
        return state in {cls.SUCCESS, cls.FAILED}


# ============================================================
#                   TASK GRAPH
# ============================================================
@dataclass(frozen=True)
class Artifact:
    """
    A single file pulled from an upstream environment.

    Attributes:
        source: Path inside the upstream environment
        destination: Path inside the downstream environment
    """
    source: str
    destination: str


@dataclass(frozen=True)
class Dependency:
    """
    Reference to an upstream task plus the artifacts to pull from it.

    The same Task may be referenced by any number of dependencies.

    Attributes:
        task: The upstream task
        artifacts: Files to copy from the upstream environment
    """
    task: Task
    artifacts: List[Artifact] = field(default_factory=list)


@dataclass(frozen=True, eq=False)
class Task:
    """
    A container-based unit of work: a base image and commands to run in it.

    Tasks are immutable after construction and compared by identity, so one
    Task object can be shared by several dependencies of the same graph.
    Runtime state (environment ids, results) lives in TaskExecution records.

    Attributes:
        name: Unique name within a graph
        base_image: Image the environment is created from
        commands: Shell commands executed in order inside the environment
        dependencies: Upstream tasks and the artifacts pulled from them
        artifacts: Files captured to the host once the commands succeed
        artifacts_dir: Host directory for captured artifacts (executor default if None)
        input_artifacts: Host path -> environment path files copied in before the commands
    """
    name: str
    base_image: str
    commands: List[str] = field(default_factory=list)
    dependencies: List[Dependency] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)
    artifacts_dir: Optional[str] = None
    input_artifacts: Dict[str, str] = field(default_factory=dict)

    def __repr__(self) -> str:
        # Dependencies may be shared, keep the repr shallow
        return f"Task(name={self.name!r}, base_image={self.base_image!r})"


# ============================================================
#                   EXECUTION RECORDS
# ============================================================
@dataclass
class TaskExecution:
    """
    Runtime record of one task within a build run.

    Attributes:
        task_name: Name of the executed task
        fingerprint: Fingerprint of the task definition
        environment_name: Deterministic name of the task environment
        environment_id: Id of the environment once created
        state: Current execution state
        error: Error message if the task failed
        start_date: Timestamp when execution started
        end_date: Timestamp when execution completed
    """
    task_name: str
    fingerprint: str
    environment_name: str
    environment_id: Optional[str] = None
    state: str = ExecutionState.PENDING
    error: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class BuildRun:
    """
    Represents one execution of a task graph, from its root task.

    Attributes:
        id: Unique identifier for this build run
        root_task: Name of the task passed to execute()
        state: Current execution state of the run
        start_date: Timestamp when the run started
        end_date: Timestamp when the run completed
        tasks: Map of task name to its TaskExecution
    """
    id: str
    root_task: str
    state: str = ExecutionState.PENDING
    start_date: datetime = field(default_factory=datetime.now)
    end_date: Optional[datetime] = None
    tasks: Dict[str, TaskExecution] = field(default_factory=dict)

    def environment_id(self, task_name: str) -> Optional[str]:
        """Environment id recorded for a task in this run, if any."""
        execution = self.tasks.get(task_name)
        return execution.environment_id if execution else None


# ============================================================
#                   ENVIRONMENT PROVIDER
# ============================================================
@dataclass(frozen=True)
class EnvironmentSummary:
    """
    Lightweight description of an existing environment.

    Attributes:
        id: Environment id
        name: Environment name
        state: Runtime state reported by the provider ("running", "exited", ...)
    """
    id: str
    name: str
    state: str

    @property
    def is_running(self) -> bool:
        return self.state == "running"


# Receives (stream_name, chunk) where stream_name is "stdout" or "stderr"
OutputSink = Callable[[str, bytes], None]


class EnvironmentProvider(Protocol):
    """
    Protocol for the isolated execution environment runtime.

    Implementations include DockerEnvironmentProvider. Archive payloads are
    tar streams, as returned by the container runtime copy API.
    """

    async def image_exists_locally(self, image: str) -> bool:
        ...

    async def pull_image(self, image: str) -> None:
        ...

    async def find_environments_by_name(self, name: str) -> List[EnvironmentSummary]:
        ...

    async def create_environment(self, image: str, command: List[str], name: str) -> str:
        """
        Create (but do not start) an environment.

        Returns:
            The new environment id
        """
        ...

    async def start_environment(self, environment_id: str) -> None:
        ...

    async def stop_environment(self, environment_id: str, signal: Optional[str] = None) -> None:
        ...

    async def remove_environment(self, environment_id: str) -> None:
        ...

    async def exec(
        self,
        environment_id: str,
        command: List[str],
        output: Optional[OutputSink] = None,
    ) -> int:
        """
        Run a command inside a running environment.

        Blocks until the command completes and its output stream closes.

        Args:
            environment_id: Target environment
            command: Argument vector to execute
            output: Optional callback receiving output chunks as they arrive

        Returns:
            The command exit code
        """
        ...

    async def copy_from_environment(self, environment_id: str, path: str) -> bytes:
        """
        Read a path from an environment.

        Returns:
            A tar archive containing the path
        """
        ...

    async def copy_to_environment(self, environment_id: str, dest_dir: str, archive: bytes) -> None:
        """
        Extract a tar archive into a directory of an environment.
        """
        ...


# ============================================================
#                   STORAGE INTERFACE
# ============================================================
class Store(Protocol):
    """
    Protocol defining the storage interface for build run history.

    Implementations include SQLStore.
    """

    def open(self) -> None:
        """Initialize the storage backend."""
        ...

    def close(self) -> None:
        """Close the storage backend and release resources."""
        ...

    def save(self, build_run: BuildRun) -> None:
        """
        Persist a build run and all its task executions.

        Args:
            build_run: The build run to save
        """
        ...

    def load(self, run_id: str) -> BuildRun:
        """
        Load a build run from storage.

        Args:
            run_id: ID of the build run to load

        Returns:
            The loaded build run

        Raises:
            KeyError: If the run_id does not exist
        """
        ...

    def exists(self, run_id: str) -> bool:
        """
        Check if a build run exists in storage.

        Args:
            run_id: ID of the build run to check

        Returns:
            True if the run exists
        """
        ...

    def update_task(self, run_id: str, execution: TaskExecution) -> None:
        """
        Upsert a single task execution within a build run.

        Args:
            run_id: ID of the build run
            execution: The task execution to update

        Raises:
            KeyError: If the run_id does not exist
        """
        ...

    def get_all_runs(self, include_tasks: bool = True) -> List[BuildRun]:
        """
        Get all build runs in storage, most recent first.

        Args:
            include_tasks: Whether to load task executions for each run
        """
        ...
