"""
Container task graph execution library.

Main exports:
- TaskExecutor: Runs a task and its dependency subtree in fresh environments
- Task, Dependency, Artifact: Task graph definitions
- BuildRun, TaskExecution, ExecutionState: Runtime execution records
- EnvironmentProvider: Protocol for container runtimes (DockerEnvironmentProvider)
- Store: Storage protocol (SQLStore)

Graph helpers:
- fingerprint, environment_name: Deterministic task identity
- is_acyclic, ensure_acyclic, validate_graph: Checks run before execution
- PipelineSpec, build_graph: Declarative pipeline definitions
"""

from buildvault.infra.tasks.config import ExecutorConfig
from buildvault.infra.tasks.errors import (
    BuildVaultError,
    CommandError,
    ConfigurationError,
    CycleError,
    DependencyError,
    NotFoundError,
    ProviderError,
    ProvisioningError,
    TransferError,
)
from buildvault.infra.tasks.executors import TaskExecutor, execute_task
from buildvault.infra.tasks.fingerprint import environment_name, fingerprint
from buildvault.infra.tasks.graph import ensure_acyclic, find_cycle, is_acyclic, iter_tasks, validate_graph
from buildvault.infra.tasks.models import (
    Artifact,
    BuildRun,
    Dependency,
    EnvironmentProvider,
    EnvironmentSummary,
    ExecutionState,
    Store,
    Task,
    TaskExecution,
)
from buildvault.infra.tasks.pipeline_schema import PipelineSpec, build_graph
from buildvault.infra.tasks.store.sql_store import SQLStore

__all__ = [
    # Main classes
    "TaskExecutor",
    "execute_task",
    "ExecutorConfig",
    # Task graph
    "Task",
    "Dependency",
    "Artifact",
    # Execution records
    "BuildRun",
    "TaskExecution",
    "ExecutionState",
    # Providers and storage
    "EnvironmentProvider",
    "EnvironmentSummary",
    "Store",
    "SQLStore",
    # Graph helpers
    "fingerprint",
    "environment_name",
    "is_acyclic",
    "find_cycle",
    "ensure_acyclic",
    "iter_tasks",
    "validate_graph",
    "PipelineSpec",
    "build_graph",
    # Errors
    "BuildVaultError",
    "ConfigurationError",
    "CycleError",
    "ProvisioningError",
    "DependencyError",
    "TransferError",
    "CommandError",
    "ProviderError",
    "NotFoundError",
]
