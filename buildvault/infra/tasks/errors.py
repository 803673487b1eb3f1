# buildvault/infra/tasks/errors.py
"""
Error taxonomy for task graph execution.

Every error raised by the executor derives from BuildVaultError and carries
the identifying context (task name, command, path) of the layer it crossed.
"""
from __future__ import annotations

from typing import List, Optional


class BuildVaultError(Exception):
    """Base class for all buildvault errors."""


class ConfigurationError(BuildVaultError):
    """A task or pipeline definition is missing a field or holds an invalid value."""


class CycleError(BuildVaultError):
    """
    The dependency graph contains a cycle.

    Attributes:
        cycle: Task names forming the cycle, first name repeated at the end
    """

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Cyclic dependency detected: {' -> '.join(self.cycle)}")


class ProvisioningError(BuildVaultError):
    """
    An environment or image operation failed (pull, create, start, stop, remove).

    Attributes:
        task_name: Task whose environment was being provisioned
        operation: Name of the failing operation
    """

    def __init__(self, task_name: str, operation: str, message: str):
        self.task_name = task_name
        self.operation = operation
        super().__init__(f"Error {operation} for task '{task_name}': {message}")


class DependencyError(BuildVaultError):
    """
    An upstream task failed while executing a task's dependencies.

    The upstream error is available as ``__cause__``.
    """

    def __init__(self, task_name: str, dependency_name: str, cause: BaseException):
        self.task_name = task_name
        self.dependency_name = dependency_name
        super().__init__(
            f"Dependency '{dependency_name}' of task '{task_name}' failed: {cause}"
        )


class TransferError(BuildVaultError):
    """
    An artifact could not be read, unpacked or written.

    Attributes:
        path: Path the transfer failed on
        task_name: Task performing the transfer, when known
    """

    def __init__(self, path: str, message: str, task_name: Optional[str] = None):
        self.path = path
        self.task_name = task_name
        where = f" for task '{task_name}'" if task_name else ""
        super().__init__(f"Error transferring artifact '{path}'{where}: {message}")


class CommandError(BuildVaultError):
    """
    A task command could not be run or exited with a non-zero code.

    Attributes:
        task_name: Task the command belongs to
        command: The command text
        exit_code: Exit code, or None when the exec itself failed
    """

    def __init__(self, task_name: str, command: str, exit_code: Optional[int], message: str = ""):
        self.task_name = task_name
        self.command = command
        self.exit_code = exit_code
        if exit_code is None:
            text = f"Error executing command '{command}' in task '{task_name}': {message}"
        else:
            text = f"Command '{command}' in task '{task_name}' exited with code {exit_code}"
        super().__init__(text)


class ProviderError(BuildVaultError):
    """Raised by environment provider adapters when the runtime call fails."""


class NotFoundError(ProviderError):
    """The environment, image or path requested from the provider does not exist."""
