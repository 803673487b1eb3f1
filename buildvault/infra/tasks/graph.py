# buildvault/infra/tasks/graph.py
"""
Dependency graph checks.

Cycle detection walks the graph depth-first carrying the fingerprints of the
tasks on the current path. Validation checks task fields and name uniqueness.
Both run before any environment is created.
"""
from __future__ import annotations

import posixpath
import re
from typing import Dict, Iterator, List, Optional, Sequence

from buildvault.infra.tasks.errors import ConfigurationError, CycleError
from buildvault.infra.tasks.fingerprint import fingerprint
from buildvault.infra.tasks.models import Task

TASK_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def _names_a_file(path: str) -> bool:
    return posixpath.basename(path) not in ("", ".", "..")


def is_acyclic(task: Task, ancestors: Sequence[str] = ()) -> bool:
    """
    Check that no task repeats along any dependency path below ``task``.

    Args:
        task: Root of the (sub)graph to check
        ancestors: Fingerprints of the tasks on the path leading to ``task``

    Returns:
        False if the graph contains a cycle
    """
    return find_cycle(task, ancestors) is None


def find_cycle(task: Task, ancestors: Sequence[str] = ()) -> Optional[List[str]]:
    """
    Find the first dependency cycle reachable from ``task``.

    Args:
        task: Root of the (sub)graph to check
        ancestors: Fingerprints of the tasks on the path leading to ``task``

    Returns:
        Task names forming the cycle (first name repeated last), or None
    """
    return _find_cycle(task, list(ancestors), [])


def _find_cycle(task: Task, path: List[str], names: List[str]) -> Optional[List[str]]:
    task_fingerprint = fingerprint(task)
    if task_fingerprint in path:
        start = path.index(task_fingerprint)
        return names[start:] + [task.name]

    # Each branch gets its own copy so siblings never see each other's path
    path = path + [task_fingerprint]
    names = names + [task.name]
    for dependency in task.dependencies:
        cycle = _find_cycle(dependency.task, path, names)
        if cycle is not None:
            return cycle
    return None


def ensure_acyclic(task: Task) -> None:
    """
    Raise if the graph rooted at ``task`` contains a cycle.

    Raises:
        CycleError: naming the tasks of the first cycle found
    """
    cycle = find_cycle(task)
    if cycle is not None:
        raise CycleError(cycle)


def iter_tasks(task: Task) -> Iterator[Task]:
    """
    Yield every task of an acyclic graph once, dependencies before dependents.

    Args:
        task: Root of the graph
    """
    seen = set()

    def visit(current: Task) -> Iterator[Task]:
        if id(current) in seen:
            return
        seen.add(id(current))
        for dependency in current.dependencies:
            yield from visit(dependency.task)
        yield current

    yield from visit(task)


def validate_task(task: Task) -> None:
    """
    Check the declared fields of a single task.

    Raises:
        ConfigurationError: If a required field is missing or invalid
    """
    if not task.name:
        raise ConfigurationError("Task name must not be empty")
    if not TASK_NAME_PATTERN.match(task.name):
        raise ConfigurationError(
            f"Invalid task name '{task.name}': only letters, digits, '_', '.' and '-' are allowed"
        )
    if not task.base_image:
        raise ConfigurationError(f"Task '{task.name}' has no base image")
    for index, command in enumerate(task.commands):
        if not command or not command.strip():
            raise ConfigurationError(f"Task '{task.name}' has an empty command at position {index + 1}")
    for dependency in task.dependencies:
        for artifact in dependency.artifacts:
            if not artifact.source or not artifact.destination:
                raise ConfigurationError(
                    f"Task '{task.name}' declares an artifact from '{dependency.task.name}' "
                    f"without a source or destination path"
                )
            if not _names_a_file(artifact.destination):
                raise ConfigurationError(
                    f"Task '{task.name}' copies '{artifact.source}' to '{artifact.destination}', "
                    f"which does not name a file"
                )
    for path in task.artifacts:
        if not path:
            raise ConfigurationError(f"Task '{task.name}' declares an empty output artifact path")
        if not _names_a_file(path):
            raise ConfigurationError(f"Task '{task.name}' output artifact '{path}' does not name a file")


def validate_graph(task: Task) -> None:
    """
    Validate every task of an acyclic graph and the uniqueness of task names.

    Must run after ensure_acyclic().

    Raises:
        ConfigurationError: If a task is invalid or two tasks share a name
    """
    by_name: Dict[str, Task] = {}
    for current in iter_tasks(task):
        validate_task(current)
        existing = by_name.setdefault(current.name, current)
        if existing is not current:
            raise ConfigurationError(f"Task name '{current.name}' is used by more than one task")
