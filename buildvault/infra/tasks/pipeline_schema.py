# buildvault/infra/tasks/pipeline_schema.py
"""
Declarative pipeline definitions.

A pipeline lists tasks that reference their dependencies by name. build_graph()
resolves those references into a shared Task object graph.
"""
from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from buildvault.infra.tasks.errors import ConfigurationError, CycleError
from buildvault.infra.tasks.models import Artifact, Dependency, Task


class ArtifactSpec(BaseModel):
    """A file pulled from an upstream task."""
    model_config = ConfigDict(populate_by_name=True)

    source: str = Field(..., alias="from", min_length=1, description="Path inside the upstream environment")
    destination: str = Field(..., alias="to", min_length=1, description="Path inside this task's environment")


class DependencySpec(BaseModel):
    """Reference to an upstream task by name."""
    task: str = Field(..., min_length=1, description="Name of the upstream task")
    artifacts: List[ArtifactSpec] = Field(default_factory=list)


class TaskSpec(BaseModel):
    """Definition of one task of a pipeline."""
    name: str = Field(..., min_length=1, pattern=r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
    base_image: str = Field(..., min_length=1)
    commands: List[str] = Field(default_factory=list)
    dependencies: List[DependencySpec] = Field(default_factory=list)
    artifacts: List[str] = Field(default_factory=list, description="Files captured to the host")
    artifacts_dir: Optional[str] = Field(default=None, description="Host directory for captured files")
    input_artifacts: Dict[str, str] = Field(
        default_factory=dict, description="Host path -> environment path copied in before the commands"
    )


class PipelineSpec(BaseModel):
    """A set of tasks and the target task to execute."""
    target: str = Field(..., min_length=1, description="Name of the task to execute")
    tasks: List[TaskSpec] = Field(..., min_length=1)


def build_graph(spec: PipelineSpec) -> Task:
    """
    Resolve a pipeline definition into a Task graph.

    Only the target task and its transitive dependencies are built; each
    task name maps to a single shared Task object.

    Args:
        spec: The pipeline definition

    Returns:
        The target Task

    Raises:
        ConfigurationError: On duplicate names or unknown task references
        CycleError: If the task references form a cycle
    """
    specs: Dict[str, TaskSpec] = {}
    for task_spec in spec.tasks:
        if task_spec.name in specs:
            raise ConfigurationError(f"Task name '{task_spec.name}' is defined more than once")
        specs[task_spec.name] = task_spec

    if spec.target not in specs:
        raise ConfigurationError(f"Target task '{spec.target}' is not defined")

    built: Dict[str, Task] = {}

    def build(name: str, path: List[str]) -> Task:
        if name in path:
            raise CycleError(path[path.index(name):] + [name])
        if name in built:
            return built[name]

        task_spec = specs[name]
        dependencies = []
        for dependency_spec in task_spec.dependencies:
            if dependency_spec.task not in specs:
                raise ConfigurationError(
                    f"Task '{name}' depends on unknown task '{dependency_spec.task}'"
                )
            dependencies.append(
                Dependency(
                    task=build(dependency_spec.task, path + [name]),
                    artifacts=[
                        Artifact(source=artifact.source, destination=artifact.destination)
                        for artifact in dependency_spec.artifacts
                    ],
                )
            )

        built[name] = Task(
            name=task_spec.name,
            base_image=task_spec.base_image,
            commands=list(task_spec.commands),
            dependencies=dependencies,
            artifacts=list(task_spec.artifacts),
            artifacts_dir=task_spec.artifacts_dir,
            input_artifacts=dict(task_spec.input_artifacts),
        )
        return built[name]

    return build(spec.target, [])
