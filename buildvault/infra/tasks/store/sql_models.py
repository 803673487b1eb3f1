"""
SQLModel models and mappers for build run persistence.

This module contains SQLModel table definitions and mapper functions
to convert between SQLModel instances and domain dataclasses.
"""
from datetime import datetime
from typing import Dict, Optional, TypeVar

from sqlmodel import Field, SQLModel

from buildvault.infra.tasks.models import BuildRun, TaskExecution

# Type variable for generic model update
T = TypeVar('T', bound=SQLModel)


# ============================================================
#                   SQLMODEL TABLE DEFINITIONS
# ============================================================

class BuildRunModel(SQLModel, table=True):
    """
    SQLModel representation of a build run for database persistence.

    Table: build_run
    """
    __tablename__ = "build_run"

    id: str = Field(primary_key=True)
    root_task: str = Field(index=True)
    state: str = Field(index=True)
    start_date: Optional[datetime] = Field(default=None, index=True)
    end_date: Optional[datetime] = Field(default=None)


class TaskExecutionModel(SQLModel, table=True):
    """
    SQLModel representation of a task execution for database persistence.

    Table: task_execution
    Primary Key: (run_id, task_name)
    """
    __tablename__ = "task_execution"

    run_id: str = Field(foreign_key="build_run.id", primary_key=True)
    task_name: str = Field(primary_key=True)
    id: str = Field(default="")
    fingerprint: str = Field(default="", index=True)
    environment_name: str = Field(default="")
    environment_id: Optional[str] = Field(default=None)
    state: str = Field(default="pending")
    error: Optional[str] = Field(default=None)
    start_date: Optional[datetime] = Field(default=None)
    end_date: Optional[datetime] = Field(default=None)


# ============================================================
#                   UTILITY FUNCTIONS
# ============================================================

def copy_model_fields(target: T, source: T, exclude_keys: Optional[set] = None) -> T:
    """
    Copy all fields from source model to target model.

    Automatically handles all fields defined in the model.

    Args:
        target: The SQLModel instance to update
        source: The SQLModel instance to copy from
        exclude_keys: Optional set of field names to skip during copy

    Returns:
        The updated target model

    Example:
        existing_run = session.get(BuildRunModel, run_id)
        new_run = build_run_to_model(run)
        copy_model_fields(existing_run, new_run, exclude_keys={'id'})
    """
    exclude_keys = exclude_keys or set()

    source_dict = source.model_dump(exclude=exclude_keys)

    for key, value in source_dict.items():
        if hasattr(target, key):
            setattr(target, key, value)

    return target


# ============================================================
#                   MAPPER FUNCTIONS
# ============================================================

def build_run_to_model(run: BuildRun) -> BuildRunModel:
    """
    Convert a BuildRun dataclass to a BuildRunModel SQLModel instance.

    Args:
        run: The BuildRun dataclass instance

    Returns:
        BuildRunModel instance ready for database persistence
    """
    return BuildRunModel(
        id=run.id,
        root_task=run.root_task,
        state=run.state,
        start_date=run.start_date,
        end_date=run.end_date,
    )


def model_to_build_run(
    model: BuildRunModel,
    tasks: Optional[Dict[str, TaskExecution]] = None
) -> BuildRun:
    """
    Convert a BuildRunModel SQLModel instance to a BuildRun dataclass.

    Args:
        model: The BuildRunModel instance from the database
        tasks: Optional dictionary of task executions to include

    Returns:
        BuildRun dataclass instance
    """
    return BuildRun(
        id=model.id,
        root_task=model.root_task,
        state=model.state,
        start_date=model.start_date,
        end_date=model.end_date,
        tasks=tasks or {},
    )


def task_execution_to_model(execution: TaskExecution, run_id: str) -> TaskExecutionModel:
    """
    Convert a TaskExecution dataclass to a TaskExecutionModel SQLModel instance.

    Args:
        execution: The TaskExecution dataclass instance
        run_id: The build run ID this execution belongs to

    Returns:
        TaskExecutionModel instance ready for database persistence
    """
    return TaskExecutionModel(
        run_id=run_id,
        task_name=execution.task_name,
        id=execution.id,
        fingerprint=execution.fingerprint,
        environment_name=execution.environment_name,
        environment_id=execution.environment_id,
        state=execution.state,
        error=execution.error,
        start_date=execution.start_date,
        end_date=execution.end_date,
    )


def model_to_task_execution(model: TaskExecutionModel) -> TaskExecution:
    """
    Convert a TaskExecutionModel SQLModel instance to a TaskExecution dataclass.

    Args:
        model: The TaskExecutionModel instance from the database

    Returns:
        TaskExecution dataclass instance
    """
    return TaskExecution(
        id=model.id,
        task_name=model.task_name,
        fingerprint=model.fingerprint,
        environment_name=model.environment_name,
        environment_id=model.environment_id,
        state=model.state,
        error=model.error,
        start_date=model.start_date,
        end_date=model.end_date,
    )
