"""
SQLStore implementation using SQLModel for build run persistence.

This module provides a persistent storage backend using SQLModel/SQLAlchemy
for storing build runs and their task executions.
"""
from typing import List, Optional

from sqlalchemy import Engine, desc as sqlalchemy_desc
from sqlmodel import Session, SQLModel, create_engine, select, col

from buildvault.infra.tasks.models import BuildRun, Store, TaskExecution
from buildvault.infra.tasks.store.sql_models import (
    BuildRunModel,
    TaskExecutionModel,
    build_run_to_model,
    model_to_build_run,
    task_execution_to_model,
    model_to_task_execution,
    copy_model_fields,
)


class SQLStore(Store):

    def __init__(self, connection_string: str = "sqlite:///buildvault.db", echo: bool = False):
        self.connection_string = connection_string
        self.echo = echo
        self.engine: Optional[Engine] = None

    # ---------- Lifecycle ----------

    def open(self):
        self.engine = create_engine(
            self.connection_string,
            echo=self.echo,
            connect_args={"check_same_thread": False} if "sqlite" in self.connection_string else {}
        )
        SQLModel.metadata.create_all(self.engine)

    def close(self):
        """Close the database engine and release resources."""
        if self.engine:
            self.engine.dispose()
            self.engine = None

    # ---------- Run CRUD ----------

    def save(self, run: BuildRun):
        if not self.engine:
            raise RuntimeError("open() must be called before save()")

        with Session(self.engine) as session:
            # Upsert build run
            run_model = build_run_to_model(run)
            existing_run = session.get(BuildRunModel, run.id)

            if existing_run:
                copy_model_fields(existing_run, run_model, exclude_keys={'id'})
            else:
                session.add(run_model)

            # Replace all task executions for this run
            statement = select(TaskExecutionModel).where(TaskExecutionModel.run_id == run.id)
            for execution_model in session.exec(statement).all():
                session.delete(execution_model)
            session.flush()

            for execution in (run.tasks or {}).values():
                session.add(task_execution_to_model(execution, run.id))

            session.commit()

    def load(self, run_id: str) -> BuildRun:
        if not self.engine:
            raise RuntimeError("open() must be called before load()")

        with Session(self.engine) as session:
            run_model = session.get(BuildRunModel, run_id)
            if not run_model:
                raise KeyError(f"BuildRun not found: {run_id}")

            statement = (
                select(TaskExecutionModel)
                .where(TaskExecutionModel.run_id == run_id)
                .order_by(col(TaskExecutionModel.start_date), col(TaskExecutionModel.task_name))
            )
            executions = {
                model.task_name: model_to_task_execution(model)
                for model in session.exec(statement).all()
            }

            return model_to_build_run(run_model, executions)

    def exists(self, run_id: str) -> bool:
        """
        Check if a build run exists.

        Args:
            run_id: The build run ID to check

        Returns:
            True if the run exists
        """
        if not self.engine:
            raise RuntimeError("open() must be called before exists()")

        with Session(self.engine) as session:
            return session.get(BuildRunModel, run_id) is not None

    def update_task(self, run_id: str, execution: TaskExecution):
        """
        Upsert a task execution.

        Args:
            run_id: The build run ID
            execution: The TaskExecution to update
        """
        if not self.engine:
            raise RuntimeError("open() must be called before update_task()")

        with Session(self.engine) as session:
            if session.get(BuildRunModel, run_id) is None:
                raise KeyError(f"BuildRun not found: {run_id}")

            existing = session.get(TaskExecutionModel, (run_id, execution.task_name))
            execution_model = task_execution_to_model(execution, run_id)

            if existing:
                copy_model_fields(existing, execution_model, exclude_keys={'run_id', 'task_name'})
            else:
                session.add(execution_model)

            session.commit()

    def get_all_runs(self, include_tasks: bool = True) -> List[BuildRun]:
        """
        Get all build runs, most recent first.

        Args:
            include_tasks: Whether to load task executions for each run

        Returns:
            List of BuildRun instances
        """
        if not self.engine:
            raise RuntimeError("open() must be called before get_all_runs()")

        with Session(self.engine) as session:
            statement = (
                select(BuildRunModel)
                .order_by(sqlalchemy_desc(col(BuildRunModel.start_date)), sqlalchemy_desc(col(BuildRunModel.id)))
            )
            run_models = session.exec(statement).all()

            runs = []
            for run_model in run_models:
                if include_tasks:
                    runs.append(self.load(run_model.id))
                else:
                    runs.append(model_to_build_run(run_model, {}))

            return runs
