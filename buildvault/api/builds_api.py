import asyncio
import logging
import uuid

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from buildvault.application.build_store import get_build_lock, get_executor, get_store
from buildvault.application.example_pipeline import build_example_pipeline
from buildvault.infra.tasks import (
    BuildVaultError,
    ConfigurationError,
    CycleError,
    ExecutionState,
    PipelineSpec,
    Store,
    Task,
    TaskExecutor,
    build_graph,
    ensure_acyclic,
    validate_graph,
)

logger = logging.getLogger(__name__)

build_router = APIRouter(prefix="/builds", tags=["Builds"])


async def run_build(executor: TaskExecutor, task: Task, run_id: str, lock: asyncio.Lock) -> None:
    """Execute a recorded run, one build at a time."""
    async with lock:
        try:
            await executor.execute(task, run_id=run_id)
        except BuildVaultError as e:
            # The run record already holds the failure
            logger.warning(f"Background build failed: run_id={run_id}. Error: {e}")


def _schedule(
    task: Task,
    executor: TaskExecutor,
    store: Store,
    background_tasks: BackgroundTasks,
    lock: asyncio.Lock,
) -> str:
    """Record a pending run and execute it in the background."""
    try:
        ensure_acyclic(task)
        validate_graph(task)
    except (ConfigurationError, CycleError) as e:
        raise HTTPException(status_code=422, detail=str(e))

    run = executor.init_run(task, run_id=str(uuid.uuid4()))
    store.save(run)
    background_tasks.add_task(run_build, executor, task, run.id, lock)
    return run.id


def _reject_host_paths(pipeline: PipelineSpec) -> None:
    """Host files are only read and written through the server's own configuration."""
    for task_spec in pipeline.tasks:
        if task_spec.input_artifacts:
            raise HTTPException(
                status_code=422,
                detail=f"Task '{task_spec.name}': input_artifacts cannot be set through the API",
            )
        if task_spec.artifacts_dir is not None:
            raise HTTPException(
                status_code=422,
                detail=f"Task '{task_spec.name}': artifacts_dir cannot be set through the API",
            )


@build_router.get("/", summary="Get all builds")
async def get_all(active: bool = False, store: Store = Depends(get_store)):
    """
    Get all build runs, most recent first, with their task executions.

    With ``active=true`` only runs that have not finished yet are returned.
    """
    runs = store.get_all_runs()
    if active:
        runs = [run for run in runs if not ExecutionState.is_terminal(run.state)]
    return runs


@build_router.post("/", summary="Trigger a build")
async def trigger(
    pipeline: PipelineSpec,
    background_tasks: BackgroundTasks,
    executor: TaskExecutor = Depends(get_executor),
    store: Store = Depends(get_store),
    lock: asyncio.Lock = Depends(get_build_lock),
):
    """
    Build the pipeline's target task graph and execute it in the background.

    Captured files always land in the executor's configured artifacts
    directory; host input files cannot be requested.

    Returns:
        The id of the scheduled build run

    Raises:
        HTTPException: 422 if the pipeline is invalid, cyclic, or names host paths
    """
    _reject_host_paths(pipeline)
    try:
        task = build_graph(pipeline)
    except (ConfigurationError, CycleError) as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _schedule(task, executor, store, background_tasks, lock)


@build_router.post("/example", summary="Trigger the example build")
async def trigger_example(
    background_tasks: BackgroundTasks,
    executor: TaskExecutor = Depends(get_executor),
    store: Store = Depends(get_store),
    lock: asyncio.Lock = Depends(get_build_lock),
):
    return _schedule(build_example_pipeline(), executor, store, background_tasks, lock)


@build_router.get("/{run_id}", summary="Get a build")
async def get_build(run_id: str, store: Store = Depends(get_store)):
    if not store.exists(run_id):
        raise HTTPException(status_code=404, detail=f"Build '{run_id}' not found")
    return store.load(run_id)
