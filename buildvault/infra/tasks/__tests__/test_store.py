"""
Tests for SQLStore build run persistence.
"""
from datetime import datetime, timedelta

import pytest

from buildvault.infra.tasks import BuildRun, ExecutionState, SQLStore, TaskExecution
from conftest import assert_all_tasks_success, make_task, pull, writer_task


def _execution(task_name, **kwargs):
    return TaskExecution(
        task_name=task_name,
        fingerprint=f"fp-{task_name}",
        environment_name=f"buildvault_{task_name}_fp-{task_name}",
        **kwargs,
    )


def test_save_and_load_round_trip(store):
    run = BuildRun(id="run-1", root_task="app")
    run.tasks["lib"] = _execution(
        "lib",
        environment_id="abc123",
        state=ExecutionState.SUCCESS,
        start_date=datetime(2024, 1, 1, 12, 0),
        end_date=datetime(2024, 1, 1, 12, 5),
    )
    run.tasks["app"] = _execution("app", state=ExecutionState.FAILED, error="CommandError: boom")

    store.save(run)
    loaded = store.load("run-1")

    assert loaded.id == "run-1"
    assert loaded.root_task == "app"
    assert loaded.state == ExecutionState.PENDING
    assert loaded.tasks["lib"].environment_id == "abc123"
    assert loaded.tasks["lib"].end_date == datetime(2024, 1, 1, 12, 5)
    assert loaded.tasks["lib"].id == run.tasks["lib"].id
    assert loaded.tasks["app"].error == "CommandError: boom"


def test_save_replaces_task_executions(store):
    run = BuildRun(id="run-1", root_task="app")
    run.tasks["old"] = _execution("old")
    store.save(run)

    run.tasks = {"new": _execution("new")}
    run.state = ExecutionState.RUNNING
    store.save(run)

    loaded = store.load("run-1")
    assert list(loaded.tasks) == ["new"]
    assert loaded.state == ExecutionState.RUNNING


def test_update_task(store):
    run = BuildRun(id="run-1", root_task="app")
    run.tasks["app"] = _execution("app")
    store.save(run)

    execution = run.tasks["app"]
    execution.state = ExecutionState.RUNNING
    execution.environment_id = "env-1"
    store.update_task("run-1", execution)
    store.update_task("run-1", _execution("late", state=ExecutionState.SUCCESS))

    loaded = store.load("run-1")
    assert loaded.tasks["app"].state == ExecutionState.RUNNING
    assert loaded.tasks["app"].environment_id == "env-1"
    assert loaded.tasks["late"].state == ExecutionState.SUCCESS


def test_update_task_for_unknown_run(store):
    with pytest.raises(KeyError):
        store.update_task("missing", _execution("app"))


def test_load_missing_run(store):
    assert not store.exists("missing")
    with pytest.raises(KeyError):
        store.load("missing")


def test_get_all_runs_most_recent_first(store):
    now = datetime.now()
    for index in range(3):
        run = BuildRun(id=f"run-{index}", root_task="app", start_date=now + timedelta(minutes=index))
        run.tasks["app"] = _execution("app")
        store.save(run)

    runs = store.get_all_runs()
    assert [run.id for run in runs] == ["run-2", "run-1", "run-0"]
    assert all("app" in run.tasks for run in runs)
    assert store.get_all_runs(include_tasks=False)[0].tasks == {}


def test_store_requires_open(tmp_path):
    store = SQLStore(f"sqlite:///{tmp_path / 'closed.db'}")

    with pytest.raises(RuntimeError):
        store.save(BuildRun(id="run-1", root_task="app"))
    with pytest.raises(RuntimeError):
        store.get_all_runs()


@pytest.mark.asyncio
async def test_executor_records_runs(stored_executor, store):
    producer = writer_task("producer", "/out/a.txt", "a")
    consumer = make_task("consumer", ["cat /out/a.txt"], pull(producer, "/out/a.txt"))

    run = await stored_executor.execute(consumer, run_id="recorded")

    loaded = store.load("recorded")
    assert loaded.state == ExecutionState.SUCCESS
    assert loaded.end_date is not None
    assert_all_tasks_success(loaded, ["producer", "consumer"])
    assert loaded.tasks["consumer"].environment_id == run.environment_id("consumer")
    assert loaded.tasks["consumer"].fingerprint == run.tasks["consumer"].fingerprint


@pytest.mark.asyncio
async def test_recorded_timestamps_are_local_and_exact(stored_executor, store):
    run = await stored_executor.execute(make_task("app", ["true"]), run_id="timestamps")

    loaded = store.load("timestamps")
    assert loaded.start_date == run.start_date
    assert loaded.end_date == run.end_date
    assert loaded.tasks["app"].end_date == run.tasks["app"].end_date
    assert loaded.start_date.tzinfo is None
