"""
Pytest configuration and DRY test utilities.

This module provides reusable fixtures, task factories, helpers and an
in-memory environment provider for declarative executor testing.
"""
import asyncio
import io
import posixpath
import shlex
import tarfile
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import pytest

from buildvault.infra.tasks import (
    Artifact,
    BuildRun,
    Dependency,
    EnvironmentSummary,
    ExecutionState,
    ExecutorConfig,
    NotFoundError,
    ProviderError,
    SQLStore,
    Task,
    TaskExecutor,
)


# ============================================================
#                   FAKE ENVIRONMENT PROVIDER
# ============================================================

class _ScriptExit(Exception):
    def __init__(self, code: int):
        self.code = code


@dataclass
class FakeEnvironment:
    """An in-memory container: a flat file map plus a set of directories."""
    id: str
    name: str
    image: str
    command: List[str]
    state: str = "created"
    files: Dict[str, bytes] = field(default_factory=dict)
    dirs: Set[str] = field(default_factory=lambda: {"/", "/tmp"})
    scripts: List[str] = field(default_factory=list)

    def read(self, path: str) -> str:
        return self.files[_normalize(path)].decode()


def _normalize(path: str) -> str:
    return posixpath.normpath(posixpath.join("/", path))


class FakeEnvironmentProvider:
    """
    EnvironmentProvider double interpreting a small shell subset.

    Supported commands: mkdir -p, echo, cat, grep -q, test -f, true, false, exit,
    with ``>``/``>>`` redirections and ``||``/``&&``/``;`` lists.

    Failures can be injected per operation with ``fail(operation, error)``.
    """

    def __init__(self, local_images: Optional[Set[str]] = None):
        self.local_images: Set[str] = set(local_images or ())
        self.pulled: List[str] = []
        self.environments: Dict[str, FakeEnvironment] = {}
        self.calls: List[Tuple[str, str]] = []
        self.exec_log: List[Tuple[str, str]] = []
        self.failures: Dict[str, Exception] = {}
        self.active_execs = 0
        self.max_active_execs = 0

    # ---------- Test helpers ----------

    def fail(self, operation: str, error: Optional[Exception] = None) -> None:
        self.failures[operation] = error or ProviderError(f"{operation}: injected failure")

    def environment(self, run: BuildRun, task_name: str) -> FakeEnvironment:
        return self.environments[run.environment_id(task_name)]

    def scripts_of(self, task_name: str) -> List[str]:
        """Shell scripts executed for a task, in order, across all runs."""
        return [script for env_name, script in self.exec_log if env_name.split("_")[1] == task_name]

    def _record(self, operation: str, subject: str) -> None:
        self.calls.append((operation, subject))
        if operation in self.failures:
            raise self.failures.pop(operation)

    def _get(self, environment_id: str) -> FakeEnvironment:
        if environment_id not in self.environments:
            raise NotFoundError(f"No such container: {environment_id}")
        return self.environments[environment_id]

    # ---------- Images ----------

    async def image_exists_locally(self, image: str) -> bool:
        self._record("image_exists_locally", image)
        return image in self.local_images

    async def pull_image(self, image: str) -> None:
        self._record("pull_image", image)
        await asyncio.sleep(0)
        self.pulled.append(image)
        self.local_images.add(image)

    # ---------- Environments ----------

    async def find_environments_by_name(self, name: str) -> List[EnvironmentSummary]:
        self._record("find_environments_by_name", name)
        return [
            EnvironmentSummary(id=env.id, name=env.name, state=env.state)
            for env in self.environments.values()
            if name in env.name
        ]

    async def create_environment(self, image: str, command: List[str], name: str) -> str:
        self._record("create_environment", name)
        if any(env.name == name for env in self.environments.values()):
            raise ProviderError(f"Conflict. The container name \"/{name}\" is already in use")
        environment_id = uuid.uuid4().hex + uuid.uuid4().hex
        self.environments[environment_id] = FakeEnvironment(
            id=environment_id, name=name, image=image, command=list(command)
        )
        return environment_id

    async def start_environment(self, environment_id: str) -> None:
        self._record("start_environment", environment_id)
        self._get(environment_id).state = "running"

    async def stop_environment(self, environment_id: str, signal: Optional[str] = None) -> None:
        self._record("stop_environment", environment_id)
        environment = self._get(environment_id)
        if environment.state != "running":
            raise ProviderError(f"Container {environment_id[:12]} is not running")
        environment.state = "exited"

    async def remove_environment(self, environment_id: str) -> None:
        self._record("remove_environment", environment_id)
        if self._get(environment_id).state == "running":
            raise ProviderError("You cannot remove a running container")
        del self.environments[environment_id]

    # ---------- Exec ----------

    async def exec(self, environment_id: str, command: List[str], output=None) -> int:
        self._record("exec", environment_id)
        environment = self._get(environment_id)
        if environment.state != "running":
            raise ProviderError(f"Container {environment_id[:12]} is not running")

        script = command[2] if len(command) == 3 and command[1] == "-c" else shlex.join(command)
        environment.scripts.append(script)
        self.exec_log.append((environment.name, script))

        self.active_execs += 1
        self.max_active_execs = max(self.max_active_execs, self.active_execs)
        try:
            await asyncio.sleep(0)
            stdout, stderr, code = self._run_script(environment, script)
        finally:
            self.active_execs -= 1

        if output is not None:
            if stdout:
                output("stdout", stdout.encode())
            if stderr:
                output("stderr", stderr.encode())
        return code

    def _run_script(self, environment: FakeEnvironment, script: str) -> Tuple[str, str, int]:
        lexer = shlex.shlex(script, posix=True, punctuation_chars=True)
        lexer.whitespace_split = True
        tokens = list(lexer)

        out = io.StringIO()
        err = io.StringIO()
        status = 0
        operator = None
        current: List[str] = []
        try:
            for token in tokens + [";"]:
                if token in ("||", "&&", ";"):
                    if current:
                        if (operator != "&&" or status == 0) and (operator != "||" or status != 0):
                            status = self._run_simple(environment, current, out, err)
                    operator = token
                    current = []
                else:
                    current.append(token)
        except _ScriptExit as e:
            status = e.code
        return out.getvalue(), err.getvalue(), status

    def _run_simple(self, environment: FakeEnvironment, tokens: List[str], out, err) -> int:
        redirect = None
        for marker in (">>", ">"):
            if marker in tokens:
                index = tokens.index(marker)
                redirect = (marker, _normalize(tokens[index + 1]))
                tokens = tokens[:index] + tokens[index + 2:]
                break

        name, args = tokens[0], tokens[1:]
        text = ""
        status = 0

        if name == "mkdir":
            for path in (arg for arg in args if arg != "-p"):
                path = _normalize(path)
                while path not in environment.dirs:
                    environment.dirs.add(path)
                    path = posixpath.dirname(path)
        elif name == "echo":
            text = " ".join(args) + "\n"
        elif name == "cat":
            for path in args:
                content = environment.files.get(_normalize(path))
                if content is None:
                    err.write(f"cat: can't open '{path}': No such file or directory\n")
                    status = 1
                else:
                    text += content.decode()
        elif name == "grep":
            pattern, path = [arg for arg in args if arg != "-q"]
            content = environment.files.get(_normalize(path), b"").decode()
            status = 0 if pattern in content else 1
        elif name == "test":
            status = 0 if _normalize(args[-1]) in environment.files else 1
        elif name == "true":
            status = 0
        elif name == "false":
            status = 1
        elif name == "exit":
            raise _ScriptExit(int(args[0]) if args else 0)
        else:
            err.write(f"sh: {name}: not found\n")
            return 127

        if redirect is None:
            out.write(text)
            return status

        marker, path = redirect
        if posixpath.dirname(path) not in environment.dirs:
            err.write(f"sh: can't create {path}: nonexistent directory\n")
            return 2
        previous = environment.files.get(path, b"") if marker == ">>" else b""
        environment.files[path] = previous + text.encode()
        return status

    # ---------- Files ----------

    async def copy_from_environment(self, environment_id: str, path: str) -> bytes:
        self._record("copy_from_environment", path)
        environment = self._get(environment_id)
        path = _normalize(path)
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            if path in environment.files:
                _add_file(tar, posixpath.basename(path), environment.files[path])
            elif path in environment.dirs:
                base = posixpath.basename(path)
                directory = tarfile.TarInfo(base)
                directory.type = tarfile.DIRTYPE
                tar.addfile(directory)
                for file_path, content in sorted(environment.files.items()):
                    if file_path.startswith(path + "/"):
                        _add_file(tar, base + file_path[len(path):], content)
            else:
                raise NotFoundError(f"Could not find the file {path} in container {environment_id[:12]}")
        return buffer.getvalue()

    async def copy_to_environment(self, environment_id: str, dest_dir: str, archive: bytes) -> None:
        self._record("copy_to_environment", dest_dir)
        environment = self._get(environment_id)
        dest_dir = _normalize(dest_dir)
        if dest_dir not in environment.dirs:
            raise NotFoundError(f"Could not find the file {dest_dir} in container {environment_id[:12]}")
        with tarfile.open(fileobj=io.BytesIO(archive), mode="r") as tar:
            for member in tar:
                if member.isreg():
                    environment.files[_normalize(posixpath.join(dest_dir, member.name))] = (
                        tar.extractfile(member).read()
                    )


def _add_file(tar: tarfile.TarFile, name: str, content: bytes) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(content)
    tar.addfile(info, io.BytesIO(content))


# ============================================================
#                   FIXTURES
# ============================================================

@pytest.fixture
def provider():
    """In-memory provider with the default test image already present."""
    return FakeEnvironmentProvider(local_images={"alpine"})


@pytest.fixture
def artifacts_dir(tmp_path):
    return tmp_path / "artifacts"


@pytest.fixture
def executor(provider, artifacts_dir):
    """Sequential executor writing host artifacts under tmp_path."""
    return TaskExecutor(provider, config=ExecutorConfig(artifacts_dir=str(artifacts_dir)))


@pytest.fixture
def stored_executor(provider, artifacts_dir, store):
    """Sequential executor recording its runs, so failed runs can be inspected."""
    return TaskExecutor(provider, config=ExecutorConfig(artifacts_dir=str(artifacts_dir)), store=store)


@pytest.fixture
def store(tmp_path):
    """
    Create a temporary SQLite-backed SQLStore.

    Yields:
        SQLStore: Opened store instance
    """
    db_path = tmp_path / "test_builds.db"
    store = SQLStore(f"sqlite:///{db_path}")
    store.open()
    yield store
    store.close()


# ============================================================
#                   TASK FACTORIES (DRY)
# ============================================================

def make_task(name: str, commands: Optional[List[str]] = None, *dependencies: Dependency, **kwargs) -> Task:
    """
    Factory: Create an alpine task.

    Example:
        producer = make_task("producer", ["mkdir -p /out", "echo a > /out/a.txt"])
        consumer = make_task("consumer", ["cat /out/a.txt"], pull(producer, "/out/a.txt"))
    """
    return Task(
        name=name,
        base_image=kwargs.pop("base_image", "alpine"),
        commands=list(commands or []),
        dependencies=list(dependencies),
        **kwargs,
    )


def pull(task: Task, *paths) -> Dependency:
    """
    Factory: Dependency on ``task`` copying each path.

    Each path is either a string (same path on both sides) or a (from, to) tuple.
    """
    artifacts = [
        Artifact(path, path) if isinstance(path, str) else Artifact(*path)
        for path in paths
    ]
    return Dependency(task=task, artifacts=artifacts)


def writer_task(name: str, path: str, content: str) -> Task:
    """Factory: Task writing ``content`` (plus newline) to ``path``."""
    return make_task(name, [
        f"mkdir -p {posixpath.dirname(path)}",
        f"echo '{content}' > {path}",
    ])


# ============================================================
#                   ASSERTION HELPERS
# ============================================================

def assert_task_success(run: BuildRun, task_name: str):
    execution = run.tasks[task_name]
    assert execution.state == ExecutionState.SUCCESS, (
        f"Task {task_name} expected SUCCESS, got {execution.state} ({execution.error})"
    )
    assert execution.environment_id is not None
    assert execution.end_date is not None


def assert_task_failed(run: BuildRun, task_name: str, error_contains: Optional[str] = None):
    execution = run.tasks[task_name]
    assert execution.state == ExecutionState.FAILED, (
        f"Task {task_name} expected FAILED, got {execution.state}"
    )
    if error_contains:
        assert error_contains in (execution.error or ""), (
            f"Task {task_name} error message should contain '{error_contains}', got '{execution.error}'"
        )


def assert_all_tasks_success(run: BuildRun, task_names: List[str]):
    for task_name in task_names:
        assert_task_success(run, task_name)
