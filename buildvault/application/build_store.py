import asyncio
import logging
import os
from functools import lru_cache

from buildvault.infra.tasks import ExecutorConfig, SQLStore, TaskExecutor
from buildvault.infra.tasks.docker_provider import DockerEnvironmentProvider

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///buildvault.db"


@lru_cache(maxsize=1)
def get_store() -> SQLStore:
    """Process-wide build run store, opened on first use (BUILDVAULT_DATABASE_URL)."""
    database_url = os.environ.get("BUILDVAULT_DATABASE_URL", DEFAULT_DATABASE_URL)
    store = SQLStore(database_url)
    store.open()
    logger.info(f"Build store opened: url={database_url}")
    return store


@lru_cache(maxsize=1)
def get_provider() -> DockerEnvironmentProvider:
    return DockerEnvironmentProvider()


@lru_cache(maxsize=1)
def get_build_lock() -> asyncio.Lock:
    """
    Process-wide lock held for the whole of a background build.

    Environment names derive from task fingerprints, so two runs of the same
    graph would reclaim each other's environments if they overlapped.
    """
    return asyncio.Lock()


def get_executor() -> TaskExecutor:
    """Executor wired to the Docker provider, the shared store and BUILDVAULT_* settings."""
    return TaskExecutor(get_provider(), config=ExecutorConfig.from_env(), store=get_store())
