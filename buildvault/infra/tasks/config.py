# buildvault/infra/tasks/config.py
"""
Executor configuration.
"""
from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from buildvault.infra.tasks.errors import ConfigurationError
from buildvault.infra.tasks.fingerprint import DEFAULT_NAME_PREFIX

ENV_PREFIX = "BUILDVAULT_"


@dataclass
class ExecutorConfig:
    """
    Settings shared by every task of a build run.

    Attributes:
        name_prefix: Prefix of environment names (``<prefix>_<task>_<fingerprint>``)
        artifacts_dir: Default host directory for captured artifacts
        keep_alive_command: Entrypoint keeping an environment alive without workload
        shell: Shell used to run task commands (``<shell> -c <command>``)
        stop_signal: Signal sent when stopping environments
        max_concurrency: Number of tasks provisioned or running commands at once (1 = sequential)
    """
    name_prefix: str = DEFAULT_NAME_PREFIX
    artifacts_dir: str = "artifacts"
    keep_alive_command: List[str] = field(default_factory=lambda: ["tail", "-f", "/dev/null"])
    shell: str = "sh"
    stop_signal: Optional[str] = "SIGKILL"
    max_concurrency: int = 1

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ConfigurationError(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if not self.keep_alive_command:
            raise ConfigurationError("keep_alive_command must not be empty")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> ExecutorConfig:
        """
        Build a configuration from ``BUILDVAULT_*`` environment variables.

        Recognized variables: BUILDVAULT_NAME_PREFIX, BUILDVAULT_ARTIFACTS_DIR,
        BUILDVAULT_KEEP_ALIVE_COMMAND, BUILDVAULT_SHELL, BUILDVAULT_STOP_SIGNAL
        and BUILDVAULT_MAX_CONCURRENCY. Unset variables keep their defaults.

        Args:
            environ: Mapping to read instead of os.environ

        Raises:
            ConfigurationError: If a variable holds an invalid value
        """
        environ = os.environ if environ is None else environ
        values = {}

        for key in ("name_prefix", "artifacts_dir", "shell", "stop_signal"):
            value = environ.get(f"{ENV_PREFIX}{key.upper()}")
            if value is not None:
                values[key] = value

        keep_alive = environ.get(f"{ENV_PREFIX}KEEP_ALIVE_COMMAND")
        if keep_alive is not None:
            values["keep_alive_command"] = shlex.split(keep_alive)

        concurrency = environ.get(f"{ENV_PREFIX}MAX_CONCURRENCY")
        if concurrency is not None:
            try:
                values["max_concurrency"] = int(concurrency)
            except ValueError as e:
                raise ConfigurationError(
                    f"{ENV_PREFIX}MAX_CONCURRENCY must be an integer, got '{concurrency}'"
                ) from e

        return cls(**values)
