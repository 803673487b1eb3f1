# buildvault/infra/tasks/fingerprint.py
"""
Deterministic task fingerprints and environment names.

A fingerprint identifies a task definition: its name, base image, commands,
and for each dependency the upstream task name and artifact mappings. It is
order sensitive and does not include the upstream task's own fingerprint, so
changing an upstream task's commands leaves downstream fingerprints unchanged.
Fingerprints name environments; they are never used to skip execution.
"""
from __future__ import annotations

import hashlib
import json
from typing import Any, Dict

from buildvault.infra.tasks.models import Task

DEFAULT_NAME_PREFIX = "buildvault"


def fingerprint_payload(task: Task) -> Dict[str, Any]:
    """
    Build the canonical document hashed by fingerprint().

    Args:
        task: The task to describe

    Returns:
        JSON-serializable description of the task identity
    """
    return {
        "name": task.name,
        "base_image": task.base_image,
        "commands": list(task.commands),
        "dependencies": [
            {
                "task": dependency.task.name,
                "artifacts": [
                    [artifact.source, artifact.destination]
                    for artifact in dependency.artifacts
                ],
            }
            for dependency in task.dependencies
        ],
    }


def fingerprint(task: Task) -> str:
    """
    Compute the content hash identifying a task definition.

    Args:
        task: The task to fingerprint

    Returns:
        Hex encoded sha256 digest
    """
    encoded = json.dumps(
        fingerprint_payload(task),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
    ).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def environment_name(task: Task, prefix: str = DEFAULT_NAME_PREFIX) -> str:
    """Deterministic environment name: ``<prefix>_<task-name>_<fingerprint>``."""
    return f"{prefix}_{task.name}_{fingerprint(task)}"
