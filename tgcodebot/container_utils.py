"""Creating, probing and removing the per-chat coding session containers."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Sequence
from typing import Any

from tgcodebot.claude_client import ClaudeCodeClient
from tgcodebot.claude_models import ClaudeCodeConfig
from tgcodebot.docker_api import DockerClient, DockerError, run_command

log = logging.getLogger(__name__)

# The runtime image provides a multi-language environment with Claude Code pre-installed.
MAIN_CONTAINER_IMAGE = os.environ.get(
    "TGCODEBOT_RUNTIME_IMAGE", "telegram-claude-code-runtime:main"
)

_RUNTIME_ENV = (
    "CODEX_ENV_PYTHON_VERSION=3.12",
    "CODEX_ENV_NODE_VERSION=22",
    "CODEX_ENV_RUST_VERSION=1.87.0",
    "CODEX_ENV_GO_VERSION=1.23.8",
)

_READY_ATTEMPTS = 30
_READY_DELAY = 1.0


def _container_config(command: Sequence[str] | None = None) -> dict[str, Any]:
    config: dict[str, Any] = {
        "Image": MAIN_CONTAINER_IMAGE,
        "WorkingDir": "/workspace",
        "Tty": True,
        "AttachStdin": True,
        "AttachStdout": True,
        "AttachStderr": True,
        "Env": list(_RUNTIME_ENV),
    }
    if command is not None:
        config["Cmd"] = list(command)
    return config


async def pull_image(docker: DockerClient) -> None:
    """Pull the runtime image; a failed pull is logged, as the image may already exist."""
    try:
        async for progress in docker.create_image(MAIN_CONTAINER_IMAGE):
            status = progress.get("status")
            if status:
                log.debug("Image pull progress: %s", status)
    except (DockerError, ValueError) as exc:
        log.warning("Image pull warning (might already exist): %s", exc)


async def exec_command_in_container(
    docker: DockerClient, container_id: str, command: Sequence[str]
) -> str:
    """Run a command in a container and return its trimmed combined output."""
    return await run_command(docker, container_id, command, check_exit=False)


async def wait_for_container_ready(docker: DockerClient, container_id: str) -> None:
    """Retry a trivial command until the container answers; raise DockerError if it never does."""
    log.info("Waiting for container to be ready...")
    for attempt in range(1, _READY_ATTEMPTS + 1):
        try:
            await exec_command_in_container(docker, container_id, ["echo", "ready"])
        except (DockerError, OSError) as exc:
            log.debug("Container readiness check failed (attempt %d): %s", attempt, exc)
            await asyncio.sleep(_READY_DELAY)
        else:
            log.info("Container is ready after %d attempts", attempt)
            return
    raise DockerError(
        f"Container failed to become ready after {_READY_ATTEMPTS} seconds"
    )


async def _launch(
    docker: DockerClient, container_name: str, command: Sequence[str] | None
) -> str:
    try:
        await clear_coding_session(docker, container_name)
    except DockerError as exc:
        log.debug("Could not clear previous container %s: %s", container_name, exc)
    await pull_image(docker)
    container_id = await docker.create_container(container_name, _container_config(command))
    await docker.start_container(container_id)
    await wait_for_container_ready(docker, container_id)
    return container_id


async def start_coding_session(
    docker: DockerClient,
    container_name: str,
    claude_config: ClaudeCodeConfig | None = None,
) -> ClaudeCodeClient:
    """Replace any container of this name with a fresh session and return its client."""
    container_id = await _launch(docker, container_name, None)
    return ClaudeCodeClient(
        docker, container_id, claude_config if claude_config is not None else ClaudeCodeConfig()
    )


async def clear_coding_session(docker: DockerClient, container_name: str) -> None:
    """Stop and remove a session container; a missing container is not an error."""
    try:
        await docker.stop_container(container_name)
    except DockerError as exc:
        log.debug("Stopping %s failed: %s", container_name, exc)
    try:
        await docker.remove_container(container_name, force=True)
    except DockerError as exc:
        if "No such container" not in str(exc):
            raise


async def create_test_container(docker: DockerClient, container_name: str) -> str:
    """Start a session container running a shell and return its id."""
    return await _launch(docker, container_name, ["/bin/bash"])