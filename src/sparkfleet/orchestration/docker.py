"""Docker command template generation.

These functions are pure generators -- they assemble command template
text that profiles wrap in :class:`~sparkfleet.orchestration.commands.CommandTemplate`.
Arguments are usually template fields (``"{container}"``, ``"{image}"``)
so the actual values are quoted at render time, not here.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

# Standard docker run options for DGX Spark multi-node GPU workloads
_DEFAULT_DOCKER_OPTS = [
    "--gpus all",
    "--rm",
    "--network host",
    "--ulimit memlock=-1",
    "--ulimit stack=67108864",
]

HF_CACHE_MOUNT = '"$HOME/.cache/huggingface/:/root/.cache/huggingface/"'
SSH_DIR_MOUNT = '"$HOME/.ssh:/tmp/.ssh:ro"'


def docker_run_cmd(
    image: str,
    command: str = "",
    container_name: str | None = None,
    detach: bool = True,
    env: dict[str, str] | None = None,
    volumes: list[str] | None = None,
    devices: list[str] | None = None,
    extra_opts: list[str] | None = None,
) -> str:
    """Generate ``docker run`` template text.

    Args:
        image: Image reference or template field.
        command: Command (template text) to run inside the container.
        container_name: Optional ``--name``.
        detach: Run in detached mode (``-d``).
        env: Environment variables (``-e KEY=VALUE``), emitted sorted.
        volumes: Volume specs (``-v spec``), emitted in order.
        devices: Device specs (``--device spec``).
        extra_opts: Additional docker run options.
    """
    parts = ["docker", "run"]

    if detach:
        parts.append("-d")

    parts.extend(_DEFAULT_DOCKER_OPTS)

    if container_name:
        parts.extend(["--name", container_name])

    for device in devices or []:
        parts.extend(["--device", device])

    if env:
        for key, value in sorted(env.items()):
            parts.extend(["-e", f"{key}={value}"])

    for volume in volumes or []:
        parts.extend(["-v", volume])

    if extra_opts:
        parts.extend(extra_opts)

    parts.append(image)

    if command:
        parts.append(command)

    return " ".join(parts)


def docker_exec_cmd(
    container_name: str,
    command: str,
    detach: bool = False,
    interactive: bool = False,
    env: dict[str, str] | None = None,
) -> str:
    """Generate ``docker exec`` template text.

    *command* is appended as-is (no ``bash -c`` wrapper) so its arguments
    keep the quoting applied at render time.
    """
    parts = ["docker", "exec"]
    if detach:
        parts.append("-d")
    if interactive:
        parts.append("-i")
    if env:
        for key, value in sorted(env.items()):
            parts.extend(["-e", f"{key}={value}"])
    parts.extend([container_name, command])
    return " ".join(parts)


def docker_remove_cmd(container_name: str) -> str:
    """Force-remove a container, succeeding when it does not exist."""
    return f"docker rm -f {container_name} > /dev/null 2>&1 || true"


def docker_stop_cmd(container_name: str) -> str:
    """Stop a container; fails if it is not running."""
    return f"docker stop {container_name}"


def docker_running_check_cmd(container_name: str) -> str:
    """Exit 0 only if *container_name* is running (prints its status line)."""
    # braces doubled for str.format; docker receives '{{.Name}} {{.State.Status}}'
    return ("docker inspect -f '{{{{.Name}}}} {{{{.State.Status}}}}' "
            + container_name + " | grep -w running")
