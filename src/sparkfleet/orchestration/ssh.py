"""SSH remote command dispatch.

Every remote operation in sparkfleet is a single ``ssh user@host <command>``
subprocess.  Commands arrive fully rendered; nothing here parses or
templates them, and nothing here retries.
"""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass

from sparkfleet.errors import ErrorKind

logger = logging.getLogger(__name__)

# ssh exits 255 when the connection itself fails
SSH_TRANSPORT_FAILURE = 255


@dataclass
class ExecutionResult:
    """Outcome of dispatching one step to one host."""

    host: str
    step: str
    exit_code: int
    stdout: str
    stderr: str
    error_kind: ErrorKind | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.error_kind is None

    @property
    def last_line(self) -> str:
        """Last non-empty line of stdout (used for captured facts)."""
        lines = [line for line in self.stdout.strip().splitlines() if line.strip()]
        return lines[-1].strip() if lines else ""


def classify_exit(exit_code: int) -> ErrorKind | None:
    if exit_code == 0:
        return None
    if exit_code == SSH_TRANSPORT_FAILURE:
        return ErrorKind.UNREACHABLE_HOST
    return ErrorKind.REMOTE_COMMAND_FAILED


def build_ssh_cmd(
        host: str,
        ssh_user: str | None = None,
        ssh_key: str | None = None,
        ssh_options: list[str] | None = None,
        connect_timeout: int = 10,
) -> list[str]:
    """Build the base SSH command with standard options.

    Args:
        host: Remote hostname or IP address.
        ssh_user: Optional SSH username (prepended as user@host).
        ssh_key: Optional path to SSH private key file.
        ssh_options: Additional SSH command-line options.
        connect_timeout: SSH connection timeout in seconds.

    Returns:
        List of command parts suitable for subprocess.
    """
    cmd = ["ssh", "-o", "BatchMode=yes", "-o", f"ConnectTimeout={connect_timeout}"]
    if ssh_key:
        cmd.extend(["-i", ssh_key])
    if ssh_options:
        cmd.extend(ssh_options)
    target = f"{ssh_user}@{host}" if ssh_user else host
    cmd.append(target)
    return cmd


def run_remote_command(
        host: str,
        command: str,
        step: str = "",
        ssh_user: str | None = None,
        ssh_key: str | None = None,
        ssh_options: list[str] | None = None,
        connect_timeout: int = 10,
        timeout: float | None = None,
        dry_run: bool = False,
        display: str | None = None,
) -> ExecutionResult:
    """Execute one command string on a remote host.

    Args:
        host: Remote hostname or IP.
        command: Fully rendered command string.
        step: Step name recorded on the result.
        ssh_user: Optional SSH username.
        ssh_key: Optional path to SSH private key.
        ssh_options: Additional SSH options.
        connect_timeout: SSH connection timeout in seconds.
        timeout: Overall execution timeout in seconds (None = unbounded).
        dry_run: If True, log the command but don't execute.
        display: Redacted form of *command* used for logging.

    Returns:
        ExecutionResult; timeouts and spawn errors are reported with
        ``exit_code=-1`` rather than raised.
    """
    shown = display if display is not None else command
    if dry_run:
        logger.info("[dry-run] Would run on %s: %s", host, shown)
        return ExecutionResult(host=host, step=step, exit_code=0, stdout="[dry-run]", stderr="")

    cmd = build_ssh_cmd(host, ssh_user, ssh_key, ssh_options, connect_timeout)
    cmd.append(command)

    logger.debug("  SSH cmd -> %s: %s%s", host, shown[:200],
                 f" [timeout={timeout}s]" if timeout else "")

    t0 = time.monotonic()
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        elapsed = time.monotonic() - t0
        logger.error("  SSH cmd <- %s TIMEOUT after %.0fs", host, elapsed)
        return ExecutionResult(host=host, step=step, exit_code=-1, stdout="",
                               stderr="Execution timed out", error_kind=ErrorKind.TIMEOUT)
    except OSError as e:
        elapsed = time.monotonic() - t0
        logger.error("  SSH cmd <- %s ERROR (%.1fs): %s", host, elapsed, e)
        return ExecutionResult(host=host, step=step, exit_code=-1, stdout="",
                               stderr=str(e), error_kind=ErrorKind.UNREACHABLE_HOST)

    elapsed = time.monotonic() - t0
    result = ExecutionResult(
        host=host,
        step=step,
        exit_code=proc.returncode,
        stdout=proc.stdout,
        stderr=proc.stderr,
        error_kind=classify_exit(proc.returncode),
    )
    if result.succeeded:
        logger.debug("  SSH cmd <- %s OK (%.1fs)", host, elapsed)
    else:
        logger.debug("  SSH cmd <- %s FAILED rc=%d (%.1fs): %s",
                     host, proc.returncode, elapsed, proc.stderr.strip()[:200])
    if proc.stdout.strip():
        logger.debug("Remote command stdout on %s:\n%s", host, proc.stdout.strip())
    if proc.stderr.strip():
        logger.debug("Remote command stderr on %s:\n%s", host, proc.stderr.strip())
    return result


class SSHDispatcher:
    """Binds SSH settings so callers dispatch with just (host, step, command)."""

    def __init__(
            self,
            ssh_user: str | None = None,
            ssh_key: str | None = None,
            ssh_options: list[str] | None = None,
            connect_timeout: int = 10,
            dry_run: bool = False,
    ):
        self.ssh_user = ssh_user
        self.ssh_key = ssh_key
        self.ssh_options = list(ssh_options or [])
        self.connect_timeout = connect_timeout
        self.dry_run = dry_run

    def __call__(
            self,
            host: str,
            step: str,
            command: str,
            timeout: float | None = None,
            display: str | None = None,
    ) -> ExecutionResult:
        return run_remote_command(
            host,
            command,
            step=step,
            ssh_user=self.ssh_user,
            ssh_key=self.ssh_key,
            ssh_options=self.ssh_options,
            connect_timeout=self.connect_timeout,
            timeout=timeout,
            dry_run=self.dry_run,
            display=display,
        )
