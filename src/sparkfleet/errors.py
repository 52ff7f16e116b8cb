"""Error taxonomy shared by every sparkfleet component."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification attached to every fleet failure."""

    INCOMPLETE_CONFIG = "IncompleteConfig"
    CONFIG_IO_ERROR = "ConfigIOError"
    CONFIG_PARSE_ERROR = "ConfigParseError"
    NAME_RESOLUTION_FAILED = "NameResolutionFailed"
    UNREACHABLE_HOST = "UnreachableHost"
    TIMEOUT = "Timeout"
    REMOTE_COMMAND_FAILED = "RemoteCommandFailed"
    MISSING_PREREQUISITE = "MissingPrerequisite"

    def __str__(self) -> str:
        return self.value


class FleetError(Exception):
    """Base error carrying an :class:`ErrorKind` and optional host/step context."""

    def __init__(
            self,
            kind: ErrorKind,
            message: str,
            host: str | None = None,
            step: str | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.host = host
        self.step = step

    def describe(self) -> str:
        """Single-line description: ``step=... host=... kind=...: message``."""
        parts = []
        if self.step:
            parts.append("step=%s" % self.step)
        if self.host:
            parts.append("host=%s" % self.host)
        parts.append("kind=%s" % self.kind)
        return "%s: %s" % (" ".join(parts), self.message)


class ConfigError(FleetError):
    """Host configuration is missing, unreadable, or malformed."""

    pass


class ConnectivityError(FleetError):
    """One or more hosts could not be resolved or reached."""

    pass


class PrerequisiteError(FleetError):
    """A required local tool is not installed."""

    def __init__(self, tool: str):
        super().__init__(
            ErrorKind.MISSING_PREREQUISITE,
            "Required tool '%s' is not installed or not in PATH" % tool,
        )
        self.tool = tool


class FleetAborted(FleetError):
    """A playbook run stopped at a hard step failure."""

    def __init__(self, session):
        result = session.first_failure
        kind = result.error_kind if result and result.error_kind else ErrorKind.REMOTE_COMMAND_FAILED
        detail = ""
        if result is not None:
            detail = " (exit code %d)" % result.exit_code
            stderr = result.stderr.strip()
            if stderr:
                detail += ": %s" % stderr.splitlines()[-1][:200]
        super().__init__(
            kind,
            "Playbook '%s' aborted%s" % (session.playbook, detail),
            host=result.host if result else None,
            step=session.failed_step,
        )
        self.session = session
