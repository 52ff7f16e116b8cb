"""Shared pytest fixtures for sparkfleet tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from sparkfleet.bootstrap import init_sparkfleet
from sparkfleet.config import HostConfig
from sparkfleet.errors import ErrorKind
from sparkfleet.orchestration.ssh import ExecutionResult


@pytest.fixture(autouse=True)
def isolate_stateful(tmp_path: Path, monkeypatch):
    """Redirect SAF stateful root and sparkfleet config files to a temp dir.

    Prevents tests from reading or writing the real ~/.dgx-spark-fleet-config
    and ~/.config/sparkfleet/.  Also resets the bootstrap singleton between tests.
    """
    monkeypatch.setenv("STATEFUL_ROOT", str(tmp_path / "stateful"))
    monkeypatch.setenv("SPARKFLEET_CONFIG_FILE", str(tmp_path / "fleet-config"))
    import sparkfleet.config
    monkeypatch.setattr(sparkfleet.config, "DEFAULT_CONFIG_DIR", tmp_path / "prefs")
    import sparkfleet.bootstrap
    sparkfleet.bootstrap._variables = None
    yield
    sparkfleet.bootstrap._variables = None


@pytest.fixture
def v() -> Any:
    """Initialize sparkfleet and return the Variables instance."""
    import sparkfleet.bootstrap
    sparkfleet.bootstrap._variables = None
    return init_sparkfleet(log_level="WARNING")


@pytest.fixture
def host_config() -> HostConfig:
    """Primary plus one peer, with a token."""
    return HostConfig(
        username="alice",
        hostname="spark-01",
        peer_hostnames=["spark-02"],
        auth_token="hf_secret",
    )


class FakeDispatcher:
    """Records dispatches and answers from a script.

    ``script`` maps ``(host, step)`` (or just ``step``) to either an
    ``int`` exit code, a ``(exit_code, stdout)`` tuple, or an exception
    instance to raise.  Anything unscripted succeeds with empty output.
    """

    def __init__(self, script: dict | None = None):
        self.script = script or {}
        self.calls: list[dict] = []

    def __call__(self, host, step, command, timeout=None, display=None):
        self.calls.append({"host": host, "step": step, "command": command,
                           "timeout": timeout, "display": display})
        answer = self.script.get((host, step), self.script.get(step, 0))
        if isinstance(answer, BaseException):
            raise answer
        if isinstance(answer, tuple):
            exit_code, stdout = answer
        else:
            exit_code, stdout = answer, ""
        kind = None
        if exit_code != 0:
            kind = ErrorKind.UNREACHABLE_HOST if exit_code == 255 else ErrorKind.REMOTE_COMMAND_FAILED
        return ExecutionResult(host=host, step=step, exit_code=exit_code, stdout=stdout,
                               stderr="boom" if exit_code else "", error_kind=kind)

    @property
    def order(self) -> list[tuple[str, str]]:
        return [(c["step"], c["host"]) for c in self.calls]


@pytest.fixture
def fake_dispatcher():
    """Factory for :class:`FakeDispatcher` instances."""
    return FakeDispatcher
