"""Fleet step runner.

Executes a :class:`Playbook` against the fleet one step at a time.  Each
step is dispatched to every targeted host (primary first) before the next
step starts, so a step may rely on the side effects of all earlier steps
on all hosts.

State machine::

    PENDING -> RUNNING -> STEP_SUCCEEDED   -> (next step) ... -> COMPLETED
                       -> STEP_FAILED_SOFT -> (next step) ... -> COMPLETED
                       -> STEP_FAILED_HARD -> ABORTED
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping

from sparkfleet.config import HostConfig
from sparkfleet.errors import ConfigError, ErrorKind, FleetError
from sparkfleet.orchestration.commands import CommandTemplate
from sparkfleet.orchestration.ssh import ExecutionResult

logger = logging.getLogger(__name__)

TARGET_ALL = "all"
TARGET_PRIMARY = "primary"
TARGET_PEERS = "peers"
_TARGETS = (TARGET_ALL, TARGET_PRIMARY, TARGET_PEERS)

# params never echoed to logs
SECRET_PARAMS = ("hf_token",)

Dispatcher = Callable[..., ExecutionResult]


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    STEP_SUCCEEDED = "step-succeeded"
    STEP_FAILED_HARD = "step-failed-hard"
    STEP_FAILED_SOFT = "step-failed-soft"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class Step:
    """One named unit of remote work."""

    name: str
    command: CommandTemplate
    best_effort: bool = False
    targets: str = TARGET_ALL
    capture: str | None = None
    timeout: int | None = None
    description: str = ""

    def __post_init__(self):
        if self.targets not in _TARGETS:
            raise ValueError("Step %r: targets must be one of %s" % (self.name, _TARGETS))
        if isinstance(self.command, str):
            object.__setattr__(self, "command", CommandTemplate(self.command))


@dataclass(frozen=True)
class Playbook:
    """An ordered, immutable sequence of steps."""

    name: str
    steps: tuple[Step, ...]
    requires: tuple[str, ...] = ()
    description: str = ""

    @property
    def step_names(self) -> list[str]:
        return [s.name for s in self.steps]


@dataclass
class Session:
    """Record of one playbook invocation."""

    playbook: str
    state: RunState = RunState.PENDING
    results: list[ExecutionResult] = field(default_factory=list)
    failed_step: str | None = None
    facts: dict[str, dict[str, str]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.state == RunState.COMPLETED

    @property
    def outcome(self) -> str:
        if self.state == RunState.ABORTED:
            return "failed-at-step(%s)" % self.failed_step
        return "ok" if self.ok else self.state.value

    @property
    def first_failure(self) -> ExecutionResult | None:
        for result in self.results:
            if not result.succeeded and result.step == self.failed_step:
                return result
        return None

    @property
    def soft_failures(self) -> list[ExecutionResult]:
        return [r for r in self.results if not r.succeeded and r.step != self.failed_step]

    def dispatched_steps(self) -> list[str]:
        seen: list[str] = []
        for result in self.results:
            if result.step not in seen:
                seen.append(result.step)
        return seen


class FleetStepRunner:
    """Drives playbooks through a dispatcher.

    Args:
        config: Complete host configuration.
        dispatcher: Callable ``(host, step, command, timeout=, display=)``
            returning :class:`ExecutionResult` (normally an
            :class:`~sparkfleet.orchestration.ssh.SSHDispatcher`).
        params: Template parameters shared by every step.
        addresses: Optional hostname -> address map from connectivity
            checks; dispatch goes to the address, results keep the hostname.
    """

    def __init__(
            self,
            config: HostConfig,
            dispatcher: Dispatcher,
            params: Mapping[str, Any] | None = None,
            addresses: Mapping[str, str] | None = None,
    ):
        self.config = config
        self.dispatcher = dispatcher
        self.params = dict(params or {})
        self.addresses = dict(addresses or {})

    # -- host / context helpers -------------------------------------------

    def hosts_for(self, step: Step) -> list[str]:
        if step.targets == TARGET_PRIMARY:
            return [self.config.hostname]
        if step.targets == TARGET_PEERS:
            return self.config.peers
        return self.config.fleet

    def context_for(self, host: str, session: Session) -> dict[str, Any]:
        """Template context for *host*: params, fleet layout, then captured facts."""
        ctx = dict(self.params)
        ctx.update(
            host=host,
            username=self.config.username,
            primary=self.config.hostname,
            peers=self.config.peers,
            fleet=self.config.fleet,
        )
        primary = self.config.hostname
        for name, per_host in session.facts.items():
            value = per_host.get(host, per_host.get(primary))
            if value is not None:
                ctx[name] = value
            ctx[name + "_all"] = [per_host[h] for h in self.config.fleet if h in per_host]
        return ctx

    def _check_pending(self, playbook: Playbook) -> None:
        missing = self.config.missing_fields()
        missing += [p for p in playbook.requires if self.params.get(p) in (None, "")]
        if missing:
            raise ConfigError(
                ErrorKind.INCOMPLETE_CONFIG,
                "Cannot run playbook '%s'; missing: %s" % (playbook.name, ", ".join(missing)),
            )

    # -- execution ---------------------------------------------------------

    def _dispatch(self, step: Step, host: str, session: Session) -> ExecutionResult:
        ctx = self.context_for(host, session)
        command = step.command.render(ctx)
        display = step.command.render(ctx, redact=SECRET_PARAMS)
        address = self.addresses.get(host, host)
        result = self.dispatcher(address, step.name, command, timeout=step.timeout, display=display)
        if result.host != host or result.step != step.name:
            result = dataclasses.replace(result, host=host, step=step.name)
        return result

    def run(self, playbook: Playbook, force_best_effort: bool = False) -> Session:
        """Run *playbook* and return its :class:`Session`.

        Raises:
            ConfigError: ``IncompleteConfig`` before any dispatch when the
                host config or a required param is missing.
        """
        session = Session(playbook=playbook.name)
        self._check_pending(playbook)

        logger.info("Running playbook '%s' (%d steps) on %d host(s): %s",
                    playbook.name, len(playbook.steps), len(self.config.fleet),
                    ", ".join(self.config.fleet))

        for index, step in enumerate(playbook.steps, 1):
            best_effort = force_best_effort or step.best_effort
            hosts = self.hosts_for(step)
            if not hosts:
                logger.info("[%d/%d] %s: no target hosts, skipping",
                            index, len(playbook.steps), step.name)
                continue

            session.state = RunState.RUNNING
            logger.info("[%d/%d] %s%s", index, len(playbook.steps), step.name,
                        " - %s" % step.description if step.description else "")
            step_failed = False
            for host in hosts:
                try:
                    result = self._dispatch(step, host, session)
                except FleetError as e:
                    if not best_effort:
                        raise
                    result = ExecutionResult(host=host, step=step.name, exit_code=-1,
                                             stdout="", stderr=e.message, error_kind=e.kind)
                session.results.append(result)

                if result.succeeded:
                    logger.info("  %s: OK", host)
                    if step.capture:
                        session.facts.setdefault(step.capture, {})[host] = result.last_line
                    continue

                step_failed = True
                detail = result.stderr.strip().splitlines()[-1][:200] if result.stderr.strip() else ""
                if best_effort:
                    logger.warning("  step=%s host=%s kind=%s: best-effort step failed (exit %d)%s",
                                   step.name, host, result.error_kind, result.exit_code,
                                   ": %s" % detail if detail else "")
                    continue

                session.state = RunState.STEP_FAILED_HARD
                session.failed_step = step.name
                logger.error("  step=%s host=%s kind=%s: failed (exit %d)%s",
                             step.name, host, result.error_kind, result.exit_code,
                             ": %s" % detail if detail else "")
                session.state = RunState.ABORTED
                logger.error("Playbook '%s' aborted at step '%s'", playbook.name, step.name)
                return session

            session.state = RunState.STEP_FAILED_SOFT if step_failed else RunState.STEP_SUCCEEDED

        session.state = RunState.COMPLETED
        soft = len(session.soft_failures)
        logger.info("Playbook '%s' completed%s", playbook.name,
                    " with %d best-effort failure(s)" % soft if soft else "")
        return session
