"""Teardown of fleet resources.

Rollback runs its own playbook through the same runner, with every step
forced best-effort: partially set-up environments are the normal starting
point, so "already stopped" or "already gone" must not stop the cleanup.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sparkfleet.errors import ErrorKind
from sparkfleet.orchestration.runner import FleetStepRunner, Playbook, Session
from sparkfleet.orchestration.ssh import ExecutionResult

logger = logging.getLogger(__name__)


class RollbackController:
    """Runs a teardown playbook that always reaches ``COMPLETED``."""

    def __init__(self, runner: FleetStepRunner):
        self.runner = runner

    def _tolerant_dispatcher(self):
        dispatcher = self.runner.dispatcher

        def dispatch(host, step, command, timeout=None, display=None):
            try:
                return dispatcher(host, step, command, timeout=timeout, display=display)
            except Exception as e:
                logger.warning("  step=%s host=%s: dispatch error during rollback: %s", step, host, e)
                return ExecutionResult(host=host, step=step, exit_code=-1, stdout="",
                                       stderr=str(e), error_kind=ErrorKind.REMOTE_COMMAND_FAILED)

        return dispatch

    def rollback(self, playbook: Playbook) -> Session:
        """Run *playbook* as teardown; step failures are logged, never raised."""
        logger.info("Rolling back with playbook '%s'...", playbook.name)
        runner = FleetStepRunner(
            self.runner.config,
            self._tolerant_dispatcher(),
            params=self.runner.params,
            addresses=self.runner.addresses,
        )
        session = runner.run(playbook, force_best_effort=True)
        failures = [r for r in session.results if not r.succeeded]
        if failures:
            logger.warning("Rollback finished with %d cleanup action(s) that failed "
                           "(resources may already be gone)", len(failures))
        else:
            logger.info("Rollback completed")
        return session


@contextmanager
def fleet_run(
        controller: RollbackController,
        rollback_playbook: Playbook,
        enabled: bool = True,
) -> Iterator[None]:
    """Scope a forward run so any escape from it triggers one rollback.

    Covers normal errors, :class:`~sparkfleet.errors.FleetAborted` and
    ``KeyboardInterrupt``.  The teardown itself is not guarded: a second
    interrupt while rolling back propagates immediately.
    """
    try:
        yield
    except (Exception, KeyboardInterrupt) as e:
        if not enabled:
            raise
        logger.warning("Run did not finish (%s); starting rollback (Ctrl-C again to abort)",
                       type(e).__name__)
        controller.rollback(rollback_playbook)
        raise
