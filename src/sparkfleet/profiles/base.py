"""Base class for sparkfleet profiles."""

from __future__ import annotations

import logging
from abc import abstractmethod
from logging import Logger
from typing import Any, TYPE_CHECKING

from scitrera_app_framework import Plugin, Variables

from sparkfleet.bootstrap import EXT_PROFILE
from sparkfleet.orchestration.runner import Playbook, Step

if TYPE_CHECKING:
    from sparkfleet.config import HostConfig

logger = logging.getLogger(__name__)

ACTION_VERIFY = "verify"
ACTION_SETUP = "setup"
ACTION_DEPLOY = "deploy"
ACTION_TEST = "test"
ACTION_ROLLBACK = "rollback"
ACTIONS = (ACTION_VERIFY, ACTION_SETUP, ACTION_DEPLOY, ACTION_TEST, ACTION_ROLLBACK)

DEFAULT_INTERFACE = "enp1s0f1np1"


class FleetProfile(Plugin):
    """Abstract base class for a family of fleet playbooks.

    Each profile is an SAF Plugin registered as a multi-extension under
    the 'sparkfleet.profile' extension point.

    Subclasses must define:
        - profile_name: str identifier (e.g. "stacked", "swarm")
        - the setup/deploy/test/rollback playbooks
    """

    eager = False  # don't initialize until requested

    # --- Subclass must define ---
    profile_name: str = ""
    description: str = ""
    # local tools that must exist before any remote work
    prerequisites: tuple[str, ...] = ("ssh",)

    # --- SAF Plugin interface ---

    def name(self) -> str:
        return "sparkfleet.profile.%s" % self.profile_name

    def extension_point_name(self, v: Variables) -> str:
        return EXT_PROFILE

    def is_enabled(self, v: Variables) -> bool:
        # Multi-extension plugins must report False so SAF's single-extension
        # cache does not short-circuit the other profiles.
        return False

    def is_multi_extension(self, v: Variables) -> bool:
        return True

    def initialize(self, v: Variables, logger: Logger) -> FleetProfile:
        return self

    # --- Profile interface ---

    def default_params(self) -> dict[str, Any]:
        """Template parameters a user may override with --option."""
        return {"interface": DEFAULT_INTERFACE}

    def derive_params(self, params: dict[str, Any]) -> None:
        """Fill computed params (payloads, cache paths) in place."""
        return

    def build_params(self, config: HostConfig, overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """Merge defaults, the stored token, and *overrides*; then derive."""
        params = self.default_params()
        if config.auth_token:
            params["hf_token"] = config.auth_token
        params.update({k: v for k, v in (overrides or {}).items() if v is not None})
        self.derive_params(params)
        return params

    def verify_playbook(self) -> Playbook:
        return Playbook(
            name="%s-verify" % self.profile_name,
            description="Check remote login, docker access and GPUs on every node",
            steps=(
                Step("remote-info", 'echo "Connected to: $(hostname)" && uname -a',
                     description="remote shell round trip"),
                Step("docker-access", "docker ps > /dev/null", best_effort=True,
                     description="user can talk to the docker daemon"),
                Step("gpu-info", "nvidia-smi --query-gpu=name,driver_version --format=csv,noheader",
                     best_effort=True, description="GPU visible"),
            ),
        )

    @abstractmethod
    def setup_playbook(self) -> Playbook:
        ...

    @abstractmethod
    def deploy_playbook(self) -> Playbook:
        ...

    @abstractmethod
    def test_playbook(self) -> Playbook:
        ...

    @abstractmethod
    def rollback_playbook(self) -> Playbook:
        ...

    def playbook(self, action: str) -> Playbook:
        """Return the playbook for *action* (one of :data:`ACTIONS`)."""
        builders = {
            ACTION_VERIFY: self.verify_playbook,
            ACTION_SETUP: self.setup_playbook,
            ACTION_DEPLOY: self.deploy_playbook,
            ACTION_TEST: self.test_playbook,
            ACTION_ROLLBACK: self.rollback_playbook,
        }
        if action not in builders:
            raise ValueError("Unknown action %r. Available: %s" % (action, list(ACTIONS)))
        return builders[action]()

    def requires_token(self, action: str) -> bool:
        return "hf_token" in self.playbook(action).requires
