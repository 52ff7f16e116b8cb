"""Host configuration persistence and user preferences for sparkfleet.

Two files are involved:

* the host config (``~/.dgx-spark-fleet-config``), a flat ``KEY="value"``
  file holding who and where to connect.  Only :class:`ConfigStore` writes it.
* the optional preferences file (``~/.config/sparkfleet/config.yaml``)
  holding SSH options, default profile and extra template params.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import re
import shlex
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
from vpd.next.util import read_yaml

from sparkfleet.errors import ConfigError, ErrorKind
from sparkfleet.utils import split_hosts

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "sparkfleet"
CONFIG_FILE_NAME = ".dgx-spark-fleet-config"
CONFIG_FILE_ENV = "SPARKFLEET_CONFIG_FILE"

KEY_USERNAME = "DGX_USERNAME"
KEY_HOSTNAME = "DGX_HOSTNAME"
KEY_PEERS = "DGX_PEER_NODES"
KEY_TOKEN = "HF_TOKEN"
# written by older single-peer setups
KEY_LEGACY_PEER = "SECONDARY_NODE"

_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def default_config_file() -> Path:
    """Host config path: ``$SPARKFLEET_CONFIG_FILE`` or ``~/.dgx-spark-fleet-config``."""
    override = os.environ.get(CONFIG_FILE_ENV)
    if override:
        return Path(os.path.expanduser(override))
    return Path.home() / CONFIG_FILE_NAME


@dataclass
class HostConfig:
    """Connection parameters for one fleet.

    ``None`` means "not set" so callers can tell which fields need prompting.
    An empty ``peer_hostnames`` list is a valid single-node fleet.
    """

    username: str | None = None
    hostname: str | None = None
    peer_hostnames: list[str] | None = None
    auth_token: str | None = None

    @property
    def peers(self) -> list[str]:
        return list(self.peer_hostnames or [])

    @property
    def fleet(self) -> list[str]:
        """All hosts in dispatch order, primary first."""
        if not self.hostname:
            return self.peers
        return [self.hostname] + self.peers

    def missing_fields(self, require_token: bool = False) -> list[str]:
        missing = []
        if not self.username:
            missing.append("username")
        if not self.hostname:
            missing.append("hostname")
        if require_token and not self.auth_token:
            missing.append("auth_token")
        return missing

    def is_complete(self, require_token: bool = False) -> bool:
        return not self.missing_fields(require_token)

    def with_overrides(self, **overrides: Any) -> HostConfig:
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **changes)


def _quote(value: str) -> str:
    return '"%s"' % value.replace("\\", "\\\\").replace('"', '\\"')


class ConfigStore:
    """Loads and atomically persists the :class:`HostConfig` file."""

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path) if path else default_config_file()

    def load(self) -> HostConfig:
        """Read the config file.

        A missing file, or one that cannot be read, gives an empty
        :class:`HostConfig`.  A malformed file raises
        :class:`~sparkfleet.errors.ConfigError` (``ConfigParseError``).
        """
        if not self.path.exists():
            logger.debug("No host config at %s", self.path)
            return HostConfig()

        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("%s: cannot read %s (%s); falling back to prompts",
                           ErrorKind.CONFIG_IO_ERROR, self.path, e)
            return HostConfig()

        values = self._parse(text)
        peers = None
        if KEY_PEERS in values:
            peers = split_hosts(values[KEY_PEERS])
        elif KEY_LEGACY_PEER in values:
            peers = split_hosts(values[KEY_LEGACY_PEER])

        config = HostConfig(
            username=values.get(KEY_USERNAME) or None,
            hostname=values.get(KEY_HOSTNAME) or None,
            peer_hostnames=peers,
            auth_token=values.get(KEY_TOKEN) or None,
        )
        logger.debug("Loaded host config from %s (%d peers)", self.path, len(config.peers))
        return config

    def _parse(self, text: str) -> dict[str, str]:
        values: dict[str, str] = {}
        for lineno, line in enumerate(text.splitlines(), 1):
            if not line.strip() or line.lstrip().startswith("#"):
                continue
            try:
                tokens = shlex.split(line, comments=True)
            except ValueError as e:
                raise ConfigError(
                    ErrorKind.CONFIG_PARSE_ERROR,
                    "%s:%d: %s" % (self.path, lineno, e),
                )
            if not tokens:
                continue
            if len(tokens) != 1 or "=" not in tokens[0]:
                raise ConfigError(
                    ErrorKind.CONFIG_PARSE_ERROR,
                    "%s:%d: expected KEY=\"value\", got: %s" % (self.path, lineno, line.strip()),
                )
            key, _, value = tokens[0].partition("=")
            if not _KEY_PATTERN.match(key):
                raise ConfigError(
                    ErrorKind.CONFIG_PARSE_ERROR,
                    "%s:%d: invalid key %r" % (self.path, lineno, key),
                )
            values[key] = value
        return values

    def save(self, config: HostConfig) -> None:
        """Write *config* via temp file + rename so readers never see a partial file."""
        lines = ["# DGX Spark fleet configuration"]
        if config.username is not None:
            lines.append("%s=%s" % (KEY_USERNAME, _quote(config.username)))
        if config.hostname is not None:
            lines.append("%s=%s" % (KEY_HOSTNAME, _quote(config.hostname)))
        if config.peer_hostnames is not None:
            lines.append("%s=%s" % (KEY_PEERS, _quote(",".join(config.peer_hostnames))))
        if config.auth_token is not None:
            lines.append("%s=%s" % (KEY_TOKEN, _quote(config.auth_token)))
        content = "\n".join(lines) + "\n"

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".%s." % self.path.name, dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
        logger.info("Configuration saved to %s", self.path)

    def prompt_missing(
            self,
            config: HostConfig,
            interactive: bool | None = None,
            require_token: bool = False,
    ) -> HostConfig:
        """Ask for any unset required field.

        Non-interactive runs (no TTY) fail fast with ``IncompleteConfig``
        instead of blocking on input.
        """
        if interactive is None:
            interactive = sys.stdin.isatty()

        needs_peers = config.peer_hostnames is None
        missing = config.missing_fields(require_token)
        if not missing and not needs_peers:
            return config

        if not interactive:
            if missing:
                raise ConfigError(
                    ErrorKind.INCOMPLETE_CONFIG,
                    "Missing required settings: %s (run with --configure or pass them as options)"
                    % ", ".join(missing),
                )
            # peers are optional; absent means single node
            return config.with_overrides(peer_hostnames=[])

        updated = config
        if not updated.username:
            updated = updated.with_overrides(
                username=click.prompt("Enter your DGX Spark username"))
        if not updated.hostname:
            updated = updated.with_overrides(
                hostname=click.prompt("Enter your DGX Spark hostname (without .local)"))
        if needs_peers:
            raw = click.prompt("Enter peer node hostnames or IPs (comma separated, Enter to skip)",
                               default="", show_default=False)
            updated = updated.with_overrides(peer_hostnames=split_hosts(raw))
        if require_token and not updated.auth_token:
            updated = updated.with_overrides(
                auth_token=click.prompt("Enter your Hugging Face token", hide_input=True))
        return updated


class FleetPreferences:
    """Optional YAML preferences (SSH options, defaults, extra params)."""

    def __init__(self, config_path: Path | None = None):
        self.config_path = config_path or (DEFAULT_CONFIG_DIR / "config.yaml")
        self._data: dict[str, Any] = {}
        self._load()

    def _load(self):
        if self.config_path.exists():
            self._data = read_yaml(str(self.config_path)) or {}
        else:
            self._data = {}

    @property
    def ssh_key(self) -> str | None:
        key = (self._data.get("ssh") or {}).get("key")
        return os.path.expanduser(key) if key else None

    @property
    def ssh_options(self) -> list[str]:
        return (self._data.get("ssh") or {}).get("options", [])

    @property
    def connect_timeout(self) -> int:
        return int((self._data.get("ssh") or {}).get("connect_timeout", 10))

    @property
    def default_profile(self) -> str:
        return (self._data.get("defaults") or {}).get("profile", "stacked")

    @property
    def default_interface(self) -> str | None:
        return (self._data.get("defaults") or {}).get("interface")

    @property
    def params(self) -> dict[str, Any]:
        return dict(self._data.get("params") or {})

    @property
    def addresses(self) -> dict[str, str]:
        """Hostname -> literal fallback address, used when mDNS resolution fails."""
        return {str(k): str(v) for k, v in (self._data.get("addresses") or {}).items()}
