"""Name resolution, reachability probes, and local prerequisite checks.

DGX Spark nodes advertise themselves over mDNS as ``<hostname>.local``;
direct-attach peers are often only reachable by link-local IP.  Resolution
therefore tries the mDNS name first and falls back to a literal address.
"""

from __future__ import annotations

import logging
import shutil
import socket
import subprocess
import time
from dataclasses import dataclass

from sparkfleet.errors import ConnectivityError, ErrorKind, PrerequisiteError
from sparkfleet.orchestration.ssh import build_ssh_cmd
from sparkfleet.utils import is_valid_ip

logger = logging.getLogger(__name__)

MDNS_SUFFIX = ".local"
DEFAULT_PROBE_TIMEOUT = 10
# slack on top of ConnectTimeout for the ssh process itself
PROBE_GRACE_SECONDS = 5


@dataclass
class HostCheck:
    """Connectivity verdict for one host.

    ``address`` is the name (or literal) SSH should connect to; ``ip`` is the
    numeric address it resolved to, kept for diagnostics only.
    """

    hostname: str
    address: str | None = None
    ip: str | None = None
    reachable: bool = False
    error_kind: ErrorKind | None = None
    message: str = ""


def _lookup(name: str) -> str | None:
    try:
        infos = socket.getaddrinfo(name, None, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, UnicodeError, OSError):
        return None
    for info in infos:
        return info[4][0]
    return None


def resolve_with_ip(hostname: str, fallback_address: str | None = None) -> tuple[str, str | None]:
    """Like :func:`resolve`, also returning the numeric address (None when not looked up)."""
    if is_valid_ip(hostname):
        return hostname, hostname

    candidates = [hostname]
    if not hostname.endswith(MDNS_SUFFIX):
        candidates.insert(0, hostname + MDNS_SUFFIX)

    for name in candidates:
        ip = _lookup(name)
        if ip:
            logger.debug("Resolved %s -> %s", name, ip)
            return name, ip
        logger.debug("Resolution failed for %s", name)

    if fallback_address:
        logger.warning("Name resolution failed for %s; using fallback address %s",
                       hostname, fallback_address)
        return fallback_address, fallback_address if is_valid_ip(fallback_address) else None

    raise ConnectivityError(
        ErrorKind.NAME_RESOLUTION_FAILED,
        "Could not resolve %s (tried %s)" % (hostname, ", ".join(candidates)),
        host=hostname,
    )


def resolve(hostname: str, fallback_address: str | None = None) -> str:
    """Return the name SSH should use for *hostname*.

    Literal IPs are returned as-is.  Otherwise ``<hostname>.local`` is tried
    first, then the bare name, then *fallback_address*.  The first name that
    resolves is returned, not its numeric address, so host-key checks match
    the name the user trusts.

    Raises:
        ConnectivityError: ``NameResolutionFailed`` when nothing resolves.
    """
    return resolve_with_ip(hostname, fallback_address)[0]


def probe(
        username: str | None,
        address: str,
        timeout: int = DEFAULT_PROBE_TIMEOUT,
        ssh_key: str | None = None,
        ssh_options: list[str] | None = None,
) -> bool:
    """Run a no-op over SSH; True when it exits 0 within the timeout."""
    cmd = build_ssh_cmd(address, username, ssh_key, ssh_options, connect_timeout=timeout)
    cmd.append("true")
    t0 = time.monotonic()
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True,
                              timeout=timeout + PROBE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        logger.debug("Probe of %s timed out after %.1fs", address, time.monotonic() - t0)
        return False
    except OSError as e:
        logger.debug("Probe of %s failed to start: %s", address, e)
        return False
    if proc.returncode != 0:
        logger.debug("Probe of %s rc=%d: %s", address, proc.returncode, proc.stderr.strip()[:200])
    return proc.returncode == 0


def check_host(
        username: str | None,
        hostname: str,
        fallback_address: str | None = None,
        timeout: int = DEFAULT_PROBE_TIMEOUT,
        ssh_key: str | None = None,
        ssh_options: list[str] | None = None,
) -> HostCheck:
    """Resolve and probe one host without raising."""
    check = HostCheck(hostname=hostname)
    try:
        check.address, check.ip = resolve_with_ip(hostname, fallback_address)
    except ConnectivityError as e:
        check.error_kind = ErrorKind.UNREACHABLE_HOST
        check.message = e.message
        return check

    if probe(username, check.address, timeout, ssh_key=ssh_key, ssh_options=ssh_options):
        check.reachable = True
        check.message = "SSH OK"
        return check

    # mDNS may resolve while SSH on that address fails; retry on the literal
    if fallback_address and fallback_address != check.address:
        logger.info("SSH via %s failed; trying %s", check.address, fallback_address)
        if probe(username, fallback_address, timeout, ssh_key=ssh_key, ssh_options=ssh_options):
            check.address = fallback_address
            check.ip = fallback_address if is_valid_ip(fallback_address) else None
            check.reachable = True
            check.message = "SSH OK"
            return check

    check.error_kind = ErrorKind.UNREACHABLE_HOST
    check.message = "SSH login to %s@%s failed" % (username or "", check.address)
    return check


def check_fleet(
        username: str | None,
        hosts: list[str],
        fallback_addresses: dict[str, str] | None = None,
        timeout: int = DEFAULT_PROBE_TIMEOUT,
        ssh_key: str | None = None,
        ssh_options: list[str] | None = None,
) -> list[HostCheck]:
    """Check every host in order, continuing past failures so all are reported."""
    fallbacks = fallback_addresses or {}
    checks = []
    for host in hosts:
        logger.info("Checking connectivity to %s...", host)
        check = check_host(username, host, fallbacks.get(host), timeout,
                           ssh_key=ssh_key, ssh_options=ssh_options)
        if check.reachable:
            logger.info("  %s reachable at %s%s", host, check.address,
                        " (%s)" % check.ip if check.ip and check.ip != check.address else "")
        else:
            logger.error("  host=%s kind=%s: %s", host, check.error_kind, check.message)
        checks.append(check)
    return checks


def require_reachable(checks: list[HostCheck]) -> None:
    """Raise if any host in *checks* is unreachable."""
    failed = [c for c in checks if not c.reachable]
    if failed:
        names = ", ".join(c.hostname for c in failed)
        raise ConnectivityError(
            ErrorKind.UNREACHABLE_HOST,
            "%d of %d host(s) unreachable: %s" % (len(failed), len(checks), names),
            host=failed[0].hostname,
        )


def check_prerequisites(tools: tuple[str, ...] | list[str]) -> None:
    """Verify each local tool is on PATH.

    Raises:
        PrerequisiteError: for the first tool that is missing.
    """
    for tool in tools:
        path = shutil.which(tool)
        if not path:
            raise PrerequisiteError(tool)
        logger.debug("Found %s at %s", tool, path)
