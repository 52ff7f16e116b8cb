"""Tests for sparkfleet.orchestration.connectivity."""

from __future__ import annotations

import socket
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from sparkfleet.errors import ConnectivityError, ErrorKind, PrerequisiteError
from sparkfleet.orchestration.connectivity import (
    PROBE_GRACE_SECONDS,
    HostCheck,
    check_fleet,
    check_host,
    check_prerequisites,
    probe,
    require_reachable,
    resolve,
    resolve_with_ip,
)


def _addrinfo(address):
    return [(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP, "", (address, 0))]


def _fake_dns(table):
    def getaddrinfo(name, *args, **kwargs):
        if name in table:
            return _addrinfo(table[name])
        raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")
    return getaddrinfo


def _proc(returncode):
    proc = MagicMock()
    proc.returncode = returncode
    proc.stdout = ""
    proc.stderr = "" if returncode == 0 else "Permission denied"
    return proc


# ---------------------------------------------------------------------------
# resolve
# ---------------------------------------------------------------------------

def test_resolve_literal_ip_skips_lookup():
    with patch("sparkfleet.orchestration.connectivity.socket.getaddrinfo") as gai:
        assert resolve("192.168.100.10") == "192.168.100.10"
    gai.assert_not_called()


def test_resolve_with_ip_keeps_name_and_address():
    dns = {"spark-01.local": "10.0.0.1"}
    with patch("sparkfleet.orchestration.connectivity.socket.getaddrinfo", side_effect=_fake_dns(dns)):
        assert resolve_with_ip("spark-01") == ("spark-01.local", "10.0.0.1")


def test_resolve_keeps_explicit_local_name():
    dns = {"spark-01.local": "10.0.0.1"}
    with patch("sparkfleet.orchestration.connectivity.socket.getaddrinfo", side_effect=_fake_dns(dns)):
        assert resolve("spark-01.local") == "spark-01.local"


def test_resolve_prefers_mdns_name():
    dns = {"spark-01.local": "10.0.0.1", "spark-01": "10.9.9.9"}
    with patch("sparkfleet.orchestration.connectivity.socket.getaddrinfo", side_effect=_fake_dns(dns)):
        assert resolve("spark-01") == "spark-01.local"


def test_resolve_falls_back_to_bare_name():
    dns = {"spark-01": "10.9.9.9"}
    with patch("sparkfleet.orchestration.connectivity.socket.getaddrinfo", side_effect=_fake_dns(dns)):
        assert resolve("spark-01") == "spark-01"


def test_resolve_uses_fallback_address():
    with patch("sparkfleet.orchestration.connectivity.socket.getaddrinfo", side_effect=_fake_dns({})):
        assert resolve("spark-02", fallback_address="169.254.1.2") == "169.254.1.2"


def test_resolve_failure_without_fallback():
    with patch("sparkfleet.orchestration.connectivity.socket.getaddrinfo", side_effect=_fake_dns({})):
        with pytest.raises(ConnectivityError) as exc:
            resolve("spark-02")
    assert exc.value.kind == ErrorKind.NAME_RESOLUTION_FAILED
    assert exc.value.host == "spark-02"


# ---------------------------------------------------------------------------
# probe
# ---------------------------------------------------------------------------

@patch("sparkfleet.orchestration.connectivity.subprocess.run")
def test_probe_success(mock_run):
    mock_run.return_value = _proc(0)

    assert probe("alice", "10.0.0.1", timeout=4) is True

    args = mock_run.call_args[0][0]
    assert args[-2:] == ["alice@10.0.0.1", "true"]
    assert "ConnectTimeout=4" in args
    assert mock_run.call_args[1]["timeout"] == 4 + PROBE_GRACE_SECONDS


@patch("sparkfleet.orchestration.connectivity.subprocess.run")
def test_probe_failure(mock_run):
    mock_run.return_value = _proc(255)
    assert probe("alice", "10.0.0.1") is False


@patch("sparkfleet.orchestration.connectivity.subprocess.run")
def test_probe_timeout_returns_false(mock_run):
    mock_run.side_effect = subprocess.TimeoutExpired(cmd="ssh", timeout=15)
    assert probe("alice", "10.0.0.1", timeout=10) is False


# ---------------------------------------------------------------------------
# check_host / check_fleet
# ---------------------------------------------------------------------------

@patch("sparkfleet.orchestration.connectivity.subprocess.run")
def test_check_host_retries_fallback_after_failed_probe(mock_run):
    """mDNS resolves but SSH there fails; the literal fallback answers."""
    mock_run.side_effect = [_proc(255), _proc(0)]
    dns = {"spark-02.local": "10.0.0.2"}
    with patch("sparkfleet.orchestration.connectivity.socket.getaddrinfo", side_effect=_fake_dns(dns)):
        check = check_host("alice", "spark-02", fallback_address="169.254.1.2")

    assert check.reachable
    assert check.address == "169.254.1.2"
    assert check.ip == "169.254.1.2"
    assert mock_run.call_count == 2
    assert mock_run.call_args_list[0][0][0][-2] == "alice@spark-02.local"


@patch("sparkfleet.orchestration.connectivity.subprocess.run")
def test_check_host_probes_resolved_name(mock_run):
    """SSH goes to the name that resolved so known_hosts entries for it match."""
    mock_run.return_value = _proc(0)
    dns = {"spark-01.local": "192.168.1.10"}
    with patch("sparkfleet.orchestration.connectivity.socket.getaddrinfo", side_effect=_fake_dns(dns)):
        check = check_host("alice", "spark-01")

    assert check.reachable
    assert check.address == "spark-01.local"
    assert check.ip == "192.168.1.10"
    assert mock_run.call_args[0][0][-2:] == ["alice@spark-01.local", "true"]


def test_check_host_unresolvable_is_unreachable():
    with patch("sparkfleet.orchestration.connectivity.socket.getaddrinfo", side_effect=_fake_dns({})):
        check = check_host("alice", "ghost")
    assert not check.reachable
    assert check.error_kind == ErrorKind.UNREACHABLE_HOST


@patch("sparkfleet.orchestration.connectivity.subprocess.run")
def test_check_fleet_checks_every_host(mock_run):
    """A failing first host does not stop the others from being checked."""
    mock_run.side_effect = [_proc(255), _proc(0)]

    checks = check_fleet("alice", ["10.0.0.1", "10.0.0.2"])

    assert [c.reachable for c in checks] == [False, True]
    assert mock_run.call_count == 2


def test_require_reachable_raises_with_all_failures():
    checks = [
        HostCheck(hostname="a", reachable=False, error_kind=ErrorKind.UNREACHABLE_HOST),
        HostCheck(hostname="b", address="10.0.0.2", reachable=True),
        HostCheck(hostname="c", reachable=False, error_kind=ErrorKind.UNREACHABLE_HOST),
    ]
    with pytest.raises(ConnectivityError) as exc:
        require_reachable(checks)
    assert exc.value.kind == ErrorKind.UNREACHABLE_HOST
    assert "a, c" in exc.value.message


def test_require_reachable_all_ok():
    require_reachable([HostCheck(hostname="a", address="1.2.3.4", reachable=True)])


# ---------------------------------------------------------------------------
# prerequisites
# ---------------------------------------------------------------------------

def test_check_prerequisites_missing():
    with patch("sparkfleet.orchestration.connectivity.shutil.which", return_value=None):
        with pytest.raises(PrerequisiteError) as exc:
            check_prerequisites(("ssh",))
    assert exc.value.kind == ErrorKind.MISSING_PREREQUISITE
    assert exc.value.tool == "ssh"


def test_check_prerequisites_present():
    with patch("sparkfleet.orchestration.connectivity.shutil.which", return_value="/usr/bin/ssh"):
        check_prerequisites(("ssh",))
