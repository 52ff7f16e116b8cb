"""Tests for sparkfleet.orchestration.runner (FleetStepRunner)."""

from __future__ import annotations

import logging

import pytest

from sparkfleet.config import HostConfig
from sparkfleet.errors import ConfigError, ErrorKind
from sparkfleet.orchestration.commands import CommandTemplate
from sparkfleet.orchestration.runner import (
    TARGET_PEERS,
    TARGET_PRIMARY,
    FleetStepRunner,
    Playbook,
    RunState,
    Session,
    Step,
)


@pytest.fixture
def single_node():
    return HostConfig(username="alice", hostname="spark1", peer_hostnames=[])


@pytest.fixture
def three_nodes():
    return HostConfig(username="alice", hostname="a", peer_hostnames=["b", "c"])


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

def test_step_converts_string_command():
    step = Step("s", "echo {x}")
    assert isinstance(step.command, CommandTemplate)
    assert step.command.text == "echo {x}"


def test_step_rejects_unknown_target():
    with pytest.raises(ValueError):
        Step("s", "true", targets="workers")


def test_playbook_is_immutable():
    playbook = Playbook("p", (Step("a", "true"),))
    with pytest.raises(Exception):
        playbook.name = "q"
    assert playbook.step_names == ["a"]


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------

def test_single_step_success(single_node, fake_dispatcher):
    dispatcher = fake_dispatcher()
    runner = FleetStepRunner(single_node, dispatcher)

    session = runner.run(Playbook("check", (Step("echo-check", "echo ok"),)))

    assert session.state == RunState.COMPLETED
    assert session.outcome == "ok"
    assert len(session.results) == 1
    assert session.results[0].succeeded
    assert session.results[0].host == "spark1"


def test_hard_failure_short_circuits(single_node, fake_dispatcher):
    dispatcher = fake_dispatcher({"step-a": 1})
    runner = FleetStepRunner(single_node, dispatcher)

    session = runner.run(Playbook("p", (Step("step-a", "false"), Step("step-b", "true"))))

    assert session.state == RunState.ABORTED
    assert session.failed_step == "step-a"
    assert session.outcome == "failed-at-step(step-a)"
    assert [c["step"] for c in dispatcher.calls] == ["step-a"]
    assert session.first_failure.error_kind == ErrorKind.REMOTE_COMMAND_FAILED


def test_hard_failure_on_peer_stops_remaining_hosts(three_nodes, fake_dispatcher):
    dispatcher = fake_dispatcher({("b", "step-a"): 1})
    runner = FleetStepRunner(three_nodes, dispatcher)

    session = runner.run(Playbook("p", (Step("step-a", "x"), Step("step-b", "y"))))

    assert session.state == RunState.ABORTED
    assert dispatcher.order == [("step-a", "a"), ("step-a", "b")]
    assert session.first_failure.host == "b"


def test_best_effort_failure_continues(single_node, fake_dispatcher, caplog):
    dispatcher = fake_dispatcher({"flaky": 2})
    runner = FleetStepRunner(single_node, dispatcher)

    with caplog.at_level(logging.WARNING):
        session = runner.run(Playbook("p", (
            Step("flaky", "x", best_effort=True),
            Step("after", "y"),
        )))

    assert session.state == RunState.COMPLETED
    assert [c["step"] for c in dispatcher.calls] == ["flaky", "after"]
    assert [r.step for r in session.soft_failures] == ["flaky"]
    assert "flaky" in caplog.text
    assert any(r.levelno == logging.WARNING for r in caplog.records)


def test_step_major_order(three_nodes, fake_dispatcher):
    dispatcher = fake_dispatcher()
    runner = FleetStepRunner(three_nodes, dispatcher)

    runner.run(Playbook("p", (Step("one", "x"), Step("two", "y"))))

    assert dispatcher.order == [
        ("one", "a"), ("one", "b"), ("one", "c"),
        ("two", "a"), ("two", "b"), ("two", "c"),
    ]


def test_targets_primary_and_peers(three_nodes, fake_dispatcher):
    dispatcher = fake_dispatcher()
    runner = FleetStepRunner(three_nodes, dispatcher)

    runner.run(Playbook("p", (
        Step("lead", "x", targets=TARGET_PRIMARY),
        Step("follow", "y", targets=TARGET_PEERS),
    )))

    assert dispatcher.order == [("lead", "a"), ("follow", "b"), ("follow", "c")]


def test_peers_step_skipped_on_single_node(single_node, fake_dispatcher):
    dispatcher = fake_dispatcher()
    runner = FleetStepRunner(single_node, dispatcher)

    session = runner.run(Playbook("p", (Step("join", "x", targets=TARGET_PEERS),)))

    assert session.state == RunState.COMPLETED
    assert dispatcher.calls == []


def test_incomplete_config_raises_before_dispatch(fake_dispatcher):
    dispatcher = fake_dispatcher()
    runner = FleetStepRunner(HostConfig(hostname="a"), dispatcher)

    with pytest.raises(ConfigError) as exc:
        runner.run(Playbook("p", (Step("s", "true"),)))

    assert exc.value.kind == ErrorKind.INCOMPLETE_CONFIG
    assert dispatcher.calls == []


def test_required_param_missing(single_node, fake_dispatcher):
    runner = FleetStepRunner(single_node, fake_dispatcher())
    with pytest.raises(ConfigError) as exc:
        runner.run(Playbook("p", (Step("s", "true"),), requires=("hf_token",)))
    assert "hf_token" in exc.value.message


def test_missing_template_param_is_hard_failure(single_node, fake_dispatcher):
    dispatcher = fake_dispatcher()
    runner = FleetStepRunner(single_node, dispatcher)
    with pytest.raises(ConfigError):
        runner.run(Playbook("p", (Step("s", "echo {nope}"),)))
    assert dispatcher.calls == []


def test_missing_template_param_best_effort_is_recorded(single_node, fake_dispatcher):
    runner = FleetStepRunner(single_node, fake_dispatcher())
    session = runner.run(Playbook("p", (Step("s", "echo {nope}", best_effort=True),)))
    assert session.state == RunState.COMPLETED
    assert session.results[0].error_kind == ErrorKind.INCOMPLETE_CONFIG


# ---------------------------------------------------------------------------
# Rendering, facts, addresses
# ---------------------------------------------------------------------------

def test_params_and_host_context(three_nodes, fake_dispatcher):
    dispatcher = fake_dispatcher()
    runner = FleetStepRunner(three_nodes, dispatcher, params={"port": 8355})

    runner.run(Playbook("p", (Step("s", "serve {port} on {host} led by {primary}", targets=TARGET_PEERS),)))

    assert [c["command"] for c in dispatcher.calls] == [
        "serve 8355 on b led by a",
        "serve 8355 on c led by a",
    ]


def test_capture_facts_per_host(three_nodes, fake_dispatcher):
    dispatcher = fake_dispatcher({
        ("a", "ip"): (0, "noise\n10.0.0.1\n"),
        ("b", "ip"): (0, "10.0.0.2"),
        ("c", "ip"): (0, "10.0.0.3"),
        ("a", "token"): (0, "SWMTKN-1-abc"),
    })
    runner = FleetStepRunner(three_nodes, dispatcher)

    session = runner.run(Playbook("p", (
        Step("ip", "detect", capture="node_ip"),
        Step("token", "join-token", targets=TARGET_PRIMARY, capture="join_token"),
        Step("hostfile", "printf {node_ip_all}", targets=TARGET_PRIMARY),
        Step("join", "join {join_token} {node_ip}", targets=TARGET_PEERS),
    )))

    assert session.facts["node_ip"] == {"a": "10.0.0.1", "b": "10.0.0.2", "c": "10.0.0.3"}
    commands = {(c["step"], c["host"]): c["command"] for c in dispatcher.calls}
    assert commands[("hostfile", "a")] == "printf 10.0.0.1 10.0.0.2 10.0.0.3"
    # peers see their own node_ip and the primary's join_token
    assert commands[("join", "b")] == "join SWMTKN-1-abc 10.0.0.2"
    assert commands[("join", "c")] == "join SWMTKN-1-abc 10.0.0.3"


def test_secrets_redacted_in_display(single_node, fake_dispatcher):
    dispatcher = fake_dispatcher()
    runner = FleetStepRunner(single_node, dispatcher, params={"hf_token": "hf_live"})

    runner.run(Playbook("p", (Step("dl", "HF_TOKEN={hf_token} hf download"),)))

    call = dispatcher.calls[0]
    assert call["command"] == "HF_TOKEN=hf_live hf download"
    assert "hf_live" not in call["display"]


def test_dispatch_uses_resolved_address(three_nodes, fake_dispatcher):
    dispatcher = fake_dispatcher()
    runner = FleetStepRunner(three_nodes, dispatcher, addresses={"b": "169.254.0.2"})

    session = runner.run(Playbook("p", (Step("s", "true", timeout=30),)))

    assert [c["host"] for c in dispatcher.calls] == ["a", "169.254.0.2", "c"]
    assert dispatcher.calls[0]["timeout"] == 30
    # results keep the configured hostname
    assert [r.host for r in session.results] == ["a", "b", "c"]


def test_dispatched_steps():
    session = Session(playbook="p")
    assert session.dispatched_steps() == []
    assert session.outcome == RunState.PENDING.value
