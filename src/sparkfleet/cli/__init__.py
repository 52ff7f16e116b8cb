"""sparkfleet CLI: configure, set up, deploy, test and roll back a DGX Spark fleet."""

from __future__ import annotations

import logging
import sys

import click

from sparkfleet import __version__
from ._common import (
    PROFILE_NAME,
    FleetCommand,
    _echo_error,
    _parse_nodes,
    _parse_options,
    _setup_logging,
)

logger = logging.getLogger(__name__)

ACTION_CONFIGURE = "configure"


@click.command(cls=FleetCommand, context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-c", "--configure", is_flag=True, help="Prompt for and save the host configuration")
@click.option("-v", "--verify", is_flag=True, help="Check connectivity, docker and GPUs on every node")
@click.option("-s", "--setup", is_flag=True, help="Prepare the fleet (containers, swarm, hostfile)")
@click.option("-d", "--deploy", is_flag=True, help="Deploy the workload")
@click.option("-t", "--test", is_flag=True, help="Run the workload smoke test")
@click.option("-r", "--rollback", is_flag=True, help="Tear down everything setup/deploy created")
@click.option("-u", "--username", default=None, help="SSH username on the DGX Sparks")
@click.option("-H", "--hostname", default=None, help="Primary node hostname (without .local) or IP")
@click.option("-n", "--node", "nodes", multiple=True,
              help="Peer node hostname or IP (repeatable or comma separated)")
@click.option("-m", "--model", default=None, help="Model id to deploy")
@click.option("-p", "--port", type=int, default=None, help="Serving port")
@click.option("--tp-size", type=int, default=None, help="Tensor parallel size")
@click.option("-k", "--hf-token", default=None, help="Hugging Face token")
@click.option("--profile", "profile_name", type=PROFILE_NAME, default=None,
              help="Fleet profile (default from preferences, else 'stacked')")
@click.option("--interface", default=None, help="High-speed network interface name")
@click.option("--option", "-o", "options", multiple=True,
              help="Override any template param: -o key=value (repeatable)")
@click.option("--dry-run", is_flag=True, help="Show the commands without running them")
@click.option("--timeout", "probe_timeout", type=int, default=None,
              help="Connectivity probe timeout in seconds")
@click.option("--rollback-on-failure", is_flag=True,
              help="Roll back automatically if the action fails or is interrupted")
@click.option("--config-file", type=click.Path(dir_okay=False), default=None,
              help="Host config file (default ~/.dgx-spark-fleet-config)")
@click.option("--verbose", is_flag=True, help="Enable verbose/debug output")
@click.version_option(__version__, prog_name="sparkfleet")
@click.pass_context
def main(ctx, configure, verify, setup, deploy, test, rollback, username, hostname, nodes, model, port,
         tp_size, hf_token, profile_name, interface, options, dry_run, probe_timeout, rollback_on_failure,
         config_file, verbose):
    """sparkfleet: drive a fleet of NVIDIA DGX Spark systems over SSH.

    Exactly one action flag is required.

    Examples:

      sparkfleet --configure -u alice -H spark-01 -n spark-02

      sparkfleet --verify

      sparkfleet --setup --rollback-on-failure

      sparkfleet --deploy -m nvidia/Qwen3-235B-A22B-FP4 --tp-size 2

      sparkfleet --setup --profile swarm --dry-run
    """
    _setup_logging(verbose)

    flags = [
        (ACTION_CONFIGURE, configure),
        ("verify", verify),
        ("setup", setup),
        ("deploy", deploy),
        ("test", test),
        ("rollback", rollback),
    ]
    actions = [name for name, enabled in flags if enabled]
    if not actions:
        click.echo(ctx.get_help(), err=True)
        sys.exit(1)
    if len(actions) > 1:
        click.echo("Error: choose exactly one action, got: %s"
                   % ", ".join("--%s" % a for a in actions), err=True)
        click.echo(ctx.get_usage(), err=True)
        sys.exit(1)

    from sparkfleet.config import ConfigStore
    from sparkfleet.errors import FleetError

    store = ConfigStore(config_file)
    try:
        config = store.load().with_overrides(
            username=username,
            hostname=hostname,
            peer_hostnames=_parse_nodes(nodes),
            auth_token=hf_token,
        )
        if actions[0] == ACTION_CONFIGURE:
            _configure(store, config)
            return
        _run_action(
            actions[0], config, store,
            profile_name=profile_name,
            params={"model": model, "port": port, "tp_size": tp_size, "interface": interface},
            options=_parse_options(options),
            dry_run=dry_run,
            probe_timeout=probe_timeout,
            rollback_on_failure=rollback_on_failure,
        )
    except FleetError as e:
        _echo_error(e.describe())
        sys.exit(1)


def _configure(store, config):
    """Prompt for whatever is still unset and persist the result."""
    from sparkfleet.errors import ConfigError, ErrorKind

    config = store.prompt_missing(config, interactive=sys.stdin.isatty())
    try:
        store.save(config)
    except OSError as e:
        raise ConfigError(ErrorKind.CONFIG_IO_ERROR, "Could not write %s: %s" % (store.path, e)) from e
    click.echo("Primary: %s@%s" % (config.username, config.hostname))
    click.echo("Peers:   %s" % (", ".join(config.peers) or "(none)"))
    click.echo("HF token: %s" % ("set" if config.auth_token else "not set"))


def _resolve_profile(profile_name, prefs):
    from sparkfleet.bootstrap import get_profile, init_sparkfleet

    init_sparkfleet()
    name = profile_name or prefs.default_profile
    try:
        return get_profile(name)
    except ValueError as e:
        click.echo("Error: %s" % e, err=True)
        sys.exit(1)


def _check_connectivity(config, prefs, probe_timeout, strict: bool) -> dict[str, str]:
    """Probe every node; returns hostname -> address that answered."""
    from sparkfleet.orchestration.connectivity import check_fleet, require_reachable

    checks = check_fleet(
        config.username,
        config.fleet,
        fallback_addresses=prefs.addresses,
        timeout=probe_timeout or prefs.connect_timeout,
        ssh_key=prefs.ssh_key,
        ssh_options=prefs.ssh_options,
    )
    if strict:
        require_reachable(checks)
    else:
        for check in checks:
            if not check.reachable:
                logger.warning("%s is unreachable; its cleanup steps will fail", check.hostname)
    return {c.hostname: c.address for c in checks if c.reachable and c.address}


def _run_action(action, config, store, profile_name=None, params=None, options=None, dry_run=False,
                probe_timeout=None, rollback_on_failure=False):
    """Resolve profile and hosts, then run the playbook for *action*."""
    from sparkfleet.config import FleetPreferences
    from sparkfleet.errors import FleetAborted
    from sparkfleet.orchestration.connectivity import check_prerequisites
    from sparkfleet.orchestration.rollback import RollbackController, fleet_run
    from sparkfleet.orchestration.runner import FleetStepRunner
    from sparkfleet.orchestration.ssh import SSHDispatcher
    from sparkfleet.profiles.base import ACTION_ROLLBACK, ACTION_TEST, ACTION_VERIFY

    prefs = FleetPreferences()
    profile = _resolve_profile(profile_name, prefs)

    check_prerequisites(profile.prerequisites)
    config = store.prompt_missing(config, interactive=sys.stdin.isatty(),
                                  require_token=profile.requires_token(action))

    overrides = {}
    if prefs.default_interface:
        overrides["interface"] = prefs.default_interface
    overrides.update(prefs.params)
    overrides.update(options or {})
    overrides.update({k: v for k, v in (params or {}).items() if v is not None})
    run_params = profile.build_params(config, overrides)

    logger.info("Profile: %s (%s)", profile.profile_name, profile.description)
    if dry_run:
        logger.info("Dry run: skipping connectivity checks")
        addresses = {}
    else:
        addresses = _check_connectivity(config, prefs, probe_timeout,
                                        strict=action != ACTION_ROLLBACK)

    dispatcher = SSHDispatcher(
        ssh_user=config.username,
        ssh_key=prefs.ssh_key,
        ssh_options=prefs.ssh_options,
        connect_timeout=prefs.connect_timeout,
        dry_run=dry_run,
    )
    runner = FleetStepRunner(config, dispatcher, params=run_params, addresses=addresses)
    controller = RollbackController(runner)

    if action == ACTION_ROLLBACK:
        controller.rollback(profile.playbook(ACTION_ROLLBACK))
        click.echo("Rollback finished.")
        return

    with fleet_run(controller, profile.playbook(ACTION_ROLLBACK), enabled=rollback_on_failure):
        session = runner.run(profile.playbook(action))
        if not session.ok:
            raise FleetAborted(session)

    if action in (ACTION_VERIFY, ACTION_TEST):
        for result in session.results:
            if result.succeeded and result.stdout.strip():
                click.echo("%s [%s]: %s" % (result.host, result.step, result.stdout.strip()))
    soft = len(session.soft_failures)
    click.echo("%s: %s%s" % (action, session.outcome,
                             " (%d best-effort step(s) failed)" % soft if soft else ""))
