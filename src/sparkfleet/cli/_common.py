"""Shared CLI infrastructure: logging setup, option parsing, Click types."""

from __future__ import annotations

import logging
import sys

import click

logger = logging.getLogger(__name__)

_LEVEL_COLORS = {
    "DEBUG": "blue",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red",
}


class LevelPrefixFormatter(logging.Formatter):
    """Prefix each record with ``[LEVEL]``, colored when *color* is set."""

    def __init__(self, fmt: str, datefmt: str | None = None, color: bool = False):
        super().__init__(fmt, datefmt=datefmt)
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        return "%s %s" % (level_prefix(record.levelname, self.color), message)


def level_prefix(levelname: str, color: bool = True) -> str:
    prefix = "[%s]" % levelname
    if not color:
        return prefix
    return click.style(prefix, fg=_LEVEL_COLORS.get(levelname), bold=levelname in ("ERROR", "CRITICAL"))


def _setup_logging(verbose: bool):
    """Configure logging based on verbosity.

    Uses explicit handler setup instead of ``logging.basicConfig`` which
    is silently a no-op when the root logger already has handlers (common
    when libraries like ``huggingface_hub`` configure logging on import).
    """
    level = logging.DEBUG if verbose else logging.INFO
    fmt = ("%(asctime)s %(name)s: %(message)s" if verbose
           else "%(message)s")

    root = logging.getLogger()
    root.setLevel(level)
    # Remove any handlers that may have been added by library imports
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(LevelPrefixFormatter(fmt, datefmt="%H:%M:%S",
                                              color=sys.stderr.isatty()))
    root.addHandler(handler)

    from sparkfleet.utils import suppress_noisy_loggers
    suppress_noisy_loggers()

    return


def _echo_error(message: str):
    """Print one ``[ERROR]`` line to stderr (color stripped when not a TTY)."""
    click.echo("%s %s" % (level_prefix("ERROR"), message), err=True)


def _parse_options(options: tuple[str, ...]) -> dict:
    """Parse --option key=value pairs into a dict.

    Values are auto-coerced to int/float/bool where possible.
    """
    from sparkfleet.utils import coerce_value

    result = {}
    for opt in options:
        if "=" not in opt:
            click.echo(
                "Error: --option must be key=value, got: %s" % opt,
                err=True,
            )
            sys.exit(1)
        key, _, value = opt.partition("=")
        key = key.strip()
        value = value.strip()
        if not key:
            click.echo(
                "Error: --option has empty key: %s" % opt,
                err=True,
            )
            sys.exit(1)
        result[key] = coerce_value(value)
    return result


def _parse_nodes(nodes: tuple[str, ...]) -> list[str] | None:
    """Flatten repeated and comma-separated ``--node`` values; None when not given."""
    from sparkfleet.utils import split_hosts

    if not nodes:
        return None
    result = []
    for value in nodes:
        for host in split_hosts(value):
            if host not in result:
                result.append(host)
    return result


class FleetCommand(click.Command):
    """Command that reports usage errors with exit code 1 instead of 2.

    Unknown flags read ``Error: Unknown option: <flag>``; every other usage
    error (bad value, missing value, stray argument) keeps Click's message.
    """

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        try:
            return super().parse_args(ctx, args)
        except click.NoSuchOption as e:
            click.echo("Error: Unknown option: %s" % e.option_name, err=True)
            click.echo(ctx.get_usage(), err=True)
            ctx.exit(1)
        except click.UsageError as e:
            click.echo("Error: %s" % e.format_message(), err=True)
            click.echo(ctx.get_usage(), err=True)
            ctx.exit(1)


class ProfileNameType(click.ParamType):
    """Click parameter type with shell completion for profile names."""

    name = "profile"

    def shell_complete(self, ctx, param, incomplete):
        from click.shell_completion import CompletionItem
        from sparkfleet.bootstrap import list_profiles
        try:
            names = list_profiles()
        except Exception:
            logger.debug("Profile completion unavailable", exc_info=True)
            return []
        return [CompletionItem(n) for n in names if n.startswith(incomplete)]


PROFILE_NAME = ProfileNameType()
