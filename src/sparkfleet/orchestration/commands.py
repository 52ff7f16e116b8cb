"""Typed command templates rendered at the dispatch boundary.

Templates use ``str.format`` syntax.  Every substituted value is shell
quoted, so host names, model ids and tokens can never break out of their
argument.  Literal braces in the template (awk programs, docker
``--format`` strings) must be doubled as usual for ``str.format``.

Field forms:

``{name}``
    ``shlex.quote(str(value))``; lists/tuples become space separated,
    individually quoted words.
``{name:raw}``
    Inserted verbatim.  Only for values sparkfleet builds itself.
"""

from __future__ import annotations

import shlex
import string
from typing import Any, Iterable, Mapping

from sparkfleet.errors import ConfigError, ErrorKind

RAW_SPEC = "raw"
REDACTED = "****"


class _QuotingFormatter(string.Formatter):

    def __init__(self, redact: Iterable[str] = ()):
        self.redact = frozenset(redact)

    def get_field(self, field_name, args, kwargs):
        obj, used_key = super().get_field(field_name, args, kwargs)
        if used_key in self.redact and obj not in (None, ""):
            return _Redacted(), used_key
        return obj, used_key

    def format_field(self, value, format_spec):
        if isinstance(value, _Redacted):
            return REDACTED
        if format_spec == RAW_SPEC:
            return str(value)
        if isinstance(value, (list, tuple)):
            return " ".join(shlex.quote(str(v)) for v in value)
        return shlex.quote(format(value, format_spec))


class _Redacted:
    pass


class CommandTemplate:
    """A shell command with named, quoted parameters."""

    def __init__(self, text: str):
        self.text = text

    def fields(self) -> set[str]:
        """Top-level parameter names referenced by the template."""
        names = set()
        for _literal, field_name, _spec, _conv in string.Formatter().parse(self.text):
            if field_name:
                names.add(field_name.split(".")[0].split("[")[0])
        return names

    def render(self, params: Mapping[str, Any], redact: Iterable[str] = ()) -> str:
        """Render with *params*; values named in *redact* appear as ``****``.

        Raises:
            ConfigError: ``IncompleteConfig`` when a referenced param is
                missing or None.
        """
        missing = sorted(n for n in self.fields() if params.get(n) is None)
        if missing:
            raise ConfigError(
                ErrorKind.INCOMPLETE_CONFIG,
                "Missing value(s) for command parameter(s): %s" % ", ".join(missing),
            )
        return _QuotingFormatter(redact).vformat(self.text, (), params)

    def __repr__(self) -> str:
        return "CommandTemplate(%r)" % self.text

    def __eq__(self, other):
        return isinstance(other, CommandTemplate) and other.text == self.text

    def __hash__(self):
        return hash(self.text)
