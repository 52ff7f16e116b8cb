"""Bootstrap the sparkfleet profile plugin system on SAF."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from scitrera_app_framework import Variables, register_plugin, get_extensions
from scitrera_app_framework.util import find_types_in_modules

if TYPE_CHECKING:
    from sparkfleet.profiles.base import FleetProfile

logger = logging.getLogger(__name__)

EXT_PROFILE = "sparkfleet.profile"

# Module-level singleton for the sparkfleet Variables instance
_variables: Variables | None = None


def init_sparkfleet(v: Variables | None = None, log_level: str = "WARNING") -> Variables:
    """Initialize sparkfleet's plugin system.

    Uses SAF's desktop initialization without fault handler or shutdown
    hooks, then registers every :class:`FleetProfile` found in
    ``sparkfleet.profiles``.

    Args:
        v: Optional pre-existing Variables instance to reuse.
        log_level: SAF log level (default WARNING to reduce verbosity).

    Returns:
        The initialized Variables instance.
    """
    global _variables

    if _variables is not None and v is None:
        return _variables

    if v is None:
        from scitrera_app_framework import init_framework_desktop
        v = init_framework_desktop("sparkfleet", log_level=log_level, fault_handler=False, shutdown_hooks=False, fixed_logger=logger)

        from sparkfleet.utils import suppress_noisy_loggers
        suppress_noisy_loggers()

    _variables = v

    # Import here to avoid circular imports
    from sparkfleet.profiles.base import FleetProfile

    discovered = list(find_types_in_modules("sparkfleet.profiles", FleetProfile))
    for profile_cls in discovered:
        try:
            register_plugin(profile_cls, v=v)
            logger.debug("Registered profile: %s", profile_cls.__name__)
        except (ValueError, TypeError) as e:
            logger.debug("Skipping profile %s: %s", profile_cls.__name__, e)

    return v


def get_variables() -> Variables:
    """Get the sparkfleet Variables instance, initializing if needed."""
    global _variables
    if _variables is None:
        init_sparkfleet()
    return _variables


def profiles_by_name(v: Variables | None = None) -> dict[str, FleetProfile]:
    """Registered profiles keyed by ``profile_name``.

    Plugins without a name are ignored; when two plugins claim the same
    name the first registered wins and the clash is logged.
    """
    if v is None:
        v = get_variables()

    profiles: dict[str, FleetProfile] = {}
    for plugin_name, profile in get_extensions(EXT_PROFILE, v=v).items():
        name = getattr(profile, "profile_name", "")
        if not name:
            logger.debug("Ignoring unnamed profile plugin %s", plugin_name)
            continue
        if name in profiles:
            logger.warning("Profile name %r is claimed by %s and %s; keeping the first",
                           name, type(profiles[name]).__name__, type(profile).__name__)
            continue
        profiles[name] = profile
    return profiles


def get_profile(name: str, v: Variables | None = None) -> FleetProfile:
    """Get a specific profile by name (case-insensitive).

    Raises:
        ValueError: If the profile is not found
    """
    profiles = profiles_by_name(v)
    profile = profiles.get(name) or profiles.get(name.strip().lower())
    if profile is None:
        raise ValueError("Unknown profile: %r. Available: %s" % (name, sorted(profiles)))
    return profile


def list_profiles(v: Variables | None = None) -> list[str]:
    """List all registered profile names."""
    return sorted(profiles_by_name(v))
