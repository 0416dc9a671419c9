"""Installed version and plugin management."""
from edgeup.installs.manager import InstallManager
from edgeup.installs.plugins import PluginSpec, parse_plugin_spec
from edgeup.installs.state import StateStore, state_lock

__all__ = [
    "InstallManager",
    "PluginSpec",
    "StateStore",
    "parse_plugin_spec",
    "state_lock",
]
