from edgeup.shells.env import (
    ShellKind,
    clear_env_scripts,
    render,
    source_line,
    write_env_scripts,
)
from edgeup.shells.profile import ensure_source_line, setup_shell

__all__ = [
    "ShellKind",
    "clear_env_scripts",
    "ensure_source_line",
    "render",
    "setup_shell",
    "source_line",
    "write_env_scripts",
]
