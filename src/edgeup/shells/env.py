"""Shell environment scripts for the active installation."""
import re
from enum import Enum
from importlib import resources
from pathlib import Path
from typing import Dict

from edgeup.logging import get_logger
from edgeup.constants import PLUGIN_PATH_VAR
from edgeup.types import ActivePaths
from edgeup.utils.fs import atomic_write_text

logger = get_logger(__name__)


class ShellKind(Enum):
    POSIX = "posix"
    FISH = "fish"
    POWERSHELL = "powershell"


# Template file and script name under the root, per shell
SCRIPTS = {
    ShellKind.POSIX: ("env.sh", "env"),
    ShellKind.FISH: ("env.fish", "env.fish"),
    ShellKind.POWERSHELL: ("env.ps1", "env.ps1"),
}

LIBRARY_PATH_BLOCKS = {
    ShellKind.POSIX: (
        'case ":${{{var}:-}}:" in\n'
        '    *:"{lib}":*)\n'
        "        ;;\n"
        "    *)\n"
        '        export {var}="{lib}${{{var}:+:${var}}}"\n'
        "        ;;\n"
        "esac\n"
    ),
    ShellKind.FISH: (
        'if not contains -- "{lib}" ${var}\n'
        '    set -gx {var} "{lib}" ${var}\n'
        "end\n"
    ),
    ShellKind.POWERSHELL: (
        "if ($env:{var}) {{\n"
        '    $env:{var} = "{lib}" + [IO.Path]::PathSeparator + $env:{var}\n'
        "}} else {{\n"
        '    $env:{var} = "{lib}"\n'
        "}}\n"
    ),
}

# Characters that must be escaped inside a double quoted string
QUOTE_ESCAPES = {
    ShellKind.POSIX: {"\\": "\\\\", '"': '\\"', "$": "\\$", "`": "\\`"},
    ShellKind.FISH: {"\\": "\\\\", '"': '\\"', "$": "\\$"},
    ShellKind.POWERSHELL: {"`": "``", '"': '`"', "$": "`$"},
}

PLACEHOLDER = re.compile(r"\{([A-Z_]+)\}")


def quote(shell: ShellKind, value: str) -> str:
    escapes = QUOTE_ESCAPES[shell]
    return "".join(escapes.get(ch, ch) for ch in value)


def load_template(shell: ShellKind) -> str:
    template_name, _ = SCRIPTS[shell]
    return (
        resources.files("edgeup.shells")
        .joinpath("templates", template_name)
        .read_text(encoding="utf-8")
    )


def render(
    shell: ShellKind, paths: ActivePaths, plugin_path_var: str = PLUGIN_PATH_VAR
) -> str:
    """Fill the shell template for ``paths``.

    The result prepends the bin directory to PATH unless present, prepends the
    lib directory to the platform library variable when there is one, and sets
    the plugin path variable only when it is unset.
    """
    library_block = ""
    if paths.library_path_var:
        library_block = LIBRARY_PATH_BLOCKS[shell].format(
            var=paths.library_path_var,
            lib=quote(shell, str(paths.lib_dir)),
        )

    values: Dict[str, str] = {
        "BIN_DIR": quote(shell, str(paths.bin_dir)),
        "PLUGIN_DIR": quote(shell, str(paths.plugin_dir)),
        "PLUGIN_VAR": plugin_path_var,
        "LIBRARY_PATH": library_block,
    }
    return PLACEHOLDER.sub(
        lambda m: values.get(m.group(1), m.group(0)), load_template(shell)
    )


def script_path(root: Path, shell: ShellKind) -> Path:
    _, script_name = SCRIPTS[shell]
    return root / script_name


def write_env_scripts(
    root: Path, paths: ActivePaths, plugin_path_var: str = PLUGIN_PATH_VAR
) -> Dict[ShellKind, Path]:
    """Write every shell's env script under ``root``."""
    written = {}
    for shell in ShellKind:
        target = script_path(root, shell)
        atomic_write_text(target, render(shell, paths, plugin_path_var))
        written[shell] = target
    logger.info("env_scripts_written", root=str(root), bin_dir=str(paths.bin_dir))
    return written


def clear_env_scripts(root: Path) -> None:
    """Remove the env scripts when no version is active."""
    for shell in ShellKind:
        script_path(root, shell).unlink(missing_ok=True)
    logger.info("env_scripts_cleared", root=str(root))


def source_line(shell: ShellKind, script: Path) -> str:
    """Profile line that loads ``script`` if it exists."""
    path = quote(shell, str(script))
    if shell == ShellKind.FISH:
        return f'if test -f "{path}"; source "{path}"; end # edgeup env'
    if shell == ShellKind.POWERSHELL:
        return f'if (Test-Path "{path}") {{ . "{path}" }} # edgeup env'
    return f'if [ -f "{path}" ]; then . "{path}"; fi # edgeup env'


def shell_for_rc(rc_file: Path) -> ShellKind:
    if rc_file.suffix == ".fish":
        return ShellKind.FISH
    if rc_file.suffix == ".ps1":
        return ShellKind.POWERSHELL
    return ShellKind.POSIX
