"""Shell profile editing."""
import os
import platform
from pathlib import Path
from typing import List, Mapping, Optional

from edgeup.logging import get_logger
from edgeup.shells.env import script_path, shell_for_rc, source_line

logger = get_logger(__name__)

POWERSHELL_PROFILE = Path("Documents") / "PowerShell" / "Microsoft.PowerShell_profile.ps1"
FISH_CONF_DIR = Path(".config") / "fish" / "conf.d"


def ensure_source_line(rc_file: Path, line: str) -> bool:
    """Append ``line`` to ``rc_file`` unless it is already there.

    Returns True when the file was modified.
    """
    existing = rc_file.read_text(encoding="utf-8") if rc_file.exists() else ""
    if line in existing.splitlines():
        logger.debug("source_line_present", rc_file=str(rc_file))
        return False

    rc_file.parent.mkdir(parents=True, exist_ok=True)
    prefix = "" if not existing or existing.endswith("\n") else "\n"
    with open(rc_file, "a", encoding="utf-8") as f:
        f.write(f"{prefix}{line}\n")
    logger.info("source_line_added", rc_file=str(rc_file))
    return True


def rc_files(
    home: Path,
    env: Optional[Mapping[str, str]] = None,
    system: Optional[str] = None,
) -> List[Path]:
    """Profiles to edit for the user's shells."""
    env = os.environ if env is None else env
    system = (system or platform.system()).lower()

    if system == "windows":
        return [home / POWERSHELL_PROFILE]

    login_shell = Path(env.get("SHELL", "")).name
    if login_shell == "zsh":
        zdotdir = Path(env["ZDOTDIR"]) if env.get("ZDOTDIR") else home
        files = [zdotdir / ".zshenv"]
    elif login_shell == "bash":
        files = [home / ".bashrc"]
    else:
        files = [home / ".profile"]

    if login_shell == "fish" or (home / ".config" / "fish").is_dir():
        files.append(home / FISH_CONF_DIR / "edgeup.fish")
    return files


def setup_shell(
    root: Path,
    home: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    system: Optional[str] = None,
) -> List[Path]:
    """Make new shells source the env script under ``root``.

    Returns the profiles that were changed.
    """
    home = home or Path.home()
    changed = []
    for rc_file in rc_files(home, env, system):
        shell = shell_for_rc(rc_file)
        if ensure_source_line(rc_file, source_line(shell, script_path(root, shell))):
            changed.append(rc_file)
    return changed
