import asyncio
import os
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Optional

from edgeup.logging import get_logger

logger = get_logger(__name__)


async def async_subprocess_run(*args, timeout: Optional[float] = None):
    """
    Run a command asynchronously and return its exit code, stdout, and stderr.

    :param args: Command and arguments to run
    :param timeout: Seconds to wait before killing the process
    :return: Tuple of (returncode, stdout, stderr)
    """
    proc = await asyncio.create_subprocess_exec(
        *args, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return proc.returncode, stdout.decode(), stderr.decode()


def atomic_write_text(path: Path, content: str) -> None:
    """Write a file so readers see either the old or the new content."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.debug("file_written", path=str(path))


def make_staging_dir(parent: Path, prefix: str) -> Path:
    """Create a unique directory under ``parent``."""
    parent.mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(dir=parent, prefix=f"{prefix}-"))


def remove_tree(path: Path) -> None:
    """Remove a file or directory tree if it exists."""
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
    elif path.exists():
        shutil.rmtree(path)
    else:
        return
    logger.debug("tree_removed", path=str(path))


def move_aside(path: Path, trash_parent: Path) -> Path:
    """Rename ``path`` into ``trash_parent`` and return the new location.

    Both must be on the same filesystem so the move is a single rename.
    """
    trash_parent.mkdir(parents=True, exist_ok=True)
    target = trash_parent / f"{path.name}.{uuid.uuid4().hex[:8]}.trash"
    os.replace(path, target)
    logger.debug("tree_moved_aside", source=str(path), target=str(target))
    return target

