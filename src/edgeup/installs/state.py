"""Persisted install state and the state directory lock."""
import asyncio
import json
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import AsyncIterator, Iterator

from filelock import FileLock, Timeout

from edgeup.config import Settings
from edgeup.errors import (
    STAGE_COMMIT,
    STAGE_STATE,
    EdgeupError,
    FilesystemError,
    LockContention,
)
from edgeup.logging import get_logger
from edgeup.types import InstallState
from edgeup.utils.fs import atomic_write_text, make_staging_dir, remove_tree

logger = get_logger(__name__)

TRASH_SUFFIX = ".trash"
# Present in a version tree from the moment it is renamed into place until it is recorded
PENDING_MARKER = ".edgeup-pending"
STAGING_LOCK_SUFFIX = ".lock"


@asynccontextmanager
async def state_lock(settings: Settings) -> AsyncIterator[None]:
    """Hold the exclusive lock on the state directory.

    Contention is retried ``settings.lock_attempts`` times with exponential
    backoff before LockContention is raised.
    """
    try:
        settings.root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError("create install root", settings.root, e, stage=STAGE_STATE) from e
    lock = FileLock(str(settings.lock_file), timeout=0)
    delay = settings.lock_backoff
    attempts = max(1, settings.lock_attempts)

    for attempt in range(1, attempts + 1):
        try:
            lock.acquire()
            break
        except Timeout:
            if attempt == attempts:
                logger.error("lock_contention", lock=str(settings.lock_file), attempts=attempts)
                raise LockContention(str(settings.lock_file), attempts)
            logger.debug("lock_busy", lock=str(settings.lock_file), attempt=attempt, delay=delay)
            await asyncio.sleep(delay)
            delay *= 2

    try:
        yield
    finally:
        lock.release()


class StateStore:
    """Reads and writes ``state.json`` under the install root."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def load(self) -> InstallState:
        """Load the state record, dropping entries whose directories vanished."""
        path = self.settings.state_file
        if not path.exists():
            return InstallState()

        try:
            state = InstallState.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise EdgeupError(
                f"Cannot read install state {path}: {e}",
                stage=STAGE_STATE,
                details={"path": str(path)},
            ) from e

        return self._reconcile(state)

    def _reconcile(self, state: InstallState) -> InstallState:
        missing = [v.version for v in state.versions if not v.path.is_dir()]
        if missing:
            logger.warning("install_records_dropped", versions=missing)
            state.versions = [v for v in state.versions if v.path.is_dir()]

        known = {v.version for v in state.versions}
        stale_plugins = [
            p for p in state.plugins
            if p.runtime_version not in known or not p.path.exists()
        ]
        if stale_plugins:
            logger.warning(
                "plugin_records_dropped",
                plugins=[f"{p.name}@{p.runtime_version}" for p in stale_plugins],
            )
            state.plugins = [p for p in state.plugins if p not in stale_plugins]

        if state.active is not None and state.active not in known:
            logger.warning("active_version_cleared", version=state.active)
            state.active = None
        return state

    def save(self, state: InstallState) -> None:
        try:
            atomic_write_text(
                self.settings.state_file,
                json.dumps(state.to_dict(), indent=2, sort_keys=True) + "\n",
            )
        except OSError as e:
            raise EdgeupError(
                f"Failed to write install state: {e}",
                stage=STAGE_COMMIT,
                details={"path": str(self.settings.state_file)},
            ) from e
        logger.debug("state_saved", active=state.active, versions=len(state.versions))

    @contextmanager
    def staging_area(self) -> Iterator[Path]:
        """A private directory under ``.staging`` removed on exit.

        The directory is marked live by a held lock file so that concurrent
        cleanup skips it.
        """
        staging = make_staging_dir(self.settings.staging_dir, "op")
        marker = FileLock(str(staging) + STAGING_LOCK_SUFFIX, timeout=0)
        marker.acquire()
        try:
            yield staging
        finally:
            remove_tree(staging)
            marker.release()
            Path(marker.lock_file).unlink(missing_ok=True)

    def clean_orphans(self, state: InstallState) -> None:
        """Remove interrupted commits and dead staging leftovers.

        Only version directories carrying the pending marker are removed;
        unrecorded directories edgeup did not create are left alone.
        Must be called with the state lock held.
        """
        known = {v.path.resolve() for v in state.versions}
        versions_dir = self.settings.versions_dir
        if versions_dir.is_dir():
            for entry in versions_dir.iterdir():
                if entry.resolve() in known:
                    continue
                if (entry / PENDING_MARKER).exists():
                    logger.info("orphan_removed", path=str(entry))
                    remove_tree(entry)
                else:
                    logger.debug("unmanaged_version_skipped", path=str(entry))

        staging_dir = self.settings.staging_dir
        if not staging_dir.is_dir():
            return
        for entry in staging_dir.iterdir():
            if entry.name.endswith(STAGING_LOCK_SUFFIX):
                continue
            if entry.name.endswith(TRASH_SUFFIX):
                logger.info("orphan_removed", path=str(entry))
                remove_tree(entry)
                continue

            marker = FileLock(str(entry) + STAGING_LOCK_SUFFIX, timeout=0)
            try:
                marker.acquire()
            except Timeout:
                continue
            try:
                logger.info("orphan_removed", path=str(entry))
                remove_tree(entry)
            finally:
                marker.release()
                Path(marker.lock_file).unlink(missing_ok=True)
