"""Install, activate and remove runtime versions and their plugins."""
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Iterator, List, Optional, TypeVar

from edgeup.config import Settings
from edgeup.errors import (
    STAGE_COMMIT,
    EdgeupError,
    FilesystemError,
    InvalidConstraint,
    NoActiveVersion,
    NoMatchingVersion,
    PluginNotInstalled,
    VersionNotInstalled,
    log_error,
)
from edgeup.installs.plugins import (
    normalize_name,
    parse_plugin_spec,
    plugin_tag,
    plugins_for,
)
from edgeup.installs.state import PENDING_MARKER, StateStore, state_lock
from edgeup.logging import get_logger
from edgeup.platforms import (
    archive_format,
    detect,
    host_os,
    os_library_path_var,
    to_artifact_token,
)
from edgeup.progress import NullProgress, ProgressSink
from edgeup.releases import (
    asset_urls,
    list_release_assets,
    list_tags,
    parse_constraint,
    parse_plugin_assets,
    parse_tag,
    plugin_asset_urls,
    resolve,
)
from edgeup.releases.catalog import VersionConstraint
from edgeup.shells import clear_env_scripts, write_env_scripts
from edgeup.types import (
    ActivePaths,
    AssetUrls,
    InstallState,
    InstalledVersion,
    PlatformDescriptor,
    PluginAsset,
    PluginRecord,
    VersionTag,
)
from edgeup.utils.archives import extract_archive
from edgeup.utils.fetching import (
    download_checksum,
    download_file,
    verify_checksum,
    with_retries,
)
from edgeup.utils.fs import make_staging_dir, move_aside, remove_tree

logger = get_logger(__name__)

T = TypeVar("T")

RETRY_BACKOFF = 1.0  # seconds


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _find_installed(state: InstallState, constraint: VersionConstraint) -> Optional[InstalledVersion]:
    if constraint.exact is None:
        return None
    return next((v for v in state.versions if v.parsed == constraint.exact), None)


class InstallManager:
    """Drives the resolve, fetch, verify, extract and commit pipeline.

    ``platform`` overrides host detection; detection happens lazily so that
    operations needing no artifact never touch it.
    """

    def __init__(
        self,
        settings: Settings,
        progress: Optional[ProgressSink] = None,
        platform: Optional[PlatformDescriptor] = None,
    ):
        self.settings = settings
        self.progress = progress or NullProgress()
        self.platform = platform
        self.store = StateStore(settings)

    def _descriptor(self) -> PlatformDescriptor:
        if self.platform is None:
            self.platform = detect()
        return self.platform

    async def _fetch(self, factory: Callable[[], Awaitable[T]]) -> T:
        return await with_retries(
            factory, attempts=self.settings.fetch_retries + 1, backoff=RETRY_BACKOFF
        )

    async def _download_verified(self, urls: AssetUrls, directory: Path, verify: bool) -> Path:
        """Download an artifact into ``directory`` and check it against its checksum."""
        timeouts = {
            "connect_timeout": self.settings.connect_timeout,
            "request_timeout": self.settings.request_timeout,
        }
        expected = None
        if verify:
            expected = await self._fetch(
                lambda: download_checksum(urls.checksum, urls.filename, **timeouts)
            )
        else:
            logger.warning("checksum_verification_skipped", url=urls.artifact)

        archive = directory / urls.filename
        actual = await self._fetch(
            lambda: download_file(urls.artifact, archive, self.progress, **timeouts)
        )
        if expected is not None:
            verify_checksum(actual, expected, urls.artifact)
        return archive

    async def _materialize(self, urls: AssetUrls, staging: Path, verify: bool) -> Path:
        """Fetch, verify and extract an artifact; returns the extracted tree."""
        if self.settings.tmpdir:
            download_dir = make_staging_dir(self.settings.tmpdir, "download")
        else:
            download_dir = staging
        try:
            archive = await self._download_verified(urls, download_dir, verify)
            return extract_archive(archive, staging / "tree", urls.format)
        finally:
            if download_dir != staging:
                remove_tree(download_dir)

    def active_paths(self, record: InstalledVersion) -> ActivePaths:
        os_family = self.platform.os if self.platform else host_os()
        return ActivePaths(
            bin_dir=record.path / "bin",
            lib_dir=record.path / "lib",
            plugin_dir=self.settings.plugin_dir(record.version),
            library_path_var=os_library_path_var(os_family),
        )

    def _refresh_shell(self, state: InstallState) -> None:
        record = state.active_record
        try:
            if record is None:
                clear_env_scripts(self.settings.root)
            else:
                write_env_scripts(
                    self.settings.root, self.active_paths(record), self.settings.plugin_path_var
                )
        except OSError as e:
            raise FilesystemError("write shell environment under", self.settings.root, e) from e

    async def _activate_existing(self, record: InstalledVersion) -> InstalledVersion:
        async with state_lock(self.settings):
            state = self.store.load()
            current = state.get(record.version)
            if current is None:
                raise VersionNotInstalled(record.version)
            if state.active == current.version:
                return current
            previous = state.active
            state.active = current.version
            self.store.save(state)

        logger.info("version_activated", version=current.version, previous=previous)
        self._refresh_shell(state)
        return current

    async def install(
        self,
        constraint: str,
        activate: bool = False,
        force: bool = False,
        verify: bool = True,
        include_prereleases: bool = False,
    ) -> InstalledVersion:
        """Resolve ``constraint`` and install the matching runtime version.

        The version is activated when ``activate`` is set or when no version
        is active yet.
        """
        parsed = parse_constraint(constraint)
        state = self.store.load()

        existing = _find_installed(state, parsed)
        if existing is not None and not force:
            logger.info("version_already_installed", version=existing.version)
            if activate or state.active is None:
                return await self._activate_existing(existing)
            return existing

        descriptor = self._descriptor()
        token = to_artifact_token(descriptor)
        fmt = archive_format(descriptor)

        tags = await self._fetch(lambda: list_tags(self.settings))
        tag = resolve(parsed, tags, include_prereleases)
        version = tag.name.lstrip("v")

        existing = state.get(version)
        if existing is not None and not force:
            logger.info("version_already_installed", version=version, constraint=str(parsed))
            if activate or state.active is None:
                return await self._activate_existing(existing)
            return existing

        urls = asset_urls(self.settings, tag, token, fmt)
        logger.info("install_started", version=version, platform=str(descriptor), url=urls.artifact)

        try:
            with self.store.staging_area() as staging:
                tree = await self._materialize(urls, staging, verify)
                return await self._commit_install(version, tag, tree, activate, force)
        except Exception as e:
            log_error(e, {"version": version, "url": urls.artifact}, logger)
            raise

    async def _commit_install(
        self,
        version: str,
        tag: VersionTag,
        tree: Path,
        activate: bool,
        force: bool,
    ) -> InstalledVersion:
        async with state_lock(self.settings):
            state = self.store.load()
            self.store.clean_orphans(state)
            previous = state.active

            existing = state.get(version)
            if existing is not None and not force:
                # Installed concurrently by another process
                logger.info("version_already_installed", version=version)
                record = existing
                if state.active != version and (activate or state.active is None):
                    state.active = version
                    self.store.save(state)
            else:
                dest = self.settings.version_dir(version)
                if existing is None and dest.exists() and not force:
                    raise EdgeupError(
                        f"{dest} exists but is not managed by edgeup; use --force to replace it",
                        stage=STAGE_COMMIT,
                        details={"version": version, "path": str(dest)},
                    )
                record = InstalledVersion(version=version, path=dest, installed_at=_now(), tag=tag.name)
                with self._replacing(dest, tree, f"install {version} into"):
                    state.versions = [v for v in state.versions if v.version != version] + [record]
                    # A replaced tree takes its plugin directory with it
                    state.plugins = [p for p in state.plugins if p.runtime_version != version]
                    if activate or state.active is None:
                        state.active = version
                    self.store.save(state)

        logger.info("version_installed", version=version, path=str(record.path), active=state.active)
        if state.active != previous:
            self._refresh_shell(state)
        return record

    @contextmanager
    def _replacing(self, dest: Path, tree: Path, action: str) -> Iterator[None]:
        """Swap ``tree`` into ``dest`` around a state commit.

        The previous ``dest`` is moved aside and restored if the body fails;
        the new tree carries the pending marker until the body completes.
        """
        displaced = None
        renamed = False
        try:
            (tree / PENDING_MARKER).touch()
            dest.parent.mkdir(parents=True, exist_ok=True)
            if dest.exists():
                displaced = move_aside(dest, self.settings.staging_dir)
            os.rename(tree, dest)
            renamed = True
            yield
        except BaseException as e:
            if renamed:
                remove_tree(dest)
            if displaced is not None:
                os.replace(displaced, dest)
            if isinstance(e, OSError):
                raise FilesystemError(action, dest, e) from e
            raise

        (dest / PENDING_MARKER).unlink(missing_ok=True)
        if displaced is not None:
            remove_tree(displaced)

    def _resolve_installed(self, state: InstallState, constraint: str) -> InstalledVersion:
        """The newest installed version matching ``constraint``."""
        parsed = parse_constraint(constraint)
        candidates = [VersionTag(name=v.version, version=v.parsed) for v in state.versions]
        try:
            selected = resolve(parsed, candidates)
        except NoMatchingVersion as e:
            raise VersionNotInstalled(constraint) from e
        return state.get(selected.name)

    async def use(self, constraint: str) -> InstalledVersion:
        """Point the active version at an installed version matching ``constraint``."""
        record = self._resolve_installed(self.store.load(), constraint)
        return await self._activate_existing(record)

    async def remove(self, version: str) -> InstalledVersion:
        """Remove an installed version, its plugins and, if active, the active pointer."""
        parsed = parse_constraint(version)
        async with state_lock(self.settings):
            state = self.store.load()
            record = _find_installed(state, parsed)
            if record is None:
                raise VersionNotInstalled(version)

            try:
                trash = move_aside(record.path, self.settings.staging_dir)
            except OSError as e:
                raise FilesystemError("remove", record.path, e) from e
            previous = state.active
            state.versions = [v for v in state.versions if v.version != record.version]
            state.plugins = [p for p in state.plugins if p.runtime_version != record.version]
            if state.active == record.version:
                state.active = None
            try:
                self.store.save(state)
            except BaseException:
                os.replace(trash, record.path)
                raise
            remove_tree(trash)

        logger.info("version_removed", version=record.version, was_active=previous == record.version)
        if state.active != previous:
            self._refresh_shell(state)
        return record

    def list_installed(self) -> List[InstalledVersion]:
        state = self.store.load()
        return sorted(state.versions, key=lambda v: v.parsed, reverse=True)

    def active(self) -> Optional[InstalledVersion]:
        return self.store.load().active_record

    async def list_remote(self, include_prereleases: bool = False) -> List[VersionTag]:
        """Catalog versions, newest first."""
        tags = await self._fetch(lambda: list_tags(self.settings))
        if not include_prereleases:
            tags = [t for t in tags if not t.is_prerelease]
        return sorted(tags, key=lambda t: (t.version, t.name), reverse=True)

    def _target_runtime(self, state: InstallState, runtime: Optional[str]) -> InstalledVersion:
        """The installed runtime plugins apply to (default: the active version)."""
        if runtime is None:
            record = state.active_record
            if record is None:
                raise NoActiveVersion()
            return record
        return self._resolve_installed(state, runtime)

    async def install_plugin(
        self,
        spec: str,
        runtime: Optional[str] = None,
        force: bool = False,
        verify: bool = True,
    ) -> PluginRecord:
        """Install a plugin (``name`` or ``name@version``) into an installed runtime.

        ``runtime`` selects the runtime; the active version is used when omitted.
        """
        plugin = parse_plugin_spec(spec)
        state = self.store.load()
        target = self._target_runtime(state, runtime)

        tag = plugin_tag(plugin, target)
        plugin_version = tag.name.lstrip("v")
        existing = state.get_plugin(plugin.name, target.version)
        if existing is not None and existing.version == plugin_version and not force:
            logger.info("plugin_already_installed", plugin=plugin.name, runtime=target.version)
            return existing

        descriptor = self._descriptor()
        urls = plugin_asset_urls(
            self.settings, plugin.name, tag, to_artifact_token(descriptor), archive_format(descriptor)
        )
        logger.info("plugin_install_started", plugin=plugin.name, version=plugin_version, url=urls.artifact)

        try:
            with self.store.staging_area() as staging:
                tree = await self._materialize(urls, staging, verify)
                return await self._commit_plugin(plugin.name, plugin_version, target.version, tree)
        except Exception as e:
            log_error(e, {"plugin": str(plugin), "url": urls.artifact}, logger)
            raise

    async def _commit_plugin(
        self, name: str, plugin_version: str, runtime_version: str, tree: Path
    ) -> PluginRecord:
        async with state_lock(self.settings):
            state = self.store.load()
            self.store.clean_orphans(state)
            if state.get(runtime_version) is None:
                raise VersionNotInstalled(runtime_version)

            dest = self.settings.plugin_dir(runtime_version) / name
            record = PluginRecord(
                name=name,
                version=plugin_version,
                runtime_version=runtime_version,
                path=dest,
                installed_at=_now(),
            )
            with self._replacing(dest, tree, f"install plugin {name} into"):
                state.plugins = [
                    p for p in state.plugins
                    if not (p.name == name and p.runtime_version == runtime_version)
                ] + [record]
                self.store.save(state)

        logger.info("plugin_installed", plugin=name, version=plugin_version, runtime=runtime_version)
        return record

    async def remove_plugin(self, name: str, runtime: Optional[str] = None) -> PluginRecord:
        """Remove a plugin from ``runtime`` (default: the active version)."""
        name = parse_plugin_spec(name).name
        async with state_lock(self.settings):
            state = self.store.load()
            runtime_version = runtime or state.active
            if runtime_version is None:
                raise NoActiveVersion()

            record = state.get_plugin(name, runtime_version)
            if record is None:
                raise PluginNotInstalled(name, runtime_version)

            try:
                trash = move_aside(record.path, self.settings.staging_dir) if record.path.exists() else None
            except OSError as e:
                raise FilesystemError("remove", record.path, e) from e
            state.plugins = [p for p in state.plugins if p != record]
            try:
                self.store.save(state)
            except BaseException:
                if trash is not None:
                    os.replace(trash, record.path)
                raise
            if trash is not None:
                remove_tree(trash)

        logger.info("plugin_removed", plugin=name, runtime=runtime_version)
        return record

    def list_plugins(self, runtime: Optional[str] = None) -> List[PluginRecord]:
        return plugins_for(self.store.load().plugins, runtime)

    def _release_tag(self, runtime: Optional[str]) -> VersionTag:
        state = self.store.load()
        if runtime is None:
            record = self._target_runtime(state, None)
        else:
            record = state.get(runtime.lstrip("v"))
        text = (record.tag or record.version) if record is not None else runtime
        tag = parse_tag(text)
        if tag is None:
            raise InvalidConstraint(text, "expected MAJOR.MINOR.PATCH")
        return tag

    async def list_available_plugins(
        self,
        runtime: Optional[str] = None,
        name: Optional[str] = None,
        all_platforms: bool = False,
    ) -> List[PluginAsset]:
        """Plugins published in the release of ``runtime`` (default: the active version).

        Only artifacts for this platform are listed unless ``all_platforms`` is set.
        The runtime does not need to be installed.
        """
        tag = self._release_tag(runtime)
        names = await self._fetch(lambda: list_release_assets(self.settings, tag))
        assets = parse_plugin_assets(names, self.settings.package_name, tag)

        if name:
            wanted = normalize_name(name)
            assets = [a for a in assets if a.name == wanted]
        if not all_platforms:
            token = to_artifact_token(self._descriptor())
            assets = [a for a in assets if a.token == token]

        logger.debug("plugins_available", runtime=tag.name, count=len(assets))
        return sorted(assets, key=lambda a: (a.name, a.token))
