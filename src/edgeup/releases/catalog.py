"""Release catalog: tag listing, constraint resolution and asset URLs."""
import asyncio
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from edgeup.config import Settings
from edgeup.errors import (
    STAGE_RESOLVE,
    InvalidConstraint,
    NetworkError,
    NoMatchingVersion,
)
from edgeup.logging import get_logger
from edgeup.constants import (
    ARTIFACT_TEMPLATE,
    CHECKSUM_SUFFIX,
    LATEST,
    PLUGIN_ARTIFACT_TEMPLATE,
    RELEASE_API_TEMPLATE,
    URL_TEMPLATE,
)
from edgeup.types import ArchiveFormat, AssetUrls, PluginAsset, VersionTag
from edgeup.utils.fetching import fetch_json
from edgeup.utils.fs import async_subprocess_run

logger = get_logger(__name__)

TAG_REF_PREFIX = "refs/tags/"
SEMVER_TAG = re.compile(
    r"^v?(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<pre>[0-9A-Za-z]+(?:\.[0-9A-Za-z]+)*))?$"
)
CARET = re.compile(r"^\^\s*(?P<base>\S+)$")
TILDE = re.compile(r"^~(?!=)\s*(?P<base>\S+)$")
WILDCARD = re.compile(r"^v?(?P<prefix>\d+(?:\.\d+)?)\.[*xX]$")
COMPARATOR_GAP = re.compile(r"(?<=[\d*])\s+(?=[<>=!~])")


@dataclass(frozen=True)
class VersionConstraint:
    """A parsed exact version, range expression or ``latest``"""
    raw: str
    specifier: SpecifierSet
    exact: Optional[Version] = None

    @property
    def names_prerelease(self) -> bool:
        return bool(self.specifier.prereleases)

    def matches(self, version: Version, include_prereleases: bool = False) -> bool:
        allow_pre = include_prereleases or self.names_prerelease
        return self.specifier.contains(version, prereleases=allow_pre)

    def __str__(self) -> str:
        return self.raw


def parse_tag(name: str, ref: Optional[str] = None) -> Optional[VersionTag]:
    """Parse a catalog tag; returns None for tags that are not semantic versions."""
    if not SEMVER_TAG.match(name):
        return None
    try:
        return VersionTag(name=name, version=Version(name), ref=ref)
    except InvalidVersion:
        return None


def parse_tag_listing(listing: str) -> List[VersionTag]:
    """Parse ``git ls-remote --tags`` output into version tags.

    Malformed or non-version tags are skipped.
    """
    tags = []
    skipped = []
    for line in listing.splitlines():
        line = line.strip()
        if not line:
            continue
        parts = line.split()
        if len(parts) != 2 or not parts[1].startswith(TAG_REF_PREFIX):
            skipped.append(line)
            continue
        ref, refname = parts
        name = refname[len(TAG_REF_PREFIX):]
        if name.endswith("^{}"):
            # Peeled entry of an annotated tag, already listed once
            continue
        tag = parse_tag(name, ref)
        if tag is None:
            skipped.append(name)
            continue
        tags.append(tag)

    if skipped:
        logger.debug("catalog_tags_skipped", count=len(skipped), tags=skipped[:20])
    return tags


async def list_tags(settings: Settings) -> List[VersionTag]:
    """List all release tags published in the upstream catalog."""
    url = settings.catalog_url
    logger.debug("catalog_list_tags", url=url)
    try:
        returncode, stdout, stderr = await async_subprocess_run(
            "git", "ls-remote", "--tags", "--refs", url,
            timeout=settings.request_timeout,
        )
    except FileNotFoundError as e:
        raise NetworkError(
            "git executable not found; it is required to query the release catalog",
            url=url, retryable=False, stage=STAGE_RESOLVE,
        ) from e
    except asyncio.TimeoutError as e:
        raise NetworkError(
            f"Timed out listing release tags from {url}",
            url=url, retryable=True, stage=STAGE_RESOLVE,
        ) from e

    if returncode != 0:
        logger.error("catalog_list_failed", url=url, returncode=returncode, stderr=stderr.strip())
        raise NetworkError(
            f"Failed to list release tags from {url}: {stderr.strip()}",
            url=url, retryable=True, stage=STAGE_RESOLVE,
        )

    tags = parse_tag_listing(stdout)
    logger.info("catalog_tags_listed", url=url, count=len(tags))
    return tags


def _semver_base(text: str, raw: str) -> Version:
    if not SEMVER_TAG.match(text):
        raise InvalidConstraint(raw, "expected MAJOR.MINOR.PATCH")
    return Version(text)


def parse_constraint(text: str) -> VersionConstraint:
    """Parse a user supplied constraint.

    Accepted forms: ``latest``, an exact version (``0.14.0``, ``v0.14.1-rc.1``),
    comparators (``>=0.13,<0.15`` or ``>=0.13 <0.15``), caret and tilde ranges
    (``^0.14.0``, ``~0.14.1``) and wildcards (``0.14.*``).
    """
    raw = text.strip()
    if not raw or raw.lower() == LATEST or raw == "*":
        return VersionConstraint(raw=raw or LATEST, specifier=SpecifierSet(""))

    if SEMVER_TAG.match(raw):
        version = Version(raw)
        return VersionConstraint(raw=raw, specifier=SpecifierSet(f"=={version}"), exact=version)

    if match := CARET.match(raw):
        base = _semver_base(match.group("base"), raw)
        if base.major > 0:
            upper = f"{base.major + 1}.0.0"
        elif base.minor > 0:
            upper = f"0.{base.minor + 1}.0"
        else:
            upper = f"0.0.{base.micro + 1}"
        return VersionConstraint(raw=raw, specifier=SpecifierSet(f">={base},<{upper}"))

    if match := TILDE.match(raw):
        base = _semver_base(match.group("base"), raw)
        upper = f"{base.major}.{base.minor + 1}.0"
        return VersionConstraint(raw=raw, specifier=SpecifierSet(f">={base},<{upper}"))

    if match := WILDCARD.match(raw):
        return VersionConstraint(raw=raw, specifier=SpecifierSet(f"=={match.group('prefix')}.*"))

    normalized = COMPARATOR_GAP.sub(",", raw)
    try:
        specifier = SpecifierSet(normalized)
    except InvalidSpecifier as e:
        raise InvalidConstraint(raw, str(e)) from e
    return VersionConstraint(raw=raw, specifier=specifier)


def resolve(
    constraint: Union[str, VersionConstraint],
    tags: Iterable[VersionTag],
    include_prereleases: bool = False,
) -> VersionTag:
    """Select the highest tag satisfying ``constraint``."""
    if isinstance(constraint, str):
        constraint = parse_constraint(constraint)

    candidates = list(tags)
    matching = [t for t in candidates if constraint.matches(t.version, include_prereleases)]
    if not matching:
        raise NoMatchingVersion(str(constraint), candidates=len(candidates))

    selected = max(matching, key=lambda t: (t.version, t.name))
    logger.debug(
        "constraint_resolved",
        constraint=str(constraint),
        selected=selected.name,
        matching=len(matching),
    )
    return selected


def _urls(settings: Settings, tag: VersionTag, filename: str, fmt: ArchiveFormat) -> AssetUrls:
    artifact = URL_TEMPLATE.format(
        base=settings.release_base_url.rstrip("/"),
        tag=tag.name,
        filename=filename,
    )
    return AssetUrls(
        artifact=artifact,
        checksum=f"{artifact}{CHECKSUM_SUFFIX}",
        filename=filename,
        format=fmt,
    )


def asset_urls(
    settings: Settings, tag: VersionTag, token: str, fmt: ArchiveFormat
) -> AssetUrls:
    """Build the runtime artifact URL and its checksum URL (existence is not checked)."""
    filename = ARTIFACT_TEMPLATE.format(
        package=settings.package_name,
        version=tag.name.lstrip("v"),
        token=token,
        ext=fmt.value,
    )
    return _urls(settings, tag, filename, fmt)


def plugin_asset_urls(
    settings: Settings, name: str, tag: VersionTag, token: str, fmt: ArchiveFormat
) -> AssetUrls:
    """Build a plugin artifact URL and its checksum URL."""
    filename = PLUGIN_ARTIFACT_TEMPLATE.format(
        package=settings.package_name,
        name=name,
        version=tag.name.lstrip("v"),
        token=token,
        ext=fmt.value,
    )
    return _urls(settings, tag, filename, fmt)


async def list_release_assets(settings: Settings, tag: VersionTag) -> List[str]:
    """Names of the artifacts attached to the release of ``tag``."""
    url = RELEASE_API_TEMPLATE.format(api=settings.release_api_url.rstrip("/"), tag=tag.name)
    data = await fetch_json(
        url,
        connect_timeout=settings.connect_timeout,
        request_timeout=settings.request_timeout,
    )
    assets = data.get("assets") if isinstance(data, dict) else None
    if not isinstance(assets, list):
        raise NetworkError(
            f"Unexpected release metadata from {url}",
            url=url, retryable=False, stage=STAGE_RESOLVE,
        )

    names = [a["name"] for a in assets if isinstance(a, dict) and isinstance(a.get("name"), str)]
    logger.info("release_assets_listed", url=url, count=len(names))
    return names


def parse_plugin_assets(names: Iterable[str], package: str, tag: VersionTag) -> List[PluginAsset]:
    """Pick the plugin artifacts of ``tag`` out of release asset names.

    Names follow ``<package>-plugin-<name>-<version>-<token>.<ext>``; anything
    else, including checksum files, is ignored.
    """
    version = tag.name.lstrip("v")
    prefix = f"{package}-plugin-"
    separator = f"-{version}-"
    assets = []
    for filename in names:
        if not filename.startswith(prefix):
            continue
        name, sep, rest = filename[len(prefix):].partition(separator)
        if not sep or not name:
            continue
        fmt = next((f for f in ArchiveFormat if rest.endswith(f".{f.value}")), None)
        if fmt is None:
            continue
        token = rest[:-len(fmt.value) - 1]
        if token:
            assets.append(PluginAsset(name=name.lower(), version=version, token=token, format=fmt))
    return assets
