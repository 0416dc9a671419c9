"""Plugin specifiers and plugin record helpers."""
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from edgeup.errors import InvalidConstraint
from edgeup.releases import parse_tag
from edgeup.types import InstalledVersion, PluginRecord, VersionTag

PLUGIN_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")


@dataclass(frozen=True)
class PluginSpec:
    """``name`` or ``name@version`` as given on the command line"""
    name: str
    version: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.name}@{self.version}" if self.version else self.name


def normalize_name(name: str) -> str:
    return name.strip().lower()


def parse_plugin_spec(text: str) -> PluginSpec:
    name, sep, version = text.strip().partition("@")
    name = normalize_name(name)
    if not name or not PLUGIN_NAME.match(name):
        raise InvalidConstraint(text, "expected a plugin name, optionally followed by @version")
    if sep and not version.strip():
        raise InvalidConstraint(text, "empty plugin version")
    if version and parse_tag(version.strip()) is None:
        raise InvalidConstraint(text, "plugin version must be MAJOR.MINOR.PATCH")
    return PluginSpec(name=name, version=version.strip() or None)


def plugin_tag(spec: PluginSpec, runtime: InstalledVersion) -> VersionTag:
    """Release tag a plugin artifact is published under.

    Defaults to the runtime's own release.
    """
    if spec.version:
        tag = parse_tag(spec.version)
    else:
        tag = parse_tag(runtime.tag or runtime.version)
    if tag is None:
        raise InvalidConstraint(str(spec), "cannot derive a release tag")
    return tag


def plugins_for(
    records: Iterable[PluginRecord], runtime_version: Optional[str] = None
) -> List[PluginRecord]:
    selected = [
        r for r in records
        if runtime_version is None or r.runtime_version == runtime_version
    ]
    return sorted(selected, key=lambda r: (r.runtime_version, r.name))
