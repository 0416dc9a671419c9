"""Core type definitions"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from packaging.version import Version

OSFamily = Enum("OSFamily", {"LINUX": "linux", "DARWIN": "darwin", "WINDOWS": "windows"})
Arch = Enum("Arch", {"X86_64": "x86_64", "AARCH64": "aarch64"})
Libc = Enum("Libc", {"GNU": "gnu", "MUSL": "musl"})


class ArchiveFormat(Enum):
    """Archive formats published for releases"""
    TAR_GZ = "tar.gz"
    ZIP = "zip"


@dataclass(frozen=True)
class PlatformDescriptor:
    """Operating system, CPU architecture and libc variant of a target"""
    os: OSFamily
    arch: Arch
    libc: Optional[Libc] = None

    def __str__(self) -> str:
        parts = [self.os.value, self.arch.value]
        if self.libc:
            parts.append(self.libc.value)
        return "/".join(parts)


@dataclass(frozen=True)
class VersionTag:
    """A catalog tag with its parsed semantic version"""
    name: str
    version: Version
    ref: Optional[str] = None

    @property
    def is_prerelease(self) -> bool:
        return self.version.is_prerelease

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class AssetUrls:
    """Download location of an artifact and its checksum file"""
    artifact: str
    checksum: str
    filename: str
    format: ArchiveFormat


@dataclass(frozen=True)
class PluginAsset:
    """A plugin artifact published in a release"""
    name: str
    version: str
    token: str
    format: ArchiveFormat


@dataclass(frozen=True)
class InstalledVersion:
    """One installed runtime version"""
    version: str
    path: Path
    installed_at: datetime
    tag: Optional[str] = None

    @property
    def parsed(self) -> Version:
        return Version(self.version)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "path": str(self.path),
            "installed_at": self.installed_at.isoformat(),
            "tag": self.tag,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "InstalledVersion":
        return cls(
            version=data["version"],
            path=Path(data["path"]),
            installed_at=datetime.fromisoformat(data["installed_at"]),
            tag=data.get("tag"),
        )


@dataclass(frozen=True)
class PluginRecord:
    """One plugin installed into a runtime version's plugin directory"""
    name: str
    version: str
    runtime_version: str
    path: Path
    installed_at: datetime

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "runtime_version": self.runtime_version,
            "path": str(self.path),
            "installed_at": self.installed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PluginRecord":
        return cls(
            name=data["name"],
            version=data["version"],
            runtime_version=data["runtime_version"],
            path=Path(data["path"]),
            installed_at=datetime.fromisoformat(data["installed_at"]),
        )


@dataclass
class InstallState:
    """Persisted install records and the active-version pointer"""
    versions: list[InstalledVersion] = field(default_factory=list)
    plugins: list[PluginRecord] = field(default_factory=list)
    active: Optional[str] = None

    def get(self, version: str) -> Optional[InstalledVersion]:
        return next((v for v in self.versions if v.version == version), None)

    def get_plugin(self, name: str, runtime_version: str) -> Optional[PluginRecord]:
        return next(
            (p for p in self.plugins if p.name == name and p.runtime_version == runtime_version),
            None,
        )

    @property
    def active_record(self) -> Optional[InstalledVersion]:
        return self.get(self.active) if self.active else None

    def to_dict(self) -> dict:
        return {
            "active": self.active,
            "versions": [v.to_dict() for v in self.versions],
            "plugins": [p.to_dict() for p in self.plugins],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "InstallState":
        return cls(
            versions=[InstalledVersion.from_dict(v) for v in data.get("versions", [])],
            plugins=[PluginRecord.from_dict(p) for p in data.get("plugins", [])],
            active=data.get("active"),
        )


@dataclass(frozen=True)
class ActivePaths:
    """Directories of the active installation exposed to shells"""
    bin_dir: Path
    lib_dir: Path
    plugin_dir: Path
    library_path_var: Optional[str] = None
