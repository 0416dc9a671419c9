"""Platform detection and mapping."""
import glob
import platform
from typing import Dict, NamedTuple, Optional, Tuple

from edgeup.errors import UnsupportedPlatform
from edgeup.logging import get_logger
from edgeup.types import Arch, ArchiveFormat, Libc, OSFamily, PlatformDescriptor

logger = get_logger(__name__)


class PlatformMapping(NamedTuple):
    """Platform-specific values."""
    token_template: str
    archive_format: ArchiveFormat
    library_path_var: Optional[str]
    requires_libc: bool


# Aliases accepted from the host and from user overrides
OS_ALIASES = {
    "linux": OSFamily.LINUX,
    "darwin": OSFamily.DARWIN,
    "macos": OSFamily.DARWIN,
    "windows": OSFamily.WINDOWS,
}

ARCH_ALIASES = {
    "x86_64": Arch.X86_64,
    "amd64": Arch.X86_64,
    "x64": Arch.X86_64,
    "aarch64": Arch.AARCH64,
    "arm64": Arch.AARCH64,
}

LIBC_ALIASES = {
    "gnu": Libc.GNU,
    "glibc": Libc.GNU,
    "musl": Libc.MUSL,
}

PLATFORM_MAPPINGS = {
    OSFamily.LINUX: PlatformMapping(
        token_template="{arch}-linux-{libc}",
        archive_format=ArchiveFormat.TAR_GZ,
        library_path_var="LD_LIBRARY_PATH",
        requires_libc=True,
    ),
    OSFamily.DARWIN: PlatformMapping(
        token_template="{arch}-darwin",
        archive_format=ArchiveFormat.TAR_GZ,
        library_path_var="DYLD_LIBRARY_PATH",
        requires_libc=False,
    ),
    OSFamily.WINDOWS: PlatformMapping(
        token_template="{arch}-windows",
        archive_format=ArchiveFormat.ZIP,
        library_path_var=None,
        requires_libc=False,
    ),
}

SUPPORTED_ARCHES = {
    OSFamily.LINUX: {Arch.X86_64, Arch.AARCH64},
    OSFamily.DARWIN: {Arch.X86_64, Arch.AARCH64},
    OSFamily.WINDOWS: {Arch.X86_64},
}

MUSL_LOADER_GLOB = "/lib/ld-musl-*.so.1"


def _supported_tokens() -> Dict[str, PlatformDescriptor]:
    tokens = {}
    for os_family, arches in SUPPORTED_ARCHES.items():
        mapping = PLATFORM_MAPPINGS[os_family]
        libcs = list(Libc) if mapping.requires_libc else [None]
        for arch in arches:
            for libc in libcs:
                descriptor = PlatformDescriptor(os=os_family, arch=arch, libc=libc)
                tokens[to_artifact_token(descriptor)] = descriptor
    return tokens


def validate(descriptor: PlatformDescriptor) -> PlatformDescriptor:
    """Fail with UnsupportedPlatform unless the descriptor maps to an artifact."""
    libc = descriptor.libc.value if descriptor.libc else None
    mapping = PLATFORM_MAPPINGS.get(descriptor.os)
    if mapping is None or descriptor.arch not in SUPPORTED_ARCHES[descriptor.os]:
        raise UnsupportedPlatform(descriptor.os.value, descriptor.arch.value, libc)
    if mapping.requires_libc and descriptor.libc is None:
        raise UnsupportedPlatform(
            descriptor.os.value, descriptor.arch.value, libc,
            reason="libc variant is required, pass --libc gnu or --libc musl",
        )
    if not mapping.requires_libc and descriptor.libc is not None:
        raise UnsupportedPlatform(
            descriptor.os.value, descriptor.arch.value, libc,
            reason=f"libc variant does not apply to {descriptor.os.value}",
        )
    return descriptor


def to_artifact_token(descriptor: PlatformDescriptor) -> str:
    """Render the token used in release artifact filenames."""
    validate(descriptor)
    mapping = PLATFORM_MAPPINGS[descriptor.os]
    return mapping.token_template.format(
        arch=descriptor.arch.value,
        libc=descriptor.libc.value if descriptor.libc else "",
    )


def from_artifact_token(token: str) -> PlatformDescriptor:
    """Inverse of to_artifact_token."""
    descriptor = _supported_tokens().get(token)
    if descriptor is None:
        raise UnsupportedPlatform("unknown", "unknown", reason=f"unknown artifact token '{token}'")
    return descriptor


def archive_format(descriptor: PlatformDescriptor) -> ArchiveFormat:
    return PLATFORM_MAPPINGS[validate(descriptor).os].archive_format


def library_path_var(descriptor: PlatformDescriptor) -> Optional[str]:
    return PLATFORM_MAPPINGS[validate(descriptor).os].library_path_var


def os_library_path_var(os_family: OSFamily) -> Optional[str]:
    return PLATFORM_MAPPINGS[os_family].library_path_var


def from_names(
    os_name: str, arch: str, libc: Optional[str] = None
) -> PlatformDescriptor:
    """Build a descriptor from user supplied names, accepting common aliases."""
    os_family = OS_ALIASES.get(os_name.lower())
    arch_value = ARCH_ALIASES.get(arch.lower())
    libc_value = LIBC_ALIASES.get(libc.lower()) if libc else None
    if os_family is None or arch_value is None or (libc and libc_value is None):
        raise UnsupportedPlatform(os_name, arch, libc)
    return validate(PlatformDescriptor(os=os_family, arch=arch_value, libc=libc_value))


def detect_libc() -> Optional[Libc]:
    """Distinguish glibc from musl on the running Linux host.

    Returns None when the answer is ambiguous.
    """
    libc_name, libc_version = platform.libc_ver()
    has_musl_loader = bool(glob.glob(MUSL_LOADER_GLOB))
    is_glibc = libc_name == "glibc"

    logger.debug(
        "libc_detection",
        libc_name=libc_name,
        libc_version=libc_version,
        musl_loader=has_musl_loader,
    )

    if is_glibc and not has_musl_loader:
        return Libc.GNU
    if has_musl_loader and not is_glibc:
        return Libc.MUSL
    return None


def _host_names() -> Tuple[str, str]:
    return platform.system().lower(), platform.machine().lower()


def host_os() -> OSFamily:
    """OS family of the running host, without libc or arch validation."""
    system, machine = _host_names()
    os_family = OS_ALIASES.get(system)
    if os_family is None:
        raise UnsupportedPlatform(system, machine)
    return os_family


def detect(
    os_override: Optional[str] = None,
    arch_override: Optional[str] = None,
    libc_override: Optional[str] = None,
) -> PlatformDescriptor:
    """Get current platform information, honoring explicit overrides."""
    system, machine = _host_names()
    os_name = os_override or system
    arch_name = arch_override or machine

    os_family = OS_ALIASES.get(os_name.lower())
    if os_family is None:
        raise UnsupportedPlatform(os_name, arch_name, libc_override)

    libc = libc_override
    if libc is None and os_family == OSFamily.LINUX:
        if system != "linux":
            raise UnsupportedPlatform(
                os_name, arch_name, None,
                reason="cannot detect libc for a foreign host, pass --libc",
            )
        detected = detect_libc()
        if detected is None:
            raise UnsupportedPlatform(
                os_name, arch_name, None,
                reason="libc variant is ambiguous, pass --libc gnu or --libc musl",
            )
        libc = detected.value

    descriptor = from_names(os_name, arch_name, libc)
    logger.debug("platform_detected", platform=str(descriptor))
    return descriptor
