import pytest
from unittest.mock import patch

from edgeup.errors import UnsupportedPlatform
from edgeup.platforms import (
    archive_format,
    detect,
    from_artifact_token,
    from_names,
    library_path_var,
    to_artifact_token,
    _supported_tokens,
)
from edgeup.types import Arch, ArchiveFormat, Libc, OSFamily, PlatformDescriptor


@pytest.mark.parametrize("descriptor,token", [
    (PlatformDescriptor(OSFamily.LINUX, Arch.X86_64, Libc.GNU), "x86_64-linux-gnu"),
    (PlatformDescriptor(OSFamily.LINUX, Arch.AARCH64, Libc.MUSL), "aarch64-linux-musl"),
    (PlatformDescriptor(OSFamily.DARWIN, Arch.AARCH64), "aarch64-darwin"),
    (PlatformDescriptor(OSFamily.WINDOWS, Arch.X86_64), "x86_64-windows"),
])
def test_artifact_token(descriptor, token):
    """Test descriptors map to artifact tokens and back"""
    assert to_artifact_token(descriptor) == token
    assert from_artifact_token(token) == descriptor


def test_token_table_is_bijective():
    tokens = _supported_tokens()
    assert len(tokens) == 7
    assert len(set(tokens.values())) == 7
    for token, descriptor in tokens.items():
        assert to_artifact_token(descriptor) == token


@pytest.mark.parametrize("descriptor", [
    PlatformDescriptor(OSFamily.WINDOWS, Arch.AARCH64),
    PlatformDescriptor(OSFamily.LINUX, Arch.X86_64),
    PlatformDescriptor(OSFamily.DARWIN, Arch.X86_64, Libc.GNU),
])
def test_unsupported_descriptors(descriptor):
    with pytest.raises(UnsupportedPlatform) as exc:
        to_artifact_token(descriptor)
    assert exc.value.stage == "platform"


def test_unknown_token():
    with pytest.raises(UnsupportedPlatform):
        from_artifact_token("riscv64-linux-gnu")


def test_archive_format_and_library_var():
    linux = PlatformDescriptor(OSFamily.LINUX, Arch.X86_64, Libc.GNU)
    darwin = PlatformDescriptor(OSFamily.DARWIN, Arch.AARCH64)
    windows = PlatformDescriptor(OSFamily.WINDOWS, Arch.X86_64)

    assert archive_format(linux) == ArchiveFormat.TAR_GZ
    assert archive_format(windows) == ArchiveFormat.ZIP
    assert library_path_var(linux) == "LD_LIBRARY_PATH"
    assert library_path_var(darwin) == "DYLD_LIBRARY_PATH"
    assert library_path_var(windows) is None


def test_from_names_aliases():
    assert from_names("macos", "arm64") == PlatformDescriptor(OSFamily.DARWIN, Arch.AARCH64)
    assert from_names("Linux", "amd64", "glibc") == PlatformDescriptor(
        OSFamily.LINUX, Arch.X86_64, Libc.GNU
    )
    with pytest.raises(UnsupportedPlatform):
        from_names("freebsd", "x86_64")
    with pytest.raises(UnsupportedPlatform):
        from_names("linux", "x86_64", "uclibc")


def test_detect_linux_glibc():
    with patch("edgeup.platforms._host_names", return_value=("linux", "x86_64")), \
         patch("edgeup.platforms.detect_libc", return_value=Libc.GNU):
        assert detect() == PlatformDescriptor(OSFamily.LINUX, Arch.X86_64, Libc.GNU)


def test_detect_ambiguous_libc_requires_override():
    """Test an undetectable libc fails unless overridden"""
    with patch("edgeup.platforms._host_names", return_value=("linux", "aarch64")), \
         patch("edgeup.platforms.detect_libc", return_value=None):
        with pytest.raises(UnsupportedPlatform) as exc:
            detect()
        assert "--libc" in str(exc.value)

        assert detect(libc_override="musl") == PlatformDescriptor(
            OSFamily.LINUX, Arch.AARCH64, Libc.MUSL
        )


def test_detect_unknown_arch():
    with patch("edgeup.platforms._host_names", return_value=("darwin", "ppc64")):
        with pytest.raises(UnsupportedPlatform):
            detect()


def test_detect_overrides_for_foreign_target():
    with patch("edgeup.platforms._host_names", return_value=("darwin", "arm64")):
        assert detect(os_override="windows", arch_override="x86_64") == PlatformDescriptor(
            OSFamily.WINDOWS, Arch.X86_64
        )
        with pytest.raises(UnsupportedPlatform):
            detect(os_override="linux")


def test_detect_libc_musl_loader():
    from edgeup.platforms import detect_libc

    with patch("edgeup.platforms.platform.libc_ver", return_value=("", "")), \
         patch("edgeup.platforms.glob.glob", return_value=["/lib/ld-musl-x86_64.so.1"]):
        assert detect_libc() == Libc.MUSL

    with patch("edgeup.platforms.platform.libc_ver", return_value=("glibc", "2.39")), \
         patch("edgeup.platforms.glob.glob", return_value=[]):
        assert detect_libc() == Libc.GNU

    with patch("edgeup.platforms.platform.libc_ver", return_value=("", "")), \
         patch("edgeup.platforms.glob.glob", return_value=[]):
        assert detect_libc() is None
