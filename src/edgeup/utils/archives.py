import os
import tarfile
import tempfile
import zipfile
import zlib
from pathlib import Path
from typing import Optional

from edgeup.errors import ExtractionFailed
from edgeup.logging import get_logger
from edgeup.types import ArchiveFormat
from edgeup.utils.fs import remove_tree

logger = get_logger(__name__)

SUFFIX_FORMATS = {
    ".tar.gz": ArchiveFormat.TAR_GZ,
    ".tgz": ArchiveFormat.TAR_GZ,
    ".zip": ArchiveFormat.ZIP,
}

# Entries packers add next to the real content
IGNORED_ENTRIES = {"__MACOSX", ".DS_Store"}

EXTRACTION_ERRORS = (
    tarfile.TarError,
    zipfile.BadZipFile,
    zlib.error,
    EOFError,
    OSError,
    ValueError,
)


def detect_format(path: Path, hint: Optional[ArchiveFormat] = None) -> ArchiveFormat:
    """Pick the archive format from an explicit hint or the file suffix."""
    if hint is not None:
        return hint
    name = path.name.lower()
    for suffix, fmt in SUFFIX_FORMATS.items():
        if name.endswith(suffix):
            return fmt
    raise ExtractionFailed(str(path), f"unsupported archive format: {path.name}")


def _extract_tar(archive: Path, staging: Path) -> None:
    with tarfile.open(archive, "r:gz") as tar:
        for member in tar:
            # The data filter rejects absolute paths, traversal and links
            # pointing outside the destination
            tar.extract(member, staging, filter="data")


def _extract_zip(archive: Path, staging: Path) -> None:
    root = staging.resolve()
    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            target = (staging / info.filename).resolve()
            if target != root and root not in target.parents:
                raise ValueError(f"entry escapes destination: {info.filename}")
            extracted = zf.extract(info, staging)
            mode = (info.external_attr >> 16) & 0o777
            if mode and not info.is_dir():
                os.chmod(extracted, mode)


def _content_root(staging: Path) -> Path:
    """Strip a single wrapping folder, e.g. ``WasmEdge-0.14.0-Linux/``."""
    entries = [p for p in staging.iterdir() if p.name not in IGNORED_ENTRIES]
    if len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
        return entries[0]
    return staging


def _normalize_layout(root: Path) -> None:
    lib64 = root / "lib64"
    lib = root / "lib"
    if lib64.is_dir() and not lib.exists():
        lib64.rename(lib)


def extract_archive(
    archive: Path, dest: Path, fmt: Optional[ArchiveFormat] = None
) -> Path:
    """Extract ``archive`` so that ``dest`` directly holds bin/, lib/, include/.

    Extraction happens in a sibling staging directory; ``dest`` only appears
    through the final rename. On failure nothing is left behind.
    """
    fmt = detect_format(archive, fmt)
    if dest.exists():
        raise ExtractionFailed(str(archive), "destination already exists", str(dest))

    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(dir=dest.parent, prefix=f".{dest.name}-extract-"))
    logger.debug("extract_archive", archive=str(archive), format=fmt.value, staging=str(staging))

    try:
        if fmt == ArchiveFormat.TAR_GZ:
            _extract_tar(archive, staging)
        else:
            _extract_zip(archive, staging)

        root = _content_root(staging)
        _normalize_layout(root)
        os.rename(root, dest)
    except EXTRACTION_ERRORS as e:
        remove_tree(staging)
        logger.error("extraction_failed", archive=str(archive), error=str(e))
        raise ExtractionFailed(str(archive), str(e), str(dest)) from e
    except BaseException:
        remove_tree(staging)
        raise

    remove_tree(staging)
    logger.info("archive_extracted", archive=str(archive), extracted_to=str(dest))
    return dest
