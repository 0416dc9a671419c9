import asyncio
import hashlib
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import aiohttp

from edgeup import __version__
from edgeup.errors import STAGE_VERIFY, AssetNotFound, ChecksumMismatch, NetworkError
from edgeup.logging import get_logger
from edgeup.progress import NullProgress, ProgressSink

logger = get_logger(__name__)

T = TypeVar("T")

CHUNK_SIZE = 64 * 1024
NOT_FOUND_STATUSES = {404, 410}
HEX_DIGEST = re.compile(r"^[0-9a-fA-F]{64}$")
USER_AGENT = f"edgeup/{__version__}"


def _client_timeout(connect_timeout: float, request_timeout: float) -> aiohttp.ClientTimeout:
    return aiohttp.ClientTimeout(total=request_timeout, sock_connect=connect_timeout)


def _check_status(url: str, status: int) -> None:
    """Map an HTTP status to the fetch error taxonomy."""
    if status in NOT_FOUND_STATUSES:
        raise AssetNotFound(url, status=status)
    if 400 <= status < 500:
        raise NetworkError(
            f"Request for {url} failed with status {status}",
            url=url, status=status, retryable=False,
        )
    if status >= 500:
        raise NetworkError(
            f"Server error {status} for {url}",
            url=url, status=status, retryable=True,
        )
    if not 200 <= status < 300:
        raise NetworkError(
            f"Unexpected status {status} for {url}",
            url=url, status=status, retryable=False,
        )


async def download_file(
    url: str,
    dest: Path,
    progress: Optional[ProgressSink] = None,
    connect_timeout: float = 15.0,
    request_timeout: float = 90.0,
) -> str:
    """Stream ``url`` into ``dest`` and return the SHA-256 hex digest of the bytes.

    A partially written ``dest`` is removed on failure.
    """
    progress = progress or NullProgress()
    digest = hashlib.sha256()
    received = 0
    logger.debug("download_started", url=url, dest=str(dest))

    try:
        async with aiohttp.ClientSession(
            timeout=_client_timeout(connect_timeout, request_timeout)
        ) as session:
            async with session.get(url) as response:
                _check_status(url, response.status)
                progress.start(dest.name, response.content_length)
                with open(dest, "wb") as f:
                    async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                        f.write(chunk)
                        digest.update(chunk)
                        received += len(chunk)
                        progress.advance(len(chunk))
    except NetworkError:
        dest.unlink(missing_ok=True)
        raise
    except asyncio.TimeoutError as e:
        dest.unlink(missing_ok=True)
        raise NetworkError(f"Timed out downloading {url}", url=url, retryable=True) from e
    except aiohttp.ClientError as e:
        dest.unlink(missing_ok=True)
        raise NetworkError(f"Failed to download {url}: {e}", url=url, retryable=True) from e
    except BaseException:
        dest.unlink(missing_ok=True)
        raise
    finally:
        progress.finish()

    logger.info("download_complete", url=url, dest=str(dest), bytes=received)
    return digest.hexdigest()


def parse_checksum(text: str, filename: str, url: str) -> str:
    """Pick the digest for ``filename`` out of a checksum file.

    Accepts ``<hex>  <filename>`` lines (``*`` binary marker allowed) or a
    single bare ``<hex>`` line. An entry naming ``filename`` always wins.
    """
    entries = []
    for line in text.splitlines():
        parts = line.split()
        if not parts or not HEX_DIGEST.match(parts[0]):
            continue
        digest = parts[0].lower()
        name = Path(parts[1].lstrip("*")).name if len(parts) > 1 else None
        if name == filename:
            return digest
        entries.append((digest, name))

    if len(entries) == 1 and entries[0][1] is None:
        return entries[0][0]
    raise NetworkError(
        f"No checksum for {filename} in {url}", url=url, retryable=False, stage=STAGE_VERIFY
    )


async def download_checksum(
    url: str,
    filename: str,
    connect_timeout: float = 15.0,
    request_timeout: float = 90.0,
) -> str:
    """Fetch the published checksum of ``filename``."""
    try:
        async with aiohttp.ClientSession(
            timeout=_client_timeout(connect_timeout, request_timeout)
        ) as session:
            async with session.get(url) as response:
                _check_status(url, response.status)
                body = await response.read()
    except asyncio.TimeoutError as e:
        raise NetworkError(f"Timed out fetching {url}", url=url, retryable=True) from e
    except aiohttp.ClientError as e:
        raise NetworkError(f"Failed to fetch {url}: {e}", url=url, retryable=True) from e

    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise NetworkError(
            f"Malformed checksum file {url}", url=url, retryable=False, stage=STAGE_VERIFY
        ) from e
    return parse_checksum(text, filename, url)


async def fetch_json(
    url: str,
    connect_timeout: float = 15.0,
    request_timeout: float = 90.0,
) -> Any:
    """GET ``url`` and decode its JSON body."""
    headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
    try:
        async with aiohttp.ClientSession(
            timeout=_client_timeout(connect_timeout, request_timeout), headers=headers
        ) as session:
            async with session.get(url) as response:
                _check_status(url, response.status)
                return await response.json(content_type=None)
    except asyncio.TimeoutError as e:
        raise NetworkError(f"Timed out fetching {url}", url=url, retryable=True) from e
    except aiohttp.ClientError as e:
        raise NetworkError(f"Failed to fetch {url}: {e}", url=url, retryable=True) from e
    except ValueError as e:
        raise NetworkError(f"Malformed JSON from {url}: {e}", url=url, retryable=False) from e


def compute_file_hash(path: Path) -> str:
    """SHA-256 of a file already on disk."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()


def verify_checksum(actual: str, expected: str, url: str) -> None:
    if actual.strip().lower() != expected.strip().lower():
        logger.error("checksum_mismatch", url=url, expected=expected, actual=actual)
        raise ChecksumMismatch(url, expected, actual)
    logger.debug("checksum_verified", url=url)


async def with_retries(
    factory: Callable[[], Awaitable[T]],
    attempts: int = 1,
    backoff: float = 0.5,
) -> T:
    """Await ``factory()`` up to ``attempts`` times.

    Only retryable NetworkErrors are retried; the delay doubles each attempt.
    """
    attempts = max(1, attempts)
    delay = backoff
    for attempt in range(1, attempts):
        try:
            return await factory()
        except NetworkError as e:
            if not e.retryable:
                raise
            logger.warning("fetch_retry", url=e.url, attempt=attempt, delay=delay, error=str(e))
            await asyncio.sleep(delay)
            delay *= 2
    return await factory()
