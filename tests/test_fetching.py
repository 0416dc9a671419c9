import pytest
from unittest.mock import AsyncMock

from edgeup.errors import AssetNotFound, ChecksumMismatch, NetworkError
from edgeup.utils.fetching import (
    compute_file_hash,
    download_checksum,
    download_file,
    fetch_json,
    parse_checksum,
    verify_checksum,
    with_retries,
)

from .conftest import sha256


class RecordingProgress:
    def __init__(self):
        self.started = None
        self.received = 0
        self.finished = False

    def start(self, description, total):
        self.started = (description, total)

    def advance(self, nbytes):
        self.received += nbytes

    def finish(self):
        self.finished = True


@pytest.mark.asyncio
async def test_download_file_hashes_while_streaming(releases, tmp_path):
    """Test download returns the digest and reports progress"""
    content = b"x" * 200_000
    releases.publish("0.14.0", "pkg.tar.gz", content)
    dest = tmp_path / "pkg.tar.gz"
    progress = RecordingProgress()

    digest = await download_file(f"{releases.base_url}/0.14.0/pkg.tar.gz", dest, progress)

    assert digest == sha256(content)
    assert dest.read_bytes() == content
    assert compute_file_hash(dest) == digest
    assert progress.started == ("pkg.tar.gz", len(content))
    assert progress.received == len(content)
    assert progress.finished


@pytest.mark.asyncio
async def test_download_missing_asset(releases, tmp_path):
    dest = tmp_path / "missing.tar.gz"
    with pytest.raises(AssetNotFound) as exc:
        await download_file(f"{releases.base_url}/0.14.0/missing.tar.gz", dest)

    assert exc.value.status == 404
    assert not exc.value.retryable
    assert isinstance(exc.value, NetworkError)
    assert not dest.exists()


@pytest.mark.asyncio
@pytest.mark.parametrize("status,retryable", [(403, False), (410, False), (503, True)])
async def test_download_status_mapping(releases, tmp_path, status, retryable):
    releases.publish("0.14.0", "pkg.tar.gz", b"data")
    releases.fail("0.14.0", "pkg.tar.gz", status)

    with pytest.raises(NetworkError) as exc:
        await download_file(f"{releases.base_url}/0.14.0/pkg.tar.gz", tmp_path / "pkg.tar.gz")

    assert exc.value.status == status
    assert exc.value.retryable is retryable
    assert isinstance(exc.value, AssetNotFound) is (status == 410)


@pytest.mark.asyncio
async def test_download_connection_refused_is_retryable(tmp_path):
    dest = tmp_path / "pkg.tar.gz"
    with pytest.raises(NetworkError) as exc:
        await download_file("http://127.0.0.1:9/pkg.tar.gz", dest, connect_timeout=1, request_timeout=2)
    assert exc.value.retryable
    assert not dest.exists()


@pytest.mark.asyncio
async def test_download_accepts_any_success_status(releases, tmp_path):
    releases.publish("0.14.0", "pkg.tar.gz", b"data")
    releases.fail("0.14.0", "pkg.tar.gz", 203)

    digest = await download_file(f"{releases.base_url}/0.14.0/pkg.tar.gz", tmp_path / "pkg.tar.gz")
    assert digest == sha256(b"data")


@pytest.mark.asyncio
async def test_download_checksum_rejects_undecodable_file(releases):
    url = f"{releases.base_url}/0.14.0/pkg.tar.gz.sha256"
    releases.files["/releases/0.14.0/pkg.tar.gz.sha256"] = b"\xff\xfe\x00garbage"

    with pytest.raises(NetworkError) as exc:
        await download_checksum(url, "pkg.tar.gz")
    assert exc.value.url == url
    assert exc.value.stage == "verify"
    assert not exc.value.retryable


@pytest.mark.asyncio
async def test_download_checksum(releases):
    releases.publish("0.14.0", "pkg.tar.gz", b"data")
    expected = await download_checksum(
        f"{releases.base_url}/0.14.0/pkg.tar.gz.sha256", "pkg.tar.gz"
    )
    assert expected == sha256(b"data")


def test_parse_checksum_formats():
    digest = "AB" * 32
    assert parse_checksum(f"{digest}\n", "pkg.zip", "url") == digest.lower()
    assert parse_checksum(f"{'0' * 64}  other.zip\n{digest} *pkg.zip\n", "pkg.zip", "url") == digest.lower()
    with pytest.raises(NetworkError):
        parse_checksum(f"{digest}  other.zip\n", "pkg.zip", "url")


def test_parse_checksum_prefers_named_entry():
    digest = "ab" * 32
    assert parse_checksum(f"{'0' * 64}\n{digest}  pkg.zip\n", "pkg.zip", "url") == digest
    with pytest.raises(NetworkError):
        parse_checksum(f"{'0' * 64}\n{'1' * 64}\n", "pkg.zip", "url")
    with pytest.raises(NetworkError):
        parse_checksum("not-a-digest  pkg.zip\n", "pkg.zip", "url")


@pytest.mark.asyncio
async def test_fetch_json(releases):
    releases.publish_release("0.14.0", ["pkg-plugin-wasi_nn-0.14.0-x86_64-linux-gnu.tar.gz"])
    data = await fetch_json(f"{releases.api_url}/0.14.0")
    assert data["assets"] == [{"name": "pkg-plugin-wasi_nn-0.14.0-x86_64-linux-gnu.tar.gz"}]

    releases.files["/api/broken"] = b"{not json"
    with pytest.raises(NetworkError) as exc:
        await fetch_json(f"{releases.api_url}/broken")
    assert not exc.value.retryable


def test_verify_checksum_is_case_insensitive():
    digest = sha256(b"data")
    verify_checksum(digest, digest.upper(), "url")
    with pytest.raises(ChecksumMismatch) as exc:
        verify_checksum(digest, "0" * 64, "url")
    assert exc.value.stage == "verify"
    assert exc.value.details["expected"] == "0" * 64


@pytest.mark.asyncio
async def test_with_retries_only_retries_transient_errors():
    transient = NetworkError("boom", url="u", status=503, retryable=True)
    factory = AsyncMock(side_effect=[transient, transient, "ok"])
    assert await with_retries(factory, attempts=3, backoff=0) == "ok"
    assert factory.await_count == 3

    permanent = AssetNotFound("u")
    factory = AsyncMock(side_effect=permanent)
    with pytest.raises(AssetNotFound):
        await with_retries(factory, attempts=3, backoff=0)
    assert factory.await_count == 1

    factory = AsyncMock(side_effect=transient)
    with pytest.raises(NetworkError):
        await with_retries(factory, attempts=2, backoff=0)
    assert factory.await_count == 2
