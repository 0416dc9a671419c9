import hashlib
import io
import json
import tarfile
import zipfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from packaging.version import Version

from edgeup.config import Settings
from edgeup.types import Arch, Libc, OSFamily, PlatformDescriptor, VersionTag

LINUX_GNU = PlatformDescriptor(os=OSFamily.LINUX, arch=Arch.X86_64, libc=Libc.GNU)

RUNTIME_FILES = {
    "bin/wasmedge": b"#!/bin/sh\necho wasmedge\n",
    "lib64/libwasmedge.so.0": b"\x7fELF fake",
    "include/wasmedge/wasmedge.h": b"/* header */\n",
}


def make_tag(name: str) -> VersionTag:
    return VersionTag(name=name, version=Version(name))


def make_tar_gz(files: Dict[str, bytes], root_folder: Optional[str] = None) -> bytes:
    """Build a tar.gz archive in memory, optionally wrapped in a root folder."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, content in files.items():
            arcname = f"{root_folder}/{name}" if root_folder else name
            info = tarfile.TarInfo(arcname)
            info.size = len(content)
            info.mode = 0o755 if name.startswith("bin/") else 0o644
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def make_zip(files: Dict[str, bytes], root_folder: Optional[str] = None) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, content in files.items():
            arcname = f"{root_folder}/{name}" if root_folder else name
            zf.writestr(arcname, content)
    return buffer.getvalue()


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class FakeReleases:
    """Serves release artifacts and checksum files over local HTTP."""

    def __init__(self):
        self.files: Dict[str, bytes] = {}
        self.statuses: Dict[str, int] = {}
        self.requests: List[str] = []
        self.base_url = ""
        self.api_url = ""

    def publish(self, tag: str, filename: str, content: bytes, checksum: Optional[str] = None) -> None:
        self.files[f"/releases/{tag}/{filename}"] = content
        digest = checksum if checksum is not None else sha256(content)
        self.files[f"/releases/{tag}/{filename}.sha256"] = f"{digest}  {filename}\n".encode()

    def fail(self, tag: str, filename: str, status: int) -> None:
        self.statuses[f"/releases/{tag}/{filename}"] = status

    def publish_release(self, tag: str, asset_names: List[str]) -> None:
        """Release metadata as served by the GitHub releases API."""
        body = {"tag_name": tag, "assets": [{"name": name} for name in asset_names]}
        self.files[f"/api/{tag}"] = json.dumps(body).encode()

    async def handle(self, request: web.Request) -> web.Response:
        self.requests.append(request.path)
        if request.path in self.statuses:
            return web.Response(status=self.statuses[request.path], body=self.files.get(request.path))
        content = self.files.get(request.path)
        if content is None:
            return web.Response(status=404)
        return web.Response(body=content)


@pytest_asyncio.fixture
async def releases():
    """Local release server; ``releases.base_url`` points at its download root."""
    fake = FakeReleases()
    app = web.Application()
    app.router.add_get("/{tail:.*}", fake.handle)
    server = TestServer(app)
    await server.start_server()
    fake.base_url = str(server.make_url("/releases"))
    fake.api_url = str(server.make_url("/api"))
    try:
        yield fake
    finally:
        await server.close()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        root=tmp_path / "root",
        catalog_url="https://example.invalid/catalog.git",
        release_base_url="http://127.0.0.1:9/releases",
        release_api_url="http://127.0.0.1:9/api",
        package_name="pkg",
        connect_timeout=5.0,
        request_timeout=10.0,
        lock_attempts=2,
        lock_backoff=0.01,
    )


@pytest.fixture
def server_settings(settings: Settings, releases: FakeReleases) -> Settings:
    return settings.with_overrides(release_base_url=releases.base_url, release_api_url=releases.api_url)


@pytest.fixture
def runtime_archive() -> bytes:
    return make_tar_gz(RUNTIME_FILES, root_folder="WasmEdge-0.14.0-Linux")
