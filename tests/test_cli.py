import asyncio
import errno

import pytest
from click.testing import CliRunner
from unittest.mock import AsyncMock, patch

from edgeup.cli import cli
from edgeup.errors import AssetNotFound

from .conftest import RUNTIME_FILES, make_tag, make_tar_gz

TAGS = [make_tag("0.13.0"), make_tag("0.14.0"), make_tag("0.15.0-rc1")]


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.setenv("EDGEUP_HOME", str(tmp_path / "root"))
    monkeypatch.delenv("EDGEUP_LOG_LEVEL", raising=False)
    return CliRunner()


def test_list_without_installs(runner):
    result = runner.invoke(cli, ["--quiet", "list"])
    assert result.exit_code == 0
    assert "no versions installed" in result.output


def test_list_remote(runner):
    with patch("edgeup.installs.manager.list_tags", AsyncMock(return_value=TAGS)):
        result = runner.invoke(cli, ["--quiet", "list", "--remote"])
        everything = runner.invoke(cli, ["--quiet", "list", "--remote", "--all"])

    assert result.exit_code == 0
    assert result.output.splitlines() == ["0.14.0 (latest)", "0.13.0"]
    assert "0.15.0-rc1" in everything.output


def test_use_uninstalled_version_fails(runner):
    result = runner.invoke(cli, ["--quiet", "use", "0.14.0"])
    assert result.exit_code == 1
    assert "error [state]: Version 0.14.0 is not installed" in result.output


def test_remove_uninstalled_version_fails(runner):
    result = runner.invoke(cli, ["--quiet", "remove", "0.14.0"])
    assert result.exit_code == 1
    assert "error [state]" in result.output


def test_plugin_install_without_active_version(runner):
    result = runner.invoke(cli, ["--quiet", "plugin", "install", "wasi_nn"])
    assert result.exit_code == 1
    assert "No active version" in result.output


def test_install_reports_fetch_error(runner):
    """Test errors print their stage and offending URL"""
    url = "https://example.invalid/0.14.0/pkg.tar.gz"
    with patch("edgeup.installs.manager.InstallManager.install",
               AsyncMock(side_effect=AssetNotFound(url))):
        result = runner.invoke(cli, ["--quiet", "install", "0.14.0", "--os", "linux",
                                     "--arch", "x86_64", "--libc", "gnu"])

    assert result.exit_code == 1
    assert "error [fetch]: Asset not found" in result.output
    assert f"url: {url}" in result.output


def test_install_rejects_unsupported_platform(runner):
    result = runner.invoke(cli, ["--quiet", "install", "0.14.0", "--os", "windows", "--arch", "arm64"])
    assert result.exit_code == 1
    assert "error [platform]" in result.output


def test_unusable_root_reports_error(runner, tmp_path):
    """Test filesystem failures print an error line instead of a traceback"""
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    result = runner.invoke(cli, ["--quiet", "remove", "0.14.0", "--path", str(blocker / "root")])

    assert result.exit_code == 1
    assert "error [state]: Failed to create install root" in result.output
    assert isinstance(result.exception, SystemExit)


def test_os_error_is_reported_with_path(runner):
    denied = PermissionError(errno.EACCES, "Permission denied", "/opt/wasmedge/env")
    with patch("edgeup.installs.manager.InstallManager.install", AsyncMock(side_effect=denied)):
        result = runner.invoke(cli, ["--quiet", "install", "0.14.0", "--os", "linux",
                                     "--arch", "x86_64", "--libc", "gnu"])

    assert result.exit_code == 1
    assert "error [commit]" in result.output
    assert "path: /opt/wasmedge/env" in result.output


def test_plugin_list_remote(runner):
    names = [
        "WasmEdge-plugin-wasi_nn-ggml-0.14.0-x86_64-linux-gnu.tar.gz",
        "WasmEdge-plugin-wasi_nn-ggml-0.14.0-aarch64-darwin.tar.gz",
    ]
    args = ["--quiet", "plugin", "list", "--remote", "--runtime", "0.14.0",
            "--os", "linux", "--arch", "x86_64", "--libc", "gnu"]
    with patch("edgeup.installs.manager.list_release_assets", AsyncMock(return_value=names)):
        result = runner.invoke(cli, args)
        everything = runner.invoke(cli, [*args, "--all"])
        missing = runner.invoke(cli, [*args, "--name", "wasi_crypto"])

    assert result.exit_code == 0, result.output
    assert result.output.splitlines() == ["wasi_nn-ggml@0.14.0 (x86_64-linux-gnu)"]
    assert len(everything.output.splitlines()) == 2
    assert "no plugins published" in missing.output


def test_plugin_install_into_missing_runtime(runner):
    result = runner.invoke(cli, ["--quiet", "plugin", "install", "wasi_nn", "--runtime", "0.14.0"])
    assert result.exit_code == 1
    assert "error [state]: Version 0.14.0 is not installed" in result.output


@pytest.mark.asyncio
async def test_install_and_use(runner, releases):
    """Test the commands against a local release server"""
    for version in ("0.13.0", "0.14.0"):
        data = make_tar_gz(RUNTIME_FILES, root_folder=f"WasmEdge-{version}-Linux")
        releases.publish(version, f"WasmEdge-{version}-x86_64-linux-gnu.tar.gz", data)
    args = ["--os", "linux", "--arch", "x86_64", "--libc", "gnu"]
    env = {"EDGEUP_RELEASE_BASE_URL": releases.base_url}

    with patch("edgeup.installs.manager.list_tags", AsyncMock(return_value=TAGS)):
        first = await asyncio.to_thread(runner.invoke, cli, ["--quiet", "install", "0.13.0", *args], env=env)
        second = await asyncio.to_thread(runner.invoke, cli, ["--quiet", "install", "latest", *args], env=env)

    assert first.exit_code == 0, first.output
    assert "0.13.0 installed at" in first.output
    assert "(active)" in first.output
    assert second.exit_code == 0, second.output
    assert "(active)" not in second.output

    listing = runner.invoke(cli, ["--quiet", "list"])
    assert listing.output.splitlines() == ["  0.14.0", "* 0.13.0"]

    switched = runner.invoke(cli, ["--quiet", "use", "0.14.0"])
    assert switched.exit_code == 0
    assert runner.invoke(cli, ["--quiet", "list"]).output.splitlines() == ["* 0.14.0", "  0.13.0"]
