from pathlib import Path

import pytest

from edgeup.config import Settings, default_root
from edgeup.constants import CATALOG_URL, RELEASE_API_URL


def test_defaults(monkeypatch):
    for name in ("EDGEUP_HOME", "EDGEUP_TMPDIR", "EDGEUP_CATALOG_URL", "EDGEUP_RELEASE_BASE_URL",
                 "EDGEUP_RELEASE_API_URL"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.load()
    assert settings.root == default_root()
    assert settings.catalog_url == CATALOG_URL
    assert settings.release_api_url == RELEASE_API_URL
    assert settings.connect_timeout == 15.0
    assert settings.request_timeout == 90.0
    assert settings.fetch_retries == 0


def test_environment_then_overrides(monkeypatch, tmp_path):
    """Test explicit overrides beat EDGEUP_* variables"""
    monkeypatch.setenv("EDGEUP_HOME", str(tmp_path / "env-home"))
    monkeypatch.setenv("EDGEUP_RELEASE_BASE_URL", "http://mirror/releases")
    monkeypatch.setenv("EDGEUP_RELEASE_API_URL", "http://mirror/api")

    settings = Settings.load(request_timeout=5.0, tmpdir=None)
    assert settings.root == tmp_path / "env-home"
    assert settings.release_base_url == "http://mirror/releases"
    assert settings.release_api_url == "http://mirror/api"
    assert settings.request_timeout == 5.0

    settings = Settings.load(root=tmp_path / "cli-home")
    assert settings.root == tmp_path / "cli-home"


def test_unknown_setting():
    with pytest.raises(ValueError):
        Settings.load(colour="blue")


def test_layout(tmp_path):
    settings = Settings(root=tmp_path)
    assert settings.version_dir("0.14.0") == tmp_path / "versions" / "0.14.0"
    assert settings.plugin_dir("0.14.0") == tmp_path / "versions" / "0.14.0" / "plugin"
    assert settings.state_file == tmp_path / "state.json"
    assert settings.lock_file == tmp_path / ".lock"
    assert settings.staging_dir.parent == settings.versions_dir.parent
    assert settings.with_overrides(tmpdir=Path("/scratch"), root=None).root == tmp_path
