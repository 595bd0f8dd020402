"""Tests for Outpost config loading."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from outpost.config import (
    DEFAULT_CONFIG_YAML,
    GatewayConfig,
    OutpostConfig,
    RuntimeConfig,
    load_config,
)
from outpost.models import ProviderTag


@pytest.fixture
def outpost_dir(tmp_path: Path) -> Path:
    """Create a minimal .outpost/ directory for testing."""
    od = tmp_path / ".outpost"
    od.mkdir()

    config = {
        "environment": "production",
        "server": {"port": 9000, "data_dir": str(tmp_path / "data")},
        "control_planes": {
            "orgo": {"base_url": "https://orgo.example/api", "ram": 8},
        },
        "runtime": {"version": "2026.1.24"},
        "gateway": {"port": 18800, "probe_attempts": 3},
        "terminal": {"idle_timeout": 600},
    }
    (od / "config.yaml").write_text(yaml.dump(config))
    return od


class TestLoadConfig:
    def test_load(self, outpost_dir: Path, monkeypatch):
        for var in ("OUTPOST_ENV", "OUTPOST_DATA_DIR", "OUTPOST_CONTROL_PLANE_URL"):
            monkeypatch.delenv(var, raising=False)

        config = load_config(outpost_dir)

        assert config.server.port == 9000
        assert config.control_planes[ProviderTag.ORGO].base_url == "https://orgo.example/api"
        assert config.control_planes[ProviderTag.ORGO].ram == 8
        assert config.runtime.version == "2026.1.24"
        assert config.gateway.port == 18800
        assert config.terminal.idle_timeout == 600
        assert not config.is_development

    def test_missing_config(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope")

    def test_empty_file_gives_defaults(self, tmp_path: Path, monkeypatch):
        for var in ("OUTPOST_ENV", "OUTPOST_DATA_DIR", "OUTPOST_CONTROL_PLANE_URL"):
            monkeypatch.delenv(var, raising=False)
        (tmp_path / "config.yaml").write_text("")
        config = load_config(tmp_path)
        assert config == OutpostConfig()

    def test_env_overrides(self, outpost_dir: Path, monkeypatch, tmp_path: Path):
        monkeypatch.setenv("OUTPOST_ENV", "development")
        monkeypatch.setenv("OUTPOST_DATA_DIR", str(tmp_path / "elsewhere"))
        monkeypatch.setenv("OUTPOST_CONTROL_PLANE_URL", "http://localhost:9999/api")

        config = load_config(outpost_dir)

        assert config.is_development
        assert config.db_path == str(tmp_path / "elsewhere" / "outpost.db")
        assert config.control_planes[ProviderTag.ORGO].base_url == "http://localhost:9999/api"

    def test_default_template_parses(self, tmp_path: Path, monkeypatch):
        monkeypatch.delenv("OUTPOST_ENV", raising=False)
        (tmp_path / "config.yaml").write_text(DEFAULT_CONFIG_YAML)
        config = load_config(tmp_path)
        assert ProviderTag.ORGO in config.control_planes
        aws = config.control_planes[ProviderTag.AWS]
        assert aws.api_key_env == "OUTPOST_AWS_CREDENTIALS"
        assert aws.home_dir == "/home/ubuntu"
        assert config.gateway.port == 18789
        assert config.gateway.workspace == "~/clawd"


class TestConfigModels:
    def test_control_plane_key_read_at_call_time(self, monkeypatch):
        plane = OutpostConfig().control_planes[ProviderTag.ORGO]
        monkeypatch.delenv("ORGO_API_KEY", raising=False)
        assert plane.api_key is None
        monkeypatch.setenv("ORGO_API_KEY", "from-env")
        assert plane.api_key == "from-env"

    def test_gateway_paths(self):
        gateway = OutpostConfig().gateway
        assert gateway.config_path == "~/.clawdbot/clawdbot.json"
        assert gateway.env_path == "~/.clawdbot/env"

    def test_workspace_resolved_per_login_home(self):
        gateway = OutpostConfig().gateway
        assert gateway.workspace_path("/home/user") == "/home/user/clawd"
        assert gateway.workspace_path("/home/ubuntu/") == "/home/ubuntu/clawd"
        assert GatewayConfig(workspace="/srv/agent").workspace_path("/home/user") == "/srv/agent"

    def test_default_planes(self):
        planes = OutpostConfig().control_planes
        assert set(planes) == {ProviderTag.ORGO, ProviderTag.AWS}
        assert planes[ProviderTag.AWS].ready_attempts > planes[ProviderTag.ORGO].ready_attempts

    def test_sha256_validated(self):
        assert RuntimeConfig(sha256="AB" * 32).sha256 == "ab" * 32
        with pytest.raises(ValidationError):
            RuntimeConfig(sha256="not-a-digest")

    def test_unknown_provider_tag_rejected(self):
        with pytest.raises(ValidationError):
            OutpostConfig(control_planes={"nope": {}})
