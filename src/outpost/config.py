"""Configuration loading for Outpost.

Reads .outpost/config.yaml. Secrets (encryption keys, API keys) are never
read from the file; only the names of the environment variables that hold
them are configurable.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

from outpost.models import ProviderTag

logger = logging.getLogger(__name__)


# ── Config Models ────────────────────────────────────────────────────────────


class ControlPlaneConfig(BaseModel):
    """A sandbox control-plane endpoint (one per provider tag)."""

    base_url: str = "https://www.orgo.ai/api"
    api_key_env: str | None = Field(
        default="ORGO_API_KEY",
        description="Env var holding a service-wide key, used when a user stored none",
    )
    request_timeout: float = 60.0
    command_timeout: float = 300.0
    default_project: str = "outpost"
    ram: int = 4
    cpu: int = 2
    ready_attempts: int = 30
    ready_interval: float = 2.0
    home_dir: str = Field(
        default="/home/user", description="Home directory of the sandbox login user"
    )

    # EC2 only
    region: str = "us-east-1"
    instance_type: str | None = Field(
        default=None, description="Overrides the type picked from ram/cpu"
    )
    image_id: str | None = Field(default=None, description="AMI; latest Ubuntu 22.04 when unset")
    volume_size: int = 30
    security_group: str = "outpost-sandbox-ssh"
    ssh_username: str = "ubuntu"

    @property
    def api_key(self) -> str | None:
        """Read the fallback API key from the environment at call time."""
        if not self.api_key_env:
            return None
        return os.environ.get(self.api_key_env)


def _default_aws_plane() -> ControlPlaneConfig:
    return ControlPlaneConfig(
        base_url="",
        api_key_env="OUTPOST_AWS_CREDENTIALS",
        home_dir="/home/ubuntu",
        ready_attempts=60,
        ready_interval=10.0,
    )


class RuntimeConfig(BaseModel):
    """The agent runtime package installed on each sandbox."""

    package: str = "clawdbot"
    version: str = "latest"
    binary: str = "clawdbot"
    node_version: str = "22"
    tarball_url: str | None = None
    sha256: str | None = None
    install_log: str = "/tmp/outpost-runtime-install.log"
    install_poll_attempts: int = 60
    install_poll_interval: float = 10.0

    @field_validator("sha256")
    @classmethod
    def _validate_sha256(cls, v: str | None) -> str | None:
        if v is not None and (len(v) != 64 or any(c not in "0123456789abcdef" for c in v.lower())):
            raise ValueError(f"runtime.sha256 must be a 64-char hex digest, got {v!r}")
        return v.lower() if v else v


class GatewayConfig(BaseModel):
    """The long-running gateway process and the files it reads on a sandbox."""

    port: int = 18789
    workspace: str = "~/clawd"
    config_dir: str = "~/.clawdbot"
    config_file: str = "clawdbot.json"
    env_file: str = "env"
    startup_script: str = "/tmp/start-clawdbot.sh"
    log_file: str = "/tmp/clawdbot.log"
    process_pattern: str = "clawdbot gateway"
    kill_grace: float = 2.0
    startup_wait: float = 8.0
    probe_attempts: int = 5
    probe_interval: float = 5.0
    heartbeat_minutes: int = 30
    log_tail_lines: int = 50

    @property
    def config_path(self) -> str:
        return f"{self.config_dir}/{self.config_file}"

    @property
    def env_path(self) -> str:
        return f"{self.config_dir}/{self.env_file}"

    def workspace_path(self, home_dir: str) -> str:
        """Absolute workspace path, resolving a leading ``~`` against ``home_dir``."""
        if self.workspace == "~" or self.workspace.startswith("~/"):
            return home_dir.rstrip("/") + self.workspace[1:]
        return self.workspace


class TerminalConfig(BaseModel):
    idle_timeout: float = 1800.0
    sweep_interval: float = 60.0
    connect_timeout: float = 30.0
    default_cols: int = 80
    default_rows: int = 24
    output_buffer_chunks: int = 2000


class SecretsConfig(BaseModel):
    """Names of the env vars holding the two encryption keys."""

    key_env: str = "ENCRYPTION_KEY"
    user_data_key_env: str = "USER_DATA_ENCRYPTION_KEY"


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    data_dir: str = ".outpost-data"


class OutpostConfig(BaseModel):
    """Root of .outpost/config.yaml."""

    environment: str = "production"
    server: ServerConfig = Field(default_factory=ServerConfig)
    control_planes: dict[ProviderTag, ControlPlaneConfig] = Field(
        default_factory=lambda: {
            ProviderTag.ORGO: ControlPlaneConfig(),
            ProviderTag.AWS: _default_aws_plane(),
        }
    )
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in ("development", "dev", "test")

    @property
    def db_path(self) -> str:
        return str(Path(self.server.data_dir) / "outpost.db")


# ── Loading ──────────────────────────────────────────────────────────────────


DEFAULT_CONFIG_YAML = """\
environment: production

server:
  host: 0.0.0.0
  port: 8000
  data_dir: .outpost-data

control_planes:
  orgo:
    base_url: https://www.orgo.ai/api
    api_key_env: ORGO_API_KEY
    default_project: outpost
  aws:
    api_key_env: OUTPOST_AWS_CREDENTIALS   # ACCESS_KEY_ID:SECRET_ACCESS_KEY
    region: us-east-1
    home_dir: /home/ubuntu
    ready_attempts: 60
    ready_interval: 10

runtime:
  package: clawdbot
  version: latest
  node_version: "22"

gateway:
  port: 18789
  workspace: ~/clawd

terminal:
  idle_timeout: 1800
"""


def load_config(config_dir: Path) -> OutpostConfig:
    """Load Outpost configuration from a .outpost/ directory.

    Args:
        config_dir: Path to the .outpost/ directory.

    Returns:
        Validated OutpostConfig.

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        ValueError: If config validation fails.
    """
    config_path = config_dir / "config.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"Outpost config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = OutpostConfig(**raw)

    # Environment variable overrides for deployment
    environment = os.environ.get("OUTPOST_ENV")
    if environment:
        config.environment = environment

    data_dir = os.environ.get("OUTPOST_DATA_DIR")
    if data_dir:
        config.server.data_dir = data_dir

    control_url = os.environ.get("OUTPOST_CONTROL_PLANE_URL")
    if control_url:
        plane = config.control_planes.setdefault(ProviderTag.ORGO, ControlPlaneConfig())
        plane.base_url = control_url

    logger.info(
        "Loaded Outpost config: environment=%s, control_planes=%s",
        config.environment,
        ",".join(tag.value for tag in config.control_planes),
    )
    return config
