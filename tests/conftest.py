"""Shared fixtures: an in-memory control plane and a wired orchestrator.

FakeControlPlane stands in for both the REST API and the sandbox shell.
Commands are recognised by the fragments the remote script builders emit,
and a tiny amount of state (files, gateway processes, runtime install) is
kept so the orchestrator's probes see consistent answers.
"""

from __future__ import annotations

import asyncio
import base64
import re
from dataclasses import dataclass, field

import pytest
import pytest_asyncio

from outpost.codec import SECRET_PREFIX, USER_DATA_PREFIX, Codecs, SecretCodec, derive_key
from outpost.config import (
    ControlPlaneConfig,
    GatewayConfig,
    OutpostConfig,
    RuntimeConfig,
    ServerConfig,
)
from outpost.errors import ControlPlaneError
from outpost.models import CommandResult, Project, ProviderTag, Sandbox
from outpost.orchestrator import SetupOrchestrator
from outpost.store import SetupStore
from outpost.tasks import BackgroundTasks

_WRITE_RE = re.compile(r"echo '([A-Za-z0-9+/=]*)' \| base64 -d > (\S+)")


@dataclass
class FakeControlPlane:
    """Control-plane API plus simulated sandbox shell."""

    projects: list[Project] = field(default_factory=lambda: [Project(id="p1", name="outpost")])
    sandboxes: dict[str, Sandbox] = field(default_factory=dict)
    files: dict[str, str] = field(default_factory=dict)
    commands: list[str] = field(default_factory=list)
    api_keys: list[str] = field(default_factory=list)
    ssh_targets: list = field(default_factory=list)
    # Set to behave like an SSH-reachable backend that mints a key per sandbox.
    ssh_key: str | None = None

    runtime_installed: bool = False
    install_succeeds: bool = True
    sandbox_becomes_ready: bool = True
    gateway_binds: bool = True
    processes: dict[str, int] = field(default_factory=dict)
    gateway_launches: int = 0
    installer_launches: int = 0

    # Raised from the named operation when set.
    command_error: ControlPlaneError | None = None
    delete_error: ControlPlaneError | None = None
    list_projects_error: ControlPlaneError | None = None

    def factory(
        self, provider: ProviderTag, api_key: str, plane: ControlPlaneConfig, ssh_target=None
    ):
        self.api_keys.append(api_key)
        self.ssh_targets.append(ssh_target)
        return self

    @property
    def gateway_processes(self) -> int:
        return sum(self.processes.values())

    def read_file(self, suffix: str) -> str:
        """Content of the written file whose path ends with ``suffix``."""
        return next(v for k, v in self.files.items() if k.strip("'\"").endswith(suffix))

    # ── Client lifecycle ─────────────────────────────────────────────────

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info) -> None:
        pass

    # ── REST ─────────────────────────────────────────────────────────────

    async def list_projects(self) -> list[Project]:
        if self.list_projects_error:
            raise self.list_projects_error
        return list(self.projects)

    async def create_project(self, name: str) -> Project:
        project = Project(id=f"p{len(self.projects) + 1}", name=name)
        self.projects.append(project)
        return project

    async def create_sandbox(self, project_id, name=None, *, os="linux", ram=4, cpu=2) -> Sandbox:
        sandbox_id = f"sb-{len(self.sandboxes) + 1}"
        sandbox = Sandbox(id=sandbox_id, name=name or f"calm-owl-{len(self.sandboxes) + 100}",
                          status="starting", ram=ram, cpu=cpu)
        if self.ssh_key:
            sandbox.host = "203.0.113.7"
            sandbox.ssh_username = "ubuntu"
            sandbox.ssh_private_key = self.ssh_key
        self.sandboxes[sandbox_id] = sandbox
        return sandbox

    async def get_sandbox(self, sandbox_id: str) -> Sandbox:
        return self.sandboxes[sandbox_id]

    async def wait_for_ready(self, sandbox_id: str, *, attempts: int = 30, interval: float = 2.0):
        if self.sandbox_becomes_ready:
            self.sandboxes[sandbox_id].status = "running"
        return self.sandbox_becomes_ready

    async def delete_sandbox(self, sandbox_id: str) -> None:
        if self.delete_error:
            raise self.delete_error
        self.sandboxes.pop(sandbox_id, None)

    # ── Shell ────────────────────────────────────────────────────────────

    async def run_command(self, sandbox_id: str, command: str, timeout=None) -> CommandResult:
        # Yield so concurrent callers can interleave between commands.
        await asyncio.sleep(0)
        if self.command_error:
            raise self.command_error
        self.commands.append(command)

        match = _WRITE_RE.search(command)
        if match:
            self.files[match.group(2)] = base64.b64decode(match.group(1)).decode()
            return CommandResult()
        if "outpost-install-runtime.sh >" in command and "nohup" in command:
            self.installer_launches += 1
            self.runtime_installed = self.install_succeeds
            return CommandResult(output="4242\n")
        if "grep -q INSTALL_COMPLETE" in command:
            return CommandResult(output="DONE\n" if self.runtime_installed else "FAILED\n")
        if command.startswith('ls "$HOME"/.nvm'):
            found = "/home/user/.nvm/versions/node/v22/bin/clawdbot\n"
            return CommandResult(output=found if self.runtime_installed else "")
        if "--version" in command:
            return CommandResult(output="2026.1.24\n")
        if command.startswith("pkill"):
            self.processes[sandbox_id] = 0
            return CommandResult()
        if command.startswith("nohup"):
            self.gateway_launches += 1
            if self.gateway_binds:
                self.processes[sandbox_id] = self.processes.get(sandbox_id, 0) + 1
            return CommandResult(output="5151\n")
        running = self.processes.get(sandbox_id, 0) > 0
        if command.startswith("pgrep"):
            return CommandResult(output="RUNNING\n" if running else "NOT_RUNNING\n")
        if "ss -tln" in command:
            return CommandResult(output="PORT_LISTENING\n" if running else "PORT_NOT_LISTENING\n")
        if command.startswith("ps aux"):
            return CommandResult(output="user  5151  clawdbot gateway run\n")
        if command.startswith("tail"):
            return CommandResult(output="gateway log tail\n")
        if command.startswith("test -f"):
            path = command.split()[2].strip("'\"")
            return CommandResult(output="EXISTS\n" if path in self.files else "NOT_FOUND\n")
        return CommandResult()


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def codecs() -> Codecs:
    return Codecs(
        secrets=SecretCodec(derive_key("test-secrets-key"), SECRET_PREFIX),
        user_data=SecretCodec(derive_key("test-user-data-key"), USER_DATA_PREFIX),
    )


@pytest.fixture
def config(tmp_path) -> OutpostConfig:
    """Config with every wait and poll interval set to zero."""
    return OutpostConfig(
        environment="test",
        server=ServerConfig(data_dir=str(tmp_path / "data")),
        control_planes={
            ProviderTag.ORGO: ControlPlaneConfig(
                base_url="https://control.test/api",
                api_key_env=None,
                ready_attempts=3,
                ready_interval=0,
            )
        },
        runtime=RuntimeConfig(install_poll_attempts=3, install_poll_interval=0),
        gateway=GatewayConfig(kill_grace=0, startup_wait=0, probe_attempts=2, probe_interval=0),
    )


@pytest_asyncio.fixture
async def store(tmp_path):
    s = SetupStore(str(tmp_path / "outpost.db"))
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def plane() -> FakeControlPlane:
    return FakeControlPlane()


@pytest_asyncio.fixture
async def orchestrator(config, store, codecs, plane):
    tasks = BackgroundTasks()
    orch = SetupOrchestrator(config, store, codecs, tasks=tasks, client_factory=plane.factory)
    yield orch
    await tasks.shutdown(timeout=1)
