"""Core data models for Outpost."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from outpost.errors import StepOrderError


# ── Backends & Steps ─────────────────────────────────────────────────────────


class ProviderTag(str, enum.Enum):
    """Sandbox backends a setup record can be bound to."""

    ORGO = "orgo"
    AWS = "aws"


class SetupStep(str, enum.Enum):
    """Provisioning steps, declared in execution order."""

    CREATE_VM = "create_vm"
    INSTALL_RUNTIME = "install_runtime"
    CONFIGURE_CHANNEL = "configure_channel"
    START_GATEWAY = "start_gateway"


STEP_ORDER: list[SetupStep] = list(SetupStep)

_STEP_FIELDS: dict[SetupStep, str] = {
    SetupStep.CREATE_VM: "vm_created",
    SetupStep.INSTALL_RUNTIME: "runtime_installed",
    SetupStep.CONFIGURE_CHANNEL: "telegram_configured",
    SetupStep.START_GATEWAY: "gateway_started",
}


# ── Provisioning Status ──────────────────────────────────────────────────────


class ProvisioningStatus(BaseModel):
    """How far a sandbox's setup has progressed.

    Fields only ever become true in step order. A failure sets the failing
    step (and anything after it) back to false but never touches earlier
    steps. ``last_error`` stays set until the step that failed, or a later
    one, completes successfully.
    """

    vm_created: bool = False
    runtime_installed: bool = False
    telegram_configured: bool = False
    gateway_started: bool = False
    last_error: str | None = None
    failed_step: SetupStep | None = None

    @property
    def failed(self) -> bool:
        return self.last_error is not None

    def is_done(self, step: SetupStep) -> bool:
        return bool(getattr(self, _STEP_FIELDS[step]))

    @staticmethod
    def prerequisite(step: SetupStep) -> SetupStep | None:
        index = STEP_ORDER.index(step)
        return STEP_ORDER[index - 1] if index > 0 else None

    def can_run(self, step: SetupStep) -> bool:
        prereq = self.prerequisite(step)
        return prereq is None or self.is_done(prereq)

    def first_incomplete_step(self) -> SetupStep | None:
        """The step a caller should resume from, or None when fully provisioned."""
        for step in STEP_ORDER:
            if not self.is_done(step):
                return step
        return None

    def mark_done(self, step: SetupStep) -> None:
        if not self.can_run(step):
            raise StepOrderError(
                f"Cannot complete {step.value} before {self.prerequisite(step).value}"
            )
        setattr(self, _STEP_FIELDS[step], True)
        if self.failed_step is not None and STEP_ORDER.index(step) >= STEP_ORDER.index(
            self.failed_step
        ):
            self.last_error = None
            self.failed_step = None

    def mark_failed(self, step: SetupStep, message: str) -> None:
        for later in STEP_ORDER[STEP_ORDER.index(step) :]:
            setattr(self, _STEP_FIELDS[later], False)
        self.last_error = message or f"{step.value} failed"
        self.failed_step = step

    def reset(self) -> None:
        for step in STEP_ORDER:
            setattr(self, _STEP_FIELDS[step], False)
        self.last_error = None
        self.failed_step = None


# ── Control Plane Objects ────────────────────────────────────────────────────


class CommandResult(BaseModel):
    """Output of one shell command executed on a sandbox."""

    output: str = ""
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def has_line(self, sentinel: str) -> bool:
        """Whether ``sentinel`` appears as a whole output line."""
        return any(line.strip() == sentinel for line in self.output.splitlines())


class Project(BaseModel):
    id: str
    name: str


class Sandbox(BaseModel):
    """A compute instance as reported by the control plane."""

    id: str
    name: str = ""
    project_name: str | None = None
    status: str = "unknown"
    url: str | None = None
    os: str = "linux"
    ram: int | None = None
    cpu: int | None = None
    host: str | None = Field(default=None, description="Public address, for SSH-reachable backends")
    ssh_username: str | None = None
    ssh_private_key: str | None = Field(default=None, repr=False)

    @property
    def is_running(self) -> bool:
        return self.status == "running"


class SandboxHandle(BaseModel):
    """The sandbox a user's setup is bound to, plus its progress."""

    sandbox_id: str
    user_id: str
    provider: ProviderTag
    endpoint: str | None = None
    status: ProvisioningStatus = Field(default_factory=ProvisioningStatus)


# ── Persisted Records ────────────────────────────────────────────────────────


class SetupRecord(BaseModel):
    """Per-user setup state. Credential fields hold ciphertext at rest."""

    user_id: str
    provider: ProviderTag = ProviderTag.ORGO
    sandbox_id: str | None = None
    sandbox_name: str | None = None
    sandbox_url: str | None = None
    project_id: str | None = None
    project_name: str | None = None
    control_api_key: str | None = Field(default=None, description="Encrypted control-plane key")
    llm_api_key: str | None = Field(default=None, description="Encrypted LLM credential")
    llm_provider: str | None = None
    llm_model: str | None = Field(default=None, description="Model override, e.g. 'openai/gpt-4o'")
    telegram_bot_token: str | None = Field(default=None, description="Encrypted bot token")
    telegram_user_id: str | None = None
    gateway_token: str | None = Field(default=None, description="Encrypted gateway access token")
    ssh_host: str | None = None
    ssh_port: int = 22
    ssh_username: str | None = None
    ssh_private_key: str | None = Field(default=None, description="Encrypted PEM private key")
    runtime_version: str | None = None
    status: ProvisioningStatus = Field(default_factory=ProvisioningStatus)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def handle(self) -> SandboxHandle | None:
        if not self.sandbox_id:
            return None
        return SandboxHandle(
            sandbox_id=self.sandbox_id,
            user_id=self.user_id,
            provider=self.provider,
            endpoint=self.sandbox_url,
            status=self.status,
        )

    def clear_sandbox(self) -> None:
        """Drop every reference to the bound sandbox and reset progress."""
        self.sandbox_id = None
        self.sandbox_name = None
        self.sandbox_url = None
        self.gateway_token = None
        self.runtime_version = None
        self.ssh_host = None
        self.ssh_username = None
        self.ssh_private_key = None
        self.status.reset()


class UserRecord(BaseModel):
    """Personally-identifying user data. ``email`` is encrypted at rest."""

    user_id: str
    email: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Results ──────────────────────────────────────────────────────────────────


class GatewayStatus(BaseModel):
    """Read-only snapshot of the gateway process on a sandbox."""

    is_running: bool = False
    process_details: str | None = None
    recent_logs: str | None = None
    startup_script_exists: bool = False
    port_listening: bool = False
    port_status: str = ""
    configured: bool = False


class StepResult(BaseModel):
    """Outcome of one provisioning step, with the status snapshot after it."""

    step: SetupStep
    success: bool
    message: str = ""
    status: ProvisioningStatus
