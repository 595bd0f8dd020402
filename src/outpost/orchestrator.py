"""Setup Orchestrator: drives a sandbox through the provisioning sequence.

    uninitialized → vm_created → runtime_installed → telegram_configured → gateway_started

Each step is a separate, idempotent call that the API exposes on its own,
so a user can resume from the first incomplete step after any failure.
Steps for one user are serialized with a per-user lock (one record holds
one sandbox); different users never block each other.

Failure handling:
- Verification failures (sandbox never became ready, install failed,
  gateway never bound its port) are recorded on the status and returned
  as ``StepResult(success=False)``.
- AuthError / TransientError / ControlPlaneError are recorded on the
  status and re-raised. Nothing is retried automatically: several steps
  (kill-then-start) are not safe to repeat blindly.
- ``sync_secret_to_vm`` and teardown's remote delete are best-effort and
  only logged.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from outpost import remote_scripts as rs
from outpost.aws_client import AwsClient
from outpost.codec import Codecs
from outpost.config import ControlPlaneConfig, OutpostConfig
from outpost.control_client import ControlClient
from outpost.errors import (
    AuthError,
    ConfigError,
    ControlPlaneError,
    RecordNotFoundError,
    StepOrderError,
)
from outpost.locks import KeyedLocks
from outpost.models import (
    STEP_ORDER,
    CommandResult,
    GatewayStatus,
    Project,
    ProviderTag,
    ProvisioningStatus,
    SetupRecord,
    SetupStep,
    StepResult,
    UserRecord,
)
from outpost.providers import (
    ProviderDescriptor,
    ProviderResolution,
    RenderOptions,
    detect,
    get_provider,
    mask_credential,
    render_config_json,
    resolve,
)
from outpost.ssh import SSHTarget
from outpost.store import SetupStore
from outpost.tasks import BackgroundTasks

logger = logging.getLogger(__name__)
sync_logger = logging.getLogger(__name__ + ".sync")

SandboxClient = ControlClient | AwsClient
ClientFactory = Callable[
    [ProviderTag, str, ControlPlaneConfig, SSHTarget | None], SandboxClient
]


class StepFailed(Exception):
    """A step ran but its verification did not pass."""


@dataclass
class CredentialUpdate:
    """Outcome of storing an LLM credential."""

    resolution: ProviderResolution
    saved: bool = False
    sync_initiated: bool = False


def _default_client_factory(
    provider: ProviderTag, api_key: str, plane: ControlPlaneConfig, ssh_target: SSHTarget | None
) -> SandboxClient:
    if provider is ProviderTag.AWS:
        return AwsClient(api_key, plane, ssh_target=ssh_target)
    return ControlClient(
        api_key,
        base_url=plane.base_url,
        request_timeout=plane.request_timeout,
        command_timeout=plane.command_timeout,
    )


class SetupOrchestrator:
    """Resumable, per-user serialized provisioning workflow."""

    def __init__(
        self,
        config: OutpostConfig,
        store: SetupStore,
        codecs: Codecs,
        *,
        tasks: BackgroundTasks | None = None,
        client_factory: ClientFactory | None = None,
    ):
        self.config = config
        self.store = store
        self.codecs = codecs
        self.tasks = tasks or BackgroundTasks(sync_logger)
        self._client_factory = client_factory or _default_client_factory
        self._locks = KeyedLocks()

    # ── Control Plane Access ─────────────────────────────────────────────

    def _plane(self, provider: ProviderTag) -> ControlPlaneConfig:
        plane = self.config.control_planes.get(provider)
        if plane is None:
            raise ConfigError(f"No control plane configured for provider '{provider.value}'")
        return plane

    def client_for(self, record: SetupRecord) -> SandboxClient:
        """An unstarted client for the record's provider, key and SSH material.

        Raises:
            AuthError: If neither the record nor the environment holds a key.
        """
        plane = self._plane(record.provider)
        api_key = (
            self.codecs.secrets.decrypt_or_none(record.control_api_key, "control-plane key")
            or plane.api_key
        )
        if not api_key:
            raise AuthError(f"No {record.provider.value} API key configured")
        ssh_target = None
        private_key = self.codecs.secrets.decrypt_or_none(
            record.ssh_private_key, "SSH private key"
        )
        if private_key:
            ssh_target = SSHTarget(
                private_key=private_key,
                username=record.ssh_username or plane.ssh_username,
                host=record.ssh_host,
                port=record.ssh_port,
            )
        return self._client_factory(record.provider, api_key, plane, ssh_target)

    async def _load(self, user_id: str, *, create: bool = False) -> SetupRecord:
        record = await self.store.get_record(user_id)
        if record is None:
            if not create:
                raise RecordNotFoundError(f"No setup found for user {user_id}")
            record = SetupRecord(user_id=user_id)
        return record

    @staticmethod
    def _require_sandbox(record: SetupRecord) -> str:
        if not record.sandbox_id:
            raise RecordNotFoundError(f"No sandbox for user {record.user_id}")
        return record.sandbox_id

    @staticmethod
    async def _run_checked(
        client: SandboxClient, sandbox_id: str, command: str, what: str
    ) -> CommandResult:
        result = await client.run_command(sandbox_id, command)
        if not result.ok:
            raise StepFailed(f"{what} failed (exit {result.exit_code}): {result.output[-500:]}")
        return result

    # ── Step Runner ──────────────────────────────────────────────────────

    async def _run_step(
        self,
        user_id: str,
        step: SetupStep,
        action: Callable[[SetupRecord], Awaitable[str]],
        *,
        create: bool = False,
    ) -> StepResult:
        async with self._locks.lock(user_id):
            record = await self._load(user_id, create=create)
            if not record.status.can_run(step):
                prereq = record.status.prerequisite(step)
                raise StepOrderError(f"{step.value} requires {prereq.value} to complete first")

            logger.info("Running %s for user %s", step.value, user_id)
            try:
                message = await action(record)
            except StepFailed as exc:
                record.status.mark_failed(step, str(exc))
                await self.store.upsert_record(record)
                logger.warning("%s failed for user %s: %s", step.value, user_id, exc)
                return StepResult(
                    step=step, success=False, message=str(exc), status=record.status.model_copy()
                )
            except ControlPlaneError as exc:
                record.status.mark_failed(step, exc.message)
                await self.store.upsert_record(record)
                logger.warning(
                    "%s aborted for user %s (%s): %s",
                    step.value,
                    user_id,
                    type(exc).__name__,
                    exc.message,
                )
                raise

            record.status.mark_done(step)
            await self.store.upsert_record(record)
            logger.info("%s complete for user %s", step.value, user_id)
            return StepResult(
                step=step, success=True, message=message, status=record.status.model_copy()
            )

    # ── Credentials & Projects ───────────────────────────────────────────

    async def save_control_plane(
        self,
        user_id: str,
        provider: ProviderTag,
        api_key: str,
        project_name: str | None = None,
    ) -> list[Project]:
        """Validate a control-plane key by listing projects, then store it encrypted."""
        plane = self._plane(provider)
        async with self._client_factory(provider, api_key, plane, None) as client:
            projects = await client.list_projects()

        async with self._locks.lock(user_id):
            record = await self._load(user_id, create=True)
            if record.sandbox_id and record.provider != provider:
                raise StepOrderError("Tear down the existing sandbox before switching providers")
            record.provider = provider
            record.control_api_key = self.codecs.secrets.encrypt(api_key)
            if project_name:
                record.project_name = project_name
            await self.store.upsert_record(record)
        logger.info(
            "Stored %s key %s for user %s", provider.value, mask_credential(api_key), user_id
        )
        return projects

    async def select_project(
        self, user_id: str, project_id: str | None = None, project_name: str | None = None
    ) -> Project:
        """Bind the user's setup to an existing project, creating it by name if needed."""
        if not project_id and not project_name:
            raise ValueError("project_id or project_name is required")
        async with self._locks.lock(user_id):
            record = await self._load(user_id)
            async with self.client_for(record) as client:
                projects = await client.list_projects()
                project = next(
                    (
                        p
                        for p in projects
                        if (project_id and p.id == project_id)
                        or (not project_id and p.name == project_name)
                    ),
                    None,
                )
                if project is None:
                    if project_id:
                        raise RecordNotFoundError(f"Project {project_id} not found")
                    project = await client.create_project(project_name)
            record.project_id = project.id
            record.project_name = project.name
            await self.store.upsert_record(record)
            return project

    async def update_llm_credential(
        self,
        user_id: str,
        credential: str,
        provider_id: str | None = None,
        model: str | None = None,
    ) -> CredentialUpdate:
        """Store an LLM credential, asking for a provider when the key is ambiguous.

        Nothing is written unless the provider resolves. When the sandbox is
        already configured, the new key is pushed to it in the background.
        """
        credential = credential.strip()
        resolution = resolve(credential, provider_id)
        if not resolution.resolved:
            return CredentialUpdate(resolution=resolution)

        async with self._locks.lock(user_id):
            record = await self._load(user_id, create=True)
            record.llm_api_key = self.codecs.secrets.encrypt(credential)
            record.llm_provider = resolution.provider.id
            record.llm_model = model or None
            await self.store.upsert_record(record)
        logger.info(
            "Stored %s credential %s for user %s",
            resolution.provider.id,
            mask_credential(credential),
            user_id,
        )

        update = CredentialUpdate(resolution=resolution, saved=True)
        if record.sandbox_id and record.status.telegram_configured:
            update.sync_initiated = self.sync_secret_to_vm(user_id)
        return update

    async def clear_llm_credential(self, user_id: str) -> None:
        async with self._locks.lock(user_id):
            record = await self._load(user_id)
            record.llm_api_key = None
            record.llm_provider = None
            record.llm_model = None
            await self.store.upsert_record(record)

    # ── Steps ────────────────────────────────────────────────────────────

    async def create_vm(
        self, user_id: str, *, ram: int | None = None, cpu: int | None = None
    ) -> StepResult:
        """Allocate a sandbox, or reuse the one already bound to the user."""

        async def action(record: SetupRecord) -> str:
            plane = self._plane(record.provider)
            if record.sandbox_id and record.status.vm_created:
                return f"Reusing sandbox {record.sandbox_id}"

            async with self.client_for(record) as client:
                if not record.sandbox_id:
                    project = await self._ensure_project(client, record, plane)
                    sandbox = await client.create_sandbox(
                        project.id, ram=ram or plane.ram, cpu=cpu or plane.cpu
                    )
                    record.sandbox_id = sandbox.id
                    record.sandbox_name = sandbox.name
                    record.sandbox_url = sandbox.url
                    if sandbox.ssh_private_key:
                        record.ssh_private_key = self.codecs.secrets.encrypt(
                            sandbox.ssh_private_key
                        )
                        record.ssh_username = sandbox.ssh_username
                    # Persist before waiting so a retry reuses this sandbox.
                    await self.store.upsert_record(record)

                ready = await client.wait_for_ready(
                    record.sandbox_id, attempts=plane.ready_attempts, interval=plane.ready_interval
                )
                if ready and record.ssh_private_key:
                    record.ssh_host = (await client.get_sandbox(record.sandbox_id)).host
            if not ready:
                raise StepFailed(f"Sandbox {record.sandbox_id} did not become ready")
            return f"Sandbox {record.sandbox_name or record.sandbox_id} is ready"

        return await self._run_step(user_id, SetupStep.CREATE_VM, action, create=True)

    async def _ensure_project(
        self, client: SandboxClient, record: SetupRecord, plane: ControlPlaneConfig
    ) -> Project:
        if record.project_id:
            return Project(id=record.project_id, name=record.project_name or "")
        name = record.project_name or plane.default_project
        project = next((p for p in await client.list_projects() if p.name == name), None)
        if project is None:
            project = await client.create_project(name)
        record.project_id = project.id
        record.project_name = project.name
        return project

    async def install_runtime(self, user_id: str) -> StepResult:
        """Install Node and the agent runtime; a no-op when already installed."""
        runtime = self.config.runtime

        async def action(record: SetupRecord) -> str:
            sandbox_id = self._require_sandbox(record)
            async with self.client_for(record) as client:
                version = await self._installed_version(client, sandbox_id)
                if version is not None:
                    record.runtime_version = version
                    return f"Runtime already installed ({version})"

                await self._run_checked(
                    client,
                    sandbox_id,
                    rs.write_file(rs.INSTALL_SCRIPT_PATH, rs.install_script(runtime), mode="755"),
                    "Writing install script",
                )
                await self._run_checked(
                    client, sandbox_id, rs.launch_install(runtime), "Launching installer"
                )

                state = rs.INSTALL_PENDING
                for _ in range(runtime.install_poll_attempts):
                    progress = await client.run_command(sandbox_id, rs.install_progress(runtime))
                    if progress.has_line(rs.INSTALL_DONE):
                        state = rs.INSTALL_DONE
                        break
                    if progress.has_line(rs.INSTALL_FAILED):
                        state = rs.INSTALL_FAILED
                        break
                    await asyncio.sleep(runtime.install_poll_interval)

                if state != rs.INSTALL_DONE:
                    tail = await client.run_command(sandbox_id, rs.tail_log(runtime.install_log, 20))
                    reason = "failed" if state == rs.INSTALL_FAILED else "timed out"
                    raise StepFailed(f"Runtime install {reason}:\n{tail.output.strip()}")

                version = await self._installed_version(client, sandbox_id)
            if version is None:
                raise StepFailed(f"{runtime.binary} not found after install")
            record.runtime_version = version
            return f"Installed {runtime.package} {version}"

        return await self._run_step(user_id, SetupStep.INSTALL_RUNTIME, action)

    async def _installed_version(self, client: SandboxClient, sandbox_id: str) -> str | None:
        runtime = self.config.runtime
        found = await client.run_command(sandbox_id, rs.runtime_binary(runtime))
        if not found.output.strip():
            return None
        version = await client.run_command(sandbox_id, rs.runtime_version(runtime))
        return version.output.strip() or "unknown"

    async def configure_channel(
        self,
        user_id: str,
        telegram_bot_token: str | None = None,
        telegram_user_id: str | None = None,
    ) -> StepResult:
        """Render the gateway config and write it (and its env file) to the sandbox."""

        async def action(record: SetupRecord) -> str:
            sandbox_id = self._require_sandbox(record)
            if telegram_bot_token:
                record.telegram_bot_token = self.codecs.secrets.encrypt(telegram_bot_token.strip())
            if telegram_user_id:
                record.telegram_user_id = telegram_user_id.strip()

            async with self.client_for(record) as client:
                provider = await self._write_gateway_files(client, sandbox_id, record)
            return f"Gateway configured for {provider.name}"

        return await self._run_step(user_id, SetupStep.CONFIGURE_CHANNEL, action)

    async def _write_gateway_files(
        self, client: SandboxClient, sandbox_id: str, record: SetupRecord
    ) -> ProviderDescriptor:
        gateway = self.config.gateway
        workspace = gateway.workspace_path(self._plane(record.provider).home_dir)
        credential = self.codecs.secrets.decrypt_or_none(record.llm_api_key, "LLM credential")
        if not credential:
            raise StepFailed("No LLM API key stored. Add one before configuring the gateway.")
        provider = get_provider(record.llm_provider) or detect(credential)
        if provider is None:
            raise StepFailed("Could not determine the LLM provider for the stored key")
        bot_token = self.codecs.secrets.decrypt_or_none(record.telegram_bot_token, "bot token")
        if not bot_token:
            raise StepFailed("A Telegram bot token is required")
        gateway_token = self.codecs.secrets.decrypt_or_none(record.gateway_token, "gateway token")
        if not gateway_token:
            gateway_token = secrets.token_hex(24)
            record.gateway_token = self.codecs.secrets.encrypt(gateway_token)

        document = render_config_json(
            provider,
            credential,
            RenderOptions(
                gateway_token=gateway_token,
                model=record.llm_model,
                telegram_bot_token=bot_token,
                telegram_user_id=record.telegram_user_id,
                workspace=workspace,
                heartbeat_minutes=gateway.heartbeat_minutes,
                gateway_port=gateway.port,
            ),
        )
        env = rs.env_file({provider.env_var: credential, "TELEGRAM_BOT_TOKEN": bot_token})

        await self._run_checked(
            client,
            sandbox_id,
            rs.make_dirs(gateway.config_dir, f"{workspace}/knowledge"),
            "Creating gateway directories",
        )
        await self._run_checked(
            client,
            sandbox_id,
            rs.write_file(gateway.config_path, document, mode="600"),
            "Writing gateway config",
        )
        await self._run_checked(
            client,
            sandbox_id,
            rs.write_file(gateway.env_path, env, mode="600"),
            "Writing gateway env file",
        )
        return provider

    async def start_gateway(self, user_id: str) -> StepResult:
        """(Re)start the gateway and verify it by probing process and port."""
        gateway = self.config.gateway

        async def action(record: SetupRecord) -> str:
            sandbox_id = self._require_sandbox(record)
            async with self.client_for(record) as client:
                await self._run_checked(
                    client,
                    sandbox_id,
                    rs.write_file(
                        gateway.startup_script,
                        rs.gateway_startup_script(gateway, self.config.runtime),
                        mode="755",
                    ),
                    "Writing startup script",
                )
                await client.run_command(sandbox_id, rs.kill_process(gateway.process_pattern))
                await asyncio.sleep(gateway.kill_grace)

                launch = await client.run_command(
                    sandbox_id, rs.launch_detached(gateway.startup_script, gateway.log_file)
                )
                logger.info("Launched gateway on %s (pid %s)", sandbox_id, launch.output.strip())
                # The launcher returns before the gateway binds its port.
                await asyncio.sleep(gateway.startup_wait)

                for attempt in range(1, gateway.probe_attempts + 1):
                    if await self._gateway_listening(client, sandbox_id):
                        return f"Gateway listening on port {gateway.port}"
                    logger.debug(
                        "Gateway probe %d/%d on %s: not ready",
                        attempt,
                        gateway.probe_attempts,
                        sandbox_id,
                    )
                    if attempt < gateway.probe_attempts:
                        await asyncio.sleep(gateway.probe_interval)

                tail = await client.run_command(sandbox_id, rs.tail_log(gateway.log_file, 20))
            raise StepFailed(
                f"Gateway did not start listening on port {gateway.port}. "
                f"Recent log:\n{tail.output.strip()}"
            )

        return await self._run_step(user_id, SetupStep.START_GATEWAY, action)

    async def _gateway_listening(self, client: SandboxClient, sandbox_id: str) -> bool:
        gateway = self.config.gateway
        process = await client.run_command(sandbox_id, rs.process_check(gateway.process_pattern))
        if not process.has_line(rs.RUNNING):
            return False
        port = await client.run_command(sandbox_id, rs.port_check(gateway.port))
        return port.has_line(rs.PORT_LISTENING)

    # ── Background Sync ──────────────────────────────────────────────────

    def sync_secret_to_vm(self, user_id: str) -> bool:
        """Push stored credentials to the sandbox without waiting for it."""
        task = self.tasks.spawn(self._sync_secret(user_id), name=f"sync-secret-{user_id}")
        return task is not None

    async def _sync_secret(self, user_id: str) -> None:
        try:
            async with self._locks.lock(user_id):
                record = await self.store.get_record(user_id)
                if record is None or not record.sandbox_id:
                    sync_logger.info("No sandbox for user %s, nothing to sync", user_id)
                    return
                async with self.client_for(record) as client:
                    await self._write_gateway_files(client, record.sandbox_id, record)
                await self.store.upsert_record(record)
            sync_logger.info(
                "Synced credentials to sandbox %s; restart the gateway to apply",
                record.sandbox_id,
            )
        except Exception:
            sync_logger.exception("Credential sync failed for user %s", user_id)

    # ── Read-only Probe ──────────────────────────────────────────────────

    async def check_gateway_status(self, user_id: str) -> GatewayStatus:
        """Composite status probe. Never mutates the provisioning status."""
        gateway = self.config.gateway
        record = await self._load(user_id)
        sandbox_id = self._require_sandbox(record)

        async with self.client_for(record) as client:
            process = await client.run_command(sandbox_id, rs.process_check(gateway.process_pattern))
            is_running = process.has_line(rs.RUNNING)
            details = None
            if is_running:
                ps = await client.run_command(sandbox_id, rs.process_details(gateway.process_pattern))
                details = ps.output.strip() or None
            logs = await client.run_command(
                sandbox_id, rs.tail_log(gateway.log_file, gateway.log_tail_lines)
            )
            script = await client.run_command(sandbox_id, rs.file_exists(gateway.startup_script))
            port = await client.run_command(sandbox_id, rs.port_check(gateway.port))

        return GatewayStatus(
            is_running=is_running,
            process_details=details,
            recent_logs=logs.output.strip(),
            startup_script_exists=script.has_line(rs.EXISTS),
            port_listening=port.has_line(rs.PORT_LISTENING),
            port_status=port.output.strip(),
            configured=record.status.telegram_configured,
        )

    async def get_status(self, user_id: str) -> ProvisioningStatus:
        record = await self.store.get_record(user_id)
        return record.status if record else ProvisioningStatus()

    async def get_record(self, user_id: str) -> SetupRecord | None:
        return await self.store.get_record(user_id)

    # ── Teardown ─────────────────────────────────────────────────────────

    async def teardown_vm(self, user_id: str) -> ProvisioningStatus:
        """Delete the sandbox (best effort) and reset local state unconditionally."""
        async with self._locks.lock(user_id):
            record = await self.store.get_record(user_id)
            if record is None:
                return ProvisioningStatus()

            if record.sandbox_id:
                try:
                    async with self.client_for(record) as client:
                        await client.delete_sandbox(record.sandbox_id)
                except (ControlPlaneError, ConfigError) as exc:
                    logger.warning(
                        "Remote delete of sandbox %s failed (ignored): %s", record.sandbox_id, exc
                    )

            record.clear_sandbox()
            await self.store.upsert_record(record)
            logger.info("Tore down sandbox state for user %s", user_id)
            return record.status.model_copy()

    # ── Account ──────────────────────────────────────────────────────────

    async def save_profile(self, user_id: str, email: str) -> UserRecord:
        """Store the user's email under the user-data key. Returns it decrypted."""
        email = email.strip()
        async with self._locks.lock(user_id):
            existing = await self.store.get_user(user_id)
            user = UserRecord(user_id=user_id, email=self.codecs.user_data.encrypt(email))
            if existing is not None:
                user.created_at = existing.created_at
            await self.store.upsert_user(user)
        logger.info("Stored profile for user %s", user_id)
        return user.model_copy(update={"email": email})

    async def get_profile(self, user_id: str) -> UserRecord | None:
        user = await self.store.get_user(user_id)
        if user is None:
            return None
        email = self.codecs.user_data.decrypt_or_none(user.email, "email")
        return user.model_copy(update={"email": email})

    async def delete_account(self, user_id: str) -> None:
        await self.teardown_vm(user_id)
        async with self._locks.lock(user_id):
            await self.store.delete_record(user_id)
            await self.store.delete_user(user_id)

    # ── Full Sequence ────────────────────────────────────────────────────

    async def run_setup(
        self,
        user_id: str,
        *,
        telegram_bot_token: str | None = None,
        telegram_user_id: str | None = None,
    ) -> list[StepResult]:
        """Run every remaining step in order, stopping at the first failure.

        Resumes from the first incomplete step. Control-plane errors
        (AuthError included) propagate and end the sequence.
        """
        status = await self.get_status(user_id)
        first = status.first_incomplete_step()
        if first is None:
            return []

        results: list[StepResult] = []
        for step in STEP_ORDER[STEP_ORDER.index(first) :]:
            if step is SetupStep.CREATE_VM:
                result = await self.create_vm(user_id)
            elif step is SetupStep.INSTALL_RUNTIME:
                result = await self.install_runtime(user_id)
            elif step is SetupStep.CONFIGURE_CHANNEL:
                result = await self.configure_channel(
                    user_id, telegram_bot_token, telegram_user_id
                )
            else:
                result = await self.start_gateway(user_id)
            results.append(result)
            if not result.success:
                break
        return results
