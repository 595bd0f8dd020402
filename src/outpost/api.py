"""HTTP API: setup workflow and terminal endpoints.

Every endpoint resolves the caller through ``current_user``. Setup steps
map one-to-one onto SetupOrchestrator steps so clients can resume from the
first incomplete step; failures carry the provisioning status snapshot so
the caller can see exactly what succeeded.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from outpost.auth import authorize_session, current_user
from outpost.errors import (
    AuthError,
    ConfigError,
    ControlPlaneError,
    OutpostError,
    RecordNotFoundError,
    StepOrderError,
    TransientError,
)
from outpost.models import ProviderTag, StepResult
from outpost.providers import (
    PROVIDERS,
    get_provider,
    key_format_help,
    mask_credential,
    supported_providers_text,
)

if TYPE_CHECKING:
    from outpost.orchestrator import SetupOrchestrator
    from outpost.terminal import TerminalSessionManager

logger = logging.getLogger(__name__)

router = APIRouter()

# These are set during server startup (see server.py)
_orchestrator: SetupOrchestrator | None = None
_sessions: TerminalSessionManager | None = None


def configure(orchestrator: SetupOrchestrator, sessions: TerminalSessionManager) -> None:
    """Wire the API to the orchestrator and the terminal session manager."""
    global _orchestrator, _sessions
    _orchestrator = orchestrator
    _sessions = sessions


def _get_orchestrator() -> SetupOrchestrator:
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not available")
    return _orchestrator


def _get_sessions() -> TerminalSessionManager:
    if _sessions is None:
        raise HTTPException(status_code=503, detail="Terminal sessions not available")
    return _sessions


# ── Error Mapping ────────────────────────────────────────────────────────────

# Order matters: subclasses before ControlPlaneError.
_ERROR_STATUS: tuple[tuple[type[OutpostError], int], ...] = (
    (AuthError, status.HTTP_401_UNAUTHORIZED),
    (TransientError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ControlPlaneError, status.HTTP_502_BAD_GATEWAY),
    (StepOrderError, status.HTTP_409_CONFLICT),
    (RecordNotFoundError, status.HTTP_404_NOT_FOUND),
    (ConfigError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def _http_error(exc: OutpostError, extra: dict[str, Any] | None = None) -> HTTPException:
    code = next(
        (code for exc_type, code in _ERROR_STATUS if isinstance(exc, exc_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    detail: dict[str, Any] = {"error": str(exc), "error_type": type(exc).__name__}
    if extra:
        detail.update(extra)
    return HTTPException(status_code=code, detail=detail)


def _step_response(result: StepResult) -> dict[str, Any]:
    return {
        "success": result.success,
        "step": result.step.value,
        "message": result.message,
        "status": result.status.model_dump(mode="json"),
        "next_step": _next_step(result),
    }


def _next_step(result: StepResult) -> str | None:
    step = result.status.first_incomplete_step()
    return step.value if step else None


async def _run_step(user_id: str, step_call) -> dict[str, Any]:
    orchestrator = _get_orchestrator()
    try:
        result = await step_call
    except OutpostError as exc:
        snapshot = await orchestrator.get_status(user_id)
        raise _http_error(exc, {"status": snapshot.model_dump(mode="json")}) from exc
    return _step_response(result)


# ── Request Bodies ───────────────────────────────────────────────────────────


class ControlPlaneRequest(BaseModel):
    provider: ProviderTag = ProviderTag.ORGO
    api_key: str = Field(min_length=1)
    project_name: str | None = None


class ProjectRequest(BaseModel):
    project_id: str | None = None
    project_name: str | None = None


class ModelConfigRequest(BaseModel):
    api_key: str = Field(min_length=1)
    provider_id: str | None = Field(
        default=None, description="Explicit provider, required when the key is ambiguous"
    )
    model: str | None = None


class CreateVmRequest(BaseModel):
    ram: int | None = Field(default=None, ge=1)
    cpu: int | None = Field(default=None, ge=1)


class ChannelRequest(BaseModel):
    telegram_bot_token: str | None = None
    telegram_user_id: str | None = None


class AccountRequest(BaseModel):
    email: str = Field(max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")


class TerminalOpenRequest(BaseModel):
    cols: int = Field(default=80, ge=1, le=1000)
    rows: int = Field(default=24, ge=1, le=1000)


class TerminalInputRequest(BaseModel):
    session_id: str
    input: str


class TerminalResizeRequest(BaseModel):
    session_id: str
    cols: int = Field(ge=1, le=1000)
    rows: int = Field(ge=1, le=1000)


class TerminalSessionRequest(BaseModel):
    session_id: str


# ── Setup: Status & Credentials ──────────────────────────────────────────────


@router.get("/setup/status")
async def setup_status(user_id: str = Depends(current_user)):
    """Provisioning progress and the bound sandbox, if any."""
    orchestrator = _get_orchestrator()
    record = await orchestrator.get_record(user_id)
    if record is None:
        return {"exists": False, "status": None, "next_step": "create_vm", "sandbox": None}

    next_step = record.status.first_incomplete_step()
    handle = record.handle
    return {
        "exists": True,
        "provider": record.provider.value,
        "status": record.status.model_dump(mode="json"),
        "next_step": next_step.value if next_step else None,
        "sandbox": handle.model_dump(mode="json", exclude={"status"}) if handle else None,
        "project": {"id": record.project_id, "name": record.project_name},
        "has_control_plane_key": bool(record.control_api_key),
        "has_llm_key": bool(record.llm_api_key),
        "ssh_access": bool(record.ssh_host and record.ssh_private_key),
        "llm_provider": record.llm_provider,
        "runtime_version": record.runtime_version,
        "updated_at": record.updated_at.isoformat(),
    }


@router.put("/setup/control-plane")
async def save_control_plane(body: ControlPlaneRequest, user_id: str = Depends(current_user)):
    """Validate a control-plane API key (by listing projects) and store it."""
    orchestrator = _get_orchestrator()
    try:
        projects = await orchestrator.save_control_plane(
            user_id, body.provider, body.api_key.strip(), body.project_name
        )
    except OutpostError as exc:
        raise _http_error(exc) from exc
    return {
        "success": True,
        "projects": [p.model_dump() for p in projects],
        "has_projects": bool(projects),
    }


@router.post("/setup/project")
async def select_project(body: ProjectRequest, user_id: str = Depends(current_user)):
    orchestrator = _get_orchestrator()
    if not body.project_id and not body.project_name:
        raise HTTPException(status_code=400, detail="project_id or project_name is required")
    try:
        project = await orchestrator.select_project(user_id, body.project_id, body.project_name)
    except OutpostError as exc:
        raise _http_error(exc) from exc
    return {"success": True, "project": project.model_dump()}


@router.get("/setup/model-config")
async def get_model_config(user_id: str = Depends(current_user)):
    orchestrator = _get_orchestrator()
    record = await orchestrator.get_record(user_id)
    key = None
    if record is not None:
        key = orchestrator.codecs.secrets.decrypt_or_none(record.llm_api_key, "LLM credential")
    provider = get_provider(record.llm_provider) if record else None
    return {
        "configured": key is not None,
        "masked_key": mask_credential(key) if key else None,
        "provider": {"id": provider.id, "name": provider.name} if provider else None,
        "model": (record.llm_model if record else None)
        or (provider.default_model if provider else None),
        "providers": [
            {"id": p.id, "name": p.name, "default_model": p.default_model} for p in PROVIDERS
        ],
        "supported": supported_providers_text(),
    }


@router.put("/setup/model-config")
async def update_model_config(body: ModelConfigRequest, user_id: str = Depends(current_user)):
    """Store an LLM key. Ambiguous keys get a 200 asking for ``provider_id``."""
    orchestrator = _get_orchestrator()
    if body.provider_id and get_provider(body.provider_id) is None:
        raise HTTPException(status_code=400, detail=f"Invalid provider: {body.provider_id}")

    update = await orchestrator.update_llm_credential(
        user_id, body.api_key, provider_id=body.provider_id, model=body.model
    )
    resolution = update.resolution

    if resolution.needs_selection:
        return {
            "ambiguous": True,
            "providers": [{"id": p.id, "name": p.name} for p in resolution.candidates],
            "message": "This key format is used by several providers. Choose one.",
        }
    if not resolution.resolved:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Could not detect the provider for this API key",
                "supported": supported_providers_text(),
                "formats": key_format_help(),
            },
        )

    provider = resolution.provider
    return {
        "success": True,
        "provider": {"id": provider.id, "name": provider.name},
        "model": body.model or provider.default_model,
        "vm_sync_initiated": update.sync_initiated,
    }


@router.delete("/setup/model-config")
async def delete_model_config(user_id: str = Depends(current_user)):
    orchestrator = _get_orchestrator()
    try:
        await orchestrator.clear_llm_credential(user_id)
    except OutpostError as exc:
        raise _http_error(exc) from exc
    return {"success": True}


# ── Setup: Steps ─────────────────────────────────────────────────────────────


@router.post("/setup/create-vm")
async def create_vm(body: CreateVmRequest | None = None, user_id: str = Depends(current_user)):
    body = body or CreateVmRequest()
    orchestrator = _get_orchestrator()
    return await _run_step(user_id, orchestrator.create_vm(user_id, ram=body.ram, cpu=body.cpu))


@router.post("/setup/install-runtime")
async def install_runtime(user_id: str = Depends(current_user)):
    return await _run_step(user_id, _get_orchestrator().install_runtime(user_id))


@router.post("/setup/configure-channel")
async def configure_channel(body: ChannelRequest, user_id: str = Depends(current_user)):
    orchestrator = _get_orchestrator()
    return await _run_step(
        user_id,
        orchestrator.configure_channel(user_id, body.telegram_bot_token, body.telegram_user_id),
    )


@router.post("/setup/start-gateway")
async def start_gateway(user_id: str = Depends(current_user)):
    return await _run_step(user_id, _get_orchestrator().start_gateway(user_id))


@router.post("/setup/run", status_code=status.HTTP_202_ACCEPTED)
async def run_setup(body: ChannelRequest | None = None, user_id: str = Depends(current_user)):
    """Run the remaining steps in the background; poll /setup/status for progress."""
    body = body or ChannelRequest()
    orchestrator = _get_orchestrator()
    current = await orchestrator.get_status(user_id)
    next_step = current.first_incomplete_step()
    if next_step is None:
        return {"started": False, "message": "Setup already complete"}

    orchestrator.tasks.spawn(
        orchestrator.run_setup(
            user_id,
            telegram_bot_token=body.telegram_bot_token,
            telegram_user_id=body.telegram_user_id,
        ),
        name=f"setup-{user_id}",
    )
    return {"started": True, "next_step": next_step.value}


@router.get("/setup/gateway-status")
async def gateway_status(user_id: str = Depends(current_user)):
    """Read-only probe of the gateway process on the sandbox."""
    try:
        snapshot = await _get_orchestrator().check_gateway_status(user_id)
    except OutpostError as exc:
        raise _http_error(exc) from exc
    return snapshot.model_dump(mode="json")


@router.post("/setup/delete-vm")
async def delete_vm(user_id: str = Depends(current_user)):
    """Tear down the sandbox. Local state is reset even if the remote delete fails."""
    closed = await _get_sessions().cleanup_user_sessions(user_id)
    snapshot = await _get_orchestrator().teardown_vm(user_id)
    return {
        "success": True,
        "status": snapshot.model_dump(mode="json"),
        "sessions_closed": closed,
    }


@router.get("/account")
async def get_account(user_id: str = Depends(current_user)):
    user = await _get_orchestrator().get_profile(user_id)
    if user is None:
        return {"exists": False, "user_id": user_id, "email": None, "created_at": None}
    return {
        "exists": True,
        "user_id": user_id,
        "email": user.email,
        "created_at": user.created_at.isoformat(),
    }


@router.put("/account")
async def save_account(body: AccountRequest, user_id: str = Depends(current_user)):
    """Store the caller's contact email. It is encrypted at rest."""
    user = await _get_orchestrator().save_profile(user_id, body.email)
    return {"success": True, "email": user.email, "created_at": user.created_at.isoformat()}


@router.delete("/account")
async def delete_account(user_id: str = Depends(current_user)):
    await _get_sessions().cleanup_user_sessions(user_id)
    await _get_orchestrator().delete_account(user_id)
    return {"success": True}


# ── Terminal ─────────────────────────────────────────────────────────────────


@router.post("/terminal/open")
async def terminal_open(
    body: TerminalOpenRequest | None = None, user_id: str = Depends(current_user)
):
    body = body or TerminalOpenRequest()
    record = await _get_orchestrator().get_record(user_id)
    if record is None or not record.sandbox_id:
        raise HTTPException(status_code=404, detail="No sandbox provisioned")
    try:
        session_id = await _get_sessions().open(user_id, record.sandbox_id, body.cols, body.rows)
    except OutpostError as exc:
        raise _http_error(exc) from exc
    return {"session_id": session_id, "sandbox_id": record.sandbox_id}



@router.post("/terminal/input")
async def terminal_input(body: TerminalInputRequest, user_id: str = Depends(current_user)):
    sessions = _get_sessions()
    authorize_session(sessions, user_id, body.session_id)
    try:
        found = await sessions.write(body.session_id, body.input)
    except OutpostError as exc:
        raise _http_error(exc) from exc
    if not found:
        raise HTTPException(status_code=404, detail="Session not found or expired")
    return {"success": True}


@router.get("/terminal/output")
async def terminal_output(
    session_id: str = Query(...),
    since: int = Query(default=0, ge=0),
    user_id: str = Depends(current_user),
):
    sessions = _get_sessions()
    authorize_session(sessions, user_id, session_id)
    result = await sessions.read_output(session_id, since)
    if result is None:
        raise HTTPException(status_code=404, detail="Session not found or expired")
    output, cursor = result
    session = await sessions.get(session_id)
    return {
        "output": output,
        "cursor": cursor,
        "state": session.state if session else "closed",
    }


@router.post("/terminal/resize")
async def terminal_resize(body: TerminalResizeRequest, user_id: str = Depends(current_user)):
    sessions = _get_sessions()
    authorize_session(sessions, user_id, body.session_id)
    try:
        found = await sessions.resize(body.session_id, body.cols, body.rows)
    except OutpostError as exc:
        raise _http_error(exc) from exc
    if not found:
        raise HTTPException(status_code=404, detail="Session not found or expired")
    return {"success": True}


@router.post("/terminal/disconnect")
async def terminal_disconnect(body: TerminalSessionRequest, user_id: str = Depends(current_user)):
    """Close a session. Disconnecting an already-closed session is not an error."""
    sessions = _get_sessions()
    if sessions.owner(body.session_id) is None:
        return {"success": True, "closed": False}
    authorize_session(sessions, user_id, body.session_id)
    closed = await sessions.close(body.session_id)
    return {"success": True, "closed": closed}
