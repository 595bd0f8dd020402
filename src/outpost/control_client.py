"""Sandbox control-plane client for Outpost.

Thin async wrapper over the control plane's REST API: run a shell command
on a sandbox, plus project and sandbox lifecycle calls. Every call carries
a timeout. Nothing is retried here; several commands the orchestrator sends
(kill-then-start sequences) must not be blindly repeated.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

import httpx

from outpost.errors import AuthError, ControlPlaneError, TransientError
from outpost.models import CommandResult, Project, Sandbox

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.orgo.ai/api"

# Gateway/proxy statuses that say nothing about the request itself.
_TRANSIENT_STATUSES = frozenset({502, 503, 504})

_ADJECTIVES = ("swift", "brave", "quiet", "bright", "calm", "bold", "keen", "wild", "warm", "cool")
_NOUNS = ("fox", "owl", "wolf", "hawk", "bear", "lynx", "otter", "raven", "heron", "badger")


def generate_sandbox_name() -> str:
    """Human-friendly sandbox name, e.g. ``swift-fox-123``."""
    return f"{random.choice(_ADJECTIVES)}-{random.choice(_NOUNS)}-{random.randint(100, 999)}"


def _error_message(resp: httpx.Response) -> str:
    fallback = f"Control plane error: {resp.status_code}"
    try:
        body = resp.json()
    except ValueError:
        return resp.text or fallback
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or fallback)
    return fallback


def _to_sandbox(data: Any) -> Sandbox:
    if not isinstance(data, dict) or data.get("id") is None:
        raise ControlPlaneError(f"Malformed sandbox in response: {data!r:.200}")
    return Sandbox(
        id=str(data["id"]),
        name=data.get("name") or "",
        project_name=data.get("project_name"),
        status=data.get("status") or "unknown",
        url=data.get("url"),
        os=data.get("os") or "linux",
        ram=data.get("ram"),
        cpu=data.get("cpu"),
    )


class ControlClient:
    """Async client for one control-plane endpoint and one API key.

    Usage::

        async with ControlClient(api_key) as client:
            result = await client.run_command(sandbox_id, "uname -a")
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        request_timeout: float = 60.0,
        command_timeout: float = 300.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.command_timeout = command_timeout
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
                "User-Agent": "Outpost/0.1.0",
            },
            timeout=self.request_timeout,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> ControlClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Control client not started")
        return self._client

    # ── Transport ────────────────────────────────────────────────────────

    async def _request(
        self, method: str, path: str, *, timeout: float | None = None, **kwargs
    ) -> httpx.Response:
        """Issue a request and translate failures into the Outpost taxonomy."""
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            resp = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientError(
                f"{method} {path} timed out; the operation may still be in progress"
            ) from exc
        except httpx.TransportError as exc:
            raise TransientError(f"{method} {path} failed: {exc}") from exc

        if resp.is_success:
            return resp

        message = _error_message(resp)
        if resp.status_code in (401, 403):
            raise AuthError(message, status_code=resp.status_code)
        if resp.status_code in _TRANSIENT_STATUSES:
            raise TransientError(message, status_code=resp.status_code)
        raise ControlPlaneError(message, status_code=resp.status_code)

    async def _json(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        """Decode a JSON object body. An empty body reads as ``{}``."""
        resp = await self._request(method, path, **kwargs)
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError as exc:
            raise ControlPlaneError(
                f"Unparseable response from {method} {path}", status_code=resp.status_code
            ) from exc
        if not isinstance(data, dict):
            raise ControlPlaneError(
                f"Expected a JSON object from {method} {path}, got {type(data).__name__}",
                status_code=resp.status_code,
            )
        return data

    # ── Commands ─────────────────────────────────────────────────────────

    async def run_command(
        self, sandbox_id: str, command: str, timeout: float | None = None
    ) -> CommandResult:
        """Run a POSIX shell command line on a sandbox."""
        data = await self._json(
            "POST",
            f"/computers/{sandbox_id}/bash",
            json={"command": command},
            timeout=timeout or self.command_timeout,
        )
        exit_code = data.get("exit_code")
        try:
            exit_code = 0 if exit_code is None else int(exit_code)
        except (TypeError, ValueError) as exc:
            raise ControlPlaneError(f"Malformed exit code from sandbox: {exit_code!r}") from exc
        return CommandResult(output=str(data.get("output") or ""), exit_code=exit_code)

    # ── Projects ─────────────────────────────────────────────────────────

    async def list_projects(self) -> list[Project]:
        data = await self._json("GET", "/projects")
        projects = data.get("projects") or []
        if not isinstance(projects, list):
            raise ControlPlaneError("Malformed project list in response")
        try:
            return [Project(id=str(p["id"]), name=p["name"]) for p in projects]
        except (KeyError, TypeError) as exc:
            raise ControlPlaneError(f"Malformed project in response: {exc}") from exc

    async def create_project(self, name: str) -> Project:
        data = await self._json("POST", "/projects", json={"name": name})
        if data.get("id") is None:
            raise ControlPlaneError("Created project has no id")
        logger.info("Created project %s", name)
        return Project(id=str(data["id"]), name=data.get("name") or name)

    # ── Sandboxes ────────────────────────────────────────────────────────

    async def create_sandbox(
        self,
        project_id: str,
        name: str | None = None,
        *,
        os: str = "linux",
        ram: int = 4,
        cpu: int = 2,
    ) -> Sandbox:
        name = name or generate_sandbox_name()
        data = await self._json(
            "POST",
            "/computers",
            json={"project_id": project_id, "name": name, "os": os, "ram": ram, "cpu": cpu},
        )
        sandbox = _to_sandbox(data)
        logger.info("Created sandbox %s (%s) in project %s", sandbox.id, sandbox.name, project_id)
        return sandbox

    async def get_sandbox(self, sandbox_id: str) -> Sandbox:
        return _to_sandbox(await self._json("GET", f"/computers/{sandbox_id}"))

    async def delete_sandbox(self, sandbox_id: str) -> None:
        await self._request("DELETE", f"/computers/{sandbox_id}")
        logger.info("Deleted sandbox %s", sandbox_id)

    async def wait_for_ready(
        self, sandbox_id: str, *, attempts: int = 30, interval: float = 2.0
    ) -> bool:
        """Poll until the control plane reports the sandbox as running."""
        for attempt in range(attempts):
            sandbox = await self.get_sandbox(sandbox_id)
            if sandbox.is_running:
                return True
            logger.debug(
                "Sandbox %s status=%s (%d/%d)", sandbox_id, sandbox.status, attempt + 1, attempts
            )
            await asyncio.sleep(interval)
        return False
