"""SSH access to sandboxes that expose it.

Used two ways: interactive terminals (:class:`outpost.terminal.SSHTransport`)
and one-shot command execution for backends without a command API of their
own (:class:`outpost.aws_client.AwsClient`). paramiko is blocking, so the
async helpers here run it in worker threads.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field

import paramiko

from outpost.errors import AuthError, ControlPlaneError, OutpostError, TransientError
from outpost.models import CommandResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SSHTarget:
    """Where and how to log in. ``host`` is unknown until the instance has an address."""

    private_key: str = field(repr=False)
    username: str = "user"
    host: str | None = None
    port: int = 22

    @property
    def label(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


def load_private_key(pem: str) -> paramiko.PKey:
    """Parse a PEM/OpenSSH private key of any supported type."""
    last_error: Exception | None = None
    for key_class in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_class.from_private_key(io.StringIO(pem))
        except paramiko.SSHException as exc:
            last_error = exc
    raise AuthError(f"Unsupported or invalid SSH private key: {last_error}")


def connect(target: SSHTarget, timeout: float) -> paramiko.SSHClient:
    """Open an authenticated client. Blocking; raises paramiko/socket errors as-is."""
    if not target.host:
        raise ControlPlaneError("Sandbox has no SSH address yet")
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        client.connect(
            hostname=target.host,
            port=target.port,
            username=target.username,
            pkey=load_private_key(target.private_key),
            timeout=timeout,
            banner_timeout=timeout,
            auth_timeout=timeout,
            allow_agent=False,
            look_for_keys=False,
        )
    except BaseException:
        client.close()
        raise
    return client


def translate_error(exc: Exception, target: SSHTarget) -> OutpostError:
    """Map a paramiko or socket failure onto the Outpost error taxonomy."""
    if isinstance(exc, OutpostError):
        return exc
    if isinstance(exc, paramiko.AuthenticationException):
        return AuthError(f"SSH authentication failed for {target.label}")
    if isinstance(exc, TimeoutError):
        return TransientError(f"SSH connection to {target.label} timed out")
    if isinstance(exc, paramiko.SSHException):
        return ControlPlaneError(f"SSH error on {target.label}: {exc}")
    return TransientError(f"SSH connection to {target.label} failed: {exc}")


def _exec(target: SSHTarget, command: str, timeout: float, connect_timeout: float) -> CommandResult:
    client = connect(target, connect_timeout)
    try:
        _, stdout, stderr = client.exec_command(command, timeout=timeout)
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        exit_code = stdout.channel.recv_exit_status()
    finally:
        client.close()
    return CommandResult(output=out + err, exit_code=exit_code)


async def run_command(
    target: SSHTarget, command: str, *, timeout: float = 300.0, connect_timeout: float = 30.0
) -> CommandResult:
    """Run one shell command over a fresh SSH connection."""
    try:
        return await asyncio.to_thread(_exec, target, command, timeout, connect_timeout)
    except (OSError, paramiko.SSHException) as exc:
        raise translate_error(exc, target) from exc
