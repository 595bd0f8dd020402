"""Interactive terminal transports.

Two ways of reaching a sandbox shell:

- ``SSHTransport``: a real PTY over SSH (paramiko). Supports resizing.
  paramiko is blocking, so every call runs in a worker thread.
- ``ControlPlaneTransport``: for sandboxes without SSH access. Input is
  line-buffered and each complete line runs through the control plane's
  command API. No PTY, so resizing is a no-op.

Both append whatever the remote side prints to an ``OutputBuffer`` that
HTTP callers poll with a cursor. ``close()`` never waits for remote work:
it interrupts whatever is in flight.
"""

from __future__ import annotations

import abc
import asyncio
import codecs
import logging
from collections import deque
from collections.abc import Callable
from typing import TYPE_CHECKING

import paramiko

from outpost import ssh
from outpost.errors import ControlPlaneError, RecordNotFoundError
from outpost.models import CommandResult
from outpost.remote_scripts import NVM_PRELUDE

if TYPE_CHECKING:
    from outpost.codec import Codecs
    from outpost.config import TerminalConfig
    from outpost.models import SetupRecord
    from outpost.orchestrator import SandboxClient

logger = logging.getLogger(__name__)

TERM_TYPE = "xterm-256color"
_RECV_SIZE = 4096


class OutputBuffer:
    """Bounded buffer of output chunks addressed by a monotonically increasing cursor."""

    def __init__(self, max_chunks: int = 2000) -> None:
        self._chunks: deque[str] = deque(maxlen=max_chunks)
        self._next = 0

    @property
    def cursor(self) -> int:
        return self._next

    def append(self, data: str) -> None:
        if data:
            self._chunks.append(data)
            self._next += 1

    def read(self, since: int = 0) -> tuple[str, int]:
        """Return output appended at or after ``since`` and the next cursor.

        Chunks that fell off the front of the buffer are silently skipped.
        """
        first = self._next - len(self._chunks)
        start = max(since, first)
        if start >= self._next:
            return "", self._next
        chunks = list(self._chunks)[start - first :]
        return "".join(chunks), self._next


class TerminalTransport(abc.ABC):
    """An open (or openable) interactive channel to one sandbox."""

    supports_resize = False

    def __init__(self, buffer_chunks: int = 2000) -> None:
        self.output = OutputBuffer(buffer_chunks)
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @abc.abstractmethod
    async def open(self, cols: int, rows: int) -> None: ...

    @abc.abstractmethod
    async def write(self, data: str) -> None: ...

    async def resize(self, cols: int, rows: int) -> None:
        """No-op unless the transport has a PTY."""

    @abc.abstractmethod
    async def close(self) -> None: ...


# ── SSH ──────────────────────────────────────────────────────────────────────


class SSHTransport(TerminalTransport):
    supports_resize = True

    def __init__(
        self,
        target: ssh.SSHTarget,
        *,
        connect_timeout: float = 30.0,
        buffer_chunks: int = 2000,
    ):
        super().__init__(buffer_chunks)
        self.target = target
        self.connect_timeout = connect_timeout
        self._client: paramiko.SSHClient | None = None
        self._channel: paramiko.Channel | None = None
        self._reader: asyncio.Task | None = None

    def _connect(self, cols: int, rows: int) -> tuple[paramiko.SSHClient, paramiko.Channel]:
        client = ssh.connect(self.target, self.connect_timeout)
        try:
            channel = client.invoke_shell(term=TERM_TYPE, width=cols, height=rows)
        except paramiko.SSHException:
            client.close()
            raise
        return client, channel

    async def open(self, cols: int, rows: int) -> None:
        try:
            self._client, self._channel = await asyncio.to_thread(self._connect, cols, rows)
        except (OSError, paramiko.SSHException) as exc:
            raise ssh.translate_error(exc, self.target) from exc

        self._open = True
        self._reader = asyncio.create_task(
            self._read_loop(), name=f"ssh-reader-{self.target.host}"
        )
        logger.info("SSH terminal connected: %s", self.target.label)

    async def _read_loop(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        channel = self._channel
        try:
            while True:
                data = await asyncio.to_thread(channel.recv, _RECV_SIZE)
                if not data:
                    break
                self.output.append(decoder.decode(data))
        except (OSError, paramiko.SSHException) as exc:
            logger.warning("SSH read from %s failed: %s", self.target.host, exc)
        finally:
            self._open = False

    async def write(self, data: str) -> None:
        if not self._open or self._channel is None:
            raise ControlPlaneError("SSH channel is closed")
        await asyncio.to_thread(self._channel.sendall, data.encode())

    async def resize(self, cols: int, rows: int) -> None:
        if self._open and self._channel is not None:
            await asyncio.to_thread(self._channel.resize_pty, width=cols, height=rows)

    def _shutdown(self) -> None:
        if self._channel is not None:
            self._channel.close()
        if self._client is not None:
            self._client.close()

    async def close(self) -> None:
        if self._client is None:
            return
        self._open = False
        await asyncio.to_thread(self._shutdown)
        self._client = None
        self._channel = None
        if self._reader is not None:
            self._reader.cancel()
            self._reader = None
        logger.info("SSH terminal closed: %s", self.target.host)


# ── Control Plane ────────────────────────────────────────────────────────────


class ControlPlaneTransport(TerminalTransport):
    """Line-oriented shell emulation over ``run_command``.

    Lines run one at a time under the transport's own command lock.
    ``close()`` cancels the command in flight instead of waiting for it.
    """

    def __init__(
        self,
        client_factory: Callable[[], SandboxClient],
        sandbox_id: str,
        buffer_chunks: int = 2000,
    ):
        super().__init__(buffer_chunks)
        self._client_factory = client_factory
        self.sandbox_id = sandbox_id
        self._client: SandboxClient | None = None
        self._pending = ""
        self._command_lock = asyncio.Lock()
        self._inflight: asyncio.Future[CommandResult] | None = None

    async def open(self, cols: int, rows: int) -> None:
        client = self._client_factory()
        await client.start()
        try:
            await client.run_command(self.sandbox_id, "echo ready", timeout=30.0)
        except BaseException:
            await client.close()
            raise
        self._client = client
        self._open = True
        self.output.append(f"Connected to {self.sandbox_id}\r\n")

    async def write(self, data: str) -> None:
        if not self._open or self._client is None:
            raise ControlPlaneError("Terminal is closed")
        async with self._command_lock:
            self._pending += data.replace("\r\n", "\n").replace("\r", "\n")
            while self._open and "\n" in self._pending:
                line, self._pending = self._pending.split("\n", 1)
                if line.strip():
                    await self._execute(line)

    async def _execute(self, line: str) -> None:
        self.output.append(f"$ {line}\r\n")
        command = f"source ~/.bashrc 2>/dev/null || true; {NVM_PRELUDE}; {line}"
        self._inflight = asyncio.ensure_future(self._client.run_command(self.sandbox_id, command))
        try:
            result = await self._inflight
        except asyncio.CancelledError:
            if self._open:
                raise
            # Interrupted by close().
            return
        finally:
            self._inflight = None
        if result.output:
            text = result.output if result.output.endswith("\n") else result.output + "\n"
            self.output.append(text.replace("\n", "\r\n"))
        if not result.ok:
            self.output.append(f"[exit {result.exit_code}]\r\n")

    async def close(self) -> None:
        self._open = False
        if self._inflight is not None:
            self._inflight.cancel()
        if self._client is not None:
            await self._client.close()
            self._client = None


def build_transport(
    record: SetupRecord,
    secret_codecs: Codecs,
    client_for: Callable[[SetupRecord], SandboxClient],
    config: TerminalConfig,
) -> TerminalTransport:
    """Pick SSH when the record carries host and key, the control plane otherwise."""
    private_key = secret_codecs.secrets.decrypt_or_none(record.ssh_private_key, "SSH private key")
    if record.ssh_host and private_key:
        return SSHTransport(
            ssh.SSHTarget(
                private_key=private_key,
                username=record.ssh_username or "user",
                host=record.ssh_host,
                port=record.ssh_port,
            ),
            connect_timeout=config.connect_timeout,
            buffer_chunks=config.output_buffer_chunks,
        )
    if not record.sandbox_id:
        raise RecordNotFoundError(f"No sandbox for user {record.user_id}")
    return ControlPlaneTransport(
        lambda: client_for(record),
        record.sandbox_id,
        buffer_chunks=config.output_buffer_chunks,
    )
