"""Shell command builders for work done on a sandbox.

The control plane only returns ``{output, exit_code}``, so every probe here
prints a sentinel line (``RUNNING``/``NOT_RUNNING``, ``PORT_LISTENING``, ...)
that callers match as a whole line with ``CommandResult.has_line``.
Files are shipped base64-encoded to avoid quoting problems.
"""

from __future__ import annotations

import base64
import shlex

from outpost.config import GatewayConfig, RuntimeConfig

RUNNING = "RUNNING"
NOT_RUNNING = "NOT_RUNNING"
PORT_LISTENING = "PORT_LISTENING"
PORT_NOT_LISTENING = "PORT_NOT_LISTENING"
EXISTS = "EXISTS"
NOT_FOUND = "NOT_FOUND"
INSTALL_DONE = "DONE"
INSTALL_FAILED = "FAILED"
INSTALL_PENDING = "PENDING"

INSTALL_SCRIPT_PATH = "/tmp/outpost-install-runtime.sh"
_TARBALL_PATH = "/tmp/outpost-runtime.tgz"
_NVM_INSTALLER = "https://raw.githubusercontent.com/nvm-sh/nvm/v0.40.0/install.sh"

NVM_PRELUDE = 'export NVM_DIR="$HOME/.nvm"; [ -s "$NVM_DIR/nvm.sh" ] && . "$NVM_DIR/nvm.sh"'


def shell_path(path: str) -> str:
    """Quote a path for the shell, keeping a leading ``~/`` expandable."""
    if path.startswith("~/"):
        return f'"$HOME/{path[2:]}"'
    return shlex.quote(path)


def write_file(path: str, content: str, mode: str | None = None) -> str:
    """Write ``content`` to ``path`` (creating parent dirs), optionally chmod it."""
    encoded = base64.b64encode(content.encode()).decode()
    target = shell_path(path)
    command = f'mkdir -p "$(dirname {target})" && echo \'{encoded}\' | base64 -d > {target}'
    if mode:
        command += f" && chmod {mode} {target}"
    return command


def make_dirs(*paths: str) -> str:
    return "mkdir -p " + " ".join(shell_path(p) for p in paths)


def env_file(variables: dict[str, str]) -> str:
    """Content of a sourceable file of ``export`` lines."""
    return "".join(f"export {name}={shlex.quote(value)}\n" for name, value in variables.items())


# ── Process Control ──────────────────────────────────────────────────────────


def _self_excluding(pattern: str) -> str:
    """Regex matching ``pattern`` but not a command line that contains it.

    ``pgrep -f "foo bar"`` also matches the ``bash -c`` running it; ``[f]oo bar``
    matches the same processes without matching itself.
    """
    if pattern and pattern[0].isalnum():
        return f"[{pattern[0]}]{pattern[1:]}"
    return pattern


def kill_process(pattern: str) -> str:
    return f"pkill -f {shlex.quote(_self_excluding(pattern))} 2>/dev/null || true"


def launch_detached(script: str, log_file: str) -> str:
    """Start ``script`` in the background and print its pid."""
    return f"nohup {shell_path(script)} >> {shell_path(log_file)} 2>&1 & echo $!"


def process_check(pattern: str) -> str:
    regex = shlex.quote(_self_excluding(pattern))
    return f"pgrep -f {regex} > /dev/null && echo {RUNNING} || echo {NOT_RUNNING}"


def process_details(pattern: str) -> str:
    return f"ps aux | grep -- {shlex.quote(_self_excluding(pattern))} || true"


def port_check(port: int) -> str:
    return (
        f"(ss -tln 2>/dev/null || netstat -tln 2>/dev/null) | grep -q ':{port} '"
        f" && echo {PORT_LISTENING} || echo {PORT_NOT_LISTENING}"
    )


def tail_log(log_file: str, lines: int = 50) -> str:
    return f'tail -n {lines} {shell_path(log_file)} 2>/dev/null || echo "No log file found"'


def file_exists(path: str) -> str:
    return f"test -f {shell_path(path)} && echo {EXISTS} || echo {NOT_FOUND}"


# ── Runtime Install ──────────────────────────────────────────────────────────


def runtime_binary(runtime: RuntimeConfig) -> str:
    """Print the path of the installed runtime binary, or nothing."""
    return f'ls "$HOME"/.nvm/versions/node/*/bin/{runtime.binary} 2>/dev/null | head -1'


def runtime_version(runtime: RuntimeConfig) -> str:
    return f"{NVM_PRELUDE}; {runtime.binary} --version 2>/dev/null | head -1"


def install_script(runtime: RuntimeConfig) -> str:
    """Idempotent installer for Node (via nvm) and the runtime package.

    Exits immediately when the binary is already present. With a configured
    tarball and checksum, the package is downloaded and verified with
    ``sha256sum -c`` before installing; otherwise it comes from the npm
    registry.
    """
    log = shlex.quote(runtime.install_log)
    node = shlex.quote(runtime.node_version)

    if runtime.tarball_url:
        package_step = (
            f"curl -fsSL {shlex.quote(runtime.tarball_url)} -o {_TARBALL_PATH} || fail download\n"
        )
        if runtime.sha256:
            package_step += (
                f'echo "{runtime.sha256}  {_TARBALL_PATH}" | sha256sum -c - >> "$LOG" 2>&1'
                " || fail checksum\n"
            )
        package_step += f'npm install -g {_TARBALL_PATH} >> "$LOG" 2>&1 || fail npm-install\n'
    else:
        spec = shlex.quote(f"{runtime.package}@{runtime.version}")
        package_step = f'npm install -g {spec} >> "$LOG" 2>&1 || fail npm-install\n'

    return (
        "#!/bin/bash\n"
        f"LOG={log}\n"
        'export NVM_DIR="$HOME/.nvm"\n'
        'fail() { echo "INSTALL_FAILED: $1" >> "$LOG"; exit 1; }\n'
        f'if ls "$NVM_DIR"/versions/node/*/bin/{runtime.binary} > /dev/null 2>&1; then\n'
        '  echo "INSTALL_COMPLETE" >> "$LOG"\n'
        "  exit 0\n"
        "fi\n"
        'if [ ! -s "$NVM_DIR/nvm.sh" ]; then\n'
        f'  curl -fsSL {_NVM_INSTALLER} | bash >> "$LOG" 2>&1 || fail nvm\n'
        "fi\n"
        '. "$NVM_DIR/nvm.sh"\n'
        f'nvm install {node} >> "$LOG" 2>&1 || fail node\n'
        f'nvm alias default {node} >> "$LOG" 2>&1\n'
        f"{package_step}"
        'echo "INSTALL_COMPLETE" >> "$LOG"\n'
    )


def launch_install(runtime: RuntimeConfig) -> str:
    log = shlex.quote(runtime.install_log)
    return f"rm -f {log} && nohup {INSTALL_SCRIPT_PATH} > /dev/null 2>&1 & echo $!"


def install_progress(runtime: RuntimeConfig) -> str:
    log = shlex.quote(runtime.install_log)
    return (
        f"if grep -q INSTALL_COMPLETE {log} 2>/dev/null; then echo {INSTALL_DONE}; "
        f"elif grep -q INSTALL_FAILED {log} 2>/dev/null; then echo {INSTALL_FAILED}; "
        f"else echo {INSTALL_PENDING}; fi"
    )


# ── Gateway ──────────────────────────────────────────────────────────────────


def gateway_startup_script(gateway: GatewayConfig, runtime: RuntimeConfig) -> str:
    """Wrapper run under nohup: loads the env file and runs the gateway in the foreground."""
    log = shell_path(gateway.log_file)
    env = shell_path(gateway.env_path)
    return (
        "#!/bin/bash\n"
        f"LOG={log}\n"
        'stamp() { date +"%Y-%m-%d %H:%M:%S"; }\n'
        f"{NVM_PRELUDE}\n"
        f"[ -f {env} ] && . {env}\n"
        'echo "[$(stamp)] Starting gateway (node $(node -v 2>&1))" >> "$LOG"\n'
        f"if ! command -v {runtime.binary} > /dev/null 2>&1; then\n"
        f'  echo "[$(stamp)] ERROR: {runtime.binary} not found on PATH" >> "$LOG"\n'
        "  exit 1\n"
        "fi\n"
        f'{runtime.binary} gateway run >> "$LOG" 2>&1\n'
        "EXIT_CODE=$?\n"
        'echo "[$(stamp)] Gateway exited with code $EXIT_CODE" >> "$LOG"\n'
        "exit $EXIT_CODE\n"
    )
