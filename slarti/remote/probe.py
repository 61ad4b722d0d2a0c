"""One-shot check whether the agent is installed and runnable on a host."""

import logging
import shlex
from dataclasses import dataclass
from typing import Optional

from slarti.remote.config import AgentConfig
from slarti.remote.errors import ProbeError, TransportError
from slarti.remote import ssh
from slarti.remote.ssh import CommandResult, SshTarget

logger = logging.getLogger(__name__)

# Exit codes a POSIX shell uses for "not executable" and "not found"
MISSING_EXIT_CODES = frozenset({126, 127})

# ssh reports its own failures (unreachable, auth) with 255
SSH_FAILURE_EXIT_CODE = 255

# Matched against stderr; the probe runs under LC_ALL=C so these stay in English
MISSING_SIGNATURES = (
    "No such file or directory",
    "not found",
    "Permission denied",
    "Exec format error",
    "cannot execute",
)


@dataclass
class AgentStatus:
    """Result of probing ``<remote_path> --version`` on a host."""

    present: bool
    can_run: bool
    remote_path: str
    version: Optional[str] = None
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None


def remote_path_arg(path: str) -> str:
    """Shell-quote ``path`` while letting a leading ``~/`` or ``$HOME/`` expand remotely."""
    for prefix in ("~/", "$HOME/"):
        if path.startswith(prefix):
            return '"$HOME"/' + shlex.quote(path[len(prefix):])
    return shlex.quote(path)


def looks_missing(result: CommandResult) -> bool:
    """Whether a failed probe means "agent missing or not executable"."""
    if result.returncode == SSH_FAILURE_EXIT_CODE:
        return False
    if result.returncode in MISSING_EXIT_CODES:
        return True
    return any(sig in result.stderr for sig in MISSING_SIGNATURES)


def first_line(text: str) -> Optional[str]:
    for line in text.splitlines():
        line = line.strip()
        if line:
            return line
    return None


def classify(result: CommandResult, remote_path: str) -> AgentStatus:
    """Turn a finished probe into an AgentStatus, or raise ProbeError."""
    if result.ok:
        version = first_line(result.stdout)
        return AgentStatus(
            present=version is not None,
            can_run=True,
            remote_path=remote_path,
            version=version,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.returncode,
        )

    if looks_missing(result):
        return AgentStatus(
            present=False,
            can_run=False,
            remote_path=remote_path,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.returncode,
        )

    raise ProbeError(
        f"ssh check failed (exit={result.returncode}): "
        f"stderr=`{result.stderr.strip()}`, stdout=`{result.stdout.strip()}`"
    )


async def check_agent(
    target: SshTarget,
    remote_path: str,
    timeout: float,
    config: Optional[AgentConfig] = None,
) -> AgentStatus:
    """Run ``<remote_path> --version`` on ``target`` without starting a session.

    A missing or non-executable agent is reported through the returned status.
    Connectivity/auth failures and timeouts raise ProbeError.
    """
    # env(1) sets the locale without assuming a POSIX login shell (csh, fish)
    script = f"env LC_ALL=C {remote_path_arg(remote_path)} --version"
    try:
        result = await ssh.ssh_run_capture(target, script, timeout, config)
    except ProbeError:
        raise
    except TransportError as e:
        raise ProbeError(f"Agent check on {target} failed: {e}") from e

    status = classify(result, remote_path)
    logger.info(
        f"check_agent {target}: present={status.present} can_run={status.can_run} "
        f"version={status.version} exit_code={status.exit_code}"
    )
    return status
