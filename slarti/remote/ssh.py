"""Subprocess helpers for the system ``ssh``/``rsync``/``scp`` tools."""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

from slarti.remote.config import AgentConfig
from slarti.remote.errors import TransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SshTarget:
    """An SSH alias plus the effective user resolved for it by the SSH config layer."""

    alias: str
    user: Optional[str] = None

    @property
    def destination(self) -> str:
        if self.user and "@" not in self.alias:
            return f"{self.user}@{self.alias}"
        return self.alias

    def __str__(self) -> str:
        return self.destination


@dataclass
class CommandResult:
    """Outcome of a finished local process."""

    argv: List[str]
    returncode: Optional[int]
    stdout: str
    stderr: str
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def ssh_options(config: AgentConfig, connect_timeout: Optional[float] = None) -> List[str]:
    """``-o`` options shared by ssh, scp and rsync's remote shell."""
    timeout = connect_timeout if connect_timeout is not None else config.connect_timeout
    opts = [
        "-o", "BatchMode=yes",
        "-o", f"StrictHostKeyChecking={config.strict_host_key_checking}",
        "-o", f"ConnectTimeout={max(int(timeout), 1)}",
        "-o", "ConnectionAttempts=1",
    ]
    if config.compression:
        opts.extend(["-o", "Compression=yes"])
    for opt in config.extra_ssh_options:
        opts.extend(["-o", opt])
    return opts


def build_ssh_cmd(
    target: SshTarget,
    remote_command: str,
    config: AgentConfig,
    connect_timeout: Optional[float] = None,
) -> List[str]:
    """Build ``ssh -T <opts> <dest> -- <remote_command>``.

    The remote command is handed to the user's login shell on the remote
    side, so ``$HOME`` and friends expand there.
    """
    cmd = [config.ssh_binary, *ssh_options(config, connect_timeout), "-T", target.destination, "--"]
    cmd.append(remote_command)
    return cmd


async def run_capture(argv: Sequence[str], timeout: float) -> CommandResult:
    """Run a local process to completion, capturing stdout/stderr.

    Raises TransportError when the tool cannot be started or exceeds ``timeout``.
    """
    argv = list(argv)
    started = time.monotonic()
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=os.environ.copy(),
        )
    except OSError as e:
        raise TransportError(f"Failed to run {argv[0]}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise TransportError(f"{argv[0]} timed out after {timeout}s")

    result = CommandResult(
        argv=argv,
        returncode=process.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        elapsed=time.monotonic() - started,
    )
    logger.debug(
        f"{argv[0]}: elapsed={result.elapsed:.2f}s exit_code={result.returncode} "
        f"stdout_len={len(result.stdout)} stderr_len={len(result.stderr)}"
    )
    if result.stdout.strip():
        logger.debug(f"{argv[0]} stdout: {result.stdout.strip()}")
    if result.stderr.strip():
        logger.debug(f"{argv[0]} stderr: {result.stderr.strip()}")
    return result


async def ssh_run_capture(
    target: SshTarget,
    remote_command: str,
    timeout: float,
    config: Optional[AgentConfig] = None,
) -> CommandResult:
    """Run one non-interactive command on ``target`` and capture its output."""
    config = config or AgentConfig()
    argv = build_ssh_cmd(target, remote_command, config, connect_timeout=timeout)
    logger.debug(f"ssh {target.destination}: {remote_command}")
    return await run_capture(argv, timeout)
