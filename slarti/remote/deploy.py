"""Upload and install the agent on a remote host."""

import logging
import re
import shlex
import shutil
import tempfile
import zipapp
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple

import slarti
from slarti.remote import ssh
from slarti.remote.config import AgentConfig
from slarti.remote.errors import DeployError, TransportError
from slarti.remote.ssh import CommandResult, SshTarget

logger = logging.getLogger(__name__)

_PACKAGE_DIR = Path(slarti.__file__).parent
_REMOTE_DIR = Path(__file__).parent

# Modules bundled into the agent artifact; all stdlib-only
_ARTIFACT_MODULES = ("errors.py", "protocol.py", "remote_agent.py")

_SAFE_NAME = re.compile(r"^[0-9A-Za-z][0-9A-Za-z._+-]*$")

_MAIN = "from slarti.remote.remote_agent import run\n\nrun()\n"


@dataclass
class DeployResult:
    """Where the agent was installed and how it got there."""

    remote_path: str
    used_rsync: bool
    is_root: bool = False

    @property
    def mechanism(self) -> str:
        return "rsync" if self.used_rsync else "scp"


def build_agent_artifact(dest_dir: Path, name: str = "slarti-agent.pyz") -> Path:
    """Bundle the agent into an executable zipapp under ``dest_dir``.

    The archive carries a ``python3`` shebang so it runs directly once
    marked executable.
    """
    dest_dir = Path(dest_dir)
    target = dest_dir / name
    with tempfile.TemporaryDirectory() as staging:
        root = Path(staging)
        remote_pkg = root / "slarti" / "remote"
        remote_pkg.mkdir(parents=True)
        shutil.copy2(_PACKAGE_DIR / "__init__.py", root / "slarti" / "__init__.py")
        # The client-side package init imports modules the agent does not ship
        (remote_pkg / "__init__.py").write_text('"""slarti remote agent."""\n')
        for module in _ARTIFACT_MODULES:
            shutil.copy2(_REMOTE_DIR / module, remote_pkg / module)
        (root / "__main__.py").write_text(_MAIN)
        zipapp.create_archive(root, target, interpreter="/usr/bin/env python3")
    target.chmod(0o755)
    return target


def install_dir(config: AgentConfig, is_root: bool, home: str, version: str) -> str:
    """``<base>/<version>``, base chosen by remote privilege."""
    if is_root:
        base = config.root_base.rstrip("/")
    else:
        base = f"{home.rstrip('/')}/{config.home_base.strip('/')}"
    return f"{base}/{version}"


class AgentDeployer:
    """Installs the agent at ``<base>/<version>/<binary-name>`` on one host.

    Steps: detect privilege, create the versioned directory, upload with
    rsync (falling back to scp), fix name/permissions. Every step failure
    raises DeployError; running it again for the same version is harmless.
    """

    def __init__(
        self,
        target: SshTarget,
        config: Optional[AgentConfig] = None,
        on_progress: Optional[Callable[[str], None]] = None,
    ):
        self.target = target
        self.config = config or AgentConfig()
        self.on_progress = on_progress

    def _progress(self, message: str) -> None:
        logger.info(f"deploy {self.target}: {message}")
        if self.on_progress:
            self.on_progress(message)

    async def _ssh_exec(self, script: str, timeout: Optional[float] = None) -> CommandResult:
        return await ssh.ssh_run_capture(
            self.target, script, timeout or self.config.step_timeout, self.config
        )

    async def _run_local(self, argv: list, timeout: Optional[float] = None) -> CommandResult:
        return await ssh.run_capture(argv, timeout or self.config.upload_timeout)

    async def remote_identity(self) -> Tuple[bool, str]:
        """Return ``(is_root, home)`` from a single ``id -u`` / ``$HOME`` probe."""
        try:
            result = await self._ssh_exec("id -u; printf '%s\\n' \"$HOME\"")
        except TransportError as e:
            raise DeployError(f"privilege check on {self.target} failed: {e}") from e
        lines = result.stdout.splitlines()
        if not result.ok or not lines:
            raise DeployError(
                f"privilege check on {self.target} failed (exit={result.returncode}): "
                f"{result.stderr.strip()}"
            )
        is_root = lines[0].strip() == "0"
        home = lines[1].strip() if len(lines) > 1 else ""
        if not is_root and not home.startswith("/"):
            raise DeployError(f"cannot determine home directory on {self.target}")
        return is_root, home

    async def resolve_remote_path(self, version: str) -> str:
        """Where ``version`` is (or would be) installed, without changing anything."""
        _check_name(version, "version")
        is_root, home = await self.remote_identity()
        return f"{install_dir(self.config, is_root, home, version)}/{self.config.binary_name}"

    async def _ensure_dir(self, remote_dir: str) -> None:
        try:
            result = await self._ssh_exec(f"mkdir -p -- {shlex.quote(remote_dir)}")
        except TransportError as e:
            raise DeployError(f"remote mkdir failed on {self.target}: {e}") from e
        if not result.ok:
            raise DeployError(f"remote mkdir failed on {self.target}: {result.stderr.strip()}")

    async def _upload_rsync(self, artifact: Path, remote_file: str) -> bool:
        remote_shell = " ".join(
            shlex.quote(part) for part in [self.config.ssh_binary, *ssh.ssh_options(self.config)]
        )
        argv = [
            self.config.rsync_binary,
            "-az",
            "--chmod=755",
            "-e", remote_shell,
            str(artifact),
            f"{self.target.destination}:{remote_file}",
        ]
        try:
            result = await self._run_local(argv)
        except TransportError as e:
            logger.warning(f"rsync unavailable: {e}")
            return False
        if not result.ok:
            logger.warning(f"rsync to {self.target} failed (exit={result.returncode}): {result.stderr.strip()}")
        return result.ok

    async def _upload_scp(self, artifact: Path, remote_file: str) -> bool:
        argv = [
            self.config.scp_binary,
            *ssh.ssh_options(self.config),
            str(artifact),
            f"{self.target.destination}:{remote_file}",
        ]
        try:
            result = await self._run_local(argv)
        except TransportError as e:
            logger.warning(f"scp unavailable: {e}")
            return False
        if not result.ok:
            logger.warning(f"scp to {self.target} failed (exit={result.returncode}): {result.stderr.strip()}")
        return result.ok

    async def _finalize(self, uploaded: str, remote_path: str) -> None:
        """Rename to the canonical name if needed, then make it executable."""
        if uploaded != remote_path:
            script = (
                f"mv -f -- {shlex.quote(uploaded)} {shlex.quote(remote_path)} "
                f"&& chmod 755 -- {shlex.quote(remote_path)}"
            )
            step = "move/chmod"
        else:
            script = f"chmod 755 -- {shlex.quote(remote_path)}"
            step = "chmod"
        try:
            result = await self._ssh_exec(script)
        except TransportError as e:
            raise DeployError(f"remote {step} failed on {self.target}: {e}") from e
        if not result.ok:
            raise DeployError(f"remote {step} failed on {self.target}: {result.stderr.strip()}")

    async def deploy(self, artifact: Path, version: str) -> DeployResult:
        """Install ``artifact`` as agent ``version`` and return where it went."""
        artifact = Path(artifact)
        _check_name(version, "version")
        _check_name(self.config.binary_name, "binary name")
        if not artifact.is_file():
            raise DeployError(f"agent artifact not found: {artifact}")

        self._progress("checking remote user")
        is_root, home = await self.remote_identity()
        remote_dir = install_dir(self.config, is_root, home, version)
        remote_path = f"{remote_dir}/{self.config.binary_name}"

        self._progress(f"creating {remote_dir}")
        await self._ensure_dir(remote_dir)

        self._progress("uploading agent (rsync)")
        used_rsync = await self._upload_rsync(artifact, remote_path)
        if not used_rsync:
            self._progress("rsync failed, uploading agent (scp)")
            uploaded = f"{remote_dir}/{artifact.name}"
            if not await self._upload_scp(artifact, uploaded):
                raise DeployError(f"failed to upload agent (rsync/scp) to {self.target}")
            # scp does not reliably preserve the executable bit
            await self._finalize(uploaded, remote_path)

        result = DeployResult(remote_path=remote_path, used_rsync=used_rsync, is_root=is_root)
        self._progress(f"installed {remote_path} via {result.mechanism}")
        return result

    async def deploy_bundled(self, version: Optional[str] = None) -> DeployResult:
        """Build the agent artifact from this package and deploy it."""
        version = version or slarti.__version__
        with tempfile.TemporaryDirectory() as staging:
            artifact = build_agent_artifact(Path(staging))
            return await self.deploy(artifact, version)


def _check_name(value: str, what: str) -> None:
    if not _SAFE_NAME.match(value):
        raise DeployError(f"invalid {what}: {value!r}")
