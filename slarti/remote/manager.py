"""Per-alias workflow: probe, deploy when needed, verify, hand off a session."""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

import slarti
from slarti.remote.config import AgentConfig, DeploymentState, DeploymentStateStore
from slarti.remote.connection import AgentSession, run_agent
from slarti.remote.deploy import AgentDeployer, DeployResult
from slarti.remote.errors import (
    AgentError,
    DeployError,
    IncompatibleAgentError,
    ProbeError,
    TransportError,
)
from slarti.remote.probe import AgentStatus, check_agent, first_line
from slarti.remote.protocol import check_compatibility
from slarti.remote.ssh import SshTarget

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, str], None]

READY = "ready"
MISSING = "missing"
OUTDATED = "outdated"
DEPLOYED = "deployed"
UNREACHABLE = "unreachable"
ERROR = "error"


@dataclass
class HostStatus:
    """Short, user-facing outcome of one workflow step for an alias."""

    alias: str
    state: str
    message: str
    agent_version: Optional[str] = None
    remote_path: Optional[str] = None
    used_rsync: Optional[bool] = None

    @property
    def ok(self) -> bool:
        return self.state in (READY, DEPLOYED)

    @property
    def needs_deploy(self) -> bool:
        return self.state in (MISSING, OUTDATED)


class AgentManager:
    """Runs check/deploy/connect workflows for SSH aliases.

    Steps for one alias run strictly in sequence under that alias's lock.
    Different aliases run independently and only touch their own record
    in the state store.

    A manager may move between event loops (for example two AgentRuntime
    instances used one after the other) but must not be driven from two
    loops at once. The lock table holds one entry per alias seen on the
    current loop and is replaced when the loop changes.
    """

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        store: Optional[DeploymentStateStore] = None,
        client_version: Optional[str] = None,
        artifact: Optional[Path] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.config = config or AgentConfig()
        self.store = store or DeploymentStateStore()
        self.client_version = client_version or slarti.__version__
        self.artifact = artifact
        self.on_progress = on_progress
        self._locks: Dict[str, asyncio.Lock] = {}
        self._locks_loop: Optional[asyncio.AbstractEventLoop] = None

    def _lock(self, alias: str) -> asyncio.Lock:
        # asyncio.Lock binds to the loop that first waits on it
        loop = asyncio.get_running_loop()
        if loop is not self._locks_loop:
            self._locks = {}
            self._locks_loop = loop
        if alias not in self._locks:
            self._locks[alias] = asyncio.Lock()
        return self._locks[alias]

    def _progress(self, alias: str, message: str) -> None:
        logger.info(f"[{alias}] {message}")
        if self.on_progress:
            self.on_progress(alias, message)

    def _deployer(self, target: SshTarget) -> AgentDeployer:
        return AgentDeployer(
            target,
            self.config,
            on_progress=lambda message: self._progress(target.alias, message),
        )

    def _record(self, alias: str, **changes) -> DeploymentState:
        """Write a complete new record for ``alias`` based on the previous one."""
        previous = self.store.load(alias) or DeploymentState(alias=alias)
        state = DeploymentState(
            alias=alias,
            version=changes.get("version", previous.version),
            deployed_at=changes.get("deployed_at", previous.deployed_at),
            remote_path=changes.get("remote_path", previous.remote_path),
            reachable=changes.get("reachable", previous.reachable),
        )
        self.store.save(state)
        return state

    async def _candidate_path(self, target: SshTarget) -> str:
        state = self.store.load(target.alias)
        if state and state.remote_path and state.version == self.client_version:
            return state.remote_path
        return await self._deployer(target).resolve_remote_path(self.client_version)

    # -- check ------------------------------------------------------------

    async def _check(self, target: SshTarget) -> Tuple[HostStatus, Optional[AgentStatus]]:
        alias = target.alias
        self._progress(alias, "checking agent")
        try:
            remote_path = await self._candidate_path(target)
            status = await check_agent(target, remote_path, self.config.probe_timeout, self.config)
        except (ProbeError, DeployError) as e:
            self._record(alias, reachable=False)
            return HostStatus(alias, UNREACHABLE, f"unreachable: {e}"), None

        self._record(alias, reachable=True)

        if not status.present:
            return HostStatus(alias, MISSING, "agent not installed", remote_path=remote_path), status
        if not check_compatibility(self.client_version, status.version):
            return HostStatus(
                alias,
                OUTDATED,
                f"agent {status.version} outdated (client {self.client_version})",
                agent_version=status.version,
                remote_path=remote_path,
            ), status
        return HostStatus(
            alias,
            READY,
            f"agent {status.version}",
            agent_version=status.version,
            remote_path=remote_path,
        ), status

    async def check(self, alias: str, user: Optional[str] = None) -> HostStatus:
        """Probe the agent on ``alias`` and record whether the host was reachable."""
        target = SshTarget(alias, user)
        async with self._lock(alias):
            try:
                status, _ = await self._check(target)
            except Exception as e:
                logger.exception(f"Check failed for '{alias}'")
                status = HostStatus(alias, ERROR, f"check failed: {e}")
        self._progress(alias, status.message)
        return status

    # -- deploy -----------------------------------------------------------

    async def _upload(self, deployer: AgentDeployer) -> DeployResult:
        if self.artifact is not None:
            return await deployer.deploy(self.artifact, self.client_version)
        return await deployer.deploy_bundled(self.client_version)

    async def _deploy(self, target: SshTarget) -> HostStatus:
        alias = target.alias
        self._progress(alias, "deploying agent")
        try:
            result = await self._upload(self._deployer(target))
        except DeployError as e:
            return HostStatus(alias, ERROR, f"deploy failed: {e}")

        self._progress(alias, "verifying agent")
        try:
            status = await check_agent(target, result.remote_path, self.config.probe_timeout, self.config)
        except ProbeError as e:
            self._record(alias, reachable=False)
            return HostStatus(alias, UNREACHABLE, f"unreachable after deploy: {e}")

        if not status.can_run or not status.present:
            reason = first_line(status.stderr) or "no version output"
            return HostStatus(
                alias,
                ERROR,
                f"agent installed but cannot run: {reason}",
                remote_path=result.remote_path,
                used_rsync=result.used_rsync,
            )

        self._record(
            alias,
            version=status.version,
            deployed_at=DeploymentState.now(),
            remote_path=result.remote_path,
            reachable=True,
        )
        return HostStatus(
            alias,
            DEPLOYED,
            f"deployed {status.version} via {result.mechanism}",
            agent_version=status.version,
            remote_path=result.remote_path,
            used_rsync=result.used_rsync,
        )

    async def deploy(self, alias: str, user: Optional[str] = None) -> HostStatus:
        """Upload and install the agent on ``alias``, then verify it runs."""
        target = SshTarget(alias, user)
        async with self._lock(alias):
            try:
                status = await self._deploy(target)
            except Exception as e:
                logger.exception(f"Deploy failed for '{alias}'")
                status = HostStatus(alias, ERROR, f"deploy failed: {e}")
        self._progress(alias, status.message)
        return status

    # -- connect ----------------------------------------------------------

    async def connect(self, alias: str, user: Optional[str] = None) -> AgentSession:
        """Make sure a compatible agent is installed, start it and handshake.

        The returned session is ready; the caller owns it and must terminate
        it. Raises AgentError subclasses only.
        """
        target = SshTarget(alias, user)
        async with self._lock(alias):
            try:
                return await self._connect(target)
            except AgentError:
                raise
            except Exception as e:
                logger.exception(f"Connect failed for '{alias}'")
                raise AgentError(f"{alias}: connect failed: {e}") from e

    async def _ensure_deployed(self, target: SshTarget) -> HostStatus:
        status = await self._deploy(target)
        if status.state == UNREACHABLE:
            raise TransportError(f"{target.alias}: {status.message}")
        if not status.ok:
            raise DeployError(f"{target.alias}: {status.message}")
        return status

    async def _start(self, target: SshTarget, remote_path: str) -> AgentSession:
        self._progress(target.alias, "starting agent session")
        session = await run_agent(target, remote_path, self.config)
        try:
            await session.hello(self.client_version, timeout=self.config.handshake_timeout)
        except BaseException:
            await session.terminate(self.config.terminate_grace)
            raise
        return session

    async def _connect(self, target: SshTarget) -> AgentSession:
        alias = target.alias
        status, _ = await self._check(target)
        if status.state == UNREACHABLE:
            raise TransportError(f"{alias}: {status.message}")

        deployed = False
        if status.needs_deploy:
            self._progress(alias, status.message)
            status = await self._ensure_deployed(target)
            deployed = True

        try:
            session = await self._start(target, status.remote_path)
        except IncompatibleAgentError as e:
            if deployed:
                raise
            # The probe saw a usable version but the handshake disagreed; redeploy once
            self._progress(alias, f"agent {e.agent_version} rejected at handshake, redeploying")
            status = await self._ensure_deployed(target)
            session = await self._start(target, status.remote_path)

        self._progress(alias, f"connected to agent {session.hello_result.agent_version}")
        return session

    # -- many hosts -------------------------------------------------------

    async def check_all(self, aliases: Iterable[Union[str, Tuple[str, Optional[str]]]]) -> List[HostStatus]:
        """Check several aliases concurrently. Entries are aliases or ``(alias, user)``."""
        targets = [a if isinstance(a, tuple) else (a, None) for a in aliases]
        return list(await asyncio.gather(*(self.check(alias, user) for alias, user in targets)))

    def list_states(self) -> List[DeploymentState]:
        return self.store.list()


def describe_error(exc: BaseException) -> str:
    """One-line text for an error crossing into the UI/CLI layer."""
    if isinstance(exc, AgentError):
        return str(exc) or type(exc).__name__
    return f"unexpected error: {exc}"
