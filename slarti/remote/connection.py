"""Session with a remote agent over an SSH-tunneled stdin/stdout pipe."""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from slarti.remote.config import AgentConfig
from slarti.remote.errors import (
    AgentCommandError,
    CapabilityError,
    HandshakeError,
    IncompatibleAgentError,
    ProtocolError,
    SessionClosedError,
    TransportError,
)
from slarti.remote.probe import remote_path_arg
from slarti.remote.protocol import (
    TRANSPORT_ERROR_ID,
    Capability,
    Command,
    DirEntry,
    ErrorResponse,
    GetStaticConfig,
    GetSysInfo,
    Hello,
    HelloAck,
    ListDir,
    ListDirOk,
    ListServices,
    Response,
    ServiceInfo,
    ServicesListOk,
    StaticConfig,
    StaticConfigOk,
    SysInfo,
    SysInfoOk,
    check_compatibility,
    decode_response,
    encode_line,
)
from slarti.remote.ssh import SshTarget, build_ssh_cmd

logger = logging.getLogger(__name__)

HELLO_ID = 1

# list_dir responses can hold thousands of entries on a single line
_STREAM_LIMIT = 16 * 1024 * 1024


class SessionState(str, Enum):
    SPAWNED = "spawned"
    HANDSHAKING = "handshaking"
    READY = "ready"
    CLOSED = "closed"


@dataclass
class HelloResult:
    """Outcome of a successful handshake."""

    agent_version: str
    capabilities: List[Capability] = field(default_factory=list)

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities


class AgentSession:
    """
    One running agent reached through a spawned transport process.

    Call ``hello`` first, then use ``request`` or the typed helpers. The
    protocol is strictly one command, one response; calls must not overlap.
    """

    def __init__(self, process: asyncio.subprocess.Process, description: str = "agent"):
        self.process = process
        self.description = description
        self.state = SessionState.SPAWNED
        self.hello_result: Optional[HelloResult] = None
        self._ids = itertools.count(HELLO_ID + 1)

    @classmethod
    async def spawn(cls, argv: Sequence[str], description: Optional[str] = None) -> "AgentSession":
        """Start ``argv`` and wrap its stdin/stdout as the protocol transport."""
        argv = list(argv)
        logger.debug(f"Spawning agent transport: {argv}")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            raise TransportError(f"Failed to spawn {argv[0]}: {e}") from e
        return cls(process, description or argv[0])

    @property
    def is_closed(self) -> bool:
        return self.state == SessionState.CLOSED

    @property
    def is_ready(self) -> bool:
        return self.state == SessionState.READY

    def next_id(self) -> int:
        return next(self._ids)

    def _ensure_open(self) -> None:
        if self.state == SessionState.CLOSED:
            raise SessionClosedError(f"Session with {self.description} is closed")

    async def send_command(self, command: Command) -> None:
        """Write one command line and flush it to the agent."""
        self._ensure_open()
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing():
            raise TransportError(f"agent stdin not available ({self.description})")
        try:
            stdin.write(encode_line(command).encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise TransportError(f"write command to {self.description} failed: {e}") from e

    async def read_response_line(self) -> Response:
        """Read exactly one response line.

        Raises TransportError at end-of-stream (including a final line
        without its newline) and ProtocolError for undecodable lines.
        """
        self._ensure_open()
        stdout = self.process.stdout
        if stdout is None:
            raise TransportError(f"agent stdout not available ({self.description})")
        try:
            line = await stdout.readline()
        except ValueError as e:
            # StreamReader raises ValueError when a line exceeds the buffer limit
            raise ProtocolError(f"response from {self.description} too long: {e}") from e
        except (ConnectionResetError, BrokenPipeError) as e:
            raise TransportError(f"read from {self.description} failed: {e}") from e
        if not line or not line.endswith(b"\n"):
            raise TransportError(f"agent stdout closed ({self.description})")
        return decode_response(line)

    async def hello(self, client_version: str, timeout: Optional[float] = None) -> HelloResult:
        """Perform the Hello/HelloAck handshake.

        Only a HelloAck carrying the Hello id completes it; anything else,
        including a stale response for another id, is a HandshakeError.
        The agent version must also satisfy ``check_compatibility``.
        """
        self._ensure_open()
        self.state = SessionState.HANDSHAKING
        await self.send_command(Hello(id=HELLO_ID, client_version=client_version))
        try:
            if timeout is not None:
                response = await asyncio.wait_for(self.read_response_line(), timeout=timeout)
            else:
                response = await self.read_response_line()
        except asyncio.TimeoutError:
            raise HandshakeError(f"no hello_ack from {self.description} within {timeout}s")
        except ProtocolError as e:
            raise HandshakeError(f"invalid hello response from {self.description}: {e}") from e

        if isinstance(response, HelloAck) and response.id == HELLO_ID:
            result = HelloResult(agent_version=response.agent_version, capabilities=response.capabilities)
        elif isinstance(response, ErrorResponse) and response.id == HELLO_ID:
            raise HandshakeError(f"agent hello error: {response.message}")
        else:
            raise HandshakeError(f"unexpected response to hello: {response}")

        if not check_compatibility(client_version, result.agent_version):
            raise IncompatibleAgentError(
                f"agent {result.agent_version} is not compatible with client {client_version}",
                agent_version=result.agent_version,
            )

        self.hello_result = result
        self.state = SessionState.READY
        logger.info(
            f"Handshake with {self.description}: agent {result.agent_version}, "
            f"capabilities={[c.value for c in result.capabilities]}"
        )
        return result

    async def _read_reply(self, command: Command) -> Response:
        while True:
            response = await self.read_response_line()
            # Late reply to an earlier request that already timed out
            if TRANSPORT_ERROR_ID < response.id < command.id:
                logger.debug(f"Discarding stale {response.type} (id={response.id}) from {self.description}")
                continue
            if response.id != command.id:
                raise ProtocolError(
                    f"Mismatched id in response: expected {command.id}, got {response.id} ({response.type})"
                )
            return response

    async def request(self, command: Command, timeout: Optional[float] = None) -> Response:
        """Send ``command`` and return the response that carries its id.

        A timeout fails this request only; its reply is skipped if it
        arrives while a later request is waiting.
        """
        await self.send_command(command)
        try:
            if timeout is not None:
                return await asyncio.wait_for(self._read_reply(command), timeout=timeout)
            return await self._read_reply(command)
        except asyncio.TimeoutError:
            raise TransportError(f"{command.cmd} timed out after {timeout}s on {self.description}")

    def _require(self, capability: Capability) -> None:
        if self.hello_result is not None and not self.hello_result.supports(capability):
            raise CapabilityError(f"agent on {self.description} does not support {capability.value}")

    async def _call(self, command: Command, expected: type, timeout: Optional[float]):
        response = await self.request(command, timeout=timeout)
        if isinstance(response, ErrorResponse):
            raise AgentCommandError(response.message, request_id=response.id)
        if not isinstance(response, expected):
            raise ProtocolError(f"unexpected response to {command.cmd}: {response.type}")
        return response

    async def sys_info(self, timeout: Optional[float] = None) -> SysInfo:
        self._require(Capability.SYS_INFO)
        response = await self._call(GetSysInfo(id=self.next_id()), SysInfoOk, timeout)
        return response.info

    async def static_config(self, timeout: Optional[float] = None) -> StaticConfig:
        self._require(Capability.STATIC_CONFIG)
        response = await self._call(GetStaticConfig(id=self.next_id()), StaticConfigOk, timeout)
        return response.config

    async def services_list(self, timeout: Optional[float] = None) -> List[ServiceInfo]:
        self._require(Capability.SERVICES_LIST)
        response = await self._call(ListServices(id=self.next_id()), ServicesListOk, timeout)
        return response.services

    async def list_dir(
        self,
        path: str,
        max: Optional[int] = None,
        skip: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> ListDirOk:
        command = ListDir(id=self.next_id(), path=path, max=max, skip=skip)
        return await self._call(command, ListDirOk, timeout)

    async def list_dir_all(self, path: str, page_size: int = 2000, timeout: Optional[float] = None) -> List[DirEntry]:
        """Page through ``path`` until the agent reports eof."""
        entries: List[DirEntry] = []
        while True:
            page = await self.list_dir(path, max=page_size, skip=len(entries), timeout=timeout)
            entries.extend(page.entries)
            if page.eof or not page.entries:
                return entries

    async def terminate(self, grace: float = 0.5) -> None:
        """Close the agent's stdin, wait ``grace`` seconds, then kill if still running."""
        if self.state == SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED

        stdin = self.process.stdin
        if stdin is not None and not stdin.is_closing():
            try:
                stdin.close()
                await stdin.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                pass

        try:
            await asyncio.wait_for(self.process.wait(), timeout=grace)
            return
        except asyncio.TimeoutError:
            pass

        logger.info(f"Agent transport {self.description} did not exit, killing")
        try:
            self.process.kill()
        except ProcessLookupError:
            pass
        await self.process.wait()

    def __del__(self):
        # Dropped without terminate(): never leave a remote shell behind
        process = getattr(self, "process", None)
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
        except (ProcessLookupError, RuntimeError):
            pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.terminate()


async def run_agent(
    target: SshTarget,
    remote_path: str,
    config: Optional[AgentConfig] = None,
) -> AgentSession:
    """Start ``<remote_path> --stdio`` on ``target`` over ``ssh -T``.

    The handshake is left to the caller so it can decide how to handle
    version or capability mismatches.
    """
    config = config or AgentConfig()
    argv = build_ssh_cmd(target, f"{remote_path_arg(remote_path)} --stdio", config)
    return await AgentSession.spawn(argv, description=target.destination)
