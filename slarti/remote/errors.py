"""Exceptions raised by the remote agent subsystem."""


class AgentError(Exception):
    """Base class for all agent-related failures."""


class TransportError(AgentError, ConnectionError):
    """The SSH pipe or spawned process failed (unreachable, auth, timeout, EOF)."""


class SessionClosedError(TransportError):
    """The session was terminated; no further request/response pairing is possible."""


class ProbeError(TransportError):
    """The presence probe failed for a reason other than a missing agent."""


class ProtocolError(AgentError, ValueError):
    """A line could not be decoded as a protocol message."""


class HandshakeError(AgentError):
    """Hello/HelloAck did not complete."""


class IncompatibleAgentError(HandshakeError):
    """The agent answered Hello but its version is not usable by this client."""

    def __init__(self, message: str, agent_version: str):
        super().__init__(message)
        self.agent_version = agent_version


class AgentCommandError(AgentError):
    """The agent answered a command with an Error response."""

    def __init__(self, message: str, request_id: int):
        super().__init__(message)
        self.request_id = request_id


class CapabilityError(AgentError):
    """A command was requested that the agent did not advertise."""


class DeployError(AgentError, RuntimeError):
    """A deployment step failed; deployment aborted at that step."""
