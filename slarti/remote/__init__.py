"""Remote agent management for slarti."""

from slarti.remote.config import AgentConfig, DeploymentState, DeploymentStateStore
from slarti.remote.connection import AgentSession, HelloResult, run_agent
from slarti.remote.deploy import AgentDeployer, DeployResult
from slarti.remote.manager import AgentManager, HostStatus
from slarti.remote.probe import AgentStatus, check_agent
from slarti.remote.runtime import AgentRuntime
from slarti.remote.ssh import SshTarget

__all__ = [
    "AgentConfig",
    "AgentDeployer",
    "AgentManager",
    "AgentRuntime",
    "AgentSession",
    "AgentStatus",
    "DeployResult",
    "DeploymentState",
    "DeploymentStateStore",
    "HelloResult",
    "HostStatus",
    "SshTarget",
    "check_agent",
    "run_agent",
]
