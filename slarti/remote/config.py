"""Configuration and persisted per-alias deployment state."""

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

AGENT_BINARY_NAME = "slarti-agent"
ROOT_BASE = "/usr/local/lib/slarti/agent"
HOME_BASE = ".local/share/slarti/agent"  # relative to the remote home directory


def get_config_dir() -> Path:
    return Path(os.environ.get("SLARTI_CONFIG_DIR", Path.home() / ".slarti"))


@dataclass
class AgentConfig:
    """Settings for probing, deploying and talking to remote agents."""

    binary_name: str = AGENT_BINARY_NAME
    root_base: str = ROOT_BASE
    home_base: str = HOME_BASE
    ssh_binary: str = "ssh"
    rsync_binary: str = "rsync"
    scp_binary: str = "scp"
    strict_host_key_checking: str = "accept-new"
    compression: bool = True
    extra_ssh_options: List[str] = field(default_factory=list)
    connect_timeout: float = 5.0
    probe_timeout: float = 10.0
    handshake_timeout: float = 10.0
    step_timeout: float = 30.0
    upload_timeout: float = 120.0
    terminate_grace: float = 0.5

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict) -> "AgentConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown agent config keys: {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def load(cls, config_file: Optional[Path] = None) -> "AgentConfig":
        config_file = config_file or cls.get_default_config_path()
        if not config_file.exists() or config_file.stat().st_size == 0:
            return cls()
        data = json.loads(config_file.read_text())
        return cls.from_dict(data.get("agent") or {})

    @classmethod
    def get_default_config_path(cls) -> Path:
        return get_config_dir() / "config.json"


@dataclass
class DeploymentState:
    """Last known deployment of the agent for one SSH alias."""

    alias: str
    version: Optional[str] = None
    deployed_at: Optional[str] = None  # ISO-8601, UTC
    remote_path: Optional[str] = None
    reachable: bool = False

    def to_dict(self) -> dict:
        return {
            "alias": self.alias,
            "version": self.version,
            "deployed_at": self.deployed_at,
            "remote_path": self.remote_path,
            "reachable": self.reachable,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DeploymentState":
        return cls(
            alias=data["alias"],
            version=data.get("version"),
            deployed_at=data.get("deployed_at"),
            remote_path=data.get("remote_path"),
            reachable=bool(data.get("reachable", False)),
        )

    @staticmethod
    def now() -> str:
        return datetime.now(timezone.utc).isoformat(timespec="seconds")


_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._@-]")


class DeploymentStateStore:
    """One JSON file per alias, replaced atomically on every save.

    A crash mid-write leaves either the previous record or the new one,
    never a mixture.
    """

    def __init__(self, state_dir: Optional[Path] = None):
        self.state_dir = state_dir or get_config_dir() / "agents"

    def path_for(self, alias: str) -> Path:
        return self.state_dir / f"{_UNSAFE_FILENAME.sub('_', alias)}.json"

    def load(self, alias: str) -> Optional[DeploymentState]:
        path = self.path_for(alias)
        if not path.exists():
            return None
        try:
            return DeploymentState.from_dict(json.loads(path.read_text()))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable deployment state {path}: {e}")
            return None

    def save(self, state: DeploymentState) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(state.alias)
        fd, tmp = tempfile.mkstemp(dir=self.state_dir, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def list(self) -> List[DeploymentState]:
        if not self.state_dir.exists():
            return []
        states = []
        for path in sorted(self.state_dir.glob("*.json")):
            try:
                states.append(DeploymentState.from_dict(json.loads(path.read_text())))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Ignoring unreadable deployment state {path}: {e}")
        return states
