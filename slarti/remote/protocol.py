"""Wire protocol spoken between the client and the remote agent.

Every message is one JSON object on one line (UTF-8, LF-terminated).
Commands carry a ``cmd`` tag, responses carry a ``type`` tag, and every
message carries the integer ``id`` of the exchange it belongs to.

This module is shipped to remote hosts inside the agent artifact and must
only depend on the standard library.
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type, Union

from slarti.remote.errors import ProtocolError

# Id used for errors that cannot be attributed to a request
TRANSPORT_ERROR_ID = 0


class Capability(str, Enum):
    """Feature flags advertised by the agent in ``hello_ack``."""

    SYS_INFO = "sys_info"
    STATIC_CONFIG = "static_config"
    SERVICES_LIST = "services_list"
    CONTAINERS_LIST = "containers_list"
    NET_LISTENERS = "net_listeners"
    PROCESSES_SUMMARY = "processes_summary"


# -- field validation -----------------------------------------------------


def _require(data: dict, name: str) -> Any:
    if name not in data:
        raise ProtocolError(f"missing field '{name}'")
    return data[name]


def _uint(value: Any, name: str) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ProtocolError(f"field '{name}' must be a non-negative integer")
    return value


def _opt_uint(value: Any, name: str) -> Optional[int]:
    return None if value is None else _uint(value, name)


def _str(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise ProtocolError(f"field '{name}' must be a string")
    return value


def _opt_str(value: Any, name: str) -> Optional[str]:
    return None if value is None else _str(value, name)


def _bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise ProtocolError(f"field '{name}' must be a boolean")
    return value


def _opt_bool(value: Any, name: str) -> Optional[bool]:
    return None if value is None else _bool(value, name)


def _list(value: Any, name: str) -> list:
    if not isinstance(value, list):
        raise ProtocolError(f"field '{name}' must be a list")
    return value


def _dict(value: Any, name: str) -> dict:
    if not isinstance(value, dict):
        raise ProtocolError(f"field '{name}' must be an object")
    return value


# -- payloads -------------------------------------------------------------


@dataclass
class SysInfo:
    """Basic system information."""

    os: str
    kernel: str
    arch: str
    uptime_secs: int
    hostname: str

    def to_dict(self) -> dict:
        return {
            "os": self.os,
            "kernel": self.kernel,
            "arch": self.arch,
            "uptime_secs": self.uptime_secs,
            "hostname": self.hostname,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SysInfo":
        return cls(
            os=_str(_require(data, "os"), "os"),
            kernel=_str(_require(data, "kernel"), "kernel"),
            arch=_str(_require(data, "arch"), "arch"),
            uptime_secs=_uint(_require(data, "uptime_secs"), "uptime_secs"),
            hostname=_str(_require(data, "hostname"), "hostname"),
        )


@dataclass
class StaticConfig:
    """Static system configuration."""

    os_release: Optional[str]
    cpu_count: int
    mem_total_bytes: int

    def to_dict(self) -> dict:
        return {
            "os_release": self.os_release,
            "cpu_count": self.cpu_count,
            "mem_total_bytes": self.mem_total_bytes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StaticConfig":
        return cls(
            os_release=_opt_str(data.get("os_release"), "os_release"),
            cpu_count=_uint(_require(data, "cpu_count"), "cpu_count"),
            mem_total_bytes=_uint(_require(data, "mem_total_bytes"), "mem_total_bytes"),
        )


@dataclass
class ServiceInfo:
    """One service-manager unit."""

    name: str
    description: Optional[str]
    active_state: str
    sub_state: str
    enabled: Optional[bool]  # None when neither enabled nor disabled (static, masked, ...)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "active_state": self.active_state,
            "sub_state": self.sub_state,
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ServiceInfo":
        return cls(
            name=_str(_require(data, "name"), "name"),
            description=_opt_str(data.get("description"), "description"),
            active_state=_str(_require(data, "active_state"), "active_state"),
            sub_state=_str(_require(data, "sub_state"), "sub_state"),
            enabled=_opt_bool(data.get("enabled"), "enabled"),
        )


@dataclass
class DirEntry:
    """One child of a listed directory. ``size`` is only set for regular files."""

    name: str
    path: str
    is_dir: bool
    size: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": self.path,
            "is_dir": self.is_dir,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DirEntry":
        return cls(
            name=_str(_require(data, "name"), "name"),
            path=_str(_require(data, "path"), "path"),
            is_dir=_bool(_require(data, "is_dir"), "is_dir"),
            size=_opt_uint(data.get("size"), "size"),
        )


# -- commands -------------------------------------------------------------


@dataclass
class Hello:
    """Client-initiated handshake."""

    cmd: ClassVar[str] = "hello"

    id: int
    client_version: str

    def to_dict(self) -> dict:
        return {"cmd": self.cmd, "id": self.id, "client_version": self.client_version}

    @classmethod
    def from_dict(cls, data: dict) -> "Hello":
        return cls(
            id=_uint(_require(data, "id"), "id"),
            client_version=_str(_require(data, "client_version"), "client_version"),
        )


@dataclass
class GetSysInfo:
    cmd: ClassVar[str] = "sys_info"

    id: int

    def to_dict(self) -> dict:
        return {"cmd": self.cmd, "id": self.id}

    @classmethod
    def from_dict(cls, data: dict) -> "GetSysInfo":
        return cls(id=_uint(_require(data, "id"), "id"))


@dataclass
class GetStaticConfig:
    cmd: ClassVar[str] = "static_config"

    id: int

    def to_dict(self) -> dict:
        return {"cmd": self.cmd, "id": self.id}

    @classmethod
    def from_dict(cls, data: dict) -> "GetStaticConfig":
        return cls(id=_uint(_require(data, "id"), "id"))


@dataclass
class ListServices:
    cmd: ClassVar[str] = "services_list"

    id: int

    def to_dict(self) -> dict:
        return {"cmd": self.cmd, "id": self.id}

    @classmethod
    def from_dict(cls, data: dict) -> "ListServices":
        return cls(id=_uint(_require(data, "id"), "id"))


@dataclass
class ListDir:
    """List the immediate children of ``path``. ``max``/``skip`` page through them."""

    cmd: ClassVar[str] = "list_dir"

    id: int
    path: str
    max: Optional[int] = None
    skip: Optional[int] = None

    def to_dict(self) -> dict:
        data = {"cmd": self.cmd, "id": self.id, "path": self.path}
        if self.max is not None:
            data["max"] = self.max
        if self.skip is not None:
            data["skip"] = self.skip
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ListDir":
        return cls(
            id=_uint(_require(data, "id"), "id"),
            path=_str(_require(data, "path"), "path"),
            max=_opt_uint(data.get("max"), "max"),
            skip=_opt_uint(data.get("skip"), "skip"),
        )


Command = Union[Hello, GetSysInfo, GetStaticConfig, ListServices, ListDir]

_COMMANDS: Dict[str, Type] = {
    c.cmd: c for c in (Hello, GetSysInfo, GetStaticConfig, ListServices, ListDir)
}


# -- responses ------------------------------------------------------------


@dataclass
class HelloAck:
    """Agent acknowledges the handshake and advertises capabilities."""

    type: ClassVar[str] = "hello_ack"

    id: int
    agent_version: str
    capabilities: List[Capability] = field(default_factory=list)

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "id": self.id,
            "agent_version": self.agent_version,
            "capabilities": [c.value for c in self.capabilities],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HelloAck":
        caps = []
        for raw in _list(_require(data, "capabilities"), "capabilities"):
            try:
                caps.append(Capability(raw))
            except ValueError:
                # Newer agents may advertise flags this client does not know
                continue
        return cls(
            id=_uint(_require(data, "id"), "id"),
            agent_version=_str(_require(data, "agent_version"), "agent_version"),
            capabilities=caps,
        )


@dataclass
class SysInfoOk:
    type: ClassVar[str] = "sys_info_ok"

    id: int
    info: SysInfo

    def to_dict(self) -> dict:
        return {"type": self.type, "id": self.id, "info": self.info.to_dict()}

    @classmethod
    def from_dict(cls, data: dict) -> "SysInfoOk":
        return cls(
            id=_uint(_require(data, "id"), "id"),
            info=SysInfo.from_dict(_dict(_require(data, "info"), "info")),
        )


@dataclass
class StaticConfigOk:
    type: ClassVar[str] = "static_config_ok"

    id: int
    config: StaticConfig

    def to_dict(self) -> dict:
        return {"type": self.type, "id": self.id, "config": self.config.to_dict()}

    @classmethod
    def from_dict(cls, data: dict) -> "StaticConfigOk":
        return cls(
            id=_uint(_require(data, "id"), "id"),
            config=StaticConfig.from_dict(_dict(_require(data, "config"), "config")),
        )


@dataclass
class ServicesListOk:
    type: ClassVar[str] = "services_list_ok"

    id: int
    services: List[ServiceInfo] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "id": self.id,
            "services": [s.to_dict() for s in self.services],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ServicesListOk":
        return cls(
            id=_uint(_require(data, "id"), "id"),
            services=[
                ServiceInfo.from_dict(_dict(s, "services[]"))
                for s in _list(_require(data, "services"), "services")
            ],
        )


@dataclass
class ListDirOk:
    type: ClassVar[str] = "list_dir_ok"

    id: int
    entries: List[DirEntry]
    eof: bool

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "id": self.id,
            "entries": [e.to_dict() for e in self.entries],
            "eof": self.eof,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ListDirOk":
        return cls(
            id=_uint(_require(data, "id"), "id"),
            entries=[
                DirEntry.from_dict(_dict(e, "entries[]"))
                for e in _list(_require(data, "entries"), "entries")
            ],
            eof=_bool(_require(data, "eof"), "eof"),
        )


@dataclass
class ErrorResponse:
    """Failure scoped to request ``id`` (0 when the request could not be parsed)."""

    type: ClassVar[str] = "error"

    id: int
    message: str

    def to_dict(self) -> dict:
        return {"type": self.type, "id": self.id, "message": self.message}

    @classmethod
    def from_dict(cls, data: dict) -> "ErrorResponse":
        return cls(
            id=_uint(_require(data, "id"), "id"),
            message=_str(_require(data, "message"), "message"),
        )


Response = Union[HelloAck, SysInfoOk, StaticConfigOk, ServicesListOk, ListDirOk, ErrorResponse]

_RESPONSES: Dict[str, Type] = {
    r.type: r
    for r in (HelloAck, SysInfoOk, StaticConfigOk, ServicesListOk, ListDirOk, ErrorResponse)
}


# -- framing --------------------------------------------------------------


def encode_line(message: Union[Command, Response]) -> str:
    """Serialize one message to a single LF-terminated line.

    ``json.dumps`` escapes newlines and every other control character, so no
    string field can break the line framing.
    """
    return json.dumps(message.to_dict(), ensure_ascii=False, separators=(",", ":")) + "\n"


def _load_object(line: Union[str, bytes]) -> dict:
    if isinstance(line, bytes):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"invalid utf-8: {e}") from e
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"invalid json: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("message must be a JSON object")
    return data


def decode_command(line: Union[str, bytes]) -> Command:
    """Parse one line into a Command, raising ``ProtocolError`` when it is not one."""
    data = _load_object(line)
    tag = data.get("cmd")
    cls = _COMMANDS.get(tag) if isinstance(tag, str) else None
    if cls is None:
        raise ProtocolError(f"unknown command: {tag!r}")
    return cls.from_dict(data)


def decode_response(line: Union[str, bytes]) -> Response:
    """Parse one line into a Response, raising ``ProtocolError`` when it is not one."""
    data = _load_object(line)
    tag = data.get("type")
    cls = _RESPONSES.get(tag) if isinstance(tag, str) else None
    if cls is None:
        raise ProtocolError(f"unknown response type: {tag!r}")
    return cls.from_dict(data)


# -- version compatibility ------------------------------------------------

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)(?:\.\d+)?(?:[-+.][0-9A-Za-z.+-]*)?$")


def parse_version(version: str) -> Optional[Tuple[int, int]]:
    """Return ``(major, minor)`` or None when ``version`` is not MAJOR.MINOR[.PATCH]."""
    m = _VERSION_RE.match(version.strip())
    if not m:
        return None
    return int(m.group(1)), int(m.group(2))


def check_compatibility(client_version: str, agent_version: str) -> bool:
    """Whether a client at ``client_version`` may drive an agent at ``agent_version``.

    Majors must match. Below 1.0 every minor release may change the wire
    format, so minors must match as well. Unparseable versions never match.
    """
    client = parse_version(client_version)
    agent = parse_version(agent_version)
    if client is None or agent is None:
        return False
    if client[0] != agent[0]:
        return False
    if client[0] == 0:
        return client[1] == agent[1]
    return True
