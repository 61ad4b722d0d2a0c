#!/usr/bin/env python3
"""slarti remote agent: answers protocol commands over stdin/stdout.

This module runs on remote hosts. It is uploaded as a self-contained
zipapp and depends on the standard library only.

Usage:
    slarti-agent --version        # print the agent version and exit
    slarti-agent --stdio          # serve commands on stdin/stdout

stdout carries protocol lines exclusively; diagnostics go to stderr.
"""

import argparse
import logging
import os
import platform
import socket
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional, TextIO

from slarti import __version__
from slarti.remote.errors import ProtocolError
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
    decode_command,
    encode_line,
)

AGENT_VERSION = __version__

# Fixed for a given build; each entry must have a command handled below
CAPABILITIES = [
    Capability.SYS_INFO,
    Capability.STATIC_CONFIG,
    Capability.SERVICES_LIST,
]

DEFAULT_LIST_MAX = 2000
LIST_MAX_CEILING = 10_000
SYSTEMCTL_TIMEOUT = 10.0

logger = logging.getLogger(__name__)


def _read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


class SystemProbe:
    """Local introspection. ``root`` is prefixed to every absolute path read."""

    def __init__(self, root: str = "/"):
        self.root = Path(root)

    def _path(self, absolute: str) -> Path:
        return self.root / absolute.lstrip("/")

    def sys_info(self) -> SysInfo:
        kernel = _read_text(self._path("/proc/sys/kernel/osrelease"))
        uptime_text = _read_text(self._path("/proc/uptime"))
        hostname = _read_text(self._path("/proc/sys/kernel/hostname"))

        uptime_secs = 0
        if uptime_text:
            try:
                uptime_secs = int(float(uptime_text.split()[0]))
            except (ValueError, IndexError):
                uptime_secs = 0

        if not hostname or not hostname.strip():
            try:
                hostname = socket.gethostname()
            except OSError:
                hostname = None

        return SysInfo(
            os=platform.system().lower() or "unknown",
            kernel=kernel.strip() if kernel and kernel.strip() else "unknown",
            arch=platform.machine() or "unknown",
            uptime_secs=max(uptime_secs, 0),
            hostname=hostname.strip() if hostname and hostname.strip() else "unknown",
        )

    def static_config(self) -> StaticConfig:
        os_release = _read_text(self._path("/etc/os-release"))

        cpu_count = 0
        cpuinfo = _read_text(self._path("/proc/cpuinfo"))
        if cpuinfo:
            cpu_count = sum(1 for line in cpuinfo.splitlines() if line.startswith("processor"))

        mem_total_bytes = 0
        meminfo = _read_text(self._path("/proc/meminfo"))
        if meminfo:
            for line in meminfo.splitlines():
                if line.startswith("MemTotal:"):
                    parts = line.split()
                    try:
                        mem_total_bytes = int(parts[1]) * 1024  # kB
                    except (ValueError, IndexError):
                        mem_total_bytes = 0
                    break

        return StaticConfig(
            os_release=os_release,
            cpu_count=cpu_count,
            mem_total_bytes=mem_total_bytes,
        )


class ServiceLister:
    """systemd unit listing. No systemctl means no services, not an error."""

    def __init__(self, systemctl: str = "systemctl", timeout: float = SYSTEMCTL_TIMEOUT):
        self.systemctl = systemctl
        self.timeout = timeout

    def _run(self, *args: str) -> Optional[str]:
        try:
            r = subprocess.run(
                [self.systemctl, *args, "--type=service", "--no-legend", "--no-pager"],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            logger.debug(f"{self.systemctl} not available")
            return None
        if r.returncode != 0:
            logger.debug(f"{self.systemctl} {args[0]} exited {r.returncode}: {r.stderr.strip()}")
            return None
        return r.stdout

    def list(self) -> List[ServiceInfo]:
        unit_files = self._run("list-unit-files")
        enabled_map = parse_unit_files(unit_files) if unit_files else {}
        units = self._run("list-units", "--all", "--plain")
        if units is None:
            return []
        return parse_units(units, enabled_map)


def parse_unit_files(text: str) -> Dict[str, Optional[bool]]:
    """Map unit name to its enablement from ``systemctl list-unit-files`` output."""
    enabled: Dict[str, Optional[bool]] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        name, state = parts[0], parts[1]
        if state in ("enabled", "enabled-runtime"):
            enabled[name] = True
        elif state == "disabled":
            enabled[name] = False
        else:
            enabled[name] = None
    return enabled


def parse_units(text: str, enabled_map: Dict[str, Optional[bool]]) -> List[ServiceInfo]:
    """Parse ``systemctl list-units`` rows: UNIT LOAD ACTIVE SUB DESCRIPTION."""
    services = []
    for line in text.splitlines():
        parts = line.split()
        if not parts:
            continue
        # Without --plain, failed units are prefixed with a bullet column
        if parts[0] in ("●", "*"):
            parts = parts[1:]
            if not parts:
                continue
        unit = parts[0]
        active = parts[2] if len(parts) > 2 else "unknown"
        sub = parts[3] if len(parts) > 3 else "unknown"
        description = " ".join(parts[4:]) or None
        services.append(ServiceInfo(
            name=unit,
            description=description,
            active_state=active,
            sub_state=sub,
            enabled=enabled_map.get(unit),
        ))
    return services


def expand_home(path: str) -> str:
    """Expand a leading ``~/`` (or a bare ``~``) to the agent user's home."""
    if path == "~":
        return str(Path.home())
    if path.startswith("~/"):
        return str(Path.home() / path[2:])
    return path


def list_dir(path: str, max_entries: Optional[int], skip: Optional[int]) -> tuple:
    """Return ``(entries, eof)`` for one page of ``path``.

    Directories sort before files, then names compare case-insensitively.
    Raises OSError when the directory cannot be read.
    """
    limit = DEFAULT_LIST_MAX if max_entries is None else max_entries
    limit = min(limit, LIST_MAX_CEILING)
    offset = skip or 0

    directory = expand_home(path)
    entries: List[DirEntry] = []
    with os.scandir(directory) as it:
        for item in it:
            try:
                is_dir = item.is_dir()
                size = item.stat().st_size if item.is_file() else None
            except OSError:
                # Dangling symlink or entry removed while listing
                is_dir, size = False, None
            entries.append(DirEntry(name=item.name, path=item.path, is_dir=is_dir, size=size))

    entries.sort(key=lambda e: (not e.is_dir, e.name.lower()))
    page = entries[offset:offset + limit]
    eof = offset + len(page) >= len(entries)
    return page, eof


class AgentDispatcher:
    """Turns one input line into exactly one response."""

    def __init__(self, probe: Optional[SystemProbe] = None, services: Optional[ServiceLister] = None):
        self.probe = probe or SystemProbe()
        self.services = services or ServiceLister()

    def handle(self, command: Command) -> Response:
        if isinstance(command, Hello):
            logger.debug(f"hello from client {command.client_version}")
            return HelloAck(id=command.id, agent_version=AGENT_VERSION, capabilities=list(CAPABILITIES))

        if isinstance(command, GetSysInfo):
            return SysInfoOk(id=command.id, info=self.probe.sys_info())

        if isinstance(command, GetStaticConfig):
            return StaticConfigOk(id=command.id, config=self.probe.static_config())

        if isinstance(command, ListServices):
            return ServicesListOk(id=command.id, services=self.services.list())

        if isinstance(command, ListDir):
            try:
                entries, eof = list_dir(command.path, command.max, command.skip)
            except OSError as e:
                return ErrorResponse(id=command.id, message=f"list_dir({command.path}): {e}")
            return ListDirOk(id=command.id, entries=entries, eof=eof)

        return ErrorResponse(id=command.id, message=f"unsupported command: {command.cmd}")

    def dispatch_line(self, line: str) -> Response:
        try:
            command = decode_command(line)
        except ProtocolError as e:
            logger.warning(f"Rejected input line: {e}")
            return ErrorResponse(id=TRANSPORT_ERROR_ID, message=str(e))

        try:
            return self.handle(command)
        except Exception as e:
            logger.exception(f"Command {command.cmd} (id={command.id}) failed")
            return ErrorResponse(id=command.id, message=str(e) or type(e).__name__)


def serve(stdin: TextIO, stdout: TextIO, dispatcher: Optional[AgentDispatcher] = None) -> int:
    """Answer commands until stdin reaches EOF. Returns the number of responses sent."""
    dispatcher = dispatcher or AgentDispatcher()
    sent = 0
    for line in stdin:
        if not line.strip():
            continue
        response = dispatcher.dispatch_line(line)
        stdout.write(encode_line(response))
        stdout.flush()
        sent += 1
    logger.info(f"stdin closed after {sent} responses")
    return sent


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="slarti-agent", description="slarti remote agent")
    parser.add_argument("--version", "-V", action="store_true", help="Print the agent version and exit")
    parser.add_argument("--stdio", action="store_true", help="Serve protocol commands on stdin/stdout")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging on stderr")
    args = parser.parse_args(argv)

    if args.version:
        print(AGENT_VERSION)
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    if not args.stdio:
        parser.print_usage(sys.stderr)
        return 2

    # Non-UTF-8 locales on the remote must not change the wire encoding
    stdin = open(sys.stdin.fileno(), "r", encoding="utf-8", errors="replace", newline="\n", closefd=False)
    stdout = open(sys.stdout.fileno(), "w", encoding="utf-8", newline="\n", closefd=False)
    try:
        serve(stdin, stdout)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except BrokenPipeError:
        logger.info("Client went away")
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
