import sys

import pytest

from slarti.remote import ssh


def agent_argv(*extra: str) -> list[str]:
    """Run the agent from this checkout instead of over SSH."""
    return [sys.executable, "-m", "slarti.remote.remote_agent", "--stdio", *extra]


@pytest.fixture
def local_shell(monkeypatch):
    """Execute "remote" commands with the local /bin/sh instead of ssh."""
    calls = []

    async def _run_locally(target, remote_command, timeout, config=None):
        calls.append((target, remote_command))
        return await ssh.run_capture(["sh", "-c", remote_command], timeout)

    monkeypatch.setattr(ssh, "ssh_run_capture", _run_locally)
    return calls
