import os
import shlex
import subprocess
import sys
import zipfile

import pytest

from slarti import __version__
from slarti.remote.config import AgentConfig
from slarti.remote.deploy import AgentDeployer, build_agent_artifact, install_dir
from slarti.remote.errors import DeployError, TransportError
from slarti.remote.ssh import CommandResult, SshTarget


class FakeRemote:
    """Answers the deployer's remote scripts and local upload commands."""

    def __init__(self, uid=1000, home="/home/deploy", rsync_ok=True, scp_ok=True, mkdir_ok=True):
        self.uid = uid
        self.home = home
        self.rsync_ok = rsync_ok
        self.scp_ok = scp_ok
        self.mkdir_ok = mkdir_ok
        self.scripts = []
        self.uploads = []
        self.dirs = set()
        self.files = {}

    @staticmethod
    def _result(argv, ok, stdout="", stderr=""):
        return CommandResult(argv=list(argv), returncode=0 if ok else 1, stdout=stdout, stderr=stderr)

    async def ssh_exec(self, script, timeout=None):
        self.scripts.append(script)
        if script.startswith("id -u"):
            return self._result(["ssh"], True, stdout=f"{self.uid}\n{self.home}\n")
        words = shlex.split(script)
        if words[0] == "mkdir":
            if not self.mkdir_ok:
                return self._result(["ssh"], False, stderr="mkdir: Permission denied")
            self.dirs.add(words[-1])
            return self._result(["ssh"], True)
        if words[0] == "mv":
            src, dst = words[3], words[4]
            self.files.pop(src)
            assert words[5:7] == ["&&", "chmod"]
            self.files[dst] = 0o755
            return self._result(["ssh"], True)
        if words[0] == "chmod":
            self.files[words[-1]] = 0o755
            return self._result(["ssh"], True)
        raise AssertionError(f"unexpected remote script: {script}")

    async def run_local(self, argv, timeout=None):
        tool = argv[0]
        remote_file = argv[-1].split(":", 1)[1]
        self.uploads.append((tool, remote_file))
        if tool == "rsync":
            if self.rsync_ok:
                self.files[remote_file] = 0o755
            return self._result(argv, self.rsync_ok, stderr="" if self.rsync_ok else "rsync: command not found")
        if tool == "scp":
            if self.scp_ok:
                self.files[remote_file] = 0o644
            return self._result(argv, self.scp_ok, stderr="" if self.scp_ok else "scp: Connection closed")
        raise AssertionError(f"unexpected local command: {argv}")


@pytest.fixture
def artifact(tmp_path):
    path = tmp_path / "slarti-agent.pyz"
    path.write_bytes(b"#!/usr/bin/env python3\n")
    return path


def _deployer(remote, config=None):
    deployer = AgentDeployer(SshTarget("web1", user="deploy"), config or AgentConfig())
    deployer._ssh_exec = remote.ssh_exec
    deployer._run_local = remote.run_local
    return deployer


@pytest.mark.asyncio
async def test_rsync_installs_directly_under_home(artifact):
    remote = FakeRemote()
    result = await _deployer(remote).deploy(artifact, "1.4.0")

    expected = "/home/deploy/.local/share/slarti/agent/1.4.0/slarti-agent"
    assert result.remote_path == expected
    assert result.used_rsync is True
    assert result.mechanism == "rsync"
    assert result.is_root is False
    assert remote.uploads == [("rsync", expected)]
    assert remote.files == {expected: 0o755}
    assert "/home/deploy/.local/share/slarti/agent/1.4.0" in remote.dirs
    # rsync lands the file at its final name with the right mode
    assert not any(s.startswith(("mv", "chmod")) for s in remote.scripts)


@pytest.mark.asyncio
async def test_root_installs_under_system_base(artifact):
    remote = FakeRemote(uid=0, home="/root")
    result = await _deployer(remote).deploy(artifact, "1.4.0")

    assert result.remote_path == "/usr/local/lib/slarti/agent/1.4.0/slarti-agent"
    assert result.is_root is True


@pytest.mark.asyncio
async def test_scp_fallback_renames_and_marks_executable(artifact):
    remote = FakeRemote(rsync_ok=False)
    progress = []
    deployer = _deployer(remote)
    deployer.on_progress = progress.append

    result = await deployer.deploy(artifact, "1.4.0")

    base = "/home/deploy/.local/share/slarti/agent/1.4.0"
    assert result.used_rsync is False
    assert result.mechanism == "scp"
    assert [tool for tool, _ in remote.uploads] == ["rsync", "scp"]
    assert remote.uploads[1] == ("scp", f"{base}/slarti-agent.pyz")
    assert remote.files == {f"{base}/slarti-agent": 0o755}
    assert any("scp" in message for message in progress)


@pytest.mark.asyncio
async def test_rsync_missing_locally_falls_back_to_scp(artifact):
    remote = FakeRemote()
    deployer = _deployer(remote)

    async def run_local(argv, timeout=None):
        if argv[0] == "rsync":
            raise TransportError("Failed to run rsync: No such file or directory")
        return await remote.run_local(argv, timeout)

    deployer._run_local = run_local
    result = await deployer.deploy(artifact, "1.4.0")

    assert result.used_rsync is False
    assert result.remote_path in remote.files


@pytest.mark.asyncio
async def test_both_uploads_failing_is_deploy_error(artifact):
    remote = FakeRemote(rsync_ok=False, scp_ok=False)
    with pytest.raises(DeployError, match="rsync/scp"):
        await _deployer(remote).deploy(artifact, "1.4.0")
    assert remote.files == {}


@pytest.mark.asyncio
async def test_mkdir_failure_stops_before_upload(artifact):
    remote = FakeRemote(mkdir_ok=False)
    with pytest.raises(DeployError, match="mkdir"):
        await _deployer(remote).deploy(artifact, "1.4.0")
    assert remote.uploads == []


@pytest.mark.asyncio
async def test_privilege_check_failure_is_deploy_error(artifact):
    deployer = _deployer(FakeRemote())

    async def unreachable(script, timeout=None):
        raise TransportError("ssh timed out after 30s")

    deployer._ssh_exec = unreachable
    with pytest.raises(DeployError, match="privilege check"):
        await deployer.deploy(artifact, "1.4.0")


@pytest.mark.asyncio
async def test_redeploying_same_version_is_idempotent(artifact):
    remote = FakeRemote(rsync_ok=False)
    deployer = _deployer(remote)

    first = await deployer.deploy(artifact, "1.4.0")
    files_after_first = dict(remote.files)
    second = await deployer.deploy(artifact, "1.4.0")

    assert first.remote_path == second.remote_path
    assert remote.files == files_after_first


@pytest.mark.asyncio
async def test_missing_artifact_and_bad_version_are_rejected(tmp_path, artifact):
    remote = FakeRemote()
    deployer = _deployer(remote)

    with pytest.raises(DeployError, match="not found"):
        await deployer.deploy(tmp_path / "absent.pyz", "1.4.0")
    with pytest.raises(DeployError, match="invalid version"):
        await deployer.deploy(artifact, "../../etc")
    assert remote.scripts == []


@pytest.mark.asyncio
async def test_resolve_remote_path_does_not_change_anything():
    remote = FakeRemote()
    path = await _deployer(remote).resolve_remote_path("2.0.0")

    assert path == "/home/deploy/.local/share/slarti/agent/2.0.0/slarti-agent"
    assert remote.dirs == set()
    assert remote.uploads == []


def test_install_dir_honours_configured_bases():
    config = AgentConfig(root_base="/opt/slarti/", home_base="/apps/slarti/")
    assert install_dir(config, True, "/root", "1.0.0") == "/opt/slarti/1.0.0"
    assert install_dir(config, False, "/home/u/", "1.0.0") == "/home/u/apps/slarti/1.0.0"


def test_bundled_artifact_is_an_executable_zipapp(tmp_path):
    path = build_agent_artifact(tmp_path)

    assert path.read_bytes().startswith(b"#!/usr/bin/env python3\n")
    assert os.stat(path).st_mode & 0o111
    with zipfile.ZipFile(path) as zf:
        names = set(zf.namelist())
    assert {
        "__main__.py",
        "slarti/__init__.py",
        "slarti/remote/__init__.py",
        "slarti/remote/protocol.py",
        "slarti/remote/remote_agent.py",
    } <= names
    assert "slarti/cli.py" not in names

    out = subprocess.run([sys.executable, str(path), "--version"], capture_output=True, text=True, check=True)
    assert out.stdout.strip() == __version__
