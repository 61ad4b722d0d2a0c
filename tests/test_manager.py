import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import agent_argv
from slarti import __version__
from slarti.remote import manager as manager_mod
from slarti.remote.config import DeploymentState, DeploymentStateStore
from slarti.remote.connection import AgentSession
from slarti.remote.deploy import DeployResult
from slarti.remote.errors import (
    AgentError,
    DeployError,
    IncompatibleAgentError,
    ProbeError,
    TransportError,
)
from slarti.remote.manager import AgentManager, describe_error
from slarti.remote.probe import AgentStatus
from slarti.remote.runtime import AgentRuntime

REMOTE_PATH = f"/home/deploy/.local/share/slarti/agent/{__version__}/slarti-agent"


class StubDeployer:
    def __init__(self, remote_path=REMOTE_PATH, fail: Exception | None = None, used_rsync=True):
        self.remote_path = remote_path
        self.fail = fail
        self.used_rsync = used_rsync
        self.deployed = []
        self.resolve_remote_path = AsyncMock(return_value=remote_path)

    async def deploy_bundled(self, version):
        if self.fail is not None:
            raise self.fail
        self.deployed.append(version)
        return DeployResult(remote_path=self.remote_path, used_rsync=self.used_rsync)

    async def deploy(self, artifact, version):
        return await self.deploy_bundled(version)


def _present(version=__version__, path=REMOTE_PATH):
    return AgentStatus(present=True, can_run=True, remote_path=path, version=version, exit_code=0)


def _missing(path=REMOTE_PATH):
    return AgentStatus(present=False, can_run=False, remote_path=path, exit_code=127)


@pytest.fixture
def store(tmp_path):
    return DeploymentStateStore(tmp_path / "agents")


@pytest.fixture
def deployer():
    return StubDeployer()


@pytest.fixture
def make_manager(store, deployer):
    def _make(**kwargs):
        mgr = AgentManager(store=store, client_version=__version__, **kwargs)
        mgr._deployer = lambda target: deployer
        return mgr

    return _make


# ---------------------------------------------------------------------------
# check
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_check_ready(monkeypatch, make_manager, store):
    monkeypatch.setattr(manager_mod, "check_agent", AsyncMock(return_value=_present()))

    status = await make_manager().check("web1")

    assert status.state == "ready"
    assert status.ok
    assert status.agent_version == __version__
    assert store.load("web1").reachable is True


@pytest.mark.asyncio
async def test_check_missing_needs_deploy(monkeypatch, make_manager):
    monkeypatch.setattr(manager_mod, "check_agent", AsyncMock(return_value=_missing()))

    status = await make_manager().check("web1")

    assert status.state == "missing"
    assert status.needs_deploy
    assert not status.ok
    assert status.remote_path == REMOTE_PATH


@pytest.mark.asyncio
async def test_check_outdated_agent(monkeypatch, make_manager):
    monkeypatch.setattr(manager_mod, "check_agent", AsyncMock(return_value=_present(version="0.0.1")))

    status = await make_manager().check("web1")

    assert status.state == "outdated"
    assert status.needs_deploy
    assert "0.0.1" in status.message


@pytest.mark.asyncio
async def test_check_unreachable_records_state_and_never_raises(monkeypatch, make_manager, store):
    monkeypatch.setattr(
        manager_mod,
        "check_agent",
        AsyncMock(side_effect=ProbeError("ssh check failed (exit=255): Connection refused")),
    )
    progress = []

    status = await make_manager(on_progress=lambda alias, msg: progress.append((alias, msg))).check("web1")

    assert status.state == "unreachable"
    assert "Connection refused" in status.message
    assert store.load("web1").reachable is False
    assert progress[-1] == ("web1", status.message)


@pytest.mark.asyncio
async def test_check_unexpected_failure_is_error_status(monkeypatch, make_manager):
    monkeypatch.setattr(manager_mod, "check_agent", AsyncMock(side_effect=RuntimeError("boom")))

    status = await make_manager().check("web1")

    assert status.state == "error"
    assert "boom" in status.message


@pytest.mark.asyncio
async def test_check_reuses_recorded_path_for_current_version(monkeypatch, make_manager, store, deployer):
    store.save(DeploymentState(alias="web1", version=__version__, remote_path="/opt/custom/slarti-agent"))
    probe = AsyncMock(return_value=_present(path="/opt/custom/slarti-agent"))
    monkeypatch.setattr(manager_mod, "check_agent", probe)

    status = await make_manager().check("web1")

    assert status.remote_path == "/opt/custom/slarti-agent"
    assert probe.await_args.args[1] == "/opt/custom/slarti-agent"
    deployer.resolve_remote_path.assert_not_awaited()


@pytest.mark.asyncio
async def test_check_all_runs_every_alias(monkeypatch, make_manager, store):
    async def fake_check(target, remote_path, timeout, config):
        if target.alias == "down":
            raise ProbeError("no route to host")
        return _present()

    monkeypatch.setattr(manager_mod, "check_agent", fake_check)

    statuses = await make_manager().check_all(["web1", ("db1", "postgres"), "down"])

    assert [(s.alias, s.state) for s in statuses] == [
        ("web1", "ready"),
        ("db1", "ready"),
        ("down", "unreachable"),
    ]
    assert {s.alias: s.reachable for s in store.list()} == {"web1": True, "db1": True, "down": False}


def test_manager_is_reusable_across_runtimes(monkeypatch, make_manager):
    async def slow_check(target, remote_path, timeout, config):
        await asyncio.sleep(0.01)
        return _present()

    monkeypatch.setattr(manager_mod, "check_agent", slow_check)
    mgr = make_manager()

    for _ in range(2):
        with AgentRuntime() as runtime:
            statuses = runtime.run(mgr.check_all(["web1", "web1", "db1"]), timeout=10)
        assert [s.state for s in statuses] == ["ready", "ready", "ready"]


# ---------------------------------------------------------------------------
# deploy
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_deploy_verifies_and_persists_state(monkeypatch, make_manager, store, deployer):
    monkeypatch.setattr(manager_mod, "check_agent", AsyncMock(return_value=_present()))

    status = await make_manager().deploy("web1", user="deploy")

    assert status.state == "deployed"
    assert status.used_rsync is True
    assert "rsync" in status.message
    assert deployer.deployed == [__version__]

    record = store.load("web1")
    assert record.version == __version__
    assert record.remote_path == REMOTE_PATH
    assert record.reachable is True
    assert record.deployed_at


@pytest.mark.asyncio
async def test_deploy_step_failure_is_reported_not_raised(monkeypatch, make_manager, store, deployer):
    deployer.fail = DeployError("remote mkdir failed on web1: Permission denied")
    probe = AsyncMock()
    monkeypatch.setattr(manager_mod, "check_agent", probe)

    status = await make_manager().deploy("web1")

    assert status.state == "error"
    assert "mkdir" in status.message
    probe.assert_not_awaited()
    assert store.load("web1") is None


@pytest.mark.asyncio
async def test_deploy_that_cannot_run_is_error(monkeypatch, make_manager, store):
    broken = AgentStatus(
        present=False,
        can_run=False,
        remote_path=REMOTE_PATH,
        stderr="/usr/bin/env: 'python3': No such file or directory\n",
        exit_code=127,
    )
    monkeypatch.setattr(manager_mod, "check_agent", AsyncMock(return_value=broken))

    status = await make_manager().deploy("web1")

    assert status.state == "error"
    assert "python3" in status.message
    assert store.load("web1") is None


# ---------------------------------------------------------------------------
# connect
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_connect_deploys_missing_agent_then_handshakes(monkeypatch, make_manager, store, deployer):
    monkeypatch.setattr(manager_mod, "check_agent", AsyncMock(side_effect=[_missing(), _present()]))
    started = []

    async def fake_run_agent(target, remote_path, config):
        started.append((target.destination, remote_path))
        return await AgentSession.spawn(agent_argv())

    monkeypatch.setattr(manager_mod, "run_agent", fake_run_agent)

    session = await make_manager().connect("web1", user="deploy")
    try:
        assert session.is_ready
        assert session.hello_result.agent_version == __version__
        assert (await session.sys_info(timeout=10)).hostname
    finally:
        await session.terminate()

    assert deployer.deployed == [__version__]
    assert started == [("deploy@web1", REMOTE_PATH)]
    assert store.load("web1").version == __version__


@pytest.mark.asyncio
async def test_connect_skips_deploy_when_ready(monkeypatch, make_manager, deployer):
    monkeypatch.setattr(manager_mod, "check_agent", AsyncMock(return_value=_present()))

    async def fake_run_agent(target, remote_path, config):
        return await AgentSession.spawn(agent_argv())

    monkeypatch.setattr(manager_mod, "run_agent", fake_run_agent)

    session = await make_manager().connect("web1")
    await session.terminate()

    assert deployer.deployed == []


@pytest.mark.asyncio
async def test_connect_unreachable_raises_transport_error(monkeypatch, make_manager):
    monkeypatch.setattr(manager_mod, "check_agent", AsyncMock(side_effect=ProbeError("timed out")))
    run_agent = AsyncMock()
    monkeypatch.setattr(manager_mod, "run_agent", run_agent)

    with pytest.raises(TransportError):
        await make_manager().connect("web1")
    run_agent.assert_not_awaited()


@pytest.mark.asyncio
async def test_connect_failed_deploy_raises_deploy_error(monkeypatch, make_manager, deployer):
    deployer.fail = DeployError("failed to upload agent (rsync/scp) to web1")
    monkeypatch.setattr(manager_mod, "check_agent", AsyncMock(return_value=_missing()))

    with pytest.raises(DeployError, match="rsync/scp"):
        await make_manager().connect("web1")


@pytest.mark.asyncio
async def test_connect_redeploys_once_when_handshake_rejects_agent(monkeypatch, make_manager, deployer):
    monkeypatch.setattr(manager_mod, "check_agent", AsyncMock(return_value=_present()))
    sessions = []
    stale_ack = '{"type":"hello_ack","id":1,"agent_version":"9.0.0","capabilities":[]}'

    async def fake_run_agent(target, remote_path, config):
        if sessions:
            session = await AgentSession.spawn(agent_argv())
        else:
            session = await AgentSession.spawn(["sh", "-c", f"read l; echo '{stale_ack}'; cat >/dev/null"])
        sessions.append(session)
        return session

    monkeypatch.setattr(manager_mod, "run_agent", fake_run_agent)

    session = await make_manager().connect("web1")
    await session.terminate()

    assert deployer.deployed == [__version__]
    assert len(sessions) == 2
    assert sessions[0].is_closed


@pytest.mark.asyncio
async def test_connect_incompatible_after_redeploy_terminates_sessions(monkeypatch, make_manager, deployer):
    monkeypatch.setattr(manager_mod, "check_agent", AsyncMock(return_value=_present()))
    sessions = []
    ack = '{"type":"hello_ack","id":1,"agent_version":"9.0.0","capabilities":[]}'

    async def fake_run_agent(target, remote_path, config):
        session = await AgentSession.spawn(["sh", "-c", f"read l; echo '{ack}'; cat >/dev/null"])
        sessions.append(session)
        return session

    monkeypatch.setattr(manager_mod, "run_agent", fake_run_agent)

    with pytest.raises(IncompatibleAgentError):
        await make_manager().connect("web1")
    assert deployer.deployed == [__version__]
    assert len(sessions) == 2
    assert all(s.is_closed for s in sessions)


@pytest.mark.asyncio
async def test_connect_wraps_unexpected_errors(monkeypatch, make_manager):
    monkeypatch.setattr(manager_mod, "check_agent", AsyncMock(return_value=_present()))
    monkeypatch.setattr(manager_mod, "run_agent", AsyncMock(side_effect=KeyError("oops")))

    with pytest.raises(AgentError) as exc_info:
        await make_manager().connect("web1")
    assert isinstance(exc_info.value.__cause__, KeyError)


def test_describe_error():
    assert describe_error(TransportError("ssh timed out")) == "ssh timed out"
    assert describe_error(ValueError("bad")) == "unexpected error: bad"
