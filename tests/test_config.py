import json

from slarti.remote.config import AgentConfig, DeploymentState, DeploymentStateStore


def test_store_save_and_load_roundtrip(tmp_path):
    store = DeploymentStateStore(tmp_path / "agents")
    state = DeploymentState(
        alias="web1",
        version="0.1.0",
        deployed_at="2026-01-02T03:04:05+00:00",
        remote_path="/usr/local/lib/slarti/agent/0.1.0/slarti-agent",
        reachable=True,
    )

    store.save(state)

    assert store.load("web1") == state
    assert store.load("other") is None


def test_store_overwrite_replaces_whole_record(tmp_path):
    store = DeploymentStateStore(tmp_path)
    store.save(DeploymentState(alias="web1", version="0.1.0", remote_path="/a", reachable=True))
    store.save(DeploymentState(alias="web1", reachable=False))

    loaded = store.load("web1")
    assert loaded.version is None
    assert loaded.remote_path is None
    assert loaded.reachable is False
    # No temp files left behind by the atomic replace
    assert [p.name for p in tmp_path.iterdir()] == ["web1.json"]


def test_store_keeps_aliases_separate_and_lists_them(tmp_path):
    store = DeploymentStateStore(tmp_path)
    store.save(DeploymentState(alias="db1", version="0.1.0"))
    store.save(DeploymentState(alias="web1", version="0.2.0"))

    assert [s.alias for s in store.list()] == ["db1", "web1"]
    assert store.load("db1").version == "0.1.0"


def test_store_sanitizes_alias_filenames(tmp_path):
    store = DeploymentStateStore(tmp_path)
    path = store.path_for("../../etc/passwd")
    assert path.parent == tmp_path
    assert "/" not in path.name


def test_store_ignores_corrupt_records(tmp_path):
    store = DeploymentStateStore(tmp_path)
    store.save(DeploymentState(alias="good"))
    (tmp_path / "bad.json").write_text("{not json")

    assert store.load("bad") is None
    assert [s.alias for s in store.list()] == ["good"]


def test_store_list_without_directory_is_empty(tmp_path):
    assert DeploymentStateStore(tmp_path / "missing").list() == []


def test_default_store_location_follows_env(tmp_path, monkeypatch):
    monkeypatch.setenv("SLARTI_CONFIG_DIR", str(tmp_path))
    assert DeploymentStateStore().state_dir == tmp_path / "agents"
    assert AgentConfig.get_default_config_path() == tmp_path / "config.json"


def test_agent_config_load_reads_agent_section(tmp_path):
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({
        "agent": {
            "ssh_binary": "/opt/ssh/bin/ssh",
            "probe_timeout": 3,
            "extra_ssh_options": ["ServerAliveInterval=10"],
            "no_such_option": True,
        }
    }))

    config = AgentConfig.load(config_file)

    assert config.ssh_binary == "/opt/ssh/bin/ssh"
    assert config.probe_timeout == 3
    assert config.extra_ssh_options == ["ServerAliveInterval=10"]
    assert config.binary_name == "slarti-agent"


def test_agent_config_defaults_when_file_missing(tmp_path):
    config = AgentConfig.load(tmp_path / "absent.json")
    assert config == AgentConfig()
    assert config.to_dict()["strict_host_key_checking"] == "accept-new"
