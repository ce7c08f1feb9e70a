import json

import pytest

from avalanched.agent import runner
from avalanched.agent.config import load_agent_env
from avalanched.agent.runner import Agent
from avalanched.discovery.coordinator import DiscoveryState
from avalanched.discovery.quorum import decode_node_record, encode_node_record
from avalanched.errors import FatalError, SupervisionError
from avalanched.keys.kms import LocalKeyService
from avalanched.schemas import NodeKind
from avalanched.storage.namespace import StorageNamespace
from avalanched.storage.store import InMemoryObjectStore

NS = StorageNamespace("dev")


@pytest.fixture
def agent_env(monkeypatch, tmp_path):
    for name in ("AVALANCHED_QUORUM", "AVALANCHED_BACKUP_SOURCE", "AVALANCHED_STORE_URL", "AVALANCHED_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    env = {
        "TESTING": "true",
        "AVALANCHED_CLUSTER_ID": "dev",
        "AVALANCHED_MACHINE_ID": "i-agent",
        "AVALANCHED_NETWORK_ID": "12345",
        "AVALANCHED_NODE_KIND": "anchor",
        "AVALANCHED_S3_BUCKET": "unused",
        "AVALANCHED_LOCAL_KEY_SECRET": "dev-secret",
        "AVALANCHED_KMS_KEY_ID": "local",
        "AVALANCHED_ANCHOR_NODES": "1",
        "AVALANCHED_PUBLIC_IP": "10.0.0.5",
        "AVALANCHED_REGION": "us-west-2",
        "AVALANCHED_MANAGE_VOLUME": "false",
        "AVALANCHED_DATA_VOLUME_PATH": str(tmp_path / "data"),
        "AVALANCHED_MAX_RESTARTS": "0",
    }
    for k, v in env.items():
        monkeypatch.setenv(k, v)
    return monkeypatch


def _agent(store, fake_clock, **kw):
    cfg = load_agent_env()
    return Agent(
        cfg,
        store=store,
        kms=LocalKeyService.from_secret("dev-secret", ["local"]),
        health_check=kw.pop("health_check", lambda endpoint: True),
        clock=fake_clock,
        **kw,
    )


def test_anchor_boot_writes_identity_and_node_config(agent_env, tmp_path, fake_clock):
    store = InMemoryObjectStore()
    agent = _agent(store, fake_clock)
    config_path = agent.boot()

    assert store.exists(NS.pki_key("i-agent"))
    assert store.exists(NS.bootstrapping_anchor_path(agent.node_id))
    assert (tmp_path / "data" / "staking" / "signer.key").exists()
    cfg = json.loads(open(config_path, encoding="utf-8").read())
    assert cfg["bootstrap-ids"] == ""
    assert cfg["public-ip"] == "10.0.0.5"
    assert cfg["db-dir"] == str(tmp_path / "data" / "db")
    assert agent.coordinator.state is DiscoveryState.SELF_PUBLISHED

    events = store.list(f"dev/events/{agent.node_id}/")
    assert any(p.endswith("-key-provisioned.json") for p in events)

    # Anchor becomes ready on the first healthy tick, then just refreshes.
    agent.readiness_tick()
    assert agent.coordinator.state is DiscoveryState.READY
    assert store.exists(NS.ready_path(NodeKind.ANCHOR, agent.node_id))
    agent.readiness_tick()

    # A reboot loads the same identity.
    again = _agent(store, fake_clock)
    again.boot()
    assert again.node_id == agent.node_id
    assert again.handle.provisioned is False


def test_unhealthy_node_is_not_marked_ready(agent_env, fake_clock):
    store = InMemoryObjectStore()
    agent = _agent(store, fake_clock, health_check=lambda endpoint: False)
    agent.boot()
    agent.readiness_tick()
    assert not store.exists(NS.ready_path(NodeKind.ANCHOR, agent.node_id))


def test_non_anchor_boot_waits_for_ready_anchor(agent_env, fake_clock, make_handle, make_record):
    agent_env.setenv("AVALANCHED_NODE_KIND", "non-anchor")
    store = InMemoryObjectStore()
    anchor = make_record(make_handle(1))
    store.put(NS.ready_path(NodeKind.ANCHOR, anchor.node_id), encode_node_record(anchor))

    agent = _agent(store, fake_clock)
    config_path = agent.boot()

    cfg = json.loads(open(config_path, encoding="utf-8").read())
    assert cfg["bootstrap-ids"] == anchor.node_id
    assert cfg["bootstrap-ips"] == anchor.network_address
    assert store.exists(NS.ready_path(NodeKind.NON_ANCHOR, agent.node_id))
    assert agent.coordinator.state is DiscoveryState.READY


class _CrashingProc:
    pid = 4242

    def poll(self):
        return 1


def test_crash_loop_surfaces_supervision_error_with_node_id(agent_env, fake_clock):
    store = InMemoryObjectStore()
    launched = []

    def popen(command):
        launched.append(command)
        return _CrashingProc()

    agent = _agent(store, fake_clock, popen=popen)
    with pytest.raises(SupervisionError) as ei:
        agent.run()

    assert ei.value.exit_code == 5
    assert ei.value.stage == "supervise"
    assert ei.value.node_id == agent.node_id
    assert launched[0][1].startswith("--config-file=")
    assert agent.cancel.cancelled


class _LongRunningProc:
    pid = 4343

    def __init__(self) -> None:
        self.returncode = None

    def poll(self):
        return self.returncode

    def terminate(self):
        self.returncode = -15

    def wait(self, timeout=None):
        return self.returncode

    def kill(self):
        self.returncode = -9


def test_background_loops_refresh_ready_record_and_upload_snapshots(agent_env, tmp_path, fake_clock):
    agent_env.setenv("AVALANCHED_SNAPSHOT_INTERVAL_S", "3600")
    db = tmp_path / "data" / "db"
    db.mkdir(parents=True)
    (db / "MANIFEST").write_text("chain-state")
    store = InMemoryObjectStore()
    procs = []

    def popen(command):
        procs.append(_LongRunningProc())
        return procs[-1]

    agent = _agent(store, fake_clock, popen=popen)
    booted_at = fake_clock.time()

    def ready_refreshed():
        if agent.node_id is None:
            return False
        path = NS.ready_path(NodeKind.ANCHOR, agent.node_id)
        return store.exists(path) and decode_node_record(store.get(path)).published_at > booted_at

    def snapshot_uploaded():
        return agent.node_id is not None and any(
            p.endswith("/descriptor.json") for p in store.list(f"dev/backups/{agent.node_id}/")
        )

    seen = {}

    def stop_when_both_loops_ran(_s):
        if "ready" not in seen and ready_refreshed():
            seen["ready"] = True
        if "snapshot" not in seen and snapshot_uploaded():
            seen["snapshot"] = True
        if len(seen) == 2 or len(fake_clock.sleeps) > 200_000:
            agent.stop()

    fake_clock.on_sleep.append(stop_when_both_loops_ran)
    assert agent.run() == 0

    assert seen == {"ready": True, "snapshot": True}
    assert agent.backups.last_snapshot is not None
    assert agent.backups.last_snapshot.source_node_id == agent.node_id
    assert len(procs) == 1 and procs[0].returncode == -15
    assert all(not t.is_alive() for t in agent._threads)


def test_corrupt_envelope_is_bound_to_keys_stage(agent_env, fake_clock):
    store = InMemoryObjectStore()
    store.put(NS.pki_key("i-agent"), b"not an envelope")
    agent = _agent(store, fake_clock)
    with pytest.raises(FatalError) as ei:
        agent.boot()
    assert ei.value.exit_code == 3
    assert ei.value.stage == "keys"


def test_main_exits_with_configuration_status(agent_env, monkeypatch):
    monkeypatch.setenv("AVALANCHED_USE_IMDS", "false")
    monkeypatch.setattr(runner.signal, "signal", lambda *_a: None)
    monkeypatch.delenv("AVALANCHED_CLUSTER_ID")
    assert runner.main() == 2


def test_build_agent_rejects_bad_backup_source(agent_env):
    agent_env.setenv("AVALANCHED_BACKUP_SOURCE", "s3:///nothing")
    cfg = load_agent_env()
    with pytest.raises(FatalError) as ei:
        runner.build_agent(cfg)
    assert ei.value.exit_code == 2
