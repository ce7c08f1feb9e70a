"""
Per-node agent: boot sequence, background loops, exit status.

    volume -> keys -> discovery -> restore -> configure -> supervise

Each stage's output feeds the next, so they run strictly in order. Once the
node process is under supervision, two background threads refresh this
node's ready record and take snapshots; neither shares a lock with the
supervisor.
"""

from __future__ import annotations

import signal
import subprocess
import threading
from typing import Callable, Dict, List, Optional

import bittensor as bt

from avalanched.agent.config import AgentEnvConfig, load_agent_env
from avalanched.backup import BackupManager, RestoreSource
from avalanched.discovery.coordinator import BootstrapPeers, DiscoveryCoordinator, DiscoveryState
from avalanched.errors import (
    AgentError,
    CancelledError,
    FatalConfigurationError,
    FatalError,
    MetadataUnavailable,
    ResourceUnavailableError,
    TransientError,
)
from avalanched.events import EventLog
from avalanched.keys.envelope import EnvelopeKeyManager, KeyHandle
from avalanched.keys.kms import KeyEncryptionService, KmsKeyService, LocalKeyService
from avalanched.metadata import InstanceMetadataClient
from avalanched.node.config import NodeRuntimeParams, render_node_config, write_node_config
from avalanched.node.health import is_healthy
from avalanched.node.supervisor import NodeProcessSupervisor
from avalanched.schemas import NodeKind
from avalanched.storage.http import HttpObjectStore
from avalanched.storage.namespace import StorageNamespace
from avalanched.storage.s3 import S3ObjectStore
from avalanched.storage.store import ObjectStore
from avalanched.utils.env import _env_bool, _env_str
from avalanched.utils.logging import configure_logging, fatal_line
from avalanched.utils.retry import SYSTEM_CLOCK, Backoff, CancelToken, Clock, retry_call
from avalanched.volume import BlockDevice, Ec2AttachmentProbe, LinuxBlockDevice, VolumeManager


class _PeriodicTask(threading.Thread):
    """Run `fn` every `interval_s` until cancelled; errors are logged and the loop goes on."""

    def __init__(
        self, name: str, interval_s: float, fn: Callable[[], None], cancel: CancelToken, clock: Clock = SYSTEM_CLOCK
    ) -> None:
        super().__init__(name=name, daemon=True)
        self.interval_s = interval_s
        self.fn = fn
        self.cancel = cancel
        self.clock = clock

    def run(self) -> None:
        while self.clock.sleep(self.interval_s, self.cancel) and not self.cancel.cancelled:
            try:
                self.fn()
            except AgentError as e:
                bt.logging.warning(f"{self.name}: {e}")


class Agent:
    def __init__(
        self,
        config: AgentEnvConfig,
        *,
        store: ObjectStore,
        kms: KeyEncryptionService,
        block_device: Optional[BlockDevice] = None,
        attachment_probe: Optional[Ec2AttachmentProbe] = None,
        restore_source: Optional[RestoreSource] = None,
        health_check: Optional[Callable[[str], bool]] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        clock: Clock = SYSTEM_CLOCK,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.kms = kms
        self.block_device = block_device
        self.attachment_probe = attachment_probe
        self.health_check = health_check or (
            lambda endpoint: is_healthy(
                endpoint, path=config.node.health_path, timeout_s=config.node.health_timeout_s
            )
        )
        self.popen = popen
        self.clock = clock
        self.cancel = cancel if cancel is not None else CancelToken()

        self.namespace = StorageNamespace(config.cluster_id)
        self.events = EventLog(store, self.namespace, machine_id=config.machine_id, clock=clock)
        self.backups = BackupManager(
            store,
            self.namespace,
            db_dir=config.db_dir,
            source=restore_source,
            events=self.events,
            backoff=config.discovery.backoff,
            clock=clock,
            cancel=self.cancel,
        )

        self.stage: Optional[str] = None
        self.handle: Optional[KeyHandle] = None
        self.coordinator: Optional[DiscoveryCoordinator] = None
        self.peers: Optional[BootstrapPeers] = None
        self.supervisor: Optional[NodeProcessSupervisor] = None
        self._threads: List[_PeriodicTask] = []

    @property
    def node_id(self) -> Optional[str]:
        return self.handle.node_id if self.handle is not None else None

    def _stage(self, name: str, fn):
        self.stage = name
        bt.logging.info(f"[{name}] starting")
        try:
            return fn()
        except CancelledError:
            raise
        except FatalError as e:
            raise e.bind(stage=name, node_id=self.node_id)
        except (TransientError, OSError) as e:
            raise ResourceUnavailableError(str(e), stage=name, node_id=self.node_id) from e
        except AgentError as e:
            raise FatalError(str(e), stage=name, node_id=self.node_id) from e

    # Stages.

    def _mount_volume(self) -> None:
        vc = self.config.volume
        if not vc.enabled:
            bt.logging.info(f"Volume management disabled; using {vc.mount_point} as is")
            return
        manager = VolumeManager(
            self.block_device or LinuxBlockDevice(),
            device=vc.device,
            mount_point=vc.mount_point,
            fstype=vc.fstype,
            attach_attempts=vc.attach_attempts,
            attach_delay_s=vc.attach_delay_s,
            probe=self.attachment_probe,
            clock=self.clock,
            cancel=self.cancel,
        )
        mounted = manager.ensure_mounted()
        self.events.emit("volume-mounted", stage="volume", device=mounted.device, formatted_now=mounted.formatted_now)

    def _load_identity(self) -> KeyHandle:
        manager = EnvelopeKeyManager(
            self.store,
            self.namespace,
            self.kms,
            key_id=self.config.kms.key_id,
            network_id=self.config.network_id,
            attempts=self.config.kms.attempts,
            backoff=self.config.discovery.backoff,
            clock=self.clock,
            cancel=self.cancel,
        )
        handle = manager.provision_or_load(self.config.machine_id)
        self.handle = handle
        self.events.node_id = handle.node_id
        handle.write_seed_file(self.config.seed_file)
        ids = handle.identifiers
        bt.logging.info(f"Identity {ids.node_id} x={ids.x_address} p={ids.p_address}")
        self.events.emit(
            "key-provisioned" if handle.provisioned else "key-loaded",
            stage="keys",
            x_address=ids.x_address,
            p_address=ids.p_address,
        )
        return handle

    def _discover(self) -> BootstrapPeers:
        node = self.config.node
        self.coordinator = DiscoveryCoordinator(
            self.store,
            self.namespace,
            self.handle,
            node_kind=self.config.node_kind,
            network_id=self.config.network_id,
            network_address=node.network_address,
            machine_id=self.config.machine_id,
            http_endpoint=node.http_endpoint,
            config=self.config.discovery,
            clock=self.clock,
            cancel=self.cancel,
        )
        peers = self.coordinator.resolve_peers()
        if self.config.node_kind is NodeKind.NON_ANCHOR:
            self.events.emit("quorum-met", stage="discovery", peers=list(peers.ids))
            self.events.emit("ready", stage="discovery")
        return peers

    def _configure_node(self) -> str:
        node = self.config.node
        params = NodeRuntimeParams(
            network_id=self.config.network_id,
            public_ip=node.public_ip,
            db_dir=self.config.db_dir,
            log_dir=self.config.log_dir,
            seed_file=self.config.seed_file,
            http_port=node.http_port,
            staking_port=node.staking_port,
            log_level=node.log_level,
        )
        path = self.config.node_config_file
        write_node_config(path, render_node_config(params, self.peers or BootstrapPeers()))
        bt.logging.info(f"Wrote node config {path} with {len(self.peers or ())} bootstrap peer(s)")
        return path

    def boot(self) -> str:
        """Run every stage up to (not including) supervision; returns the node config path."""
        self._stage("volume", self._mount_volume)
        self._stage("keys", self._load_identity)
        self.peers = self._stage("discovery", self._discover)
        self._stage("restore", self.backups.restore_if_configured)
        return self._stage("configure", self._configure_node)

    # Background loops.

    def readiness_tick(self) -> None:
        if self.coordinator is None:
            return
        if not self.health_check(self.config.node.http_endpoint):
            bt.logging.debug("Node not healthy yet; ready record left as is")
            return
        if self.coordinator.state is not DiscoveryState.READY:
            self.coordinator.mark_ready()
            self.events.emit("ready", stage="supervise")
        else:
            self.coordinator.republish()

    def snapshot_tick(self) -> None:
        if self.node_id is not None:
            self.backups.snapshot(self.node_id)

    def _start_background(self) -> None:
        self._threads = [
            _PeriodicTask("readiness", self.config.republish_interval_s, self.readiness_tick, self.cancel, self.clock)
        ]
        if self.config.backup.snapshot_interval_s > 0:
            self._threads.append(
                _PeriodicTask(
                    "snapshot", self.config.backup.snapshot_interval_s, self.snapshot_tick, self.cancel, self.clock
                )
            )
        for t in self._threads:
            t.start()

    def run(self) -> int:
        config_path = self.boot()
        node = self.config.node
        self.supervisor = NodeProcessSupervisor(
            [node.binary_path, f"--config-file={config_path}"],
            max_restarts=node.max_restarts,
            backoff=node.restart_backoff,
            stable_after_s=node.stable_after_s,
            clock=self.clock,
            cancel=self.cancel,
            events=self.events,
            popen=self.popen,
        )
        self._start_background()
        try:
            self._stage("supervise", self.supervisor.run)
        finally:
            self.cancel.cancel()
            for t in self._threads:
                t.join(timeout=5.0)
        bt.logging.info("Agent stopped")
        return 0

    def stop(self) -> None:
        self.cancel.cancel()


def build_store(cfg: AgentEnvConfig) -> ObjectStore:
    if cfg.store.backend == "http":
        return HttpObjectStore(cfg.store.http_url, timeout_s=cfg.store.timeout_s)
    return S3ObjectStore(
        cfg.store.bucket,
        prefix=cfg.store.prefix,
        region=cfg.store.region,
        endpoint_url=cfg.store.endpoint_url,
        timeout_s=cfg.store.timeout_s,
    )


def build_key_service(cfg: AgentEnvConfig) -> KeyEncryptionService:
    if cfg.kms.backend == "local":
        return LocalKeyService.from_secret(cfg.kms.local_secret, [cfg.kms.key_id])
    return KmsKeyService(region=cfg.kms.region)


def build_agent(cfg: AgentEnvConfig, *, clock: Clock = SYSTEM_CLOCK, cancel: Optional[CancelToken] = None) -> Agent:
    store = build_store(cfg)
    probe = None
    if cfg.volume.use_ec2_probe:
        probe = Ec2AttachmentProbe(cfg.machine_id, cfg.volume.ebs_device_name, region=cfg.store.region)
    source = None
    if cfg.backup.source:
        try:
            source = RestoreSource.parse(cfg.backup.source, store, region=cfg.store.region)
        except ValueError as e:
            raise FatalConfigurationError(str(e), stage="config") from e
    return Agent(
        cfg,
        store=store,
        kms=build_key_service(cfg),
        attachment_probe=probe,
        restore_source=source,
        clock=clock,
        cancel=cancel,
    )


def _instance_facts(cancel: CancelToken) -> Dict[str, object]:
    """Instance id, public IP, region and tags from IMDS (retried, then fatal)."""
    client = InstanceMetadataClient(_env_str("AVALANCHED_IMDS_URL", "http://169.254.169.254"))

    def _read() -> Dict[str, object]:
        return {
            "machine_id": client.instance_id(),
            "public_ip": client.public_ipv4() or client.local_ipv4(),
            "region": client.region(),
            "tags": client.tags(),
        }

    try:
        return retry_call(
            _read,
            attempts=5,
            backoff=Backoff(initial_s=1.0, max_s=10.0),
            cancel=cancel,
            retry_on=(MetadataUnavailable,),
            describe="read instance metadata",
        )
    except MetadataUnavailable as e:
        raise ResourceUnavailableError(f"instance metadata unavailable: {e}", stage="metadata") from e


def main() -> int:
    cancel = CancelToken()
    agent: Optional[Agent] = None

    def _on_signal(signum, _frame) -> None:
        bt.logging.info(f"Received signal {signum}; shutting down")
        cancel.cancel()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    try:
        configure_logging(_env_str("AVALANCHED_LOG_LEVEL", "info"))
        facts: Dict[str, object] = {}
        if _env_bool("AVALANCHED_USE_IMDS", True):
            facts = _instance_facts(cancel)
        cfg = load_agent_env(
            tags=facts.get("tags") or None,
            machine_id=facts.get("machine_id") or None,
            public_ip=facts.get("public_ip") or None,
            region=facts.get("region") or None,
        )
        bt.logging.info(f"avalanched starting: cluster={cfg.cluster_id} machine={cfg.machine_id} kind={cfg.node_kind.value}")
        agent = build_agent(cfg, cancel=cancel)
        return agent.run()
    except CancelledError:
        bt.logging.info("Cancelled during boot; exiting")
        return 0
    except FatalError as e:
        node_id = agent.node_id if agent is not None else None
        if agent is not None:
            e.bind(stage=agent.stage or "boot", node_id=node_id)
            agent.events.emit("fatal", stage=e.stage, category=e.category, cause=e.message)
        bt.logging.error(fatal_line(node_id=e.node_id, stage=e.stage, category=e.category, cause=e.message))
        return e.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
