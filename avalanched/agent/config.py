from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Mapping, Optional

from avalanched.discovery.coordinator import DiscoveryConfig
from avalanched.errors import FatalConfigurationError
from avalanched.node.config import DEFAULT_HTTP_PORT, DEFAULT_STAKING_PORT
from avalanched.schemas import NodeKind
from avalanched.utils.env import _env_bool, _env_float, _env_int, _env_str, _tag_or_env
from avalanched.utils.logging import LOG_LEVELS
from avalanched.utils.retry import Backoff

StoreBackend = Literal["s3", "http"]
KeyBackend = Literal["kms", "local"]


@dataclass(frozen=True)
class StoreConfig:
    backend: StoreBackend
    bucket: str
    prefix: str
    region: Optional[str]
    endpoint_url: Optional[str]
    http_url: str
    timeout_s: float


@dataclass(frozen=True)
class KeyServiceConfig:
    backend: KeyBackend
    key_id: str
    region: Optional[str]
    local_secret: str
    attempts: int


@dataclass(frozen=True)
class VolumeConfig:
    enabled: bool
    device: str
    ebs_device_name: str
    mount_point: str
    fstype: str
    attach_attempts: int
    attach_delay_s: float
    use_ec2_probe: bool


@dataclass(frozen=True)
class NodeProcessConfig:
    binary_path: str
    public_ip: str
    http_port: int
    staking_port: int
    log_level: str
    max_restarts: int
    stable_after_s: float
    restart_backoff: Backoff
    health_path: str
    health_timeout_s: float

    @property
    def http_endpoint(self) -> str:
        return f"http://{self.public_ip}:{self.http_port}"

    @property
    def network_address(self) -> str:
        return f"{self.public_ip}:{self.staking_port}"


@dataclass(frozen=True)
class BackupConfig:
    source: Optional[str]
    snapshot_interval_s: float


@dataclass(frozen=True)
class AgentEnvConfig:
    cluster_id: str
    machine_id: str
    network_id: int
    node_kind: NodeKind
    log_level: str
    republish_interval_s: float
    store: StoreConfig
    kms: KeyServiceConfig
    volume: VolumeConfig
    discovery: DiscoveryConfig
    node: NodeProcessConfig
    backup: BackupConfig

    @property
    def db_dir(self) -> str:
        return f"{self.volume.mount_point.rstrip('/')}/db"

    @property
    def log_dir(self) -> str:
        return f"{self.volume.mount_point.rstrip('/')}/logs"

    @property
    def seed_file(self) -> str:
        return f"{self.volume.mount_point.rstrip('/')}/staking/signer.key"

    @property
    def node_config_file(self) -> str:
        return f"{self.volume.mount_point.rstrip('/')}/config.json"


def _die(msg: str) -> None:
    raise FatalConfigurationError(f"[avalanched] {msg}", stage="config")


def _int_or_die(raw: str, name: str) -> int:
    try:
        return int(raw)
    except ValueError:
        _die(f"{name} must be an integer. Got: {raw!r}")


def _optional_int(raw: str, name: str) -> Optional[int]:
    return _int_or_die(raw, name) if raw else None


def load_agent_env(
    *,
    tags: Optional[Mapping[str, str]] = None,
    machine_id: Optional[str] = None,
    public_ip: Optional[str] = None,
    region: Optional[str] = None,
) -> AgentEnvConfig:
    """
    Load agent configuration from instance tags, env and .env.

    Instance tags win over `AVALANCHED_*` env vars. Anything missing or
    malformed raises `FatalConfigurationError`; nothing is guessed.
    """
    cluster_id = _tag_or_env(tags, "ID", "AVALANCHED_CLUSTER_ID")
    if not cluster_id:
        _die("Missing cluster id: set the ID instance tag or AVALANCHED_CLUSTER_ID.")
    if "/" in cluster_id:
        _die(f"Cluster id must not contain '/'. Got: {cluster_id!r}")

    machine_id = (machine_id or _env_str("AVALANCHED_MACHINE_ID", "")).strip()
    if not machine_id:
        _die("Missing machine id: instance metadata unavailable and AVALANCHED_MACHINE_ID unset.")

    network_id = _int_or_die(_tag_or_env(tags, "NETWORK_ID", "AVALANCHED_NETWORK_ID", ""), "NETWORK_ID")
    if network_id <= 0:
        _die(f"NETWORK_ID must be positive. Got: {network_id}")

    kind_raw = _tag_or_env(tags, "NODE_KIND", "AVALANCHED_NODE_KIND", "")
    try:
        node_kind = NodeKind.parse(kind_raw)
    except ValueError:
        _die(f"Invalid NODE_KIND={kind_raw!r} (expected 'anchor' or 'non-anchor').")

    log_level = (_env_str("AVALANCHED_LOG_LEVEL", "info") or "info").lower()
    if log_level not in LOG_LEVELS:
        _die(f"Invalid AVALANCHED_LOG_LEVEL={log_level!r} (expected one of {', '.join(LOG_LEVELS)}).")

    region = region or _env_str("AVALANCHED_REGION", "") or None

    # Object store.
    http_url = _env_str("AVALANCHED_STORE_URL", "").rstrip("/")
    bucket = _tag_or_env(tags, "S3_BUCKET_NAME", "AVALANCHED_S3_BUCKET")
    if http_url:
        if not http_url.startswith("http"):
            _die(f"AVALANCHED_STORE_URL must be http(s). Got: {http_url!r}")
        backend: StoreBackend = "http"
    elif bucket:
        backend = "s3"
    else:
        _die("No object store configured: set the S3_BUCKET_NAME tag, AVALANCHED_S3_BUCKET or AVALANCHED_STORE_URL.")
    store_cfg = StoreConfig(
        backend=backend,
        bucket=bucket,
        prefix=_env_str("AVALANCHED_S3_PREFIX", "").strip("/"),
        region=region,
        endpoint_url=_env_str("AVALANCHED_S3_ENDPOINT_URL", "") or None,
        http_url=http_url,
        timeout_s=_env_float("AVALANCHED_STORE_TIMEOUT_S", 10.0),
    )

    # Key-encryption service.
    key_id = _tag_or_env(tags, "KMS_CMK_ARN", "AVALANCHED_KMS_KEY_ID")
    local_secret = _env_str("AVALANCHED_LOCAL_KEY_SECRET", "")
    if local_secret:
        kms_backend: KeyBackend = "local"
        key_id = key_id or "local"
    elif key_id:
        kms_backend = "kms"
    else:
        _die("No key-encryption key configured: set the KMS_CMK_ARN tag or AVALANCHED_KMS_KEY_ID.")
    kms_cfg = KeyServiceConfig(
        backend=kms_backend,
        key_id=key_id,
        region=region,
        local_secret=local_secret,
        attempts=max(1, _env_int("AVALANCHED_KMS_ATTEMPTS", 5, test_default=2)),
    )

    # Data volume.
    mount_point = _tag_or_env(tags, "AVALANCHE_DATA_VOLUME_PATH", "AVALANCHED_DATA_VOLUME_PATH", "/avalanche-data")
    if not mount_point.startswith("/"):
        _die(f"AVALANCHE_DATA_VOLUME_PATH must be absolute. Got: {mount_point!r}")
    volume_cfg = VolumeConfig(
        enabled=_env_bool("AVALANCHED_MANAGE_VOLUME", True),
        device=_env_str("AVALANCHED_VOLUME_DEVICE", "/dev/nvme1n1"),
        ebs_device_name=_env_str("AVALANCHED_EBS_DEVICE_NAME", "/dev/xvdb"),
        mount_point=mount_point.rstrip("/") or "/",
        fstype=_env_str("AVALANCHED_VOLUME_FSTYPE", "ext4"),
        attach_attempts=max(1, _env_int("AVALANCHED_VOLUME_ATTACH_ATTEMPTS", 60, test_default=3)),
        attach_delay_s=_env_float("AVALANCHED_VOLUME_ATTACH_DELAY_S", 5.0, test_default=0.0),
        use_ec2_probe=_env_bool("AVALANCHED_VOLUME_EC2_PROBE", False),
    )

    # Discovery.
    expected_anchors = _optional_int(_tag_or_env(tags, "ANCHOR_NODES", "AVALANCHED_ANCHOR_NODES", ""), "ANCHOR_NODES")
    quorum_raw = _env_str("AVALANCHED_QUORUM", "")
    if quorum_raw:
        quorum = _int_or_die(quorum_raw, "AVALANCHED_QUORUM")
    elif expected_anchors is not None:
        quorum = expected_anchors
    else:
        _die("Missing quorum: set AVALANCHED_QUORUM or the ANCHOR_NODES tag.")
    if quorum < 1:
        _die(f"AVALANCHED_QUORUM must be >= 1. Got: {quorum}")
    if expected_anchors is not None and expected_anchors < 0:
        _die(f"ANCHOR_NODES must be >= 0. Got: {expected_anchors}")
    timeout_s = _env_float("AVALANCHED_DISCOVERY_TIMEOUT_S", 0.0)
    discovery_cfg = DiscoveryConfig(
        quorum=quorum,
        expected_anchor_nodes=expected_anchors,
        poll_interval_s=max(0.0, _env_float("AVALANCHED_POLL_INTERVAL_S", 10.0, test_default=0.0)),
        timeout_s=timeout_s if timeout_s > 0 else None,
        publish_attempts=max(1, _env_int("AVALANCHED_PUBLISH_ATTEMPTS", 10, test_default=2)),
        backoff=Backoff(
            initial_s=_env_float("AVALANCHED_BACKOFF_INITIAL_S", 1.0, test_default=0.0),
            max_s=_env_float("AVALANCHED_BACKOFF_MAX_S", 30.0, test_default=0.0),
        ),
    )

    # Node process.
    public_ip = (_env_str("AVALANCHED_PUBLIC_IP", "") or public_ip or "").strip()
    if not public_ip:
        _die("Missing public IP: instance metadata unavailable and AVALANCHED_PUBLIC_IP unset.")
    node_cfg = NodeProcessConfig(
        binary_path=_tag_or_env(tags, "AVALANCHE_BIN_PATH", "AVALANCHED_NODE_BIN", "/usr/local/bin/avalanche"),
        public_ip=public_ip,
        http_port=_env_int("AVALANCHED_HTTP_PORT", DEFAULT_HTTP_PORT),
        staking_port=_env_int("AVALANCHED_STAKING_PORT", DEFAULT_STAKING_PORT),
        log_level=_env_str("AVALANCHED_NODE_LOG_LEVEL", "info"),
        max_restarts=max(0, _env_int("AVALANCHED_MAX_RESTARTS", 5)),
        stable_after_s=_env_float("AVALANCHED_STABLE_AFTER_S", 600.0),
        restart_backoff=Backoff(
            initial_s=_env_float("AVALANCHED_RESTART_BACKOFF_INITIAL_S", 1.0, test_default=0.0),
            max_s=_env_float("AVALANCHED_RESTART_BACKOFF_MAX_S", 60.0, test_default=0.0),
        ),
        health_path=_env_str("AVALANCHED_HEALTH_PATH", "/ext/health"),
        health_timeout_s=_env_float("AVALANCHED_HEALTH_TIMEOUT_S", 5.0),
    )

    backup_source = _env_str("AVALANCHED_BACKUP_SOURCE", "") or None
    if backup_source and backup_source.startswith("s3://") and len(backup_source) <= len("s3://"):
        _die(f"AVALANCHED_BACKUP_SOURCE has no bucket: {backup_source!r}")
    backup_cfg = BackupConfig(
        source=backup_source,
        snapshot_interval_s=max(0.0, _env_float("AVALANCHED_SNAPSHOT_INTERVAL_S", 0.0)),
    )

    return AgentEnvConfig(
        cluster_id=cluster_id,
        machine_id=machine_id,
        network_id=network_id,
        node_kind=node_kind,
        log_level=log_level,
        republish_interval_s=max(1.0, _env_float("AVALANCHED_REPUBLISH_INTERVAL_S", 60.0)),
        store=store_cfg,
        kms=kms_cfg,
        volume=volume_cfg,
        discovery=discovery_cfg,
        node=node_cfg,
        backup=backup_cfg,
    )
