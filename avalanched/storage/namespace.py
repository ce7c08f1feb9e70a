from __future__ import annotations

from dataclasses import dataclass

from avalanched.schemas import NodeKind

BOOTSTRAPPING_ANCHOR_NODES = "bootstrapping-anchor-nodes"
READY_ANCHOR_NODES = "ready-anchor-nodes"
READY_NON_ANCHOR_NODES = "ready-non-anchor-nodes"


@dataclass(frozen=True)
class StorageNamespace:
    """Every object-store path the agent reads or writes, under one cluster."""

    cluster_id: str

    def __post_init__(self) -> None:
        cid = (self.cluster_id or "").strip().strip("/")
        if not cid:
            raise ValueError("cluster_id must be non-empty")
        object.__setattr__(self, "cluster_id", cid)

    def _join(self, *parts: str) -> str:
        return "/".join([self.cluster_id, *parts])

    # Key material; keyed by machine id since node_id derives from the key.
    def pki_key(self, machine_id: str) -> str:
        return self._join("pki", machine_id)

    def discover_dir(self, group: str) -> str:
        return self._join("discover", group) + "/"

    def discover_path(self, group: str, node_id: str) -> str:
        return self._join("discover", group, node_id)

    @property
    def bootstrapping_anchor_dir(self) -> str:
        return self.discover_dir(BOOTSTRAPPING_ANCHOR_NODES)

    @property
    def ready_anchor_dir(self) -> str:
        return self.discover_dir(READY_ANCHOR_NODES)

    def bootstrapping_anchor_path(self, node_id: str) -> str:
        return self.discover_path(BOOTSTRAPPING_ANCHOR_NODES, node_id)

    def ready_path(self, kind: NodeKind, node_id: str) -> str:
        if kind is NodeKind.ANCHOR:
            return self.discover_path(READY_ANCHOR_NODES, node_id)
        return self.discover_path(READY_NON_ANCHOR_NODES, node_id)

    def backup_archive(self, node_id: str, timestamp: str) -> str:
        return self._join("backups", node_id, timestamp, "archive.tar.gz")

    def backup_descriptor(self, node_id: str, timestamp: str) -> str:
        return self._join("backups", node_id, timestamp, "descriptor.json")

    def event_path(self, node_id: str, timestamp: str, kind: str) -> str:
        return self._join("events", node_id, f"{timestamp}-{kind}.json")
