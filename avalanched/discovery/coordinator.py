"""
Discovery & readiness protocol.

Anchors publish a bootstrapping record immediately, and a ready record once
their node reports healthy. Non-anchors publish nothing until they have seen
`quorum` distinct ready anchors, then publish their own ready record. All
agreement comes from overwriting deterministic keys and counting; nothing is
ever locked or deleted.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

import bittensor as bt

from avalanched.discovery.quorum import (
    QuorumLatch,
    ReadinessDecision,
    compute_quorum_view,
    encode_node_record,
)
from avalanched.errors import (
    ObjectNotFound,
    ResourceUnavailableError,
    StoreError,
    TransientError,
)
from avalanched.keys.envelope import KeyHandle
from avalanched.schemas import NodeKind, NodeRecord
from avalanched.storage.namespace import StorageNamespace
from avalanched.storage.store import ObjectStore
from avalanched.utils.retry import (
    SYSTEM_CLOCK,
    Backoff,
    CancelToken,
    Clock,
    Deadline,
    retry_call,
)


class DiscoveryState(str, Enum):
    INITIALIZING = "initializing"
    SELF_PUBLISHED = "self-published"
    AWAITING_QUORUM = "awaiting-quorum"
    QUORUM_MET = "quorum-met"
    READY = "ready"


@dataclass(frozen=True)
class BootstrapPeers:
    """Immutable peer set handed to the node process supervisor."""

    peers: Tuple[NodeRecord, ...] = ()

    @property
    def ids(self) -> Tuple[str, ...]:
        return tuple(p.node_id for p in self.peers)

    @property
    def ips(self) -> Tuple[str, ...]:
        return tuple(p.network_address for p in self.peers)

    def __len__(self) -> int:
        return len(self.peers)


@dataclass(frozen=True)
class DiscoveryConfig:
    quorum: int
    expected_anchor_nodes: Optional[int] = None
    poll_interval_s: float = 10.0
    # None waits for quorum forever.
    timeout_s: Optional[float] = None
    publish_attempts: int = 10
    backoff: Backoff = Backoff(initial_s=1.0, max_s=30.0)


class DiscoveryCoordinator:
    def __init__(
        self,
        store: ObjectStore,
        namespace: StorageNamespace,
        handle: KeyHandle,
        *,
        node_kind: NodeKind,
        network_id: int,
        network_address: str,
        machine_id: str,
        http_endpoint: str,
        config: DiscoveryConfig,
        clock: Clock = SYSTEM_CLOCK,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.store = store
        self.namespace = namespace
        self.handle = handle
        self.node_kind = node_kind
        self.network_id = int(network_id)
        self.network_address = network_address
        self.machine_id = machine_id
        self.http_endpoint = http_endpoint
        self.config = config
        self.clock = clock
        self.cancel = cancel if cancel is not None else CancelToken()

        self.state = DiscoveryState.INITIALIZING
        self.latch = QuorumLatch()
        self.last_decision: Optional[ReadinessDecision] = None
        self._warned: Set[Tuple[str, str]] = set()
        self._warned_unsatisfiable = False

    @property
    def node_id(self) -> str:
        return self.handle.node_id

    # Records.

    def build_record(self) -> NodeRecord:
        record = NodeRecord(
            node_id=self.node_id,
            node_kind=self.node_kind,
            network_id=self.network_id,
            network_address=self.network_address,
            machine_id=self.machine_id,
            http_endpoint=self.http_endpoint,
            ss58_address=self.handle.ss58_address,
            published_at=self.clock.time(),
        )
        return record.model_copy(update={"signature": self.handle.sign(record.unsigned_payload())})

    def _publish(self, path: str) -> NodeRecord:
        record = self.build_record()
        body = encode_node_record(record)
        try:
            retry_call(
                lambda: self.store.put(path, body),
                attempts=self.config.publish_attempts,
                backoff=self.config.backoff,
                clock=self.clock,
                cancel=self.cancel,
                retry_on=(StoreError,),
                describe=f"publish {path}",
            )
        except StoreError as e:
            raise ResourceUnavailableError(f"could not publish {path}: {e}", stage="discovery", node_id=self.node_id) from e
        bt.logging.debug(f"Published {path} at {record.published_at:.3f}")
        return record

    def _read_dir(self, prefix: str) -> Dict[str, bytes]:
        objects: Dict[str, bytes] = {}
        for path in self.store.list(prefix):
            try:
                objects[path] = self.store.get(path)
            except ObjectNotFound:
                # Listing can run ahead of (or behind) reads; the next poll sees it.
                continue
        return objects

    def _warn_skipped(self, decision: ReadinessDecision) -> None:
        for path, reason in decision.skipped:
            if (path, reason) in self._warned:
                continue
            self._warned.add((path, reason))
            bt.logging.warning(f"Ignoring discovery record {path}: {reason}")

    def observe(self, prefixes: List[str], threshold: int) -> ReadinessDecision:
        """One read of the store turned into a decision (store errors propagate)."""
        objects: Dict[str, bytes] = {}
        for prefix in prefixes:
            objects.update(self._read_dir(prefix))
        decision = compute_quorum_view(
            objects,
            threshold,
            self_node_id=self.node_id,
            network_id=self.network_id,
            expected_anchor_nodes=self.config.expected_anchor_nodes,
        )
        self._warn_skipped(decision)
        return decision

    def poll_once(self) -> ReadinessDecision:
        """Latched quorum view over ready anchors; never reverts once met."""
        return self.latch.observe(self.observe([self.namespace.ready_anchor_dir], self.config.quorum))

    # Protocol.

    def resolve_peers(self) -> BootstrapPeers:
        if self.node_kind is NodeKind.ANCHOR:
            return self._resolve_anchor()
        return self._resolve_non_anchor()

    def _resolve_anchor(self) -> BootstrapPeers:
        self._publish(self.namespace.bootstrapping_anchor_path(self.node_id))
        self.state = DiscoveryState.SELF_PUBLISHED
        bt.logging.info(f"Anchor {self.node_id} published bootstrapping record")

        # Anchors bootstrap off whichever anchors are visible now; waiting for a
        # quorum here would deadlock anchors on each other.
        def _once() -> ReadinessDecision:
            return self.observe([self.namespace.bootstrapping_anchor_dir, self.namespace.ready_anchor_dir], 0)

        try:
            decision = retry_call(
                _once,
                attempts=self.config.publish_attempts,
                backoff=self.config.backoff,
                clock=self.clock,
                cancel=self.cancel,
                retry_on=(StoreError,),
                describe="list anchor records",
            )
        except StoreError as e:
            raise ResourceUnavailableError(f"could not list anchors: {e}", stage="discovery", node_id=self.node_id) from e
        self.last_decision = decision
        peers = BootstrapPeers(decision.peers)
        bt.logging.info(f"Anchor {self.node_id} bootstrapping against {len(peers)} peer(s): {list(peers.ids)}")
        return peers

    def _resolve_non_anchor(self) -> BootstrapPeers:
        self.state = DiscoveryState.AWAITING_QUORUM
        deadline = Deadline(self.clock, self.config.timeout_s)
        threshold = self.config.quorum
        failures = 0
        bt.logging.info(f"Non-anchor {self.node_id} waiting for {threshold} ready anchor(s)")

        while True:
            self.cancel.raise_if_cancelled()
            try:
                decision = self.poll_once()
                failures = 0
            except TransientError as e:
                failures += 1
                delay = self.config.backoff.delay(failures)
                bt.logging.warning(f"Discovery poll failed ({failures} in a row): {e}; retrying in {delay:.1f}s")
                self._sleep_or_expire(delay, deadline)
                continue

            self.last_decision = decision
            if decision.unsatisfiable and not self._warned_unsatisfiable:
                self._warned_unsatisfiable = True
                bt.logging.warning(
                    f"Quorum {threshold} exceeds the {self.config.expected_anchor_nodes} anchor(s) this cluster "
                    f"was created with; waiting anyway"
                )
            if decision.quorum_met:
                self.state = DiscoveryState.QUORUM_MET
                bt.logging.success(f"Quorum met: {decision.count}/{threshold} ready anchors")
                peers = BootstrapPeers(decision.peers)
                self.mark_ready()
                return peers

            bt.logging.info(f"Waiting for quorum: {decision.count}/{threshold} ready anchors")
            self._sleep_or_expire(self.config.poll_interval_s, deadline)

    def _sleep_or_expire(self, delay: float, deadline: Deadline) -> None:
        if deadline.bounded:
            delay = min(delay, deadline.remaining() or 0.0)
        if not self.clock.sleep(delay, self.cancel):
            self.cancel.raise_if_cancelled()
        if deadline.expired:
            seen = self.last_decision.count if self.last_decision is not None else 0
            raise ResourceUnavailableError(
                f"quorum not reached within {self.config.timeout_s}s ({seen}/{self.config.quorum} ready anchors)",
                stage="discovery",
                node_id=self.node_id,
            )

    def mark_ready(self) -> NodeRecord:
        """(Re)publish this node's ready record with a fresh `published_at`."""
        record = self._publish(self.namespace.ready_path(self.node_kind, self.node_id))
        if self.state is not DiscoveryState.READY:
            bt.logging.success(f"{self.node_kind.value} {self.node_id} is ready")
        self.state = DiscoveryState.READY
        return record

    def republish(self) -> NodeRecord:
        # Background refresh; store failures surface as StoreError for the caller to log.
        record = self.build_record()
        self.store.put(self.namespace.ready_path(self.node_kind, self.node_id), encode_node_record(record))
        self.state = DiscoveryState.READY
        return record
