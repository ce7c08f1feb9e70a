from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from avalanched.errors import MalformedRecordError
from avalanched.keys.identity import node_id_for_ss58
from avalanched.keys.signing import verify_payload
from avalanched.schemas import NodeKind, NodeRecord

RecordObjects = Union[Mapping[str, bytes], Iterable[Tuple[str, bytes]]]


def encode_node_record(record: NodeRecord) -> bytes:
    return record.model_dump_json().encode("utf-8")


def decode_node_record(data: bytes, *, verify: bool = True) -> NodeRecord:
    """
    Parse and authenticate one record.

    With `verify`, the signature must check out against `ss58_address`, and
    `node_id` must be the id that address derives to; otherwise anyone could
    publish a record in another node's name.
    """
    try:
        record = NodeRecord.model_validate_json(data)
    except (ValidationError, ValueError) as e:
        raise MalformedRecordError(f"unparsable record: {e.__class__.__name__}") from e
    if not verify:
        return record
    if not record.signature:
        raise MalformedRecordError("record is unsigned")
    if not verify_payload(record.unsigned_payload(), ss58_address=record.ss58_address, signature_hex=record.signature):
        raise MalformedRecordError("bad signature")
    try:
        derived = node_id_for_ss58(record.ss58_address)
    except ValueError as e:
        raise MalformedRecordError(f"bad ss58 address: {e}") from e
    if derived != record.node_id:
        raise MalformedRecordError(f"node_id {record.node_id} does not match signer ({derived})")
    return record


@dataclass(frozen=True)
class ReadinessDecision:
    quorum_met: bool
    # Distinct valid anchors observed (the node itself included, if it is one).
    count: int
    threshold: int
    # Ordered by node_id; never contains the observing node.
    peers: Tuple[NodeRecord, ...] = ()
    # (path, reason) for every object that was ignored.
    skipped: Tuple[Tuple[str, str], ...] = ()
    # Threshold above the number of anchors the cluster was created with.
    unsatisfiable: bool = False

    @property
    def peer_ids(self) -> Tuple[str, ...]:
        return tuple(p.node_id for p in self.peers)


def _items(objects: RecordObjects) -> Iterable[Tuple[str, bytes]]:
    if isinstance(objects, Mapping):
        return objects.items()
    return objects


def compute_quorum_view(
    objects: RecordObjects,
    threshold: int,
    *,
    self_node_id: Optional[str] = None,
    network_id: Optional[int] = None,
    expected_anchor_nodes: Optional[int] = None,
    verify: bool = True,
) -> ReadinessDecision:
    """
    Pure readiness decision over the anchor records read from the store.

    `objects` maps (or yields) object path -> raw bytes. Records are collapsed
    per node_id keeping the newest `published_at`; corrupt, foreign-network,
    non-anchor, or misfiled records are skipped and reported in `skipped`.
    """
    newest = {}
    skipped = []
    for path, data in _items(objects):
        try:
            record = decode_node_record(data, verify=verify)
        except MalformedRecordError as e:
            skipped.append((path, str(e)))
            continue
        if path.rstrip("/").rsplit("/", 1)[-1] != record.node_id:
            skipped.append((path, f"filed under the wrong key for {record.node_id}"))
            continue
        if record.node_kind is not NodeKind.ANCHOR:
            skipped.append((path, f"{record.node_id} is not an anchor"))
            continue
        if network_id is not None and record.network_id != int(network_id):
            skipped.append((path, f"network_id {record.network_id} != {network_id}"))
            continue
        prev = newest.get(record.node_id)
        if prev is None or record.published_at > prev.published_at:
            newest[record.node_id] = record

    count = len(newest)
    threshold = max(0, int(threshold))
    peers = tuple(newest[nid] for nid in sorted(newest) if nid != self_node_id)
    unsatisfiable = expected_anchor_nodes is not None and threshold > int(expected_anchor_nodes)
    return ReadinessDecision(
        quorum_met=count >= threshold,
        count=count,
        threshold=threshold,
        peers=peers,
        skipped=tuple(skipped),
        unsatisfiable=unsatisfiable,
    )


@dataclass
class QuorumLatch:
    """Once a decision meets quorum, later (possibly stale) under-counts never undo it."""

    latched: Optional[ReadinessDecision] = field(default=None)

    @property
    def met(self) -> bool:
        return self.latched is not None

    def observe(self, decision: ReadinessDecision) -> ReadinessDecision:
        if self.latched is not None:
            return self.latched
        if decision.quorum_met:
            self.latched = decision
        return decision
