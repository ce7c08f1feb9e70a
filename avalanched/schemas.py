from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


class NodeKind(str, Enum):
    # Assigned at provisioning time through the NODE_KIND tag.
    ANCHOR = "anchor"
    NON_ANCHOR = "non-anchor"

    @classmethod
    def parse(cls, raw: str) -> "NodeKind":
        v = (raw or "").strip().lower().replace("_", "-")
        if v in {"non-anchor", "nonanchor"}:
            return cls.NON_ANCHOR
        return cls(v)


class NodeRecord(BaseModel):
    format: Literal["avalanched.node-record/v1"] = "avalanched.node-record/v1"

    # NodeID-<hex>, derived from the identity public key.
    node_id: str
    node_kind: NodeKind
    network_id: int
    # host:port that peers dial (staking port).
    network_address: str
    # Instance id of the machine that published the record.
    machine_id: str
    # Base URL of the node's HTTP API (health checks).
    http_endpoint: str
    # Signer identity; node_id must match what this key derives to.
    ss58_address: str
    # Unix seconds (float) at publish time; newest wins when deduplicating.
    published_at: float

    # Signature over every field except `signature`.
    signature: str = ""

    def unsigned_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(mode="json")
        payload.pop("signature", None)
        return payload


class BackupDescriptor(BaseModel):
    format: Literal["avalanched.backup/v1"] = "avalanched.backup/v1"
    source_node_id: str
    cluster_id: str
    created_at: str
    object_path: str
    size_bytes: int = Field(ge=0)
    sha256: str


class AgentEvent(BaseModel):
    kind: str
    node_id: Optional[str] = None
    machine_id: str
    cluster_id: str
    stage: Optional[str] = None
    timestamp: float
    detail: Dict[str, Any] = Field(default_factory=dict)
