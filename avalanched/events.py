from __future__ import annotations

import time
from typing import Any, Optional

import bittensor as bt

from avalanched.errors import AgentError
from avalanched.schemas import AgentEvent
from avalanched.storage.namespace import StorageNamespace
from avalanched.storage.store import ObjectStore
from avalanched.utils.retry import SYSTEM_CLOCK, Clock


class EventLog:
    """Write-only operational events under `{cluster}/events/`. Failures are logged, never raised."""

    def __init__(
        self,
        store: ObjectStore,
        namespace: StorageNamespace,
        *,
        machine_id: str,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self.store = store
        self.namespace = namespace
        self.machine_id = machine_id
        self.clock = clock
        self.node_id: Optional[str] = None

    def emit(self, kind: str, *, stage: Optional[str] = None, **detail: Any) -> Optional[str]:
        now = self.clock.time()
        event = AgentEvent(
            kind=kind,
            node_id=self.node_id,
            machine_id=self.machine_id,
            cluster_id=self.namespace.cluster_id,
            stage=stage,
            timestamp=now,
            detail=detail,
        )
        stamp = time.strftime("%Y%m%dT%H%M%S", time.gmtime(now)) + f"{int((now % 1) * 1000):03d}Z"
        path = self.namespace.event_path(self.node_id or self.machine_id, stamp, kind)
        try:
            self.store.put(path, event.model_dump_json().encode("utf-8"))
        except AgentError as e:
            bt.logging.warning(f"Could not record event {kind}: {e}")
            return None
        return path
