import sys
from pathlib import Path
from typing import Callable, List, Optional

import pytest

# Ensure repo root is on sys.path so `import avalanched` works under all pytest import modes.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import bittensor as bt  # noqa: E402

from avalanched.keys.envelope import KeyHandle  # noqa: E402
from avalanched.keys.identity import derive_identifiers  # noqa: E402
from avalanched.keys.signing import public_key_bytes  # noqa: E402
from avalanched.schemas import NodeKind, NodeRecord  # noqa: E402
from avalanched.utils.retry import CancelToken, Clock  # noqa: E402

NETWORK_ID = 12345


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: starts real HTTP servers")


class FakeClock(Clock):
    """Time only moves when someone sleeps; `on_sleep` hooks let tests change the world meanwhile."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.mono = 0.0
        self.sleeps: List[float] = []
        self.on_sleep: List[Callable[[float], None]] = []

    def time(self) -> float:
        return self.now

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float) -> None:
        self.now += seconds
        self.mono += seconds

    def sleep(self, seconds: float, cancel: Optional[CancelToken] = None) -> bool:
        seconds = max(0.0, float(seconds))
        self.sleeps.append(seconds)
        self.advance(seconds)
        for hook in list(self.on_sleep):
            hook(seconds)
        return not (cancel is not None and cancel.cancelled)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


def _handle(index: int, network_id: int = NETWORK_ID) -> KeyHandle:
    seed = bytes([index % 256]) * 32
    kp = bt.Keypair.create_from_seed(seed.hex())
    ids = derive_identifiers(public_key_bytes(kp), network_id)
    return KeyHandle(kp, seed, ids, provisioned=True)


@pytest.fixture
def make_handle() -> Callable[..., KeyHandle]:
    return _handle


def _record(
    handle: KeyHandle,
    *,
    kind: NodeKind = NodeKind.ANCHOR,
    published_at: float = 1_700_000_000.0,
    network_id: int = NETWORK_ID,
    address: Optional[str] = None,
) -> NodeRecord:
    host = address or f"10.0.0.{int(handle.node_id[-2:], 16) % 250 + 1}:9651"
    record = NodeRecord(
        node_id=handle.node_id,
        node_kind=kind,
        network_id=network_id,
        network_address=host,
        machine_id=f"i-{handle.node_id[-8:]}",
        http_endpoint=f"http://{host.rsplit(':', 1)[0]}:9650",
        ss58_address=handle.ss58_address,
        published_at=published_at,
    )
    return record.model_copy(update={"signature": handle.sign(record.unsigned_payload())})


@pytest.fixture
def make_record() -> Callable[..., NodeRecord]:
    return _record
