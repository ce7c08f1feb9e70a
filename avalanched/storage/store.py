from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Dict, List

from avalanched.errors import ObjectNotFound


class ObjectStore(ABC):
    """
    Eventually-consistent blob store keyed by path.

    `put` overwrites in place. `list` returns the paths under a prefix in
    lexical order, but may lag a recent `put`; callers re-list rather than
    trusting one snapshot. There is no compare-and-swap.

    Backends raise `StoreError` for transient failures and `ObjectNotFound`
    from `get` when the path is absent.
    """

    @abstractmethod
    def put(self, path: str, data: bytes) -> None: ...

    @abstractmethod
    def get(self, path: str) -> bytes: ...

    @abstractmethod
    def list(self, prefix: str) -> List[str]: ...

    def exists(self, path: str) -> bool:
        try:
            self.get(path)
        except ObjectNotFound:
            return False
        return True


class InMemoryObjectStore(ObjectStore):
    # Backs the dev store service and the test-suite.
    def __init__(self) -> None:
        self._objects: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, path: str, data: bytes) -> None:
        with self._lock:
            self._objects[path] = bytes(data)

    def get(self, path: str) -> bytes:
        with self._lock:
            try:
                return self._objects[path]
            except KeyError:
                raise ObjectNotFound(path) from None

    def list(self, prefix: str) -> List[str]:
        with self._lock:
            return sorted(p for p in self._objects if p.startswith(prefix))

    def exists(self, path: str) -> bool:
        with self._lock:
            return path in self._objects

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)
