from __future__ import annotations

from typing import List
from urllib.parse import quote

import requests

from avalanched.errors import ObjectNotFound, StoreError
from avalanched.storage.store import ObjectStore


class HttpObjectStore(ObjectStore):
    """Client for the dev store service in `avalanched.storage.server`."""

    def __init__(self, base_url: str, *, timeout_s: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    def _url(self, path: str) -> str:
        return f"{self.base_url}/objects/{quote(path, safe='/')}"

    def put(self, path: str, data: bytes) -> None:
        try:
            r = requests.put(
                self._url(path),
                data=bytes(data),
                headers={"Content-Type": "application/octet-stream"},
                timeout=self.timeout_s,
            )
            r.raise_for_status()
        except requests.RequestException as e:
            raise StoreError(f"put {path} failed: {e}") from e

    def get(self, path: str) -> bytes:
        try:
            r = requests.get(self._url(path), timeout=self.timeout_s)
        except requests.RequestException as e:
            raise StoreError(f"get {path} failed: {e}") from e
        if r.status_code == 404:
            raise ObjectNotFound(path)
        try:
            r.raise_for_status()
        except requests.RequestException as e:
            raise StoreError(f"get {path} failed: {e}") from e
        return r.content

    def list(self, prefix: str) -> List[str]:
        try:
            r = requests.get(f"{self.base_url}/objects", params={"prefix": prefix}, timeout=self.timeout_s)
            r.raise_for_status()
            data = r.json()
        except (requests.RequestException, ValueError) as e:
            raise StoreError(f"list {prefix} failed: {e}") from e
        paths = data.get("paths", []) if isinstance(data, dict) else []
        return sorted(str(p) for p in paths)
