"""
Backup / restore of the node's database directory.

Layout in the cluster store:

    {cluster}/backups/{node_id}/{YYYYMMDDTHHMMSSffffffZ}/archive.tar.gz
    {cluster}/backups/{node_id}/{YYYYMMDDTHHMMSSffffffZ}/descriptor.json

The descriptor is written after the archive, so a visible descriptor always
has its archive. Restores unpack into a staging directory on the same
filesystem and rename it into place; on any failure the database directory
is left exactly as empty as it was.
"""

from __future__ import annotations

import hashlib
import io
import os
import shutil
import tarfile
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import bittensor as bt
from pydantic import ValidationError

from avalanched.errors import (
    AgentError,
    ObjectNotFound,
    ResourceUnavailableError,
    RestoreError,
    StoreError,
)
from avalanched.events import EventLog
from avalanched.schemas import BackupDescriptor
from avalanched.storage.namespace import StorageNamespace
from avalanched.storage.s3 import S3ObjectStore
from avalanched.storage.store import ObjectStore
from avalanched.utils.retry import SYSTEM_CLOCK, Backoff, CancelToken, Clock, retry_call

DESCRIPTOR_NAME = "descriptor.json"


def backup_timestamp(ts: float) -> str:
    # Lexical order of these stamps is chronological; microseconds keep same-second snapshots apart.
    return time.strftime("%Y%m%dT%H%M%S", time.gmtime(ts)) + f"{int((ts % 1) * 1_000_000):06d}Z"


def _stamp_of(descriptor_path: str) -> str:
    parts = descriptor_path.split("/")
    return parts[-2] if len(parts) >= 2 else ""


@dataclass(frozen=True)
class RestoreSource:
    store: ObjectStore
    prefix: str

    @classmethod
    def parse(cls, value: str, cluster_store: ObjectStore, *, region: Optional[str] = None) -> "RestoreSource":
        """`s3://bucket/prefix` names a separate bucket; anything else is a prefix in the cluster store."""
        v = value.strip()
        if v.startswith("s3://"):
            bucket, _, prefix = v[len("s3://") :].partition("/")
            if not bucket:
                raise ValueError(f"backup source {value!r} has no bucket")
            return cls(S3ObjectStore(bucket, region=region), prefix.strip("/") + "/" if prefix.strip("/") else "")
        prefix = v.strip("/")
        if not prefix:
            raise ValueError("backup source prefix must be non-empty")
        return cls(cluster_store, prefix + "/")


def _dir_is_empty(path: str) -> bool:
    if not os.path.exists(path):
        return True
    with os.scandir(path) as it:
        return next(it, None) is None


def _safe_members(tar: tarfile.TarFile):
    for member in tar.getmembers():
        name = member.name
        if os.path.isabs(name) or ".." in name.replace("\\", "/").split("/"):
            raise RestoreError(f"archive member escapes the data directory: {name}")
        if member.issym() or member.islnk():
            raise RestoreError(f"archive member is a link: {name}")
        if not (member.isfile() or member.isdir()):
            raise RestoreError(f"archive member has unsupported type: {name}")
        yield member


def pack_directory(path: str) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for entry in sorted(os.listdir(path)):
            tar.add(os.path.join(path, entry), arcname=entry)
    return buf.getvalue()


class BackupManager:
    def __init__(
        self,
        store: ObjectStore,
        namespace: StorageNamespace,
        *,
        db_dir: str,
        source: Optional[RestoreSource] = None,
        events: Optional[EventLog] = None,
        attempts: int = 5,
        backoff: Backoff = Backoff(initial_s=2.0, max_s=60.0),
        clock: Clock = SYSTEM_CLOCK,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.store = store
        self.namespace = namespace
        self.db_dir = os.path.abspath(db_dir)
        self.source = source
        self.events = events
        self.attempts = attempts
        self.backoff = backoff
        self.clock = clock
        self.cancel = cancel
        self.last_snapshot: Optional[BackupDescriptor] = None

    def _retry(self, fn, describe: str):
        try:
            return retry_call(
                fn,
                attempts=self.attempts,
                backoff=self.backoff,
                clock=self.clock,
                cancel=self.cancel,
                retry_on=(StoreError,),
                describe=describe,
            )
        except StoreError as e:
            raise ResourceUnavailableError(f"{describe}: {e}", stage="restore") from e

    def latest_descriptor(self, source: Optional[RestoreSource] = None) -> Optional[Tuple[str, BackupDescriptor]]:
        """Newest readable descriptor under the source prefix, with its path."""
        src = source or self.source
        if src is None:
            return None
        paths = self._retry(lambda: src.store.list(src.prefix), f"list backups under {src.prefix}")
        candidates = [p for p in paths if p.endswith("/" + DESCRIPTOR_NAME) or p == DESCRIPTOR_NAME]
        # Newest first across every node under the prefix, not per node_id.
        for path in sorted(candidates, key=lambda p: (_stamp_of(p), p), reverse=True):
            try:
                raw = self._retry(lambda: src.store.get(path), f"fetch {path}")
            except ObjectNotFound:
                continue
            try:
                return path, BackupDescriptor.model_validate_json(raw)
            except (ValidationError, ValueError) as e:
                bt.logging.warning(f"Skipping unreadable backup descriptor {path}: {e.__class__.__name__}")
        return None

    def restore_if_configured(self) -> Optional[BackupDescriptor]:
        if self.source is None:
            bt.logging.debug("No backup source configured; skipping restore")
            return None
        if not _dir_is_empty(self.db_dir):
            bt.logging.info(f"{self.db_dir} already has data; skipping restore")
            return None

        found = self.latest_descriptor()
        if found is None:
            bt.logging.warning(f"No backups found under {self.source.prefix}; starting with an empty database")
            return None
        desc_path, desc = found
        archive_path = desc_path.rsplit("/", 1)[0] + "/" + os.path.basename(desc.object_path)
        bt.logging.info(f"Restoring {desc.source_node_id} backup from {desc.created_at} ({desc.size_bytes} bytes)")

        try:
            data = self._retry(lambda: self.source.store.get(archive_path), f"download {archive_path}")
        except ObjectNotFound as e:
            raise RestoreError(f"descriptor {desc_path} has no archive at {archive_path}") from e
        if len(data) != desc.size_bytes:
            raise RestoreError(f"archive {archive_path} is {len(data)} bytes, descriptor says {desc.size_bytes}")
        if hashlib.sha256(data).hexdigest() != desc.sha256:
            raise RestoreError(f"archive {archive_path} failed its sha256 check")

        self._unpack_atomically(data)
        bt.logging.success(f"Restored backup into {self.db_dir}")
        if self.events is not None:
            self.events.emit("backup-restored", stage="restore", source=archive_path, created_at=desc.created_at)
        return desc

    def _unpack_atomically(self, data: bytes) -> None:
        parent = os.path.dirname(self.db_dir)
        os.makedirs(parent, exist_ok=True)
        staging = os.path.join(parent, f".{os.path.basename(self.db_dir)}.restore-{os.getpid()}")
        shutil.rmtree(staging, ignore_errors=True)
        try:
            os.makedirs(staging)
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
                tar.extractall(staging, members=list(_safe_members(tar)), filter="data")
            # rename(2) replaces an empty directory atomically.
            os.rename(staging, self.db_dir)
        except RestoreError:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        except (OSError, tarfile.TarError, EOFError) as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise RestoreError(f"could not unpack backup: {e}") from e

    def snapshot(self, node_id: str) -> Optional[BackupDescriptor]:
        """Best-effort: failures are logged and the next scheduled run tries again."""
        if _dir_is_empty(self.db_dir):
            bt.logging.debug(f"{self.db_dir} is empty; nothing to snapshot")
            return None
        stamp = backup_timestamp(self.clock.time())
        archive_path = self.namespace.backup_archive(node_id, stamp)
        try:
            data = pack_directory(self.db_dir)
        except (OSError, tarfile.TarError) as e:
            bt.logging.error(f"Snapshot of {self.db_dir} failed: {e}")
            return None
        desc = BackupDescriptor(
            source_node_id=node_id,
            cluster_id=self.namespace.cluster_id,
            created_at=stamp,
            object_path=archive_path,
            size_bytes=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
        )
        try:
            self.store.put(archive_path, data)
            self.store.put(self.namespace.backup_descriptor(node_id, stamp), desc.model_dump_json().encode("utf-8"))
        except AgentError as e:
            bt.logging.error(f"Snapshot upload to {archive_path} failed: {e}; will retry next run")
            return None
        self.last_snapshot = desc
        bt.logging.success(f"Uploaded snapshot {archive_path} ({len(data)} bytes)")
        if self.events is not None:
            self.events.emit("snapshot-uploaded", stage="snapshot", path=archive_path, size_bytes=len(data))
        return desc
