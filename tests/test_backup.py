import hashlib
import io
import json
import tarfile

import pytest

from avalanched.backup import BackupManager, RestoreSource, backup_timestamp, pack_directory
from avalanched.errors import RestoreError, StoreError
from avalanched.events import EventLog
from avalanched.schemas import BackupDescriptor
from avalanched.storage.namespace import StorageNamespace
from avalanched.storage.s3 import S3ObjectStore
from avalanched.storage.store import InMemoryObjectStore

NS = StorageNamespace("dev")


def _seed_db(path):
    (path / "v1.4.5").mkdir(parents=True)
    (path / "v1.4.5" / "000001.log").write_bytes(b"chain-state")
    (path / "MANIFEST").write_text("m")


def _manager(store, db_dir, fake_clock, source=None, events=None):
    return BackupManager(store, NS, db_dir=str(db_dir), source=source, events=events, clock=fake_clock)


def test_snapshot_then_restore_on_fresh_node(tmp_path, fake_clock):
    store = InMemoryObjectStore()
    src_db = tmp_path / "a" / "db"
    _seed_db(src_db)
    events = EventLog(store, NS, machine_id="i-a", clock=fake_clock)

    desc = _manager(store, src_db, fake_clock, events=events).snapshot("NodeID-a")
    stamp = backup_timestamp(fake_clock.time())
    assert desc.object_path == f"dev/backups/NodeID-a/{stamp}/archive.tar.gz"
    assert store.exists(f"dev/backups/NodeID-a/{stamp}/descriptor.json")
    assert any(p.endswith("-snapshot-uploaded.json") for p in store.list("dev/events/"))

    new_db = tmp_path / "b" / "db"
    source = RestoreSource.parse("dev/backups/NodeID-a", store)
    restored = _manager(store, new_db, fake_clock, source=source).restore_if_configured()

    assert restored == desc
    assert (new_db / "v1.4.5" / "000001.log").read_bytes() == b"chain-state"
    assert (new_db / "MANIFEST").read_text() == "m"
    assert [p.name for p in (tmp_path / "b").iterdir()] == ["db"]


def test_restore_picks_newest_backup(tmp_path, fake_clock):
    store = InMemoryObjectStore()
    db = tmp_path / "src"
    _seed_db(db)
    mgr = _manager(store, db, fake_clock)
    mgr.snapshot("NodeID-a")
    (db / "MANIFEST").write_text("newer")
    fake_clock.advance(3600)
    newest = mgr.snapshot("NodeID-a")

    found = mgr.latest_descriptor(RestoreSource(store, "dev/backups/"))
    assert found is not None
    assert found[1] == newest


def test_newest_backup_wins_across_node_ids(tmp_path, fake_clock):
    store = InMemoryObjectStore()
    db = tmp_path / "src"
    _seed_db(db)
    mgr = _manager(store, db, fake_clock)
    older = mgr.snapshot("NodeID-ffff")
    fake_clock.advance(86400)
    newer = mgr.snapshot("NodeID-0000")

    path, found = mgr.latest_descriptor(RestoreSource(store, "dev/backups/"))
    assert found == newer
    assert found != older
    assert path.startswith("dev/backups/NodeID-0000/")


def test_same_second_snapshots_do_not_overwrite(tmp_path, fake_clock):
    store = InMemoryObjectStore()
    db = tmp_path / "src"
    _seed_db(db)
    mgr = _manager(store, db, fake_clock)
    first = mgr.snapshot("NodeID-a")
    first_blob = store.get(first.object_path)
    (db / "MANIFEST").write_text("changed")
    fake_clock.advance(0.25)
    second = mgr.snapshot("NodeID-a")

    assert backup_timestamp(1_700_000_000.0) < backup_timestamp(1_700_000_000.25) < backup_timestamp(1_700_000_001.0)
    assert second.object_path != first.object_path
    assert store.get(first.object_path) == first_blob
    assert mgr.latest_descriptor(RestoreSource(store, "dev/backups/"))[1] == second


def test_restore_is_skipped_when_db_has_data(tmp_path, fake_clock):
    store = InMemoryObjectStore()
    db = tmp_path / "db"
    _seed_db(db)
    _manager(store, db, fake_clock).snapshot("NodeID-a")
    source = RestoreSource(store, "dev/backups/")
    assert _manager(store, db, fake_clock, source=source).restore_if_configured() is None


def test_restore_without_source_or_backups(tmp_path, fake_clock):
    store = InMemoryObjectStore()
    assert _manager(store, tmp_path / "db", fake_clock).restore_if_configured() is None
    source = RestoreSource(store, "dev/backups/")
    assert _manager(store, tmp_path / "db", fake_clock, source=source).restore_if_configured() is None
    assert not (tmp_path / "db").exists()


def _put_backup(store, data, *, size=None, sha=None):
    base = "dev/backups/NodeID-x/20240101T000000Z"
    desc = BackupDescriptor(
        source_node_id="NodeID-x",
        cluster_id="dev",
        created_at="20240101T000000Z",
        object_path=base + "/archive.tar.gz",
        size_bytes=len(data) if size is None else size,
        sha256=sha or hashlib.sha256(data).hexdigest(),
    )
    store.put(desc.object_path, data)
    store.put(base + "/descriptor.json", desc.model_dump_json().encode("utf-8"))


def test_checksum_mismatch_leaves_db_untouched(tmp_path, fake_clock):
    store = InMemoryObjectStore()
    src = tmp_path / "src"
    _seed_db(src)
    _put_backup(store, pack_directory(str(src)), sha="0" * 64)
    db = tmp_path / "node" / "db"
    db.mkdir(parents=True)

    with pytest.raises(RestoreError) as ei:
        _manager(store, db, fake_clock, source=RestoreSource(store, "dev/backups/")).restore_if_configured()
    assert ei.value.exit_code == 3
    assert list(db.iterdir()) == []
    assert [p.name for p in (tmp_path / "node").iterdir()] == ["db"]


def test_archive_escaping_the_data_dir_is_rejected(tmp_path, fake_clock):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        payload = b"pwned"
        info = tarfile.TarInfo("../outside")
        info.size = len(payload)
        tar.addfile(info, io.BytesIO(payload))
    store = InMemoryObjectStore()
    _put_backup(store, buf.getvalue())

    db = tmp_path / "node" / "db"
    with pytest.raises(RestoreError):
        _manager(store, db, fake_clock, source=RestoreSource(store, "dev/backups/")).restore_if_configured()
    assert not (tmp_path / "node" / "outside").exists()
    assert not db.exists()


def test_missing_archive_is_restore_error(tmp_path, fake_clock):
    store = InMemoryObjectStore()
    _put_backup(store, b"data")
    store._objects.pop("dev/backups/NodeID-x/20240101T000000Z/archive.tar.gz")
    with pytest.raises(RestoreError):
        _manager(store, tmp_path / "db", fake_clock, source=RestoreSource(store, "dev/backups/")).restore_if_configured()


def test_unreadable_descriptor_falls_back_to_older(tmp_path, fake_clock):
    store = InMemoryObjectStore()
    _put_backup(store, b"data")
    store.put("dev/backups/NodeID-x/20250101T000000Z/descriptor.json", b"{oops")
    mgr = _manager(store, tmp_path / "db", fake_clock)
    path, desc = mgr.latest_descriptor(RestoreSource(store, "dev/backups/"))
    assert path.startswith("dev/backups/NodeID-x/20240101T000000Z/")
    assert json.loads(desc.model_dump_json())["size_bytes"] == 4


class BrokenStore(InMemoryObjectStore):
    def put(self, path, data):
        raise StoreError("bucket unavailable")


def test_snapshot_failure_is_logged_not_raised(tmp_path, fake_clock):
    db = tmp_path / "db"
    _seed_db(db)
    store = BrokenStore()
    mgr = _manager(store, db, fake_clock, events=EventLog(store, NS, machine_id="i-1", clock=fake_clock))
    assert mgr.snapshot("NodeID-a") is None
    assert mgr.last_snapshot is None
    assert _manager(store, tmp_path / "empty", fake_clock).snapshot("NodeID-a") is None


def test_restore_source_parsing():
    store = InMemoryObjectStore()
    src = RestoreSource.parse("/dev/backups/NodeID-a/", store)
    assert src.store is store
    assert src.prefix == "dev/backups/NodeID-a/"

    s3 = RestoreSource.parse("s3://archive-bucket/clusters/dev", store, region="us-west-2")
    assert isinstance(s3.store, S3ObjectStore)
    assert s3.store.bucket == "archive-bucket"
    assert s3.prefix == "clusters/dev/"

    for bad in ("", "s3:///prefix"):
        with pytest.raises(ValueError):
            RestoreSource.parse(bad, store)


def test_event_log_writes_under_node_or_machine(fake_clock):
    store = InMemoryObjectStore()
    log = EventLog(store, NS, machine_id="i-1", clock=fake_clock)
    first = log.emit("key-provisioned", stage="identity")
    assert first.startswith("dev/events/i-1/")
    log.node_id = "NodeID-a"
    second = log.emit("ready", stage="ready", peers=3)
    assert second.startswith("dev/events/NodeID-a/") and second.endswith("-ready.json")
    body = json.loads(store.get(second))
    assert body["detail"] == {"peers": 3}
    assert body["machine_id"] == "i-1"

    assert EventLog(BrokenStore(), NS, machine_id="i-1", clock=fake_clock).emit("fatal") is None
