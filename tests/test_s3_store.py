import io
from typing import Dict

import pytest
from botocore.exceptions import ClientError

from avalanched.errors import ObjectNotFound, StoreError
from avalanched.storage.s3 import S3ObjectStore


class FakeS3:
    """Just enough of the boto3 S3 client; paginates list_objects_v2 two keys at a time."""

    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.fail_puts = 0

    def put_object(self, *, Bucket: str, Key: str, Body: bytes):
        if self.fail_puts:
            self.fail_puts -= 1
            raise ClientError({"Error": {"Code": "SlowDown", "Message": "slow down"}}, "PutObject")
        self.objects[Key] = Body
        return {}

    def get_object(self, *, Bucket: str, Key: str):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}

    def list_objects_v2(self, *, Bucket: str, Prefix: str, ContinuationToken: str = "0"):
        keys = sorted(k for k in self.objects if k.startswith(Prefix))
        start = int(ContinuationToken)
        page = keys[start : start + 2]
        resp = {"Contents": [{"Key": k} for k in page], "IsTruncated": start + 2 < len(keys)}
        if resp["IsTruncated"]:
            resp["NextContinuationToken"] = str(start + 2)
        return resp


def test_s3_store_roundtrip_with_prefix():
    fake = FakeS3()
    store = S3ObjectStore("bucket", prefix="/fleet/", client=fake)
    for name in ["a", "b", "c", "d", "e"]:
        store.put(f"dev/discover/ready-anchor-nodes/{name}", name.encode())

    assert "fleet/dev/discover/ready-anchor-nodes/a" in fake.objects
    listed = store.list("dev/discover/")
    assert listed == [f"dev/discover/ready-anchor-nodes/{n}" for n in "abcde"]
    assert store.get("dev/discover/ready-anchor-nodes/c") == b"c"


def test_s3_store_maps_missing_keys_and_errors():
    fake = FakeS3()
    store = S3ObjectStore("bucket", client=fake)
    with pytest.raises(ObjectNotFound):
        store.get("nope")
    fake.fail_puts = 1
    with pytest.raises(StoreError):
        store.put("k", b"v")
    store.put("k", b"v")
    assert store.exists("k")
