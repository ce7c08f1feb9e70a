from __future__ import annotations

from typing import List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from avalanched.errors import ObjectNotFound, StoreError
from avalanched.storage.store import ObjectStore

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def _s3_client(region: Optional[str], endpoint_url: Optional[str], timeout_s: float):
    cfg = BotoConfig(
        retries={"max_attempts": 3, "mode": "standard"},
        connect_timeout=timeout_s,
        read_timeout=timeout_s,
        user_agent_extra="avalanched/1 s3-store",
    )
    return boto3.client("s3", region_name=region, endpoint_url=endpoint_url, config=cfg)


class S3ObjectStore(ObjectStore):
    """
    `ObjectStore` over one S3 bucket, optionally under a key prefix.

    Paths handed to this store are relative to `prefix`; `list` strips the
    prefix back off so callers never see it.
    """

    def __init__(
        self,
        bucket: str,
        *,
        prefix: str = "",
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        timeout_s: float = 10.0,
        client=None,
    ) -> None:
        if not bucket:
            raise ValueError("bucket must be non-empty")
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._client = client if client is not None else _s3_client(region, endpoint_url, timeout_s)

    def _key(self, path: str) -> str:
        return f"{self.prefix}/{path}" if self.prefix else path

    def _rel(self, key: str) -> str:
        if self.prefix and key.startswith(self.prefix + "/"):
            return key[len(self.prefix) + 1 :]
        return key

    def put(self, path: str, data: bytes) -> None:
        try:
            self._client.put_object(Bucket=self.bucket, Key=self._key(path), Body=bytes(data))
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"s3 put {self.bucket}/{self._key(path)} failed: {e}") from e

    def get(self, path: str) -> bytes:
        key = self._key(path)
        try:
            resp = self._client.get_object(Bucket=self.bucket, Key=key)
            return resp["Body"].read()
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in _NOT_FOUND_CODES:
                raise ObjectNotFound(path) from e
            raise StoreError(f"s3 get {self.bucket}/{key} failed: {e}") from e
        except BotoCoreError as e:
            raise StoreError(f"s3 get {self.bucket}/{key} failed: {e}") from e

    def list(self, prefix: str) -> List[str]:
        out: List[str] = []
        kwargs = {"Bucket": self.bucket, "Prefix": self._key(prefix)}
        try:
            while True:
                resp = self._client.list_objects_v2(**kwargs)
                for obj in resp.get("Contents", []) or []:
                    out.append(self._rel(obj["Key"]))
                if not resp.get("IsTruncated"):
                    break
                kwargs["ContinuationToken"] = resp["NextContinuationToken"]
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"s3 list {self.bucket}/{self._key(prefix)} failed: {e}") from e
        return sorted(out)
