from __future__ import annotations

import hashlib
import json
import os
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from avalanched.errors import KeyDecryptError, KeyEncryptError, KeyServiceUnavailable

EncryptionContext = Mapping[str, str]


class KeyEncryptionService(ABC):
    """
    Opaque envelope capability: the agent never sees the key-encryption key.

    `encrypt` failures are `KeyEncryptError` or `KeyServiceUnavailable` (both
    retryable). `decrypt` raises `KeyDecryptError` for ciphertext that is
    malformed, tampered with, or bound to another key id / context.
    """

    @abstractmethod
    def encrypt(self, plaintext: bytes, key_id: str, context: Optional[EncryptionContext] = None) -> bytes: ...

    @abstractmethod
    def decrypt(self, ciphertext: bytes, key_id: str, context: Optional[EncryptionContext] = None) -> bytes: ...

    @abstractmethod
    def describe(
        self,
        key_id: str,
        ciphertext: Optional[bytes] = None,
        context: Optional[EncryptionContext] = None,
    ) -> bool:
        """True when `key_id` is usable (and, if given, `ciphertext` was sealed under it)."""


# AWS KMS.

_THROTTLE_CODES = {
    "ThrottlingException",
    "KMSInternalException",
    "DependencyTimeoutException",
    "KeyUnavailableException",
    "RequestLimitExceeded",
}
_BAD_CIPHERTEXT_CODES = {"InvalidCiphertextException", "IncorrectKeyException"}


def _error_code(e: ClientError) -> str:
    return str(e.response.get("Error", {}).get("Code", ""))


class KmsKeyService(KeyEncryptionService):
    def __init__(self, *, region: Optional[str] = None, timeout_s: float = 10.0, client=None) -> None:
        if client is None:
            cfg = BotoConfig(
                retries={"max_attempts": 3, "mode": "standard"},
                connect_timeout=timeout_s,
                read_timeout=timeout_s,
            )
            client = boto3.client("kms", region_name=region, config=cfg)
        self._client = client

    def encrypt(self, plaintext: bytes, key_id: str, context: Optional[EncryptionContext] = None) -> bytes:
        try:
            resp = self._client.encrypt(
                KeyId=key_id,
                Plaintext=bytes(plaintext),
                EncryptionContext=dict(context or {}),
            )
        except ClientError as e:
            if _error_code(e) in _THROTTLE_CODES:
                raise KeyServiceUnavailable(f"kms encrypt throttled: {_error_code(e)}") from e
            raise KeyEncryptError(f"kms encrypt failed: {_error_code(e) or e}") from e
        except BotoCoreError as e:
            raise KeyServiceUnavailable(f"kms encrypt failed: {e}") from e
        return resp["CiphertextBlob"]

    def decrypt(self, ciphertext: bytes, key_id: str, context: Optional[EncryptionContext] = None) -> bytes:
        try:
            resp = self._client.decrypt(
                CiphertextBlob=bytes(ciphertext),
                KeyId=key_id,
                EncryptionContext=dict(context or {}),
            )
        except ClientError as e:
            code = _error_code(e)
            if code in _THROTTLE_CODES:
                raise KeyServiceUnavailable(f"kms decrypt throttled: {code}") from e
            raise KeyDecryptError(f"kms decrypt failed: {code or e}") from e
        except BotoCoreError as e:
            raise KeyServiceUnavailable(f"kms decrypt failed: {e}") from e
        return resp["Plaintext"]

    def describe(
        self,
        key_id: str,
        ciphertext: Optional[bytes] = None,
        context: Optional[EncryptionContext] = None,
    ) -> bool:
        try:
            meta = self._client.describe_key(KeyId=key_id)["KeyMetadata"]
        except ClientError as e:
            if _error_code(e) in _THROTTLE_CODES:
                raise KeyServiceUnavailable(f"kms describe throttled: {_error_code(e)}") from e
            return False
        except BotoCoreError as e:
            raise KeyServiceUnavailable(f"kms describe failed: {e}") from e
        if not meta.get("Enabled", False):
            return False
        if ciphertext is None:
            return True
        try:
            self.decrypt(ciphertext, key_id, context)
        except KeyDecryptError:
            return False
        return True


# Local AES-GCM service for dev clusters and tests.

_MAGIC = b"AVK1"
_FINGERPRINT_LEN = 8
_NONCE_LEN = 12


def _fingerprint(key_id: str) -> bytes:
    return hashlib.sha256(key_id.encode("utf-8")).digest()[:_FINGERPRINT_LEN]


def _aad(key_id: str, context: Optional[EncryptionContext]) -> bytes:
    ctx = json.dumps(dict(context or {}), sort_keys=True, separators=(",", ":"))
    return key_id.encode("utf-8") + b"\x00" + ctx.encode("utf-8")


class LocalKeyService(KeyEncryptionService):
    """
    Blob layout: MAGIC | sha256(key_id)[:8] | nonce(12) | AES-GCM ciphertext.

    The key id and the encryption context are bound as associated data, so a
    blob only opens under the key id and context it was sealed with.
    """

    def __init__(self, keys: Mapping[str, bytes]) -> None:
        self._keys: Dict[str, bytes] = {}
        for key_id, key in keys.items():
            if len(key) not in (16, 24, 32):
                raise ValueError(f"key for {key_id!r} must be 16, 24 or 32 bytes")
            self._keys[key_id] = bytes(key)

    @classmethod
    def from_secret(cls, secret: str, key_ids) -> "LocalKeyService":
        # Deterministic per-key-id keys so every agent in a dev cluster agrees.
        return cls({k: hashlib.sha256(f"{secret}:{k}".encode("utf-8")).digest() for k in key_ids})

    def encrypt(self, plaintext: bytes, key_id: str, context: Optional[EncryptionContext] = None) -> bytes:
        key = self._keys.get(key_id)
        if key is None:
            raise KeyEncryptError(f"unknown key id {key_id!r}")
        nonce = os.urandom(_NONCE_LEN)
        ct = AESGCM(key).encrypt(nonce, bytes(plaintext), _aad(key_id, context))
        return _MAGIC + _fingerprint(key_id) + nonce + ct

    def decrypt(self, ciphertext: bytes, key_id: str, context: Optional[EncryptionContext] = None) -> bytes:
        blob = bytes(ciphertext)
        header = len(_MAGIC) + _FINGERPRINT_LEN + _NONCE_LEN
        if len(blob) <= header or not blob.startswith(_MAGIC):
            raise KeyDecryptError("ciphertext is malformed")
        fp = blob[len(_MAGIC) : len(_MAGIC) + _FINGERPRINT_LEN]
        if fp != _fingerprint(key_id):
            raise KeyDecryptError(f"ciphertext was not sealed under key id {key_id!r}")
        key = self._keys.get(key_id)
        if key is None:
            raise KeyDecryptError(f"unknown key id {key_id!r}")
        nonce = blob[len(_MAGIC) + _FINGERPRINT_LEN : header]
        try:
            return AESGCM(key).decrypt(nonce, blob[header:], _aad(key_id, context))
        except InvalidTag as e:
            raise KeyDecryptError("ciphertext failed authentication") from e

    def describe(
        self,
        key_id: str,
        ciphertext: Optional[bytes] = None,
        context: Optional[EncryptionContext] = None,
    ) -> bool:
        if key_id not in self._keys:
            return False
        if ciphertext is None:
            return True
        try:
            self.decrypt(ciphertext, key_id, context)
        except KeyDecryptError:
            return False
        return True
