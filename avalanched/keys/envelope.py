from __future__ import annotations

import base64
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import bittensor as bt
from pydantic import BaseModel, Field, ValidationError

from avalanched.errors import (
    FatalConfigurationError,
    IdentityMismatchError,
    KeyDecryptError,
    ObjectNotFound,
    ResourceUnavailableError,
    TransientError,
)
from avalanched.keys.identity import DerivedIdentifiers, verify_identifiers_stable
from avalanched.keys.kms import KeyEncryptionService
from avalanched.keys.signing import public_key_bytes, sign_payload
from avalanched.storage.namespace import StorageNamespace
from avalanched.storage.store import ObjectStore
from avalanched.utils.retry import SYSTEM_CLOCK, Backoff, CancelToken, Clock, retry_call

SEED_BYTES = 32


class EncryptedKeyEnvelope(BaseModel):
    """The only persisted form of a node's identity key."""

    format: Literal["avalanched.key-envelope/v1"] = "avalanched.key-envelope/v1"
    machine_id: str
    key_id: str
    # Public identity, so a reader can check the decrypted seed against it.
    ss58_address: str
    node_id: str
    encryption_context: Dict[str, str] = Field(default_factory=dict)
    ciphertext_b64: str
    created_at: float


class KeyHandle:
    """In-memory identity. The seed never leaves this object except via `write_seed_file`."""

    def __init__(self, keypair: bt.Keypair, seed: bytes, identifiers: DerivedIdentifiers, *, provisioned: bool):
        self._keypair = keypair
        self._seed = bytes(seed)
        self.identifiers = identifiers
        # True when this boot generated the key, False when it was loaded.
        self.provisioned = provisioned

    @property
    def node_id(self) -> str:
        return self.identifiers.node_id

    @property
    def ss58_address(self) -> str:
        return self._keypair.ss58_address

    @property
    def public_key(self) -> bytes:
        return public_key_bytes(self._keypair)

    def sign(self, payload: Dict[str, Any]) -> str:
        return sign_payload(payload, keypair=self._keypair)

    def write_seed_file(self, path: str) -> None:
        # Handed to the node binary only; 0600, replaced atomically.
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            os.write(fd, self._seed.hex().encode("ascii"))
            os.fsync(fd)
        finally:
            os.close(fd)
        os.replace(tmp, target)

    def __repr__(self) -> str:
        return f"KeyHandle(node_id={self.node_id!r}, ss58_address={self.ss58_address!r}, seed=<redacted>)"

    __str__ = __repr__


class EnvelopeKeyManager:
    def __init__(
        self,
        store: ObjectStore,
        namespace: StorageNamespace,
        kms: KeyEncryptionService,
        *,
        key_id: str,
        network_id: int,
        attempts: int = 5,
        backoff: Backoff = Backoff(initial_s=1.0, max_s=30.0),
        clock: Clock = SYSTEM_CLOCK,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.store = store
        self.namespace = namespace
        self.kms = kms
        self.key_id = key_id
        self.network_id = int(network_id)
        self.attempts = attempts
        self.backoff = backoff
        self.clock = clock
        self.cancel = cancel

    def _retry(self, fn, describe: str):
        try:
            return retry_call(
                fn,
                attempts=self.attempts,
                backoff=self.backoff,
                clock=self.clock,
                cancel=self.cancel,
                retry_on=(TransientError,),
                describe=describe,
            )
        except TransientError as e:
            raise ResourceUnavailableError(f"{describe}: retries exhausted: {e}") from e

    def _context(self, machine_id: str) -> Dict[str, str]:
        return {"cluster_id": self.namespace.cluster_id, "machine_id": machine_id}

    def provision_or_load(self, machine_id: str) -> KeyHandle:
        path = self.namespace.pki_key(machine_id)

        def _fetch() -> Optional[bytes]:
            try:
                return self.store.get(path)
            except ObjectNotFound:
                return None

        raw = self._retry(_fetch, f"fetch key envelope {path}")
        if raw is not None:
            handle = self._load(raw, machine_id)
            bt.logging.info(f"Loaded identity {handle.node_id} from {path}")
            return handle
        handle = self._provision(machine_id, path)
        bt.logging.success(f"Provisioned new identity {handle.node_id} at {path}")
        return handle

    def _load(self, raw: bytes, machine_id: str) -> KeyHandle:
        try:
            env = EncryptedKeyEnvelope.model_validate_json(raw)
            ciphertext = base64.b64decode(env.ciphertext_b64, validate=True)
        except (ValidationError, ValueError) as e:
            raise KeyDecryptError(f"key envelope for {machine_id} is malformed: {e}") from e
        if env.key_id != self.key_id:
            raise KeyDecryptError(f"key envelope was sealed under {env.key_id!r}, expected {self.key_id!r}")

        seed = self._retry(
            lambda: self.kms.decrypt(ciphertext, self.key_id, env.encryption_context),
            "decrypt identity key",
        )
        if len(seed) != SEED_BYTES:
            raise KeyDecryptError(f"decrypted key has {len(seed)} bytes, expected {SEED_BYTES}")

        keypair = bt.Keypair.create_from_seed(seed.hex())
        if keypair.ss58_address != env.ss58_address:
            raise IdentityMismatchError(
                f"decrypted key derives {keypair.ss58_address}, envelope says {env.ss58_address}"
            )
        ids = verify_identifiers_stable(public_key_bytes(keypair), self.network_id)
        if ids.node_id != env.node_id:
            raise IdentityMismatchError(f"decrypted key derives {ids.node_id}, envelope says {env.node_id}")
        return KeyHandle(keypair, seed, ids, provisioned=False)

    def _provision(self, machine_id: str, path: str) -> KeyHandle:
        usable = self._retry(lambda: self.kms.describe(self.key_id), f"describe key {self.key_id}")
        if not usable:
            raise FatalConfigurationError(f"key-encryption key {self.key_id!r} is missing or disabled")

        seed = os.urandom(SEED_BYTES)
        keypair = bt.Keypair.create_from_seed(seed.hex())
        ids = verify_identifiers_stable(public_key_bytes(keypair), self.network_id)
        context = self._context(machine_id)

        ciphertext = self._retry(
            lambda: self.kms.encrypt(seed, self.key_id, context),
            "encrypt identity key",
        )
        env = EncryptedKeyEnvelope(
            machine_id=machine_id,
            key_id=self.key_id,
            ss58_address=keypair.ss58_address,
            node_id=ids.node_id,
            encryption_context=context,
            ciphertext_b64=base64.b64encode(ciphertext).decode("ascii"),
            created_at=self.clock.time(),
        )
        body = env.model_dump_json().encode("utf-8")
        self._retry(lambda: self.store.put(path, body), f"store key envelope {path}")
        return KeyHandle(keypair, seed, ids, provisioned=True)

