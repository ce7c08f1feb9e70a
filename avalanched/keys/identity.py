"""
Network-specific identifiers derived from a node's identity public key.

    short_id = blake2b-160(sha256(public_key))
    node_id  = "NodeID-" + hex(short_id)
    X/P      = "<chain>-" + bech32(hrp(network_id), short_id)

Derivation is pure; `verify_identifiers_stable` runs it twice and refuses to
continue when the two results differ.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

import bittensor as bt
from bech32 import bech32_encode, convertbits

from avalanched.errors import IdentityMismatchError
from avalanched.keys.signing import public_key_bytes

NODE_ID_PREFIX = "NodeID-"

NETWORK_HRPS = {
    1: "avax",
    5: "fuji",
    12345: "local",
}
CUSTOM_HRP = "custom"


def hrp_for_network(network_id: int) -> str:
    return NETWORK_HRPS.get(int(network_id), CUSTOM_HRP)


def short_id(public_key: bytes) -> bytes:
    digest = hashlib.sha256(public_key).digest()
    return hashlib.blake2b(digest, digest_size=20).digest()


def node_id_for_public_key(public_key: bytes) -> str:
    return NODE_ID_PREFIX + short_id(public_key).hex()


def node_id_for_ss58(ss58_address: str) -> str:
    kp = bt.Keypair(ss58_address=ss58_address)
    return node_id_for_public_key(public_key_bytes(kp))


def chain_address(chain: str, hrp: str, sid: bytes) -> str:
    data = convertbits(sid, 8, 5, True)
    if data is None:
        raise ValueError("cannot convert short id to 5-bit groups")
    return f"{chain}-{bech32_encode(hrp, data)}"


@dataclass(frozen=True)
class DerivedIdentifiers:
    node_id: str
    short_id_hex: str
    x_address: str
    p_address: str
    network_id: int
    hrp: str


def derive_identifiers(public_key: bytes, network_id: int) -> DerivedIdentifiers:
    sid = short_id(public_key)
    hrp = hrp_for_network(network_id)
    return DerivedIdentifiers(
        node_id=NODE_ID_PREFIX + sid.hex(),
        short_id_hex=sid.hex(),
        x_address=chain_address("X", hrp, sid),
        p_address=chain_address("P", hrp, sid),
        network_id=int(network_id),
        hrp=hrp,
    )


def verify_identifiers_stable(public_key: bytes, network_id: int) -> DerivedIdentifiers:
    first = derive_identifiers(public_key, network_id)
    second = derive_identifiers(bytes(public_key), network_id)
    if first != second:
        raise IdentityMismatchError(
            f"derived identifiers differ between runs: {first.node_id}/{first.x_address} vs "
            f"{second.node_id}/{second.x_address}"
        )
    return first
