# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Shared crypto utilities for the agentnet protocol.

Provides:
- SHA-256 digests over canonical JSON (task proof hashes, permit hashes)
- EIP-712 typed data for the EIP-2612 Permit schema
- Permit signing and signer recovery (secp256k1 via eth-account)
- API key generation and constant-time verification

Dependencies: hashlib, hmac, json, secrets, eth-account
"""

import hashlib
import hmac as hmac_mod
import json
import secrets
from dataclasses import dataclass

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import to_checksum_address

from protocol import PermitToken


# ---------------------------------------------------------------------------
# SHA-256 + canonical JSON
# ---------------------------------------------------------------------------

def sha256_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def canonical_json(obj: dict) -> bytes:
    """Canonical JSON: sorted keys, no extra whitespace, UTF-8.

    Decimals and other non-JSON scalars are rendered with str().
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def proof_hash(task_id, result: dict, timestamp_ms: int) -> str:
    """Integrity receipt binding a task result to its task and execution time."""
    payload = {"task_id": task_id, "result": result, "timestamp": timestamp_ms}
    return "0x" + sha256_hash(canonical_json(payload))


def permit_hash(owner: str, spender: str, value: int, nonce: int, deadline: int,
                v: int, r: str, s: str, chain_id: int) -> str:
    """Deterministic digest of a verified permit, used as the settlement tx_ref."""
    payload = {
        "owner": owner,
        "spender": spender,
        "value": str(value),
        "nonce": str(nonce),
        "deadline": str(deadline),
        "v": v,
        "r": r,
        "s": s,
        "chain": chain_id,
    }
    return "0x" + sha256_hash(canonical_json(payload))


# ---------------------------------------------------------------------------
# Signature encoding
# ---------------------------------------------------------------------------

# secp256k1 group order
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


def join_signature(v: int, r: str, s: str) -> str:
    """Pack (v, r, s) into the lowercase 65-byte hex form 0x{r}{s}{v}."""
    return f"0x{int(r, 16):064x}{int(s, 16):064x}{int(v):02x}"


def canonical_signature(signature: str) -> str:
    """Lowercase 0x-prefixed 65-byte form of *signature*. Raises ValueError if malformed.

    Replay protection keys on this form, so hex case and a missing 0x
    never make one signature look like two.
    """
    sig = str(signature).strip().lower()
    sig = sig[2:] if sig.startswith("0x") else sig
    if len(sig) != 130 or len(bytes.fromhex(sig)) != 65:
        raise ValueError(f"Expected 65-byte signature, got {len(sig) // 2} bytes")
    return "0x" + sig


def split_signature(signature: str) -> tuple[int, str, str]:
    """Unpack a 65-byte hex signature into (v, r, s)."""
    sig = canonical_signature(signature)[2:]
    return int(sig[128:130], 16), "0x" + sig[0:64], "0x" + sig[64:128]


def is_canonical_vrs(v: int, r: str, s: str) -> bool:
    """True for v in {27, 28}, 0 < r < n and 0 < s <= n/2.

    Any ECDSA signature (v, r, s) has a twin (v ^ 1, r, n - s) recovering
    the same signer; only the low-s half is accepted.
    """
    try:
        r_int, s_int = int(r, 16), int(s, 16)
    except (TypeError, ValueError):
        return False
    return int(v) in (27, 28) and 0 < r_int < SECP256K1_N and 0 < s_int <= SECP256K1_N // 2


# ---------------------------------------------------------------------------
# EIP-712 Permit
# ---------------------------------------------------------------------------

PERMIT_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "Permit": [
        {"name": "owner", "type": "address"},
        {"name": "spender", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ],
}


@dataclass(frozen=True)
class Permit:
    """A signed EIP-2612 permit as it travels between client and server."""
    owner: str
    spender: str
    value: int  # token base units
    nonce: int  # the nonce the signer saw; the verifier re-reads it
    deadline: int  # unix seconds
    v: int
    r: str
    s: str

    @property
    def signature(self) -> str:
        """Canonical 65-byte signature; the replay key."""
        return join_signature(self.v, self.r, self.s)

    def to_dict(self) -> dict:
        return {
            "owner": self.owner,
            "spender": self.spender,
            "value": str(self.value),
            "nonce": self.nonce,
            "deadline": self.deadline,
            "v": self.v,
            "r": self.r,
            "s": self.s,
        }


def permit_typed_data(token: PermitToken, owner: str, spender: str,
                      value: int, nonce: int, deadline: int) -> dict:
    """Full EIP-712 message for a Permit on *token*.

    Raises ValueError if an address is malformed.
    """
    return {
        "types": PERMIT_TYPES,
        "primaryType": "Permit",
        "domain": {
            "name": token.name,
            "version": token.version,
            "chainId": token.chain_id,
            "verifyingContract": to_checksum_address(token.address),
        },
        "message": {
            "owner": to_checksum_address(owner),
            "spender": to_checksum_address(spender),
            "value": int(value),
            "nonce": int(nonce),
            "deadline": int(deadline),
        },
    }


def sign_permit(private_key: str, typed_data: dict) -> tuple[int, str, str]:
    """Sign a Permit typed-data message. Returns (v, r, s) with 32-byte hex r/s."""
    signable = encode_typed_data(full_message=typed_data)
    signed = Account.sign_message(signable, private_key=private_key)
    return signed.v, "0x" + format(signed.r, "064x"), "0x" + format(signed.s, "064x")


def recover_permit_signer(typed_data: dict, v: int, r: str, s: str) -> str | None:
    """Recover the address that signed *typed_data*. None if the signature is unusable."""
    try:
        signable = encode_typed_data(full_message=typed_data)
        return Account.recover_message(signable, vrs=(int(v), int(r, 16), int(s, 16)))
    except Exception:
        # Malformed r/s/v or an off-curve point: treat as not signed by anyone
        return None


def address_of(private_key: str) -> str:
    """Checksummed address for a hex private key."""
    return Account.from_key(private_key).address


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------

API_KEY_PREFIX = "a2a_"


def generate_api_key() -> str:
    """New random API key. Only its hash is stored."""
    return API_KEY_PREFIX + secrets.token_hex(24)


def hash_api_key(api_key: str) -> str:
    return sha256_hash(api_key.encode("utf-8"))


def verify_api_key(api_key: str, stored_hash: str) -> bool:
    """Constant-time comparison of an API key against its stored hash."""
    if not api_key or not stored_hash:
        return False
    return hmac_mod.compare_digest(hash_api_key(api_key), stored_hash)
