# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Permit verification for agentnet.

Checks a gasless EIP-2612 permit before it is accepted as payment. The
checks run strictly in order and the first failure wins:

1. required fields present, low-s v/s           missing_parameters / invalid_signature
2. agent known, wallet on file == owner         agent_not_found / owner_mismatch
3. signature not already spent                  duplicate_permit
4. signature recovers to owner at live nonce    invalid_signature
5. live token balance >= value                  insufficient_balance
6. deadline >= now                              permit_expired
7. consume the signature (atomic insert)        duplicate_permit

The nonce is re-read from chain at step 4 rather than taken from the
client, so a permit signed before the owner's nonce moved stops verifying.
A chain read that fails at step 4 or 5 rejects with chain_unavailable:
verification fails closed.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

import abi
from chain import ChainClient, RpcError, read_permit_nonce, read_token_balance
from crypto import Permit, is_canonical_vrs, permit_hash, permit_typed_data, recover_permit_signer
from protocol import CHAIN_NAME, PERMIT_REJECTION_STATUS, USDC, PermitReason, PermitToken

log = logging.getLogger(__name__)

REQUIRED_FIELDS = ("owner", "spender", "value", "deadline", "v", "r", "s")


class PermitRejected(Exception):
    """Verification failed. `reason` names the first failing check."""

    def __init__(self, reason: PermitReason, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message

    @property
    def status_code(self) -> int:
        return PERMIT_REJECTION_STATUS[self.reason]

    def to_dict(self) -> dict:
        return {"valid": False, "reason": self.reason.value, "error": self.message}


@dataclass(frozen=True)
class VerificationResult:
    permit: Permit  # nonce is the live on-chain nonce the signature verified against
    balance: int
    permit_hash: str
    token: PermitToken

    def to_dict(self) -> dict:
        symbol = self.token.symbol.lower()
        return {
            "valid": True,
            "signature_verified": True,
            "owner": self.permit.owner,
            "spender": self.permit.spender,
            f"amount_{symbol}": abi.format_units(self.permit.value, self.token.decimals),
            f"balance_{symbol}": abi.format_units(self.balance, self.token.decimals),
            "value": str(self.permit.value),
            "nonce": self.permit.nonce,
            "deadline": self.permit.deadline,
            "deadline_utc": abi.iso_utc(self.permit.deadline),
            "permit_hash": self.permit_hash,
            "chain": CHAIN_NAME,
            "token": self.token.symbol,
            "gasless": True,
        }


def _as_int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_permit(fields: dict) -> Permit:
    """Build a Permit from request fields. Raises PermitRejected(missing_parameters).

    A client-supplied nonce is kept for logging only; the verifier re-reads
    the live nonce from chain.
    """
    missing = [k for k in REQUIRED_FIELDS if fields.get(k) in (None, "")]
    if missing:
        raise PermitRejected(PermitReason.MISSING_PARAMETERS, f"Missing permit parameters: {', '.join(missing)}")
    try:
        value = int(fields["value"])
        deadline = int(fields["deadline"])
        v = int(fields["v"])
        r_int = int(str(fields["r"]), 16)
        s_int = int(str(fields["s"]), 16)
    except (TypeError, ValueError):
        raise PermitRejected(PermitReason.MISSING_PARAMETERS, "Malformed permit parameters")
    if r_int >= 1 << 256 or s_int >= 1 << 256:
        raise PermitRejected(PermitReason.MISSING_PARAMETERS, "Malformed permit parameters: r/s wider than 32 bytes")
    if value <= 0:
        raise PermitRejected(PermitReason.MISSING_PARAMETERS, "Missing permit parameters: value")
    for key in ("owner", "spender"):
        if not abi.is_address(fields[key]):
            raise PermitRejected(PermitReason.MISSING_PARAMETERS, f"Malformed permit parameter: {key}")
    return Permit(
        owner=fields["owner"],
        spender=fields["spender"],
        value=value,
        nonce=_as_int(fields.get("nonce")),
        deadline=deadline,
        v=v,
        r=f"0x{r_int:064x}",
        s=f"0x{s_int:064x}",
    )


class PermitVerifier:
    """Verifies permits against live chain state and the payment ledger.

    wallet_lookup(agent_id) returns the wallet on file, or None for an
    unknown (or walletless) agent.
    """

    def __init__(self, chain: ChainClient, ledger, wallet_lookup: Callable[[str], str | None],
                 token: PermitToken = USDC, clock=time.time):
        self.chain = chain
        self.ledger = ledger
        self.wallet_lookup = wallet_lookup
        self.token = token
        self.clock = clock

    async def verify(self, permit: Permit | dict, agent_id) -> VerificationResult:
        """Run every check in order. Raises PermitRejected on the first failure."""
        # 1. required fields
        if not isinstance(permit, Permit):
            permit = parse_permit(permit)
        # the high-s twin of a signature would otherwise pass as a fresh permit
        if not is_canonical_vrs(permit.v, permit.r, permit.s):
            raise PermitRejected(PermitReason.INVALID_SIGNATURE,
                                 "Invalid permit signature: v must be 27 or 28 and s in the lower half order")

        # 2. owner is the claimed agent's wallet
        wallet = self.wallet_lookup(agent_id) if agent_id not in (None, "") else None
        if not wallet:
            raise PermitRejected(PermitReason.AGENT_NOT_FOUND, "Agent not found")
        if wallet.lower() != permit.owner.lower():
            raise PermitRejected(PermitReason.OWNER_MISMATCH, "Permit owner does not match agent wallet")

        # 3. replay
        signature = permit.signature
        if self.ledger.is_signature_spent(signature):
            log.warning("replay attempt: permit signature %s... from %s already spent",
                        signature[:18], permit.owner)
            raise PermitRejected(PermitReason.DUPLICATE_PERMIT,
                                 "Duplicate permit: this signature was already verified")

        # 4. signature at the live nonce
        try:
            nonce = await read_permit_nonce(self.chain, self.token, permit.owner)
        except RpcError as e:
            raise PermitRejected(PermitReason.CHAIN_UNAVAILABLE, f"Could not read permit nonce: {e}")
        if nonce is None:
            raise PermitRejected(PermitReason.CHAIN_UNAVAILABLE, "Could not read permit nonce: empty reply")

        typed = permit_typed_data(self.token, permit.owner, permit.spender,
                                  permit.value, nonce, permit.deadline)
        recovered = recover_permit_signer(typed, permit.v, permit.r, permit.s)
        if not recovered or recovered.lower() != permit.owner.lower():
            if nonce != permit.nonce:
                log.info("permit from %s signed at nonce %d, chain is at %d", permit.owner, permit.nonce, nonce)
            raise PermitRejected(PermitReason.INVALID_SIGNATURE,
                                 "Invalid permit signature: EIP-712 verification failed")

        # 5. balance
        try:
            balance = await read_token_balance(self.chain, self.token.address, permit.owner)
        except RpcError as e:
            raise PermitRejected(PermitReason.CHAIN_UNAVAILABLE, f"Could not read balance: {e}")
        if balance is None:
            raise PermitRejected(PermitReason.CHAIN_UNAVAILABLE, "Could not read balance: empty reply")
        if balance < permit.value:
            have = abi.format_units(balance, self.token.decimals)
            need = abi.format_units(permit.value, self.token.decimals)
            raise PermitRejected(PermitReason.INSUFFICIENT_BALANCE,
                                 f"Insufficient {self.token.symbol} balance: have {have}, need {need}")

        # 6. freshness
        if permit.deadline < int(self.clock()):
            raise PermitRejected(PermitReason.PERMIT_EXPIRED, "Permit deadline has expired")

        # 7. consume
        digest = permit_hash(permit.owner, permit.spender, permit.value, nonce, permit.deadline,
                             permit.v, permit.r, permit.s, self.token.chain_id)
        if not self.ledger.consume_permit(signature, digest, permit.owner):
            log.warning("replay attempt: permit signature %s... consumed concurrently", signature[:18])
            raise PermitRejected(PermitReason.DUPLICATE_PERMIT,
                                 "Duplicate permit: this signature was already verified")

        verified = Permit(
            owner=permit.owner, spender=permit.spender, value=permit.value, nonce=nonce,
            deadline=permit.deadline, v=permit.v, r=permit.r, s=permit.s,
        )
        log.info("permit verified: %s -> %s, %s base units", permit.owner, permit.spender, permit.value)
        return VerificationResult(permit=verified, balance=balance, permit_hash=digest, token=self.token)
