# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Shared constants and interfaces for the agentnet protocol.

All modules import from here to avoid circular dependencies.
"""

import os
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

# --- Chain ---

CHAIN_NAME = "Base Mainnet"
CHAIN_ID = 8453
NETWORK = "base"
ADDRESS_PREFIX = "0x"
EXPLORER_URL = "https://basescan.org"

RPC_URL = os.environ.get("AGENTNET_RPC_URL", "https://mainnet.base.org")
RPC_TIMEOUT = float(os.environ.get("AGENTNET_RPC_TIMEOUT", "15"))

WEI_PER_ETH = 10**18
WEI_PER_GWEI = 10**9

USDC_ADDRESS = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
WETH_ADDRESS = "0x4200000000000000000000000000000000000006"

# Name -> address for token_lookup when the input is not an address
TOKEN_ALIASES = {
    "usdc": USDC_ADDRESS,
    "weth": WETH_ADDRESS,
    "eth": WETH_ADDRESS,
}


@dataclass(frozen=True)
class PermitToken:
    """An EIP-2612 token: EIP-712 domain plus display metadata."""
    name: str
    version: str
    chain_id: int
    address: str
    symbol: str
    decimals: int


USDC = PermitToken(
    name="USD Coin",
    version="2",
    chain_id=CHAIN_ID,
    address=USDC_ADDRESS,
    symbol="USDC",
    decimals=6,
)

# --- Payments ---

DEFAULT_CURRENCY = "USDC"
DEFAULT_PAYMENT_METHOD = "x402"
PERMIT_PAYMENT_METHOD = "gasless_permit"
PERMIT_WINDOW_SECONDS = 3600  # signer sets deadline = now + 1h
DEFAULT_MAX_PRICE = "0.001"  # USDC

# --- Gas profiles (units) for gas_estimate ---

GAS_PROFILES = {
    "eth_transfer": 21000,
    "erc20_transfer": 65000,
    "nft_mint": 120000,
    "dex_swap": 180000,
}

# --- Reputation ---

DEFAULT_SCORE = Decimal("50.00")
MIN_SCORE = Decimal("0")
MAX_SCORE = Decimal("100")
SCORE_ON_COMPLETED = Decimal("1")
SCORE_ON_FAILED = Decimal("-2")
LEADERBOARD_SIZE = 20


# --- Task types ---

TASK_TYPES = {
    "contract_analysis": "contract address (0x...)",
    "token_lookup": "token address or name (usdc, weth)",
    "wallet_check": "wallet address (0x...)",
    "gas_estimate": "none required",
    "block_info": "block number (optional)",
    "tx_trace": "transaction hash (0x... 66 chars)",
}


# --- State Machines ---

class TaskState(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


TASK_TRANSITIONS = {
    TaskState.PENDING: {TaskState.COMPLETED, TaskState.FAILED},
    TaskState.COMPLETED: set(),
    TaskState.FAILED: set(),
}


class PaymentState(Enum):
    PENDING = "pending"
    SIGNED = "signed"  # carries a permit, not yet verified
    VERIFIED = "verified"
    FAILED = "failed"


# Valid state transitions: current_state -> set of valid next states
PAYMENT_TRANSITIONS = {
    PaymentState.PENDING: {PaymentState.SIGNED, PaymentState.VERIFIED, PaymentState.FAILED},
    PaymentState.SIGNED: {PaymentState.VERIFIED, PaymentState.FAILED},
    PaymentState.VERIFIED: set(),
    PaymentState.FAILED: set(),
}


# --- Permit verification rejections ---

class PermitReason(Enum):
    MISSING_PARAMETERS = "missing_parameters"
    AGENT_NOT_FOUND = "agent_not_found"
    OWNER_MISMATCH = "owner_mismatch"
    DUPLICATE_PERMIT = "duplicate_permit"
    INVALID_SIGNATURE = "invalid_signature"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    PERMIT_EXPIRED = "permit_expired"
    CHAIN_UNAVAILABLE = "chain_unavailable"


PERMIT_REJECTION_STATUS = {
    PermitReason.MISSING_PARAMETERS: 400,
    PermitReason.AGENT_NOT_FOUND: 404,
    PermitReason.OWNER_MISMATCH: 403,
    PermitReason.DUPLICATE_PERMIT: 409,
    PermitReason.INVALID_SIGNATURE: 403,
    PermitReason.INSUFFICIENT_BALANCE: 400,
    PermitReason.PERMIT_EXPIRED: 400,
    PermitReason.CHAIN_UNAVAILABLE: 502,
}
