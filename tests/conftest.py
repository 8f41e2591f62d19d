import sys
import os

# Ensure the repo root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import abi
from chain import StubChainClient
from crypto import address_of
from protocol import USDC


# Pre-generated test keys (deterministic)
PAYER_KEY = "0x" + "11" * 32
PAYEE_KEY = "0x" + "22" * 32
OTHER_KEY = "0x" + "33" * 32

PAYER = address_of(PAYER_KEY)
PAYEE = address_of(PAYEE_KEY)
OTHER = address_of(OTHER_KEY)

# Fixed clock for deterministic deadlines
NOW = 1_700_000_000


def uint_word(n: int) -> str:
    """A uint256 as a 0x-prefixed 32-byte ABI word."""
    return "0x" + format(n, "064x")


def string_return(text: str) -> str:
    """ABI-encoded dynamic string return value (offset, length, bytes)."""
    data = text.encode("utf-8")
    padded = data.hex().ljust(((len(data) + 31) // 32) * 64 or 64, "0")
    return "0x" + format(32, "064x") + format(len(data), "064x") + padded


def token_chain(nonce: int | None = 0, balance: int | None = 10_000_000, token=USDC) -> StubChainClient:
    """Stub chain answering nonces(owner) and balanceOf(owner) on *token*.

    Pass None to make the read fail like an unreachable node.
    """
    stub = StubChainClient()
    if nonce is None:
        stub.fail("eth_call", "connection refused", selector=abi.SELECTOR_NONCES)
    else:
        stub.set_call(token.address, abi.SELECTOR_NONCES, uint_word(nonce))
    if balance is None:
        stub.fail("eth_call", "connection refused", selector=abi.SELECTOR_BALANCE_OF)
    else:
        stub.set_call(token.address, abi.SELECTOR_BALANCE_OF, uint_word(balance))
    return stub
