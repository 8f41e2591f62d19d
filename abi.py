# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Best-effort decoding of raw EVM data.

This is not an ABI implementation. It covers the handful of return types
the task handlers read (strings, uints, bools) and a selector scan over
runtime bytecode. Every decoder degrades to None instead of raising.

Selector scan caveat: a selector counts as present when its 4 bytes appear
anywhere in the bytecode. PUSH4 constants, metadata and data sections can
produce false positives; proxies and selector-packing compilers can hide
real functions (false negatives).
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, localcontext

# 4-byte selector (hex, no 0x) -> function signature
KNOWN_SELECTORS = {
    "06fdde03": "name()",
    "95d89b41": "symbol()",
    "313ce567": "decimals()",
    "18160ddd": "totalSupply()",
    "70a08231": "balanceOf(address)",
    "dd62ed3e": "allowance(address,address)",
    "a9059cbb": "transfer(address,uint256)",
    "23b872dd": "transferFrom(address,address,uint256)",
    "095ea7b3": "approve(address,uint256)",
    "8da5cb5b": "owner()",
    "5c975abb": "paused()",
    "f2fde38b": "transferOwnership(address)",
    "715018a6": "renounceOwnership()",
    "3644e515": "DOMAIN_SEPARATOR()",
    "d505accf": "permit(address,address,uint256,uint256,uint8,bytes32,bytes32)",
}

SELECTOR_NAME = "06fdde03"
SELECTOR_SYMBOL = "95d89b41"
SELECTOR_DECIMALS = "313ce567"
SELECTOR_TOTAL_SUPPLY = "18160ddd"
SELECTOR_BALANCE_OF = "70a08231"
SELECTOR_NONCES = "7ecebe00"  # nonces(address), EIP-2612

FN_TRANSFER = "transfer(address,uint256)"
FN_BALANCE_OF = "balanceOf(address)"
FN_PERMIT = "permit(address,address,uint256,uint256,uint8,bytes32,bytes32)"

WORD_HEX = 64  # one 32-byte ABI word in hex chars
_HEX_DIGITS = set("0123456789abcdefABCDEF")


# ---------------------------------------------------------------------------
# Addresses and call data
# ---------------------------------------------------------------------------

def is_address(value) -> bool:
    """0x-prefixed 20-byte hex string."""
    return (
        isinstance(value, str)
        and value.startswith("0x")
        and len(value) == 42
        and all(c in _HEX_DIGITS for c in value[2:])
    )


def encode_address_call(selector: str, address: str) -> str:
    """Call data for a single-address-argument function like balanceOf(address)."""
    if not is_address(address):
        raise ValueError(f"Not an address: {address!r}")
    return "0x" + selector.removeprefix("0x") + address[2:].lower().rjust(WORD_HEX, "0")


def has_code(bytecode) -> bool:
    return isinstance(bytecode, str) and len(bytecode) > 2 and bytecode != "0x"


def code_size(bytecode) -> int:
    """Runtime bytecode size in bytes."""
    return (len(bytecode) - 2) // 2 if has_code(bytecode) else 0


# ---------------------------------------------------------------------------
# Selector scan
# ---------------------------------------------------------------------------

def detect_selectors(bytecode, table: dict | None = None) -> set[str]:
    """Function signatures whose selector bytes occur in *bytecode*."""
    table = KNOWN_SELECTORS if table is None else table
    if not has_code(bytecode):
        return set()
    code = bytecode.lower()
    return {fn for sel, fn in table.items() if sel.lower() in code}


def ordered_functions(functions: set[str], table: dict | None = None) -> list[str]:
    """Detected functions in catalog order, for stable output."""
    table = KNOWN_SELECTORS if table is None else table
    return [fn for fn in table.values() if fn in functions]


def is_erc20(functions: set[str]) -> bool:
    return FN_TRANSFER in functions and FN_BALANCE_OF in functions


def has_permit(functions: set[str]) -> bool:
    return FN_PERMIT in functions


def method_for_input(data) -> str | None:
    """Name the method a transaction input calls: known signature or raw 0x selector."""
    if not isinstance(data, str) or len(data) < 10:
        return None
    selector = data[2:10].lower()
    return KNOWN_SELECTORS.get(selector, "0x" + selector)


# ---------------------------------------------------------------------------
# Scalar decoding
# ---------------------------------------------------------------------------

def _printable(text: str) -> bool:
    return len(text) > 0 and all(0x20 <= ord(c) <= 0x7E for c in text)


def _trim_word(word: bytes) -> str:
    null_idx = word.find(b"\x00")
    trimmed = word[:null_idx] if null_idx > 0 else word
    return trimmed.decode("utf-8", errors="replace")


def decode_string(raw) -> str | None:
    """Decode a string() return value, trying three layouts in order.

    1. dynamic string: offset word (32 or 64), length word, bytes
    2. bytes32: the first word trimmed at its first null byte
    3. any of the first four words holding a printable run of 2+ chars
    """
    if not isinstance(raw, str) or len(raw) < 66:
        return None
    body = raw[2:]
    try:
        first = body[:WORD_HEX]
        head = int(first, 16)

        if head in (32, 64):
            offset = head * 2
            if len(body) >= offset + WORD_HEX:
                length = int(body[offset:offset + WORD_HEX], 16)
                end = offset + WORD_HEX + length * 2
                if 0 < length < 256 and len(body) >= end:
                    text = bytes.fromhex(body[offset + WORD_HEX:end]).decode("utf-8", errors="replace")
                    if _printable(text):
                        return text

        text = _trim_word(bytes.fromhex(first))
        if _printable(text):
            return text

        for i in range(min(len(body) // WORD_HEX, 4)):
            text = _trim_word(bytes.fromhex(body[i * WORD_HEX:(i + 1) * WORD_HEX]))
            if len(text) >= 2 and _printable(text):
                return text
    except ValueError:
        return None
    return None


def decode_uint(raw) -> int | None:
    """Decode a uint return value. None for empty ('0x') or malformed data."""
    if not isinstance(raw, str) or raw in ("", "0x"):
        return None
    try:
        return int(raw, 16)
    except ValueError:
        return None


def decode_bool(raw) -> bool | None:
    value = decode_uint(raw)
    if value not in (0, 1):
        return None
    return bool(value)


def hex_to_int(value: str) -> int:
    """Quantity field from a block/tx/receipt. Raises on missing data."""
    if value is None:
        raise ValueError("missing quantity")
    return int(value, 16)


# ---------------------------------------------------------------------------
# Formatting (Decimal only; on-chain integers never pass through float)
# ---------------------------------------------------------------------------

def format_units(value: int, decimals: int, places: int | None = None) -> str:
    """Render an integer amount of base units as a decimal string."""
    with localcontext() as ctx:
        ctx.prec = 100
        amount = Decimal(value).scaleb(-decimals)
        if places is not None:
            amount = amount.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
        return f"{amount:f}"


def to_units(amount, decimals: int) -> int:
    """round(amount * 10^decimals), half-up, exact for str/Decimal/int input."""
    with localcontext() as ctx:
        ctx.prec = 100
        scaled = Decimal(str(amount)).scaleb(decimals)
        return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def utilization_percent(gas_used: int, gas_limit: int) -> str:
    """gasUsed / gasLimit * 100 with one decimal place, e.g. '50.0%'."""
    if gas_limit <= 0:
        return "0.0%"
    pct = (Decimal(gas_used) * 100 / Decimal(gas_limit)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    return f"{pct}%"


def iso_utc(ts: float) -> str:
    """Unix seconds -> '2024-01-01T00:00:00.000Z'."""
    return datetime.fromtimestamp(ts, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
