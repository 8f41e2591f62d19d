# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Task executor for agentnet.

Runs one of a fixed set of chain-reading tasks against an injected
ChainClient and returns a TaskResult. execute() never raises: RPC errors,
bad input and decode surprises all come back as a failed result.

Independent reads inside a handler are issued together with
asyncio.gather. Optional reads (token metadata, token balance) degrade to
None on RpcError without failing their siblings; a failed required read
fails the task.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal

import abi
from chain import ChainClient, RpcError, read_token_balance
from protocol import (
    CHAIN_NAME, EXPLORER_URL, GAS_PROFILES, TASK_TYPES, TOKEN_ALIASES, USDC, PermitToken,
)

log = logging.getLogger(__name__)


class TaskFailure(Exception):
    """A handler's explicit failure (bad input, missing chain object)."""


def eth_str(wei: int, places: int = 6) -> str:
    return f"{abi.format_units(wei, 18, places)} ETH"


def gwei_str(wei: int) -> str:
    return f"{abi.format_units(wei, 9, 4)} Gwei"


@dataclass(frozen=True)
class TaskResult:
    status: str  # "completed" | "failed"
    data: dict = field(default_factory=dict)
    executed_at: str = ""
    duration_ms: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> dict:
        """Flat wire form: status, the decoded facts, then timing."""
        out = {"status": self.status, **self.data}
        if self.error is not None:
            out["error"] = self.error
        out["duration_ms"] = self.duration_ms
        out["executed_at"] = self.executed_at
        return out


class TaskExecutor:
    """Dispatches task types to handlers over one ChainClient."""

    def __init__(self, chain: ChainClient, token: PermitToken = USDC, clock=time.time):
        self.chain = chain
        self.token = token
        self.clock = clock
        self.handlers = {
            "contract_analysis": self.contract_analysis,
            "token_lookup": self.token_lookup,
            "wallet_check": self.wallet_check,
            "gas_estimate": self.gas_estimate,
            "block_info": self.block_info,
            "tx_trace": self.tx_trace,
        }

    async def execute(self, task_type: str, input=None) -> TaskResult:
        started = time.monotonic()
        handler = self.handlers.get(task_type)
        try:
            if handler is None:
                data = {
                    "output": f'Task type "{task_type}" executed',
                    "input": input or "",
                    "note": f"Supported types: {', '.join(TASK_TYPES)}",
                }
            else:
                data = await handler(input)
        except Exception as e:
            # Failures are data past this point
            message = str(e) or type(e).__name__
            log.info("task %s failed: %s", task_type, message)
            return TaskResult(
                status="failed",
                data={"input": input or ""},
                executed_at=abi.iso_utc(self.clock()),
                duration_ms=int((time.monotonic() - started) * 1000),
                error=message,
            )
        return TaskResult(
            status="completed",
            data=data,
            executed_at=abi.iso_utc(self.clock()),
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    # --- chain reads ---

    async def _rpc(self, method: str, *params):
        return await self.chain.call(method, list(params))

    async def _optional(self, coro):
        """Await an optional read; None if the node rejects it."""
        try:
            return await coro
        except RpcError as e:
            log.debug("optional read failed: %s", e)
            return None

    async def _token_metadata(self, address: str) -> dict:
        name_raw, symbol_raw, decimals_raw, supply_raw = await asyncio.gather(
            self._optional(self.chain.eth_call(address, "0x" + abi.SELECTOR_NAME)),
            self._optional(self.chain.eth_call(address, "0x" + abi.SELECTOR_SYMBOL)),
            self._optional(self.chain.eth_call(address, "0x" + abi.SELECTOR_DECIMALS)),
            self._optional(self.chain.eth_call(address, "0x" + abi.SELECTOR_TOTAL_SUPPLY)),
        )
        decimals = abi.decode_uint(decimals_raw)
        if decimals is not None and decimals > 255:  # uint8
            decimals = None
        supply = abi.decode_uint(supply_raw)
        total_supply = None
        if supply is not None and decimals is not None:
            total_supply = f"{Decimal(abi.format_units(supply, decimals, 2)):,f}"
        elif supply is not None:
            total_supply = str(supply)
        return {
            "name": abi.decode_string(name_raw),
            "symbol": abi.decode_string(symbol_raw),
            "decimals": decimals,
            "total_supply": total_supply,
        }

    # --- handlers ---

    async def contract_analysis(self, address) -> dict:
        if not abi.is_address(address):
            address = self.token.address

        code, balance, tx_count, block = await asyncio.gather(
            self._rpc("eth_getCode", address, "latest"),
            self._rpc("eth_getBalance", address, "latest"),
            self._rpc("eth_getTransactionCount", address, "latest"),
            self._rpc("eth_blockNumber"),
        )
        is_contract = abi.has_code(code)
        functions = abi.detect_selectors(code)
        is_erc20 = abi.is_erc20(functions)

        if not is_contract:
            kind = "EOA (Wallet)"
        elif is_erc20:
            kind = "ERC-20 Token Contract"
        else:
            kind = "Smart Contract"

        facts = {
            "chain": CHAIN_NAME,
            "address": address,
            "type": kind,
            "bytecode_size": f"{abi.code_size(code):,} bytes" if is_contract else "N/A",
            "eth_balance": eth_str(abi.hex_to_int(balance)),
            "transaction_count": abi.hex_to_int(tx_count),
            "block_analyzed": abi.hex_to_int(block),
        }

        if is_contract:
            meta = await self._token_metadata(address)
            if meta["name"] or meta["symbol"]:
                facts["token_name"] = meta["name"] or "Unknown"
                facts["token_symbol"] = meta["symbol"] or "Unknown"
                if meta["decimals"] is not None:
                    facts["token_decimals"] = meta["decimals"]
                if meta["total_supply"]:
                    facts["token_total_supply"] = meta["total_supply"]

        if functions:
            facts["detected_functions"] = abi.ordered_functions(functions)
            facts["function_count"] = len(functions)

        facts["is_erc20"] = is_erc20
        facts["basescan"] = f"{EXPLORER_URL}/address/{address}"
        return facts

    async def token_lookup(self, identifier) -> dict:
        if abi.is_address(identifier):
            address = identifier
        else:
            key = identifier.strip().lower() if isinstance(identifier, str) else ""
            address = TOKEN_ALIASES.get(key, self.token.address)

        meta, code, balance = await asyncio.gather(
            self._token_metadata(address),
            self._optional(self._rpc("eth_getCode", address, "latest")),
            self._optional(self._rpc("eth_getBalance", address, "latest")),
        )
        functions = abi.detect_selectors(code)
        return {
            "chain": CHAIN_NAME,
            "address": address,
            "name": meta["name"] or "Unknown",
            "symbol": meta["symbol"] or "Unknown",
            "decimals": meta["decimals"],
            "total_supply": meta["total_supply"],
            "is_erc20": abi.is_erc20(functions),
            "has_permit": abi.has_permit(functions),
            "contract_size": f"{abi.code_size(code):,} bytes",
            "eth_balance": eth_str(abi.decode_uint(balance) or 0),
            "function_count": len(functions),
            "basescan": f"{EXPLORER_URL}/token/{address}",
        }

    async def wallet_check(self, address) -> dict:
        if not abi.is_address(address):
            raise TaskFailure("Provide a valid wallet address starting with 0x")

        balance, tx_count, code, token_balance = await asyncio.gather(
            self._rpc("eth_getBalance", address, "latest"),
            self._rpc("eth_getTransactionCount", address, "latest"),
            self._rpc("eth_getCode", address, "latest"),
            self._optional(read_token_balance(self.chain, self.token.address, address)),
        )
        if token_balance is not None:
            token_str = f"{abi.format_units(token_balance, self.token.decimals, 2)} {self.token.symbol}"
        else:
            token_str = "unable to fetch"

        return {
            "chain": CHAIN_NAME,
            "address": address,
            "type": "Smart Contract / Smart Wallet" if abi.has_code(code) else "EOA (Regular Wallet)",
            "eth_balance": eth_str(abi.hex_to_int(balance)),
            f"{self.token.symbol.lower()}_balance": token_str,
            "transaction_count": abi.hex_to_int(tx_count),
            "basescan": f"{EXPLORER_URL}/address/{address}",
        }

    async def gas_estimate(self, _input=None) -> dict:
        gas_price_raw, block = await asyncio.gather(
            self._rpc("eth_gasPrice"),
            self._rpc("eth_getBlockByNumber", "latest", False),
        )
        if not block:
            raise TaskFailure("Latest block unavailable")

        gas_price = abi.hex_to_int(gas_price_raw)
        base_fee = block.get("baseFeePerGas")
        gas_used = abi.hex_to_int(block["gasUsed"])
        gas_limit = abi.hex_to_int(block["gasLimit"])

        costs_wei = {name: gas_price * units for name, units in GAS_PROFILES.items()}
        return {
            "chain": CHAIN_NAME,
            "block_number": abi.hex_to_int(block["number"]),
            "timestamp": abi.iso_utc(abi.hex_to_int(block["timestamp"])),
            "gas_price": gwei_str(gas_price),
            "base_fee": gwei_str(abi.hex_to_int(base_fee)) if base_fee else None,
            "cost_estimates": {
                name: f"{eth_str(costs_wei[name], 8)} ({units:,} gas)"
                for name, units in GAS_PROFILES.items()
            },
            "cost_estimates_wei": {name: str(wei) for name, wei in costs_wei.items()},
            "block_gas_used": f"{gas_used:,}",
            "block_gas_limit": f"{gas_limit:,}",
            "utilization": abi.utilization_percent(gas_used, gas_limit),
            "txns_in_block": len(block.get("transactions") or []),
        }

    async def block_info(self, number=None) -> dict:
        tag = "latest"
        if isinstance(number, int) and not isinstance(number, bool) and number >= 0:
            tag = hex(number)
        elif isinstance(number, str) and number.strip().isdigit():
            tag = hex(int(number.strip()))

        block = await self._rpc("eth_getBlockByNumber", tag, False)
        if not block:
            raise TaskFailure(f"Block {number if tag != 'latest' else 'latest'} not found on {CHAIN_NAME}")

        block_number = abi.hex_to_int(block["number"])
        gas_used = abi.hex_to_int(block["gasUsed"])
        gas_limit = abi.hex_to_int(block["gasLimit"])
        base_fee = block.get("baseFeePerGas")
        return {
            "chain": CHAIN_NAME,
            "block_number": block_number,
            "hash": block.get("hash"),
            "parent_hash": block.get("parentHash"),
            "timestamp": abi.iso_utc(abi.hex_to_int(block["timestamp"])),
            "transaction_count": len(block.get("transactions") or []),
            "gas_used": f"{gas_used:,}",
            "gas_limit": f"{gas_limit:,}",
            "utilization": abi.utilization_percent(gas_used, gas_limit),
            "base_fee": gwei_str(abi.hex_to_int(base_fee)) if base_fee else None,
            "miner": block.get("miner"),
            "basescan": f"{EXPLORER_URL}/block/{block_number}",
        }

    async def tx_trace(self, tx_hash) -> dict:
        if not isinstance(tx_hash, str) or not tx_hash.startswith("0x") or len(tx_hash) != 66:
            raise TaskFailure("Provide a valid transaction hash (0x... 66 chars)")

        tx, receipt = await asyncio.gather(
            self._rpc("eth_getTransactionByHash", tx_hash),
            self._rpc("eth_getTransactionReceipt", tx_hash),
        )
        if not tx:
            raise TaskFailure(f"Transaction not found on {CHAIN_NAME}")

        value = abi.hex_to_int(tx.get("value") or "0x0")
        gas_used = abi.hex_to_int(receipt["gasUsed"]) if receipt else None
        gas_price = abi.hex_to_int(tx["gasPrice"]) if tx.get("gasPrice") else None
        fee = gas_used * gas_price if gas_used is not None and gas_price is not None else None

        input_data = tx.get("input") or "0x"
        input_size = max(len(input_data) - 2, 0) // 2
        method = abi.method_for_input(input_data) or ("ETH Transfer" if input_size == 0 else "Contract Call")

        if receipt is None:
            success = "Pending"
        else:
            success = "Yes" if receipt.get("status") == "0x1" else "No (Reverted)"

        return {
            "chain": CHAIN_NAME,
            "tx_hash": tx_hash,
            "from": tx.get("from"),
            "to": tx.get("to") or "Contract Creation",
            "value": eth_str(value),
            "method": method,
            "gas_used": f"{gas_used:,}" if gas_used is not None else None,
            "gas_price": gwei_str(gas_price) if gas_price is not None else None,
            "fee": eth_str(fee, 8) if fee is not None else None,
            "fee_wei": str(fee) if fee is not None else None,
            "block_number": abi.hex_to_int(tx["blockNumber"]) if tx.get("blockNumber") else None,
            "success": success,
            "logs_count": len(receipt.get("logs") or []) if receipt else None,
            "input_data": f"{input_size:,} bytes",
            "basescan": f"{EXPLORER_URL}/tx/{tx_hash}",
        }
