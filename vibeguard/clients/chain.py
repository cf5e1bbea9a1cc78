"""EVM chain client — VibeShield registry/router and VibeGuard vault calls.

Thin async wrapper over web3.py. Reads retry on transport errors; writes are
signed locally with the configured key, submitted once, and awaited until a
receipt arrives. Contract reverts propagate as web3 exceptions so the
execution gateway can decode them.
"""

from __future__ import annotations

from typing import Any

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from vibeguard.errors import ConfigurationError
from vibeguard.utils.retry import with_retry

REGISTRY_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "getAgent",
        "stateMutability": "view",
        "inputs": [{"name": "user", "type": "address"}],
        "outputs": [
            {"name": "isActive", "type": "bool"},
            {"name": "strategy", "type": "uint8"},
        ],
    },
    {
        "type": "function",
        "name": "creationFee",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

ROUTER_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "executeProtection",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "user", "type": "address"},
            {"name": "amountIn", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "executor",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
]

VAULT_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "executeEmergencySwap",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "user", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amountIn", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "guardians",
        "stateMutability": "view",
        "inputs": [{"name": "guardian", "type": "address"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

ERC20_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "decimals",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
]


class ChainClient:
    """Registry, router, vault and ERC-20 calls over one JSON-RPC endpoint."""

    def __init__(
        self,
        rpc_url: str,
        private_key: str = "",
        timeout: float = 20.0,
        confirmation_timeout: float = 120.0,
    ):
        if not rpc_url:
            raise ConfigurationError("Missing RPC URL (set AGENT_DEMO_RPC_URL or EVM_RPC_URL)")
        self.confirmation_timeout = confirmation_timeout
        self._w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self._account = Account.from_key(private_key) if private_key else None

    @property
    def wallet_address(self) -> str:
        if self._account is None:
            raise ConfigurationError("Missing PRIVATE_KEY for the acting wallet")
        return self._account.address

    def _contract(self, address: str, abi: list[dict[str, Any]]) -> Any:
        return self._w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    # ── Reads ────────────────────────────────────────────────────────

    @with_retry
    async def chain_id(self) -> int:
        return int(await self._w3.eth.chain_id)

    @with_retry
    async def has_code(self, address: str) -> bool:
        code = await self._w3.eth.get_code(Web3.to_checksum_address(address))
        return len(bytes(code)) > 0

    @with_retry
    async def get_agent(self, registry: str, user: str) -> tuple[bool, int]:
        active, strategy = await self._contract(registry, REGISTRY_ABI).functions.getAgent(
            Web3.to_checksum_address(user)
        ).call()
        return bool(active), int(strategy)

    @with_retry
    async def creation_fee(self, registry: str) -> int:
        return int(await self._contract(registry, REGISTRY_ABI).functions.creationFee().call())

    @with_retry
    async def router_executor(self, router: str) -> str:
        return str(await self._contract(router, ROUTER_ABI).functions.executor().call())

    @with_retry
    async def is_guardian(self, vault: str, address: str) -> bool:
        return bool(
            await self._contract(vault, VAULT_ABI).functions.guardians(
                Web3.to_checksum_address(address)
            ).call()
        )

    @with_retry
    async def token_decimals(self, token: str) -> int:
        return int(await self._contract(token, ERC20_ABI).functions.decimals().call())

    # ── Writes ───────────────────────────────────────────────────────

    async def execute_protection(self, router: str, user: str, amount_wei: int) -> dict[str, Any]:
        fn = self._contract(router, ROUTER_ABI).functions.executeProtection(
            Web3.to_checksum_address(user), amount_wei
        )
        return await self._send(fn)

    async def emergency_swap(self, vault: str, user: str, token: str, amount_in: int) -> dict[str, Any]:
        fn = self._contract(vault, VAULT_ABI).functions.executeEmergencySwap(
            Web3.to_checksum_address(user), Web3.to_checksum_address(token), amount_in
        )
        return await self._send(fn)

    async def _send(self, fn: Any) -> dict[str, Any]:
        """Sign, submit and await a contract call. Returns {tx_hash, status}.

        Gas estimation inside build_transaction simulates the call, so most
        reverts raise here before anything is broadcast.
        """
        sender = self.wallet_address
        tx = await fn.build_transaction({
            "from": sender,
            "nonce": await self._w3.eth.get_transaction_count(sender, "pending"),
            "chainId": await self.chain_id(),
        })
        signed = self._account.sign_transaction(tx)
        tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = await self._w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self.confirmation_timeout
        )
        return {
            "tx_hash": Web3.to_hex(receipt["transactionHash"]),
            "status": int(receipt.get("status", 0)),
        }
