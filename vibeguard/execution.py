"""Protective execution gateway — on-chain exits via VibeShield router or vault.

Flow for execute_protection:
1. Validate user address and amount (InvalidInput)
2. Resolve registry/router addresses: configured set first, deployment
   manifest second. A set whose contracts have no bytecode on the connected
   chain is skipped in favour of the next, with a warning on the result.
3. Preconditions: acting wallet is the router's executor, the user's agent
   is active (ExecutionPrecondition)
4. Submit, await the receipt, report the hash (ExecutionReverted on status 0)

Every public method returning ExecutionResult catches its own failures; a
bad transaction never takes the caller down with it. No deduplication: a
second call submits a second transaction.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable

from eth_abi import decode as abi_decode
from web3 import Web3
from web3.exceptions import ContractLogicError

from vibeguard.clients.chain import ChainClient
from vibeguard.errors import (
    ConfigurationError,
    ErrorKind,
    ExecutionPrecondition,
    ExecutionReverted,
    InvalidInput,
    VibeGuardError,
)
from vibeguard.schema import ExecutionResult

log = logging.getLogger("vibeguard.execution")

MANIFEST_NAME = "agent-demo-97.json"
NATIVE_DECIMALS = 18
MAX_TOKEN_DECIMALS = 36

KNOWN_REVERTS: dict[str, str] = {
    "NothingToSell()": "nothing to sell",
    "InsufficientLiquidity()": "insufficient liquidity",
    "NotExecutor()": "not the authorized executor",
    "AgentNotActive()": "agent not active for this user",
    "SlippageExceeded()": "slippage exceeded",
}
REVERT_SELECTORS: dict[str, str] = {
    Web3.to_hex(Web3.keccak(text=sig)[:4]): reason for sig, reason in KNOWN_REVERTS.items()
}
ERROR_STRING_SELECTOR = "0x08c379a0"


@dataclass(frozen=True)
class ContractAddresses:
    registry: str
    router: str
    wbnb: str = ""
    musdt: str = ""
    chain_id: int | None = None
    source: str = "config"


def _valid_address(value: Any) -> bool:
    return isinstance(value, str) and Web3.is_address(value.strip())


def to_base_units(amount: Any, decimals: int = NATIVE_DECIMALS) -> int:
    """Decimal string -> integer base units. Raises InvalidInput."""
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError) as e:
        raise InvalidInput("Invalid amount") from e
    if not value.is_finite() or value <= 0:
        raise InvalidInput("Invalid amount")
    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise InvalidInput(f"Amount has more than {decimals} decimal places")
    return int(scaled)


def _revert_data(exc: BaseException) -> str:
    data = getattr(exc, "data", None)
    if isinstance(data, bytes):
        return Web3.to_hex(data)
    if isinstance(data, dict):
        data = data.get("data")
    return data if isinstance(data, str) else ""


def decode_revert(exc: BaseException) -> tuple[str, ErrorKind]:
    """Readable cause for a failed contract call.

    Known custom errors and ``Error(string)`` payloads decode to their
    reason; anything else keeps the provider's raw message.
    """
    if isinstance(exc, VibeGuardError):
        return str(exc), exc.kind

    data = _revert_data(exc).lower()
    message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
    haystack = data or message.lower()
    for selector, reason in REVERT_SELECTORS.items():
        if selector in haystack:
            return f"Execution reverted: {reason}", ErrorKind.EXECUTION_REVERTED

    if data.startswith(ERROR_STRING_SELECTOR):
        try:
            (reason,) = abi_decode(["string"], bytes.fromhex(data[len(ERROR_STRING_SELECTOR):]))
            return f"Execution reverted: {reason}", ErrorKind.EXECUTION_REVERTED
        except Exception:
            log.debug("Undecodable Error(string) payload: %s", data[:74])

    if isinstance(exc, ContractLogicError):
        return message, ErrorKind.EXECUTION_REVERTED
    return message, ErrorKind.UPSTREAM_UNAVAILABLE


class ProtectionExecutor:
    """Submits protective exits for subscriptions and operators."""

    def __init__(
        self,
        rpc_url: str = "",
        private_key: str = "",
        registry_address: str = "",
        router_address: str = "",
        vault_address: str = "",
        deployment_path: str = "",
        confirmation_timeout: float = 120.0,
        chain_factory: Callable[[], ChainClient] | None = None,
        search_root: Path | None = None,
    ):
        self.registry_address = registry_address.strip()
        self.router_address = router_address.strip()
        self.vault_address = vault_address.strip()
        self.deployment_path = deployment_path.strip()
        self.search_root = search_root
        self._chain_factory = chain_factory or (
            lambda: ChainClient(rpc_url, private_key, confirmation_timeout=confirmation_timeout)
        )
        self._chain: ChainClient | None = None
        self._manifest: dict[str, Any] | None = None
        self._reported_config_errors: set[str] = set()
        self._resolved: ContractAddresses | None = None

    # ── Wiring ───────────────────────────────────────────────────────

    def chain(self) -> ChainClient:
        if self._chain is None:
            self._chain = self._chain_factory()
        return self._chain

    def _config_failure(self, error: ConfigurationError, warning: str | None = None) -> ExecutionResult:
        message = str(error)
        if message not in self._reported_config_errors:
            self._reported_config_errors.add(message)
            log.error("Execution unavailable: %s", message)
        return ExecutionResult.failure(message, ErrorKind.CONFIGURATION_ERROR, warning)

    def manifest_candidates(self) -> list[Path]:
        root = self.search_root or Path.cwd()
        candidates = [Path(self.deployment_path)] if self.deployment_path else []
        candidates += [
            root / "deployments" / MANIFEST_NAME,
            root / "contracts" / "deployments" / MANIFEST_NAME,
            root.parent / "contracts" / "deployments" / MANIFEST_NAME,
        ]
        return candidates

    def load_manifest(self) -> dict[str, Any] | None:
        """First readable deployment manifest, cached. None when there is none."""
        if self._manifest is not None:
            return self._manifest
        for path in self.manifest_candidates():
            if not path.is_file():
                continue
            try:
                data = json.loads(path.read_text())
            except (OSError, json.JSONDecodeError) as e:
                log.warning("Unreadable deployment manifest %s: %s", path, e)
                continue
            if isinstance(data, dict):
                log.debug("Loaded deployment manifest %s", path)
                self._manifest = data
                return data
        return None

    def _address_sets(self) -> list[ContractAddresses]:
        manifest = self.load_manifest() or {}
        network = manifest.get("network") or {}
        chain_id = network.get("chainId") if isinstance(network, dict) else None
        wbnb = str(manifest.get("wbnb") or "")
        musdt = str(manifest.get("MockUSDT") or "")

        sets: list[ContractAddresses] = []
        if _valid_address(self.registry_address) and _valid_address(self.router_address):
            sets.append(ContractAddresses(self.registry_address, self.router_address, wbnb, musdt, source="config"))
        registry = str(manifest.get("VibeShieldRegistry") or "")
        router = str(manifest.get("VibeShieldRouter") or "")
        if _valid_address(registry) and _valid_address(router):
            manifest_set = ContractAddresses(
                registry,
                router,
                wbnb,
                musdt,
                chain_id=int(chain_id) if chain_id is not None else None,
                source="manifest",
            )
            if not sets or (sets[0].registry.lower(), sets[0].router.lower()) != (registry.lower(), router.lower()):
                sets.append(manifest_set)
        if sets and chain_id is not None:
            sets = [replace(s, chain_id=int(chain_id)) for s in sets]
        return sets

    def configured_addresses(self) -> ContractAddresses:
        """Address set in use without touching the chain.

        The set the last successful resolve_addresses picked, otherwise the
        preferred (first) candidate.
        """
        if self._resolved is not None:
            return self._resolved
        sets = self._address_sets()
        if not sets:
            raise ConfigurationError(
                "Missing VibeShield registry/router addresses "
                "(set AGENT_DEMO_REGISTRY_ADDRESS/AGENT_DEMO_ROUTER_ADDRESS or provide a deployment manifest)"
            )
        return sets[0]

    async def resolve_addresses(self, chain: ChainClient) -> tuple[ContractAddresses, str | None]:
        """Pick the first address set whose contracts exist on the connected chain.

        Returns (addresses, warning). The warning is set when the preferred
        set was skipped.
        """
        sets = self._address_sets()
        if not sets:
            self.configured_addresses()

        expected = sets[0].chain_id
        if expected is not None:
            actual = await chain.chain_id()
            if actual != expected:
                raise ConfigurationError(
                    f"RPC network mismatch: deployment expects chainId {expected} but RPC is chainId {actual}"
                )

        skipped: list[str] = []
        for candidate in sets:
            missing = [
                label
                for label, address in (("Registry", candidate.registry), ("Router", candidate.router))
                if not await chain.has_code(address)
            ]
            if not missing:
                warning = None
                if skipped:
                    warning = f"{'; '.join(skipped)}; using {candidate.source} addresses"
                    log.warning("Address fallback: %s", warning)
                self._resolved = candidate
                return candidate, warning
            skipped.append(f"{'/'.join(missing)} not deployed at {candidate.source} addresses")
        raise ConfigurationError(f"{'; '.join(skipped)}. Likely wrong RPC network for this deployment.")

    # ── Reads ────────────────────────────────────────────────────────

    async def get_public_config(self) -> dict[str, Any]:
        """Addresses plus on-chain creation fee and router executor.

        Read failures land in ``config_error`` instead of raising.
        """
        config: dict[str, Any] = {
            "chain_id": None,
            "registry": None,
            "router": None,
            "wbnb": None,
            "musdt": None,
            "creation_fee_wei": None,
            "router_executor": None,
            "config_error": None,
        }
        try:
            addrs = self.configured_addresses()
        except ConfigurationError as e:
            config["config_error"] = str(e)
            return config
        config.update(
            chain_id=addrs.chain_id,
            registry=addrs.registry,
            router=addrs.router,
            wbnb=addrs.wbnb or None,
            musdt=addrs.musdt or None,
        )
        try:
            chain = self.chain()
            config["creation_fee_wei"] = str(await chain.creation_fee(addrs.registry))
            executor = await chain.router_executor(addrs.router)
            config["router_executor"] = executor if Web3.is_address(executor) else None
        except Exception as e:
            config["config_error"] = decode_revert(e)[0]
            log.warning("Failed to read contract config: %s", config["config_error"])
        return config

    async def get_user_status(self, user_address: str) -> dict[str, Any]:
        if not _valid_address(user_address):
            raise InvalidInput("Invalid userAddress")
        addrs = self.configured_addresses()
        active, strategy = await self.chain().get_agent(addrs.registry, user_address.strip())
        return {"active": active, "strategy": strategy}

    # ── Writes ───────────────────────────────────────────────────────

    async def execute_protection(self, user_address: str, amount: str) -> ExecutionResult:
        """Exit ``amount`` (18-decimal units) of the user's position via the router."""
        if not _valid_address(user_address):
            return ExecutionResult.failure("Invalid userAddress", ErrorKind.INVALID_INPUT)
        try:
            amount_wei = to_base_units(amount, NATIVE_DECIMALS)
        except InvalidInput as e:
            return ExecutionResult.failure(str(e), e.kind)
        user = user_address.strip()

        warning: str | None = None
        try:
            chain = self.chain()
            addrs, warning = await self.resolve_addresses(chain)

            wallet = chain.wallet_address
            executor = await chain.router_executor(addrs.router)
            if executor.lower() != wallet.lower():
                raise ExecutionPrecondition(f"Wallet {wallet} is not the router's authorized executor")
            active, _ = await chain.get_agent(addrs.registry, user)
            if not active:
                raise ExecutionPrecondition("Agent not active for this user")

            receipt = await chain.execute_protection(addrs.router, user, amount_wei)
            if receipt["status"] == 0:
                raise ExecutionReverted(f"Transaction {receipt['tx_hash']} reverted")
        except ConfigurationError as e:
            return self._config_failure(e, warning)
        except Exception as e:
            message, kind = decode_revert(e)
            log.warning("Protection for %s failed (%s): %s", user, kind.value, message)
            return ExecutionResult.failure(message, kind, warning)

        log.info("Protection executed user=%s amount=%s tx=%s", user, amount, receipt["tx_hash"])
        return ExecutionResult(
            success=True,
            tx_hash=receipt["tx_hash"],
            warning=warning,
            router_address=addrs.router,
            executor_address=wallet,
        )

    async def execute_emergency_swap(self, user_address: str, token_address: str, amount: str) -> ExecutionResult:
        """Guardian-initiated swap of the user's ``token`` through the vault."""
        if not _valid_address(user_address):
            return ExecutionResult.failure("Invalid userAddress", ErrorKind.INVALID_INPUT)
        if not _valid_address(token_address):
            return ExecutionResult.failure("Invalid tokenAddress", ErrorKind.INVALID_INPUT)
        user, token = user_address.strip(), token_address.strip()

        try:
            if not _valid_address(self.vault_address):
                raise ConfigurationError("Missing VIBEGUARD_VAULT_ADDRESS")
            chain = self.chain()
            wallet = chain.wallet_address
            if not await chain.is_guardian(self.vault_address, wallet):
                raise ExecutionPrecondition(f"Wallet {wallet} is not a vault guardian")

            decimals = NATIVE_DECIMALS
            try:
                reported = await chain.token_decimals(token)
                if 0 <= reported <= MAX_TOKEN_DECIMALS:
                    decimals = reported
            except Exception as e:
                log.debug("decimals() unavailable for %s, assuming 18: %s", token, e)

            amount_in = to_base_units(amount, decimals)
            receipt = await chain.emergency_swap(self.vault_address, user, token, amount_in)
            if receipt["status"] == 0:
                raise ExecutionReverted(f"Transaction {receipt['tx_hash']} reverted")
        except ConfigurationError as e:
            return self._config_failure(e)
        except Exception as e:
            message, kind = decode_revert(e)
            log.warning("Emergency swap for %s failed (%s): %s", user, kind.value, message)
            return ExecutionResult.failure(message, kind)

        log.info("Emergency swap executed user=%s token=%s tx=%s", user, token, receipt["tx_hash"])
        return ExecutionResult(success=True, tx_hash=receipt["tx_hash"])
