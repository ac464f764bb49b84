"""Chain gateways for USDC on Base.

Two implementations of ChainGateway:

    SimulatedChainGateway   In-memory ledger of balances and transfers. Used in
                            development, dry runs and tests. Generates fake
                            0x hashes the same shape as real ones.

    EvmChainGateway         Reads receipts and balances over JSON-RPC with httpx
                            and sends treasury transfers with Coinbase AgentKit.
"""

from __future__ import annotations

import asyncio
import re
import secrets
import time
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import httpx

from atelier_engine.domain.chain_protocol import OnChainTransfer
from atelier_engine.domain.exceptions import SettlementError, TransferRejectedError
from atelier_engine.logging_config import get_logger

if TYPE_CHECKING:
    from atelier_engine.config import Settings

logger = get_logger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
BALANCE_OF_SELECTOR = "0x70a08231"
TX_HASH_PATTERN = re.compile(r"0x[a-fA-F0-9]{64}")


def _new_tx_hash() -> str:
    return "0x" + secrets.token_hex(32)


def _norm(address: str) -> str:
    return address.lower()


# ---------------------------------------------------------------------------
# Simulated
# ---------------------------------------------------------------------------
class SimulatedChainGateway:
    """In-memory stand-in for the chain.

    Besides the ChainGateway methods it exposes helpers to script a run:
    simulate_client_payment() puts a payment "on chain". fail_next_submit()
    refuses a transfer before it moves anything, lose_next_submit() lets the
    transfer land and then fails the call, and hold_next_confirmation()
    withholds a confirmation.
    """

    def __init__(
        self,
        treasury_address: str,
        usdc_address: str,
        treasury_balance: Decimal = Decimal("0"),
    ) -> None:
        self.treasury_address = treasury_address
        self.usdc_address = usdc_address
        self._balances: dict[str, Decimal] = {_norm(treasury_address): Decimal(treasury_balance)}
        self._transfers: dict[str, OnChainTransfer] = {}
        self._accounts: set[str] = {_norm(treasury_address)}
        self._submit_failures: list[Exception] = []
        self._lost_submits: list[Exception] = []
        self._held: set[str] = set()
        self._hold_next = False
        self.submitted: list[OnChainTransfer] = []

    # --- scripting helpers ---

    def fund_treasury(self, amount: Decimal) -> None:
        key = _norm(self.treasury_address)
        self._balances[key] = self._balances.get(key, Decimal("0")) + Decimal(amount)

    def simulate_client_payment(
        self,
        sender: str,
        amount: Decimal,
        *,
        recipient: str | None = None,
        asset: str | None = None,
        success: bool = True,
    ) -> str:
        """Record a client transfer and return its hash."""
        tx_hash = _new_tx_hash()
        transfer = OnChainTransfer(
            tx_hash=tx_hash,
            success=success,
            asset=asset or self.usdc_address,
            sender=sender,
            recipient=recipient or self.treasury_address,
            amount=Decimal(amount),
        )
        self._transfers[tx_hash] = transfer
        if success and _norm(transfer.asset) == _norm(self.usdc_address):
            key = _norm(transfer.recipient)
            self._balances[key] = self._balances.get(key, Decimal("0")) + transfer.amount
        logger.info(
            "chain.simulated_payment",
            tx_hash=tx_hash,
            sender=sender,
            amount=str(amount),
        )
        return tx_hash

    def fail_next_submit(self, exc: Exception) -> None:
        self._submit_failures.append(exc)

    def lose_next_submit(self, exc: Exception) -> None:
        """The next transfer moves the funds, then the call raises exc."""
        self._lost_submits.append(exc)

    def hold_next_confirmation(self) -> None:
        """The next submitted transfer lands, but its confirmation times out."""
        self._hold_next = True

    def release(self, tx_hash: str) -> None:
        self._held.discard(tx_hash)

    # --- ChainGateway ---

    async def get_transfer(self, tx_hash: str) -> OnChainTransfer | None:
        return self._transfers.get(tx_hash)

    async def get_token_balance(self, address: str) -> Decimal:
        return self._balances.get(_norm(address), Decimal("0"))

    async def receiving_account_exists(self, address: str) -> bool:
        return _norm(address) in self._accounts

    async def create_receiving_account(self, address: str) -> None:
        self._accounts.add(_norm(address))

    async def submit_transfer(self, recipient: str, amount: Decimal) -> str:
        if self._submit_failures:
            exc = self._submit_failures.pop(0)
            raise TransferRejectedError(str(exc)) from exc
        treasury = _norm(self.treasury_address)
        amount = Decimal(amount)
        if self._balances.get(treasury, Decimal("0")) < amount:
            raise TransferRejectedError("Simulated transfer refused: insufficient balance")

        tx_hash = _new_tx_hash()
        self._balances[treasury] -= amount
        self._balances[_norm(recipient)] = self._balances.get(_norm(recipient), Decimal("0")) + amount
        transfer = OnChainTransfer(
            tx_hash=tx_hash,
            success=True,
            asset=self.usdc_address,
            sender=self.treasury_address,
            recipient=recipient,
            amount=amount,
        )
        self._transfers[tx_hash] = transfer
        self.submitted.append(transfer)
        if self._hold_next:
            self._held.add(tx_hash)
            self._hold_next = False
        if self._lost_submits:
            raise self._lost_submits.pop(0)
        return tx_hash

    async def wait_for_confirmation(self, tx_hash: str) -> bool:
        if tx_hash in self._held:
            raise TimeoutError(f"No confirmation observed for {tx_hash}")
        transfer = self._transfers.get(tx_hash)
        return bool(transfer and transfer.success)


# ---------------------------------------------------------------------------
# EVM (JSON-RPC + AgentKit)
# ---------------------------------------------------------------------------
class EvmChainGateway:
    """ChainGateway backed by an EVM JSON-RPC node and a CDP treasury wallet."""

    def __init__(
        self,
        settings: Settings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._rpc_url = settings.chain_rpc_url
        self._usdc = settings.usdc_contract_address
        self._treasury = settings.treasury_wallet_address
        self._scale = Decimal(10) ** settings.usdc_decimals
        self._client = client
        self._rpc_id = 0

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        self._rpc_id += 1
        payload = {"jsonrpc": "2.0", "id": self._rpc_id, "method": method, "params": params}
        if self._client is not None:
            response = await self._client.post(self._rpc_url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.post(self._rpc_url, json=payload)
        response.raise_for_status()
        body = response.json()
        if body.get("error"):
            raise RuntimeError(f"RPC {method} failed: {body['error']}")
        return body.get("result")

    # --- reads ---

    async def get_transfer(self, tx_hash: str) -> OnChainTransfer | None:
        receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
        if receipt is None:
            return None
        return self._parse_receipt(tx_hash, receipt)

    def _parse_receipt(self, tx_hash: str, receipt: dict[str, Any]) -> OnChainTransfer:
        success = int(receipt.get("status") or "0x0", 16) == 1
        sender = receipt.get("from") or ""

        usdc_logs = [
            log
            for log in receipt.get("logs") or []
            if _norm(log.get("address", "")) == _norm(self._usdc)
            and (log.get("topics") or [None])[0] == TRANSFER_TOPIC
            and len(log.get("topics") or []) >= 3
        ]
        if not usdc_logs:
            return OnChainTransfer(
                tx_hash=tx_hash,
                success=success,
                asset=receipt.get("to") or "",
                sender=sender,
                recipient=receipt.get("to") or "",
                amount=Decimal("0"),
            )

        def recipient_of(log: dict[str, Any]) -> str:
            return "0x" + log["topics"][2][-40:]

        to_treasury = [log for log in usdc_logs if _norm(recipient_of(log)) == _norm(self._treasury)]
        chosen = to_treasury or usdc_logs
        amount = sum((int(log.get("data") or "0x0", 16) for log in chosen), 0)
        return OnChainTransfer(
            tx_hash=tx_hash,
            success=success,
            asset=self._usdc,
            sender=sender,
            recipient=recipient_of(chosen[0]),
            amount=Decimal(amount) / self._scale,
        )

    async def get_token_balance(self, address: str) -> Decimal:
        data = BALANCE_OF_SELECTOR + address.lower().removeprefix("0x").rjust(64, "0")
        result = await self._rpc("eth_call", [{"to": self._usdc, "data": data}, "latest"])
        return Decimal(int(result or "0x0", 16)) / self._scale

    # ERC-20 balances need no per-recipient account on EVM chains
    async def receiving_account_exists(self, address: str) -> bool:
        return True

    async def create_receiving_account(self, address: str) -> None:
        return None

    # --- writes ---

    async def submit_transfer(self, recipient: str, amount: Decimal) -> str:
        """Send USDC from the treasury wallet.

        Raises:
            TransferRejectedError: The wallet could not be set up, so nothing
                was handed to the network.
            SettlementError: The transfer was attempted but no hash came back.
                Whether it went out is unknown.
        """
        wallet_provider = await asyncio.to_thread(self._treasury_wallet)
        result = await asyncio.to_thread(self._agentkit_transfer, wallet_provider, recipient, amount)
        match = TX_HASH_PATTERN.search(str(result))
        if match is None:
            raise SettlementError(f"Transfer response carried no transaction hash: {result}")
        return match.group(0)

    def _treasury_wallet(self) -> Any:
        settings = self._settings
        try:
            from coinbase_agentkit import CdpEvmWalletProvider, CdpEvmWalletProviderConfig

            return CdpEvmWalletProvider(CdpEvmWalletProviderConfig(
                api_key_id=settings.cdp_api_key_id,
                api_key_secret=settings.cdp_api_key_secret,
                wallet_secret=settings.cdp_wallet_secret,
                network_id=settings.cdp_network_id,
                address=self._treasury,
            ))
        except Exception as exc:
            raise TransferRejectedError(f"Treasury wallet unavailable: {exc}") from exc

    def _agentkit_transfer(self, wallet_provider: Any, recipient: str, amount: Decimal) -> Any:
        from coinbase_agentkit import erc20_action_provider

        result = erc20_action_provider().transfer(
            wallet_provider,
            {
                "to": recipient,
                "amount": str(amount),
                "contract_address": self._usdc,
            },
        )
        logger.info("chain.transfer_submitted", recipient=recipient, amount=str(amount))
        return result

    async def wait_for_confirmation(self, tx_hash: str) -> bool:
        deadline = time.monotonic() + self._settings.chain_confirmation_timeout_seconds
        while time.monotonic() < deadline:
            receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash])
            if receipt is not None:
                return int(receipt.get("status") or "0x0", 16) == 1
            await asyncio.sleep(self._settings.chain_confirmation_poll_seconds)
        raise TimeoutError(f"No confirmation observed for {tx_hash}")
