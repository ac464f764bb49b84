"""Chain Gateway Protocol.

The settlement engine never runs a node or holds keys itself. Everything it
needs from the chain goes through this narrow interface: read a stablecoin
transfer by hash, read the treasury balance, and push a transfer out.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from decimal import Decimal


@dataclass(frozen=True)
class OnChainTransfer:
    """A stablecoin transfer as observed on chain.

    Attributes:
        tx_hash: Transaction hash (0x-prefixed).
        success: False if the transaction reverted.
        asset: Token contract address of the transferred asset.
        sender: Address that signed and paid.
        recipient: Address credited by the transfer.
        amount: Token amount in whole units (USDC, not base units).
    """

    tx_hash: str
    success: bool
    asset: str
    sender: str
    recipient: str
    amount: Decimal


@runtime_checkable
class ChainGateway(Protocol):
    """Read and write access to the settlement chain."""

    async def get_transfer(self, tx_hash: str) -> OnChainTransfer | None:
        """Return the transfer for a hash, or None if the chain has no such tx."""
        ...

    async def get_token_balance(self, address: str) -> Decimal:
        ...

    async def receiving_account_exists(self, address: str) -> bool:
        ...

    async def create_receiving_account(self, address: str) -> None:
        ...

    async def submit_transfer(self, recipient: str, amount: Decimal) -> str:
        """Send USDC from the treasury. Returns the transaction hash."""
        ...

    async def wait_for_confirmation(self, tx_hash: str) -> bool:
        """Block until the transfer is final. Returns False if it reverted.

        Raises:
            TimeoutError: If no confirmation was observed in time.
        """
        ...
