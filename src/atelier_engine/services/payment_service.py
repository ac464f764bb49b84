"""Payment Service — confirms client USDC payments on chain.

A client pays by transferring USDC to the platform treasury and handing the
transaction hash to the order. Before an order may move to paid, the
PaymentVerifier checks that the transaction:

    1. exists and did not revert,
    2. moved the configured USDC token,
    3. credited the treasury,
    4. carried at least the amount due (minus a dust tolerance),
    5. was signed by the client's wallet.

Replay protection (one transaction per order) lives in the ledger: the order
service checks escrow_tx_hash before calling verify(), and the unique index
catches the race.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from atelier_engine.domain.exceptions import PaymentVerificationError
from atelier_engine.logging_config import get_logger

if TYPE_CHECKING:
    from atelier_engine.domain.chain_protocol import ChainGateway, OnChainTransfer

logger = get_logger(__name__)

DEFAULT_TOLERANCE = Decimal("0.000001")


def _same_address(a: str | None, b: str | None) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


class PaymentVerifier:
    """Checks a claimed on-chain payment against what an order expects."""

    def __init__(
        self,
        chain: ChainGateway,
        treasury_address: str,
        usdc_address: str,
        tolerance: Decimal = DEFAULT_TOLERANCE,
    ) -> None:
        self._chain = chain
        self._treasury = treasury_address
        self._usdc = usdc_address
        self._tolerance = tolerance

    async def verify(
        self,
        tx_hash: str,
        expected_payer: str,
        expected_amount: Decimal,
    ) -> OnChainTransfer:
        """Verify a payment transaction.

        Returns:
            The observed transfer.

        Raises:
            PaymentVerificationError: With the first check that failed.
        """
        try:
            transfer = await self._chain.get_transfer(tx_hash)
        except Exception as exc:
            logger.error("payment.lookup_failed", tx_hash=tx_hash, error=str(exc))
            raise PaymentVerificationError(
                f"Could not look up transaction: {exc}", tx_hash=tx_hash
            ) from exc

        if transfer is None:
            raise PaymentVerificationError("Transaction not found", tx_hash=tx_hash)
        if not transfer.success:
            raise PaymentVerificationError("Transaction failed on-chain", tx_hash=tx_hash)
        if not _same_address(transfer.asset, self._usdc):
            raise PaymentVerificationError(
                "Transaction did not transfer USDC", tx_hash=tx_hash
            )
        if not _same_address(transfer.recipient, self._treasury):
            raise PaymentVerificationError(
                "Payment was not sent to the platform treasury", tx_hash=tx_hash
            )
        if transfer.amount < Decimal(expected_amount) - self._tolerance:
            raise PaymentVerificationError(
                f"Insufficient payment: expected ${expected_amount}, "
                f"received ${transfer.amount}",
                tx_hash=tx_hash,
            )
        if not _same_address(transfer.sender, expected_payer):
            raise PaymentVerificationError(
                "Transaction not signed by expected sender", tx_hash=tx_hash
            )

        logger.info(
            "payment.verified",
            tx_hash=tx_hash,
            payer=transfer.sender,
            amount=str(transfer.amount),
        )
        return transfer
