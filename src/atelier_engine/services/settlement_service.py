"""Settlement Service — payouts and refunds from the platform treasury.

Every transfer goes through an outbox row in the settlements table:

    pending ──submit ok, confirmed──────────▶ confirmed
       │
       ├──refused before broadcast────────▶ failed       (nothing moved; safe to retry)
       │
       ├──submit raised after handoff─────▶ unconfirmed  (no hash; manual review)
       │
       └──hash exists, confirmation lost──▶ unconfirmed  (money may have moved;
                                                          reconcile, never resend)

Only the balance check, receiving-account setup and a TransferRejectedError
from the gateway count as refusals. Any other error from submit_transfer
leaves the outcome unknown.

The SettlementExecutor performs one send. The SettlementReconciler resolves
unconfirmed rows against the chain and retries failed ones on request.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, NoReturn

from atelier_engine.domain.enums import (
    EventType,
    OrderStatus,
    SettlementKind,
    SettlementStatus,
)
from atelier_engine.domain.exceptions import (
    InsufficientFundsError,
    SettlementError,
    SettlementNotFoundError,
    SettlementUnconfirmedError,
    TransferRejectedError,
    ValidationError,
)
from atelier_engine.infrastructure.database.orm_models import Settlement
from atelier_engine.infrastructure.database.repositories import (
    EventRepository,
    OrderRepository,
    SettlementRepository,
)
from atelier_engine.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from atelier_engine.domain.chain_protocol import ChainGateway

logger = get_logger(__name__)

_SENT_EVENTS = {
    SettlementKind.PAYOUT: EventType.PAYOUT_SENT,
    SettlementKind.REFUND: EventType.REFUND_SENT,
}


@dataclass(frozen=True)
class SettlementOutcome:
    settlement_id: uuid.UUID
    kind: SettlementKind
    status: SettlementStatus
    recipient: str
    amount: Decimal
    tx_hash: str | None = None


async def _record_settlement_event(
    session: AsyncSession,
    order_id: uuid.UUID,
    event_type: EventType,
    metadata: dict,
) -> None:
    order = await OrderRepository(session).get_by_id(order_id)
    if order is None:
        return
    status = OrderStatus(order.status)
    await EventRepository(session).record(
        order_id=order_id,
        event_type=event_type,
        old_status=status,
        new_status=status,
        actor="SYSTEM",
        metadata=metadata,
    )


def _reason(exc: BaseException) -> str:
    if isinstance(exc, SettlementError):
        return exc.message
    return str(exc) or type(exc).__name__

class SettlementExecutor:
    """Sends USDC out of the treasury and keeps the outbox in step."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        chain: ChainGateway,
        treasury_address: str,
    ) -> None:
        self._session_factory = session_factory
        self._chain = chain
        self._treasury = treasury_address

    async def payout(
        self, order_id: uuid.UUID, recipient: str, amount: Decimal
    ) -> SettlementOutcome:
        """Pay the provider the quoted price for a completed order."""
        return await self.settle(order_id, SettlementKind.PAYOUT, recipient, amount)

    async def refund(
        self, order_id: uuid.UUID, recipient: str, amount: Decimal
    ) -> SettlementOutcome:
        """Return price plus fee to the client of a cancelled paid order."""
        return await self.settle(order_id, SettlementKind.REFUND, recipient, amount)

    async def prepare(self, recipient: str, amount: Decimal) -> None:
        """Check the treasury balance and make sure the recipient can receive.

        Raises:
            InsufficientFundsError: If the treasury cannot cover the amount.
        """
        balance = await self._chain.get_token_balance(self._treasury)
        if balance < amount:
            raise InsufficientFundsError(required=str(amount), available=str(balance))

        if not await self._chain.receiving_account_exists(recipient):
            logger.info("settlement.creating_receiving_account", recipient=recipient)
            await self._chain.create_receiving_account(recipient)

    async def settle(
        self,
        order_id: uuid.UUID,
        kind: SettlementKind,
        recipient: str,
        amount: Decimal,
        existing: Settlement | None = None,
    ) -> SettlementOutcome:
        amount = Decimal(amount)
        if amount <= 0:
            raise ValidationError("Settlement amount must be positive")

        if existing is None:
            async with self._session_factory() as session, session.begin():
                row = await SettlementRepository(session).create(Settlement(
                    order_id=order_id,
                    kind=kind.value,
                    recipient_wallet=recipient,
                    amount_usdc=amount,
                    status=SettlementStatus.PENDING.value,
                ))
                settlement_id = row.id
        else:
            settlement_id = existing.id

        log = logger.bind(
            settlement_id=str(settlement_id),
            order_id=str(order_id),
            kind=kind.value,
            amount=str(amount),
        )
        log.info("settlement.started", recipient=recipient)

        try:
            await self.prepare(recipient, amount)
        except Exception as exc:
            await self._refused(settlement_id, order_id, exc, log)

        try:
            tx_hash = await self._chain.submit_transfer(recipient, amount)
        except TransferRejectedError as exc:
            await self._refused(settlement_id, order_id, exc, log)
        except Exception as exc:
            # handed to the wallet without a usable answer; money may have moved
            reason = _reason(exc)
            await self._mark(
                settlement_id, order_id, SettlementStatus.UNCONFIRMED, error=reason[:2000]
            )
            log.error("settlement.outcome_unknown", error=reason)
            error = SettlementUnconfirmedError(None, reason)
            error.settlement_id = str(settlement_id)
            raise error from exc

        try:
            confirmed = await self._chain.wait_for_confirmation(tx_hash)
        except Exception as exc:
            reason = _reason(exc)
            await self._mark(
                settlement_id,
                order_id,
                SettlementStatus.UNCONFIRMED,
                tx_hash=tx_hash,
                error=reason[:2000],
            )
            log.error("settlement.unconfirmed", tx_hash=tx_hash, error=reason)
            error = SettlementUnconfirmedError(tx_hash, reason)
            error.settlement_id = str(settlement_id)
            raise error from exc

        if not confirmed:
            await self._mark(
                settlement_id,
                order_id,
                SettlementStatus.FAILED,
                tx_hash=tx_hash,
                error="Transaction reverted",
            )
            log.error("settlement.reverted", tx_hash=tx_hash)
            raise SettlementError(
                f"Transfer {tx_hash} reverted on-chain",
                tx_hash=tx_hash,
                settlement_id=str(settlement_id),
            )

        await self._mark(settlement_id, order_id, SettlementStatus.CONFIRMED, tx_hash=tx_hash)
        log.info("settlement.confirmed", tx_hash=tx_hash)
        return SettlementOutcome(
            settlement_id=settlement_id,
            kind=kind,
            status=SettlementStatus.CONFIRMED,
            recipient=recipient,
            amount=amount,
            tx_hash=tx_hash,
        )

    async def _refused(
        self,
        settlement_id: uuid.UUID,
        order_id: uuid.UUID,
        exc: Exception,
        log,  # noqa: ANN001
    ) -> NoReturn:
        """Record a send that never reached the chain, then raise."""
        reason = _reason(exc)
        await self._mark(settlement_id, order_id, SettlementStatus.FAILED, error=reason[:2000])
        log.error("settlement.failed", error=reason)
        if isinstance(exc, SettlementError):
            exc.settlement_id = str(settlement_id)
            raise exc
        raise SettlementError(reason, settlement_id=str(settlement_id)) from exc

    async def _mark(
        self,
        settlement_id: uuid.UUID,
        order_id: uuid.UUID,
        status: SettlementStatus,
        **values,  # noqa: ANN003
    ) -> None:
        async with self._session_factory() as session, session.begin():
            settlements = SettlementRepository(session)
            row = await settlements.get_by_id(settlement_id)
            expected = SettlementStatus(row.status)
            await settlements.update_outcome(settlement_id, expected, status, **values)
            kind = SettlementKind(row.kind)
            metadata = {
                "settlement_id": str(settlement_id),
                "kind": kind.value,
                "amount_usdc": str(row.amount_usdc),
                "recipient": row.recipient_wallet,
                "tx_hash": values.get("tx_hash"),
            }
            if status == SettlementStatus.CONFIRMED:
                await OrderRepository(session).attach_payout_tx_hash(order_id, values["tx_hash"])
                await _record_settlement_event(session, order_id, _SENT_EVENTS[kind], metadata)
            else:
                metadata["status"] = status.value
                metadata["error"] = values.get("error")
                await _record_settlement_event(
                    session, order_id, EventType.SETTLEMENT_FAILED, metadata
                )


class SettlementReconciler:
    """Operator tooling for settlements that did not end confirmed."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        chain: ChainGateway,
        executor: SettlementExecutor,
    ) -> None:
        self._session_factory = session_factory
        self._chain = chain
        self._executor = executor

    async def list_pending(self) -> list[Settlement]:
        """Settlements that need attention: pending, unconfirmed or failed.

        A row still pending after its send finished means the process died
        mid-send; whether money moved is unknown, so it is listed for manual
        review and never retried automatically.
        """
        async with self._session_factory() as session:
            return await SettlementRepository(session).get_by_status(
                SettlementStatus.PENDING,
                SettlementStatus.UNCONFIRMED,
                SettlementStatus.FAILED,
            )

    async def reconcile_unconfirmed(self) -> dict[str, int]:
        """Look up each unconfirmed transfer on chain and settle its row.

        Returns:
            Counts of rows confirmed, failed and still unknown.
        """
        counts = {"confirmed": 0, "failed": 0, "still_unconfirmed": 0}
        async with self._session_factory() as session:
            rows = await SettlementRepository(session).get_by_status(
                SettlementStatus.UNCONFIRMED
            )

        for row in rows:
            if row.tx_hash is None:
                # no hash to look up; an operator has to check the wallet
                counts["still_unconfirmed"] += 1
                continue
            try:
                transfer = await self._chain.get_transfer(row.tx_hash)
            except Exception as exc:
                logger.warning(
                    "settlement.reconcile_lookup_failed",
                    settlement_id=str(row.id),
                    error=str(exc),
                )
                counts["still_unconfirmed"] += 1
                continue

            if transfer is None:
                counts["still_unconfirmed"] += 1
                continue

            async with self._session_factory() as session, session.begin():
                settlements = SettlementRepository(session)
                kind = SettlementKind(row.kind)
                metadata = {
                    "settlement_id": str(row.id),
                    "kind": kind.value,
                    "amount_usdc": str(row.amount_usdc),
                    "recipient": row.recipient_wallet,
                    "tx_hash": row.tx_hash,
                    "reconciled": True,
                }
                if transfer.success:
                    moved = await settlements.update_outcome(
                        row.id,
                        SettlementStatus.UNCONFIRMED,
                        SettlementStatus.CONFIRMED,
                        error=None,
                    )
                    if moved:
                        await OrderRepository(session).attach_payout_tx_hash(
                            row.order_id, row.tx_hash
                        )
                        await _record_settlement_event(
                            session, row.order_id, _SENT_EVENTS[kind], metadata
                        )
                        counts["confirmed"] += 1
                else:
                    moved = await settlements.update_outcome(
                        row.id,
                        SettlementStatus.UNCONFIRMED,
                        SettlementStatus.FAILED,
                        error="Transaction reverted",
                    )
                    if moved:
                        counts["failed"] += 1

        logger.info("settlement.reconciled", **counts)
        return counts

    async def retry_failed(self, settlement_id: uuid.UUID) -> SettlementOutcome:
        """Resend a failed settlement. Unconfirmed rows are never resent.

        Raises:
            SettlementNotFoundError: Unknown settlement.
            ValidationError: The settlement is not in failed status.
            SettlementError: The retry failed again.
        """
        async with self._session_factory() as session, session.begin():
            settlements = SettlementRepository(session)
            row = await settlements.get_by_id(settlement_id)
            if row is None:
                raise SettlementNotFoundError(str(settlement_id))
            if row.status != SettlementStatus.FAILED.value:
                raise ValidationError(
                    f"Only failed settlements can be retried (status is {row.status})"
                )
            moved = await settlements.update_outcome(
                row.id,
                SettlementStatus.FAILED,
                SettlementStatus.PENDING,
                attempts=row.attempts + 1,
                error=None,
            )
            if not moved:
                raise ValidationError("Settlement changed concurrently, please retry")

        logger.info("settlement.retrying", settlement_id=str(row.id), attempt=row.attempts + 1)
        return await self._executor.settle(
            row.order_id,
            SettlementKind(row.kind),
            row.recipient_wallet,
            row.amount_usdc,
            existing=row,
        )
