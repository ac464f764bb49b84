"""Tests for on-chain payment verification against the simulated chain."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from atelier_engine.domain.exceptions import PaymentVerificationError
from atelier_engine.infrastructure.chain import SimulatedChainGateway
from atelier_engine.services.payment_service import PaymentVerifier

TREASURY = "0x" + "7" * 40
USDC = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
CLIENT = "0x" + "a1" * 20
OTHER = "0x" + "e5" * 20


@pytest.fixture
def chain() -> SimulatedChainGateway:
    return SimulatedChainGateway(TREASURY, USDC)


@pytest.fixture
def verifier(chain: SimulatedChainGateway) -> PaymentVerifier:
    return PaymentVerifier(chain, TREASURY, USDC)


class TestValidPayments:
    @pytest.mark.asyncio
    async def test_exact_payment(self, chain: SimulatedChainGateway, verifier: PaymentVerifier) -> None:
        tx = chain.simulate_client_payment(CLIENT, Decimal("11.00"))
        transfer = await verifier.verify(tx, CLIENT, Decimal("11.00"))
        assert transfer.amount == Decimal("11.00")

    @pytest.mark.asyncio
    async def test_addresses_compared_case_insensitively(
        self, chain: SimulatedChainGateway, verifier: PaymentVerifier
    ) -> None:
        tx = chain.simulate_client_payment(
            CLIENT.upper().replace("0X", "0x"), Decimal("11"), recipient=TREASURY.upper().replace("0X", "0x")
        )
        await verifier.verify(tx, CLIENT, Decimal("11"))

    @pytest.mark.asyncio
    async def test_overpayment_accepted(self, chain: SimulatedChainGateway, verifier: PaymentVerifier) -> None:
        tx = chain.simulate_client_payment(CLIENT, Decimal("12"))
        await verifier.verify(tx, CLIENT, Decimal("11"))

    @pytest.mark.asyncio
    async def test_dust_within_tolerance(self, chain: SimulatedChainGateway, verifier: PaymentVerifier) -> None:
        tx = chain.simulate_client_payment(CLIENT, Decimal("10.9999995"))
        await verifier.verify(tx, CLIENT, Decimal("11"))


class TestRejectedPayments:
    @pytest.mark.asyncio
    async def test_unknown_transaction(self, verifier: PaymentVerifier) -> None:
        with pytest.raises(PaymentVerificationError, match="Transaction not found"):
            await verifier.verify("0x" + "0" * 64, CLIENT, Decimal("11"))

    @pytest.mark.asyncio
    async def test_reverted_transaction(self, chain: SimulatedChainGateway, verifier: PaymentVerifier) -> None:
        tx = chain.simulate_client_payment(CLIENT, Decimal("11"), success=False)
        with pytest.raises(PaymentVerificationError, match="failed on-chain"):
            await verifier.verify(tx, CLIENT, Decimal("11"))

    @pytest.mark.asyncio
    async def test_wrong_token(self, chain: SimulatedChainGateway, verifier: PaymentVerifier) -> None:
        tx = chain.simulate_client_payment(CLIENT, Decimal("11"), asset=OTHER)
        with pytest.raises(PaymentVerificationError, match="did not transfer USDC"):
            await verifier.verify(tx, CLIENT, Decimal("11"))

    @pytest.mark.asyncio
    async def test_wrong_recipient(self, chain: SimulatedChainGateway, verifier: PaymentVerifier) -> None:
        tx = chain.simulate_client_payment(CLIENT, Decimal("11"), recipient=OTHER)
        with pytest.raises(PaymentVerificationError, match="not sent to the platform treasury"):
            await verifier.verify(tx, CLIENT, Decimal("11"))

    @pytest.mark.asyncio
    async def test_underpayment(self, chain: SimulatedChainGateway, verifier: PaymentVerifier) -> None:
        tx = chain.simulate_client_payment(CLIENT, Decimal("5.50"))
        with pytest.raises(PaymentVerificationError) as exc_info:
            await verifier.verify(tx, CLIENT, Decimal("11.00"))
        assert exc_info.value.message == "Insufficient payment: expected $11.00, received $5.50"
        assert exc_info.value.tx_hash == tx

    @pytest.mark.asyncio
    async def test_wrong_sender(self, chain: SimulatedChainGateway, verifier: PaymentVerifier) -> None:
        tx = chain.simulate_client_payment(OTHER, Decimal("11"))
        with pytest.raises(PaymentVerificationError, match="not signed by expected sender"):
            await verifier.verify(tx, CLIENT, Decimal("11"))

    @pytest.mark.asyncio
    async def test_lookup_failure(self, chain: SimulatedChainGateway, verifier: PaymentVerifier) -> None:
        chain.get_transfer = AsyncMock(side_effect=RuntimeError("rpc unreachable"))
        with pytest.raises(PaymentVerificationError, match="Could not look up transaction: rpc unreachable"):
            await verifier.verify("0x" + "1" * 64, CLIENT, Decimal("11"))
