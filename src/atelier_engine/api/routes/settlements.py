"""Settlement operator routes.

Routes:
    GET    /api/v1/settlements/pending      — Settlements needing attention
    POST   /api/v1/settlements/reconcile    — Resolve unconfirmed transfers on chain
    POST   /api/v1/settlements/{id}/retry   — Resend a failed settlement
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends

from atelier_engine.api.deps import get_reconciler
from atelier_engine.schemas.orders import (
    ReconcileResponse,
    SettlementRecordResponse,
    SettlementResponse,
)
from atelier_engine.services.settlement_service import SettlementReconciler

router = APIRouter(prefix="/api/v1/settlements", tags=["Settlements"])


@router.get("/pending", response_model=list[SettlementRecordResponse])
async def list_pending(
    reconciler: SettlementReconciler = Depends(get_reconciler),
) -> list[SettlementRecordResponse]:
    rows = await reconciler.list_pending()
    return [SettlementRecordResponse.model_validate(row) for row in rows]


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile(
    reconciler: SettlementReconciler = Depends(get_reconciler),
) -> ReconcileResponse:
    """Look up every unconfirmed transfer on chain and settle its record."""
    return ReconcileResponse(**await reconciler.reconcile_unconfirmed())


@router.post("/{settlement_id}/retry", response_model=SettlementResponse)
async def retry_settlement(
    settlement_id: uuid.UUID,
    reconciler: SettlementReconciler = Depends(get_reconciler),
) -> SettlementResponse:
    """Resend a failed settlement. Unconfirmed ones must be reconciled instead."""
    outcome = await reconciler.retry_failed(settlement_id)
    return SettlementResponse.model_validate(outcome)
