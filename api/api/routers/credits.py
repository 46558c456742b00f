"""Credit balance and purchase summary endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter

from api.dependencies import LedgerDep, OwnerDep, SessionDep
from api.schemas import BalanceResponse, CreditsSummaryResponse
from api.services.credits_service import CreditsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("", response_model=CreditsSummaryResponse)
async def get_credits(session: SessionDep, owner_id: OwnerDep) -> CreditsSummaryResponse:
    """Return the owner's balance, active and recent purchases, and usage count."""
    return await CreditsService(session, owner_id=owner_id).summary()


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(ledger: LedgerDep, owner_id: OwnerDep) -> BalanceResponse:
    """Return the spendable balance only."""
    return BalanceResponse(owner_id=owner_id, available_credits=await ledger.available_balance(owner_id))
