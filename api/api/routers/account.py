"""Account overview endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from api.dependencies import EmailDep, OwnerDep, SessionDep
from api.schemas import AccountResponse
from api.services.credits_service import CreditsService

router = APIRouter(prefix="/account", tags=["account"])


@router.get("", response_model=AccountResponse)
async def get_account(session: SessionDep, owner_id: OwnerDep, email: EmailDep) -> AccountResponse:
    """Return tier, active subscription and available credits for the caller."""
    return await CreditsService(session, owner_id=owner_id).account(email)
