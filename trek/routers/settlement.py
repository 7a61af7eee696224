"""
Settlement router: POST /v1/settlement/sweep (manual trigger, admin only)
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from trek.database import get_db
from trek.dependencies import get_escrow, get_notifier, require_admin
from trek.middleware.auth import AuthenticatedPrincipal
from trek.schemas.schemas import ItemOutcomeResponse, SweepResponse
from trek.services.notifications import Notifier
from trek.services.payment import PaymentEscrow
from trek.services.sweeper import run_settlement_sweep

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/settlement", tags=["Settlement"])


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(
    db: AsyncSession = Depends(get_db),
    admin: AuthenticatedPrincipal = Depends(require_admin),
    escrow: PaymentEscrow = Depends(get_escrow),
    notifier: Notifier = Depends(get_notifier),
):
    logger.info("Manual settlement sweep triggered by %s", admin.email)
    result = await run_settlement_sweep(db, escrow=escrow, notifier=notifier)
    return SweepResponse(
        scanned=result.scanned,
        settled=len(result.items),
        failed=result.failed,
        items=[ItemOutcomeResponse(**item.as_dict()) for item in result.items],
    )
