from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from themedraft.apps.api.deps import get_db, get_services, get_tenant_id
from themedraft.apps.api.response import SuccessEnvelope, success_response
from themedraft.services.wiring import GenerationServices


router = APIRouter(prefix="/quota", tags=["quota"])


class QuotaResponse(BaseModel):
    tenant_id: str
    credits_limit: int
    credits_used: int
    credits_remaining: int
    max_daily_spend_usd: float
    spent_today_usd: float


@router.get("", response_model=SuccessEnvelope[QuotaResponse])
async def get_quota(
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    services: GenerationServices = Depends(get_services),
) -> dict:
    snapshot = await services.ledger.snapshot(db, tenant_id)
    # Reading the quota may lazily create it.
    await db.commit()
    payload = QuotaResponse(
        tenant_id=snapshot.tenant_id,
        credits_limit=snapshot.credits_limit,
        credits_used=snapshot.credits_used,
        credits_remaining=snapshot.credits_remaining,
        max_daily_spend_usd=float(snapshot.max_daily_spend_usd),
        spent_today_usd=float(snapshot.spent_today_usd),
    )
    return success_response(request=request, data=payload.model_dump())
