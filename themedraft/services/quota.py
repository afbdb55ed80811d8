from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import logging
from typing import Callable
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from themedraft.core.config import Settings
from themedraft.core.errors import ThemeDraftError
from themedraft.domain.models import Quota
from themedraft.persistence.repos import quotas as quotas_repo


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaSnapshot:
    # Tenant-facing view of credits and today's spend.
    tenant_id: str
    credits_limit: int
    credits_used: int
    credits_remaining: int
    max_daily_spend_usd: Decimal
    spent_today_usd: Decimal


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QuotaLedger:
    def __init__(
        self,
        *,
        default_credits_limit: int,
        default_daily_cap_usd: Decimal,
        day_timezone: str = "UTC",
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._default_credits_limit = default_credits_limit
        self._default_daily_cap_usd = default_daily_cap_usd
        self._zone = ZoneInfo(day_timezone)
        # Allow time injection for deterministic day-rollover tests.
        self._time_provider = time_provider or _utc_now

    @classmethod
    def from_settings(cls, settings: Settings) -> "QuotaLedger":
        return cls(
            default_credits_limit=settings.default_credits_limit,
            default_daily_cap_usd=Decimal(str(settings.daily_spend_cap_usd)),
            day_timezone=settings.spend_day_timezone,
        )

    def now(self) -> datetime:
        return self._time_provider()

    async def ensure_quota(self, session: AsyncSession, tenant_id: str) -> Quota:
        # Lazy-create with defaults; an existing row is never overwritten.
        await quotas_repo.insert_quota_if_absent(
            session,
            tenant_id,
            credits_limit=self._default_credits_limit,
            max_daily_spend_usd=None,
        )
        quota = await quotas_repo.get_quota(session, tenant_id)
        if quota is None:
            raise ThemeDraftError(f"quota row missing after insert for tenant {tenant_id}")
        return quota

    async def increment_usage(self, session: AsyncSession, tenant_id: str) -> bool:
        """Charge one credit inside the job completion transaction.

        Returns ``False`` when the tenant is already at its limit; the counter
        then stays at the limit instead of overshooting it.
        """
        if await quotas_repo.increment_credits_used(session, tenant_id):
            return True
        if await quotas_repo.get_quota(session, tenant_id) is None:
            raise ThemeDraftError(f"quota row missing for tenant {tenant_id}")
        logger.warning("credit_ceiling_reached tenant_id=%s", tenant_id)
        return False

    def day_bounds(self, as_of: datetime) -> tuple[datetime, datetime]:
        # Day starts at 00:00 on the reference clock; bounds are returned in UTC.
        if as_of.tzinfo is None:
            as_of = as_of.replace(tzinfo=timezone.utc)
        local = as_of.astimezone(self._zone)
        start_local = datetime(local.year, local.month, local.day, tzinfo=self._zone)
        end_local = start_local + timedelta(days=1)
        return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)

    async def daily_spend(self, session: AsyncSession, tenant_id: str, as_of: datetime | None = None) -> Decimal:
        start, end = self.day_bounds(as_of or self.now())
        return await quotas_repo.sum_spend_between(session, tenant_id, start=start, end=end)

    def daily_cap_for(self, quota: Quota) -> Decimal:
        if quota.max_daily_spend_usd is not None:
            return Decimal(str(quota.max_daily_spend_usd))
        return self._default_daily_cap_usd

    async def snapshot(self, session: AsyncSession, tenant_id: str) -> QuotaSnapshot:
        quota = await self.ensure_quota(session, tenant_id)
        spent = await self.daily_spend(session, tenant_id)
        return QuotaSnapshot(
            tenant_id=tenant_id,
            credits_limit=quota.credits_limit,
            credits_used=quota.credits_used,
            credits_remaining=max(quota.credits_limit - quota.credits_used, 0),
            max_daily_spend_usd=self.daily_cap_for(quota),
            spent_today_usd=spent,
        )
