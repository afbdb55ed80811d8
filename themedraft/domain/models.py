from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from themedraft.domain.status import JobStatus


# Use JSONB on Postgres while keeping SQLite-backed tests working.
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid4())


def _utc_now() -> datetime:
    # Stamp rows in UTC so day-boundary queries compare like with like.
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class GenerationJob(Base):
    __tablename__ = "generation_jobs"
    __table_args__ = (
        # Duplicate submissions collapse onto one job per tenant and key.
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_generation_jobs_tenant_idem"),
        Index("ix_generation_jobs_tenant_created", "tenant_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    idempotency_key: Mapped[str] = mapped_column(String)
    template_type: Mapped[str] = mapped_column(String)
    prompt: Mapped[str] = mapped_column(Text)
    status: Mapped[JobStatus] = mapped_column(
        SAEnum(JobStatus, name="job_status", native_enum=False, length=16),
        default=JobStatus.PENDING,
        nullable=False,
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    result: Mapped[Any | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Quota(Base):
    __tablename__ = "quotas"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    credits_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    # Incremented only inside the job completion transaction.
    credits_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Null falls back to the global daily cap.
    max_daily_spend_usd: Mapped[Decimal | None] = mapped_column(Numeric(12, 6), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UsageLog(Base):
    __tablename__ = "usage_logs"
    __table_args__ = (Index("ix_usage_logs_tenant_created", "tenant_id", "created_at"),)

    # Append-only accounting rows; never updated after insert.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    job_id: Mapped[str] = mapped_column(String, index=True)
    tenant_id: Mapped[str] = mapped_column(String)
    model: Mapped[str] = mapped_column(String)
    input_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    output_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    estimated_cost_usd: Mapped[Decimal] = mapped_column(Numeric(12, 6), default=Decimal("0"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, nullable=False)
