from datetime import date, datetime, timezone

from sqlalchemy import Date, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp for the timezone-less DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class UserDailyAllocation(Base):
    __tablename__ = "user_daily_allocations"
    __table_args__ = (
        UniqueConstraint("user_id", "model_name", "allocation_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    model_name: Mapped[str] = mapped_column(String(100), index=True)
    allocation_date: Mapped[date] = mapped_column(Date, index=True)
    allocated_requests_today: Mapped[int] = mapped_column(Integer, default=0)
    requests_used_today: Mapped[int] = mapped_column(Integer, default=0)
    active_users_count: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


class SystemDailyTracking(Base):
    __tablename__ = "system_daily_tracking"
    __table_args__ = (UniqueConstraint("model_name", "tracking_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    model_name: Mapped[str] = mapped_column(String(100), index=True)
    tracking_date: Mapped[date] = mapped_column(Date, index=True)
    total_requests_available: Mapped[int] = mapped_column(Integer, default=0)
    total_requests_used: Mapped[int] = mapped_column(Integer, default=0)
    active_users_count: Mapped[int] = mapped_column(Integer, default=0)
    requests_per_user: Mapped[int] = mapped_column(Integer, default=0)
    last_allocation_update: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )


class UsageRecord(Base):
    __tablename__ = "usage_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, index=True
    )
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    model_name: Mapped[str] = mapped_column(String(100), index=True)
    usage_date: Mapped[date] = mapped_column(Date, index=True)
    key_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
