"""
Async DB helpers for messages, delivery conditions and delivery records.
Uses SQLAlchemy 2.0 + asyncpg driver – no raw SQL strings in app code.

Helpers return plain dicts so the services validate rows through the pydantic
contracts in `echovault.types.condition_contract`.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Iterable

from sqlalchemy import (
    JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint,
    func, select, text, update,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession
)

# ──────────────────────────────────────────────────────────────────────
# 1. Declarative metadata
# ──────────────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    pass

# ──────────────────────────────────────────────────────────────────────
# 2. Lazy engine / session factory
# ──────────────────────────────────────────────────────────────────────
_engine = None
_session_maker: async_sessionmaker[AsyncSession] | None = None

def _build_url() -> str:
    url = os.getenv("DATABASE_URL") or os.getenv("DATABASE_PUBLIC_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    if "+asyncpg" not in url:
        url = url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    return url

def get_engine():
    global _engine
    if _engine is None:
        _engine = create_async_engine(_build_url(), pool_size=5, max_overflow=5)
    return _engine

def get_session() -> AsyncGenerator[AsyncSession, None]:
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(get_engine(), expire_on_commit=False)
    async def _session_scope():
        async with _session_maker() as session:
            yield session
    return _session_scope()

# ──────────────────────────────────────────────────────────────────────
# 3. ORM models
# ──────────────────────────────────────────────────────────────────────

class Profile(Base):
    __tablename__ = "profiles"

    id:          Mapped[str] = mapped_column(String, primary_key=True)
    first_name:  Mapped[str | None]
    last_name:   Mapped[str | None]
    email:       Mapped[str | None]
    phone:       Mapped[str | None] = mapped_column(String, index=True)
    created_at:  Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class MessageRow(Base):
    __tablename__ = "messages"

    id:                 Mapped[str] = mapped_column(String, primary_key=True)
    user_id:            Mapped[str] = mapped_column(String, index=True)
    title:              Mapped[str]
    content:            Mapped[str | None] = mapped_column(Text)
    message_type:       Mapped[str] = mapped_column(default="text")
    attachments:        Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    share_location:     Mapped[bool] = mapped_column(Boolean, default=False)
    location_latitude:  Mapped[float | None]
    location_longitude: Mapped[float | None]
    location_name:      Mapped[str | None]
    created_at:         Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at:         Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ConditionRow(Base):
    __tablename__ = "message_conditions"

    id:                    Mapped[str] = mapped_column(String, primary_key=True)
    message_id:            Mapped[str] = mapped_column(
        ForeignKey("messages.id", ondelete="CASCADE"), unique=True
    )
    condition_type:        Mapped[str]
    active:                Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    hours_threshold:       Mapped[int] = mapped_column(Integer, default=0)
    minutes_threshold:     Mapped[int] = mapped_column(Integer, default=0)
    last_checked:          Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_check:            Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    trigger_date:          Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    recurring_pattern:     Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    reminder_hours:        Mapped[list[int] | None] = mapped_column(JSON, nullable=True)
    panic_config:          Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    confirmation_required: Mapped[int | None]
    recipients:            Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    pin_code:              Mapped[str | None]
    unlock_delay_hours:    Mapped[int] = mapped_column(Integer, default=0)
    expiry_hours:          Mapped[int] = mapped_column(Integer, default=0)
    created_at:            Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at:            Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class DeliveredMessage(Base):
    __tablename__ = "delivered_messages"

    id:           Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id:   Mapped[str] = mapped_column(String, index=True)
    condition_id: Mapped[str | None]
    recipient_id: Mapped[str | None]
    delivery_id:  Mapped[str] = mapped_column(String, unique=True)
    delivered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    viewed_at:    Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    viewed_count: Mapped[int] = mapped_column(Integer, default=0)
    device_info:  Mapped[str | None]


class SentReminder(Base):
    __tablename__ = "sent_reminders"
    __table_args__ = (UniqueConstraint("condition_id", "deadline", "offset_minutes"),)

    id:             Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id:     Mapped[str]
    condition_id:   Mapped[str] = mapped_column(String, index=True)
    user_id:        Mapped[str]
    deadline:       Mapped[datetime] = mapped_column(DateTime(timezone=True))
    offset_minutes: Mapped[int]
    sent_at:        Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DeliveryLog(Base):
    __tablename__ = "message_delivery_log"

    id:           Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id:   Mapped[str] = mapped_column(String, index=True)
    condition_id: Mapped[str | None]
    recipient:    Mapped[str | None]
    delivery_id:  Mapped[str | None]
    channel:      Mapped[str]
    status:       Mapped[str]
    error:        Mapped[str | None] = mapped_column(Text)
    created_at:   Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ──────────────────────────────────────────────────────────────────────
# 4. DDL helper (run once at startup or from Alembic)
# ──────────────────────────────────────────────────────────────────────
async def create_all():
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _as_dict(row: Base | None) -> dict | None:
    if row is None:
        return None
    return {c.key: getattr(row, c.key) for c in row.__table__.columns}


def _profile_name(profile: Profile | None) -> str | None:
    if profile is None:
        return None
    name = f"{profile.first_name or ''} {profile.last_name or ''}".strip()
    return name or None


def _message_dict(message: MessageRow | None, owner: Profile | None) -> dict | None:
    data = _as_dict(message)
    if data is not None:
        data["sender_name"] = _profile_name(owner)
    return data


# ──────────────────────────────────────────────────────────────────────
# 5. CRUD helpers
# ──────────────────────────────────────────────────────────────────────

# 5.1 Conditions joined to messages -----------------------------------
async def fetch_condition_rows(
    message_id: str | None = None,
    include_inactive: bool = False,
) -> list[dict]:
    """`[{"condition": {...}, "message": {...} | None}]` for the evaluator."""
    async for s in get_session():
        stmt = (
            select(ConditionRow, MessageRow, Profile)
            .outerjoin(MessageRow, MessageRow.id == ConditionRow.message_id)
            .outerjoin(Profile, Profile.id == MessageRow.user_id)
        )
        if message_id:
            stmt = stmt.where(ConditionRow.message_id == message_id)
        if not include_inactive:
            stmt = stmt.where(ConditionRow.active.is_(True))
        res = await s.execute(stmt)
        return [
            {"condition": _as_dict(cond), "message": _message_dict(msg, owner)}
            for cond, msg, owner in res.all()
        ]


async def fetch_message(message_id: str) -> dict | None:
    async for s in get_session():
        stmt = (
            select(MessageRow, Profile)
            .outerjoin(Profile, Profile.id == MessageRow.user_id)
            .where(MessageRow.id == message_id)
        )
        row = (await s.execute(stmt)).first()
        return _message_dict(row[0], row[1]) if row else None


async def fetch_condition_for_message(message_id: str) -> dict | None:
    async for s in get_session():
        res = await s.execute(select(ConditionRow).where(ConditionRow.message_id == message_id))
        return _as_dict(res.scalar_one_or_none())


async def fetch_conditions_for_user(user_id: str, active_only: bool = True) -> list[dict]:
    async for s in get_session():
        stmt = (
            select(ConditionRow)
            .join(MessageRow, MessageRow.id == ConditionRow.message_id)
            .where(MessageRow.user_id == user_id)
        )
        if active_only:
            stmt = stmt.where(ConditionRow.active.is_(True))
        res = await s.execute(stmt)
        return [_as_dict(c) for c in res.scalars()]


async def count_active_conditions() -> int:
    async for s in get_session():
        res = await s.execute(
            select(func.count()).select_from(ConditionRow).where(ConditionRow.active.is_(True))
        )
        return int(res.scalar_one())


# 5.2 Condition state updates -----------------------------------------
async def update_check_in(condition_id: str, at: datetime, next_check: datetime | None = None):
    values: dict[str, Any] = {"last_checked": at, "updated_at": func.now()}
    if next_check is not None:
        values["next_check"] = next_check
    async for s in get_session():
        await s.execute(
            update(ConditionRow).where(ConditionRow.id == condition_id).values(**values)
        )
        await s.commit()


async def set_next_check(condition_id: str, at: datetime):
    async for s in get_session():
        await s.execute(
            update(ConditionRow)
            .where(ConditionRow.id == condition_id)
            .values(next_check=at, updated_at=func.now())
        )
        await s.commit()


async def deactivate_condition(condition_id: str) -> bool:
    """Compare-and-swap disarm. Returns False when another run got there first."""
    async for s in get_session():
        res = await s.execute(
            update(ConditionRow)
            .where(ConditionRow.id == condition_id, ConditionRow.active.is_(True))
            .values(active=False, updated_at=func.now())
            .returning(ConditionRow.id)
        )
        await s.commit()
        return res.scalar_one_or_none() is not None


# 5.3 Delivery records -------------------------------------------------
async def insert_delivery(record: dict):
    row = DeliveredMessage(
        message_id=record["message_id"],
        condition_id=record.get("condition_id"),
        recipient_id=record.get("recipient_id"),
        delivery_id=record["delivery_id"],
        delivered_at=record.get("delivered_at", datetime.now(timezone.utc)),
        device_info=record.get("device_info"),
    )
    async for s in get_session():
        s.add(row)
        await s.commit()


async def get_delivery_record(message_id: str, delivery_id: str) -> dict | None:
    async for s in get_session():
        res = await s.execute(
            select(DeliveredMessage).where(
                DeliveredMessage.message_id == message_id,
                DeliveredMessage.delivery_id == delivery_id,
            )
        )
        return _as_dict(res.scalar_one_or_none())


async def record_view(
    message_id: str,
    delivery_id: str,
    device_info: str | None = None,
    at: datetime | None = None,
) -> bool:
    async for s in get_session():
        res = await s.execute(
            update(DeliveredMessage)
            .where(
                DeliveredMessage.message_id == message_id,
                DeliveredMessage.delivery_id == delivery_id,
            )
            .values(
                viewed_at=at or datetime.now(timezone.utc),
                viewed_count=DeliveredMessage.viewed_count + 1,
                device_info=device_info,
            )
            .returning(DeliveredMessage.id)
        )
        await s.commit()
        return res.scalar_one_or_none() is not None


# 5.4 Audit log --------------------------------------------------------
async def log_delivery(
    message_id: str,
    channel: str,
    status: str,
    condition_id: str | None = None,
    recipient: str | None = None,
    delivery_id: str | None = None,
    error: str | None = None,
):
    async for s in get_session():
        s.add(DeliveryLog(
            message_id=message_id,
            condition_id=condition_id,
            recipient=recipient,
            delivery_id=delivery_id,
            channel=channel,
            status=status,
            error=error,
        ))
        await s.commit()


async def delivery_log_activity(since: datetime, limit: int = 200) -> list[dict]:
    async for s in get_session():
        stmt = (
            select(DeliveryLog)
            .where(DeliveryLog.created_at >= since)
            .order_by(DeliveryLog.created_at.desc())
            .limit(limit)
        )
        res = await s.execute(stmt)
        return [_as_dict(r) for r in res.scalars()]


# 5.5 Profiles ---------------------------------------------------------
async def find_profile_by_phone(phone: str) -> dict | None:
    async for s in get_session():
        res = await s.execute(select(Profile).where(Profile.phone == phone).limit(1))
        return _as_dict(res.scalar_one_or_none())


# 5.6 Creator reminders ------------------------------------------------
async def fetch_reminder_candidates(condition_types: Iterable[str]) -> list[dict]:
    """Active conditions of the given types with their message and owner."""
    async for s in get_session():
        stmt = (
            select(ConditionRow, MessageRow, Profile)
            .join(MessageRow, MessageRow.id == ConditionRow.message_id)
            .outerjoin(Profile, Profile.id == MessageRow.user_id)
            .where(
                ConditionRow.active.is_(True),
                ConditionRow.condition_type.in_(list(condition_types)),
            )
        )
        res = await s.execute(stmt)
        return [
            {"condition": _as_dict(c), "message": _message_dict(m, p), "owner": _as_dict(p)}
            for c, m, p in res.all()
        ]


async def fetch_sent_reminder_offsets(condition_id: str, deadline: datetime) -> set[int]:
    async for s in get_session():
        res = await s.execute(
            select(SentReminder.offset_minutes).where(
                SentReminder.condition_id == condition_id,
                SentReminder.deadline == deadline,
            )
        )
        return set(res.scalars())


async def record_sent_reminder(
    message_id: str,
    condition_id: str,
    user_id: str,
    deadline: datetime,
    offset_minutes: int,
):
    async for s in get_session():
        s.add(SentReminder(
            message_id=message_id,
            condition_id=condition_id,
            user_id=user_id,
            deadline=deadline,
            offset_minutes=offset_minutes,
        ))
        await s.commit()


async def count_sent_reminders(since: datetime) -> int:
    async for s in get_session():
        res = await s.execute(
            select(func.count()).select_from(SentReminder).where(SentReminder.sent_at >= since)
        )
        return int(res.scalar_one())


async def ping() -> bool:
    async for s in get_session():
        await s.execute(text("SELECT 1"))
        return True


async def dispose_engine():
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_maker = None
