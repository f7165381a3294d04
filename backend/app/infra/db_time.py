from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession


def is_sqlite(session: AsyncSession) -> bool:
    bind = session.get_bind()
    return getattr(getattr(bind, "dialect", None), "name", "") == "sqlite"


async def acquire_sqlite_write_lock(session: AsyncSession) -> None:
    if not is_sqlite(session):
        return
    if session.in_transaction():
        return
    await session.execute(sa.text("BEGIN IMMEDIATE"))


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_time(session: AsyncSession, value: datetime) -> datetime:
    """Normalize an instant for comparison against stored timestamps.

    SQLite keeps naive UTC values, Postgres keeps aware ones.
    """
    value = ensure_utc(value)
    if is_sqlite(session):
        return value.replace(tzinfo=None)
    return value


def now_for_db(session: AsyncSession, now: datetime | None = None) -> datetime:
    return to_db_time(session, now or datetime.now(timezone.utc))
