from __future__ import annotations

from datetime import datetime, timezone
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from marketplace.core.config import DATABASE_ECHO, DATABASE_URL


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    # Datas gravadas sem tzinfo, sempre em UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def build_engine(url: str = DATABASE_URL, **kwargs):
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"timeout": 15})
    return create_async_engine(url, echo=DATABASE_ECHO, **kwargs)


def build_session_factory(bind) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, expire_on_commit=False, autoflush=False)


engine = build_engine()
SessionLocal = build_session_factory(engine)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as db:
        yield db
