"""
Order Service — データベース接続

本番は PostgreSQL (postgresql+asyncpg://)、ローカル開発とテストは
SQLite (sqlite+aiosqlite://) を使う。どちらも AsyncSession 経由で扱う。
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from .models import Base


def build_engine(database_url: str) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        # SQLite はファイルを開くだけなので接続をプールしない
        return create_async_engine(database_url, echo=False, poolclass=NullPool)
    return create_async_engine(database_url, echo=False, pool_pre_ping=True)


def build_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する。"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
