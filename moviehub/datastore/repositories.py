"""
数据库Repository层 - 封装数据访问逻辑
"""

from datetime import datetime

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from moviehub.datastore.models import FavoriteDB, ResponseCacheDB, UserDB, WatchHistoryDB
from moviehub.services.cache import CacheEntry, CacheStore
from moviehub.services.errors import CacheError
from moviehub.services.recommendations import (
    MediaRef,
    UserProfile,
    UserProfileProvider,
)

_UPSERT_DIALECTS = {"sqlite": sqlite_insert, "postgresql": pg_insert}


def _to_entry(row: ResponseCacheDB) -> CacheEntry:
    return CacheEntry(
        key=row.cache_key,
        payload=row.payload,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


class ResponseCacheRepository(CacheStore):
    """上游响应缓存Repository（按cache_key唯一upsert）"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, key: str, now: datetime) -> CacheEntry | None:
        """获取未过期的缓存"""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(ResponseCacheDB).where(
                        ResponseCacheDB.cache_key == key,
                        ResponseCacheDB.expires_at > now,
                    )
                )
                row = result.scalar_one_or_none()
                return _to_entry(row) if row else None
        except SQLAlchemyError as e:
            raise CacheError(f"Cache read failed: {e}") from e

    async def find_stale(self, key: str) -> CacheEntry | None:
        """获取缓存（不检查过期时间）"""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(ResponseCacheDB).where(ResponseCacheDB.cache_key == key)
                )
                row = result.scalar_one_or_none()
                return _to_entry(row) if row else None
        except SQLAlchemyError as e:
            raise CacheError(f"Cache read failed: {e}") from e

    async def upsert(self, entry: CacheEntry) -> None:
        """写入缓存，key已存在时替换内容和过期时间"""
        values = {
            "cache_key": entry.key,
            "payload": entry.payload,
            "expires_at": entry.expires_at,
            "created_at": entry.created_at,
        }
        try:
            async with self.session_factory() as session:
                dialect = session.get_bind().dialect.name
                insert = _UPSERT_DIALECTS.get(dialect)

                if insert is not None:
                    stmt = insert(ResponseCacheDB).values(**values)
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[ResponseCacheDB.cache_key],
                        set_={
                            "payload": stmt.excluded.payload,
                            "expires_at": stmt.excluded.expires_at,
                            "created_at": stmt.excluded.created_at,
                        },
                    )
                    await session.execute(stmt)
                else:
                    await self._select_then_write(session, values)

                await session.commit()
        except SQLAlchemyError as e:
            raise CacheError(f"Cache write failed: {e}") from e

    async def _select_then_write(self, session: AsyncSession, values: dict) -> None:
        """不支持ON CONFLICT的数据库：先查后写"""
        existing = await session.execute(
            select(ResponseCacheDB).where(
                ResponseCacheDB.cache_key == values["cache_key"]
            )
        )
        cached = existing.scalar_one_or_none()
        if cached:
            cached.payload = values["payload"]
            cached.expires_at = values["expires_at"]
            cached.created_at = values["created_at"]
        else:
            session.add(ResponseCacheDB(**values))

    async def delete_expired(self, now: datetime) -> int:
        """清理过期的缓存"""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    delete(ResponseCacheDB).where(ResponseCacheDB.expires_at <= now)
                )
                await session.commit()
                deleted = result.rowcount or 0
        except SQLAlchemyError as e:
            raise CacheError(f"Cache sweep failed: {e}") from e

        if deleted > 0:
            logger.debug(f"Cleaned up {deleted} expired response cache entries")
        return deleted


class UserProfileRepository(UserProfileProvider):
    """用户资料Repository（收藏与观看历史，只读）"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_profile(self, user_id: str) -> UserProfile | None:
        """按添加顺序读取用户的收藏和观看历史"""
        async with self.session_factory() as session:
            user = await session.get(UserDB, user_id)
            if user is None:
                return None

            favorites = await session.execute(
                select(FavoriteDB)
                .where(FavoriteDB.user_id == user_id)
                .order_by(FavoriteDB.added_at, FavoriteDB.id)
            )
            history = await session.execute(
                select(WatchHistoryDB)
                .where(WatchHistoryDB.user_id == user_id)
                .order_by(WatchHistoryDB.watched_at, WatchHistoryDB.id)
            )

            return UserProfile(
                user_id=user_id,
                favorites=[
                    MediaRef(item_id=f.item_id, media_type=f.media_type)
                    for f in favorites.scalars().all()
                ],
                watch_history=[
                    MediaRef(item_id=w.item_id, media_type=w.media_type)
                    for w in history.scalars().all()
                ],
            )
