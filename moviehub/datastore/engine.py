"""
数据库引擎配置和管理
使用SQLAlchemy异步引擎连接数据库（默认SQLite）
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from moviehub.datastore.models import Base
from moviehub.settings import global_settings

# 全局数据库引擎实例
engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


async def init_db(database_url: str | None = None) -> None:
    """初始化数据库连接和表结构"""
    global engine, AsyncSessionLocal

    # 创建异步引擎
    engine = create_async_engine(
        database_url or global_settings.database_url,
        echo=global_settings.database_echo,
        future=True,
    )

    # 创建会话工厂
    AsyncSessionLocal = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    # 创建所有表
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """关闭数据库连接"""
    global engine, AsyncSessionLocal
    if engine:
        await engine.dispose()
    engine = None
    AsyncSessionLocal = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """获取会话工厂（缓存、用户资料等长生命周期组件使用）"""
    if AsyncSessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return AsyncSessionLocal
