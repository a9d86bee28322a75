"""
数据库引擎与会话工厂

对账依赖条件更新与唯一约束来裁决并发，所以所有写入都走同一个引擎；
会话只通过 SQLAlchemyUnitOfWork 使用，不直接暴露给路由层。
"""
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from core.config import settings
from infrastructure.models import Base


_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def _build_async_url(database_url: str) -> str:
    """确保数据库URL使用异步驱动"""
    url = make_url(database_url)
    if "+" in url.drivername:
        return database_url
    if url.drivername not in _ASYNC_DRIVERS:
        raise ValueError(f"不支持的数据库驱动: {url.drivername}. 请使用 async 驱动或更新 DATABASE__URL")
    return url.set(drivername=_ASYNC_DRIVERS[url.drivername]).render_as_string(hide_password=False)


def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    async_url = _build_async_url(database_url)
    if async_url.startswith("sqlite"):
        # SQLite 仅用于本地与测试，不设置连接池参数
        return create_async_engine(async_url, echo=echo)
    return create_async_engine(async_url, echo=echo, pool_pre_ping=True)


engine = build_engine(settings.database.url, echo=settings.database.echo)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
)


async def create_tables():
    """
    创建所有表（仅开发环境）

    生产环境使用 alembic/versions 中的迁移。
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
