"""
数据库引擎与表结构

职责：
- 根据 `Settings.database_url` 创建异步数据库引擎
- 提供 `ensure_schema` 幂等建表（启动时调用，与 Alembic 迁移 0001 保持一致）
"""
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine


def make_engine(database_url: str) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url)
    return create_async_engine(database_url, pool_pre_ping=True)


async def ensure_schema(engine: AsyncEngine):
    async with engine.begin() as conn:
        await conn.exec_driver_sql(
            """
            CREATE TABLE IF NOT EXISTS documents (
              id VARCHAR(64) PRIMARY KEY,
              collection TEXT NOT NULL,
              data TEXT NOT NULL,
              created_at BIGINT NOT NULL
            )
            """
        )
        await conn.exec_driver_sql(
            "CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents (collection)"
        )
