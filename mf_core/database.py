"""
MatFlow 数据库连接和会话管理

生产环境使用 PostgreSQL（asyncpg，READ COMMITTED + 行锁），测试使用 SQLite（aiosqlite）。
账本写入走 get_transaction()，只读查询走 get_session()。
"""
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from mf_core.config import get_settings
from mf_core.models.base import Base
from mf_core.utils.logger import get_logger

logger = get_logger(__name__)


def _install_query_timer(engine: Engine, threshold_ms: int) -> None:
    """超过阈值的 SQL 以 warning 记录（截断语句和参数）"""

    @event.listens_for(engine, "before_cursor_execute")
    def _start(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault("mf_query_started", []).append(time.perf_counter())

    @event.listens_for(engine, "after_cursor_execute")
    def _finish(conn, cursor, statement, parameters, context, executemany):
        started = conn.info.get("mf_query_started")
        if not started:
            return
        duration_ms = (time.perf_counter() - started.pop()) * 1000
        if duration_ms >= threshold_ms:
            logger.warning(
                "Slow query",
                duration_ms=round(duration_ms, 1),
                sql=" ".join(statement.split())[:2000],
                params=str(parameters)[:500],
            )


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    """SQLite 默认不执行外键约束，级联删除需要显式开启"""

    @event.listens_for(engine, "connect")
    def _pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class DatabaseManager:
    """数据库管理器：懒加载引擎与会话工厂"""

    def __init__(self, database_url: Optional[str] = None):
        self.settings = get_settings()
        self.database_url = database_url or self.settings.database_url
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def _engine_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {"echo": self.settings.api_debug, "pool_pre_ping": True}
        if not self.is_sqlite:
            options.update(
                pool_size=self.settings.db_pool_size,
                max_overflow=self.settings.db_max_overflow,
                pool_recycle=3600,
                isolation_level="READ COMMITTED",
            )
        return options

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.database_url, **self._engine_options())
            _install_query_timer(self._engine.sync_engine, self.settings.db_slow_query_ms)
            if self.is_sqlite:
                _enable_sqlite_foreign_keys(self._engine.sync_engine)
            logger.info("Created async database engine", dialect=self._engine.dialect.name)
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker:
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )
        return self._session_factory

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """只读会话；调用方需要写入时自行 commit"""
        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def get_transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """事务会话：正常退出时提交，异常时回滚"""
        async with self.session_factory() as session:
            async with session.begin():
                yield session

    async def create_tables(self) -> None:
        """按模型建表（测试与本地开发；生产使用 Alembic）"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Created all database tables")

    async def check_connection(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception:
            logger.error("Database connection check failed", exc_info=True)
            return False

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Closed async database engine")


_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """获取数据库管理器单例"""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


def set_db_manager(manager: Optional[DatabaseManager]) -> None:
    """替换全局数据库管理器（测试时注入临时库）"""
    global _db_manager
    _db_manager = manager
