"""
服务基类
事务/会话执行、冲突重试、按主键加锁读取
"""
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Optional, Tuple, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mf_core.utils.logger import get_logger
from mf_core.utils.errors import MatFlowException, InternalServerError
from mf_core.database import DatabaseManager, get_db_manager

T = TypeVar('T')
ModelT = TypeVar('ModelT')


def _operation_name(operation) -> str:
    return getattr(operation, "__qualname__", None) or repr(operation)


@dataclass
class ServiceResult(Generic[T]):
    """读操作结果：成功带数据，失败带错误码"""
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: T) -> "ServiceResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, error_code: Optional[str] = None) -> "ServiceResult[T]":
        return cls(success=False, error=error, error_code=error_code)


class BaseService:
    """服务基类

    operation 的第一个参数总是会话。业务异常（MatFlowException）原样抛出，
    其余数据库异常记录后包装为 InternalServerError。
    """

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        self.db_manager = db_manager or get_db_manager()
        self.logger = get_logger(self.__class__.__name__)

    async def execute_with_transaction(self, operation, *args, **kwargs) -> Any:
        """在事务中执行，正常返回时提交，异常时回滚"""
        try:
            async with self.db_manager.get_transaction() as session:
                return await operation(session, *args, **kwargs)
        except MatFlowException:
            raise
        except Exception as e:
            self.logger.error("Transaction failed", operation=_operation_name(operation), exc_info=True)
            raise InternalServerError(
                code="TRANSACTION_FAILED",
                detail=f"Database transaction failed: {e}"
            )

    async def execute_with_session(self, operation, *args, **kwargs) -> Any:
        """只读查询"""
        try:
            async with self.db_manager.get_session() as session:
                return await operation(session, *args, **kwargs)
        except MatFlowException:
            raise
        except Exception as e:
            self.logger.error("Query failed", operation=_operation_name(operation), exc_info=True)
            raise InternalServerError(
                code="SESSION_OPERATION_FAILED",
                detail=f"Database query failed: {e}"
            )

    async def execute_with_retry(
        self,
        operation,
        *args,
        retry_on: Tuple[Type[Exception], ...],
        attempts: int,
        log_fields: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """事务抛出 retry_on 时整体重来（重新读取），最多 attempts 次，之后抛出最后一次的异常"""
        for attempt in range(1, attempts + 1):
            try:
                return await self.execute_with_transaction(operation, *args)
            except retry_on:
                if attempt >= attempts:
                    raise
                self.logger.warning(
                    "Transaction conflict, retrying",
                    operation=_operation_name(operation),
                    attempt=attempt,
                    max_attempts=attempts,
                    **(log_fields or {}),
                )


class RepositoryMixin:
    """常用查询"""

    async def get_by_id(
        self,
        session: AsyncSession,
        model_class: Type[ModelT],
        record_id: int,
        lock: bool = False,
    ) -> Optional[ModelT]:
        """按主键读取；lock=True 时加行锁并刷新会话中的旧值"""
        if not lock:
            return await session.get(model_class, record_id)
        stmt = (
            select(model_class)
            .where(model_class.id == record_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def get_many_by_field(
        self,
        session: AsyncSession,
        model_class: Type[ModelT],
        field_name: str,
        field_value: Any,
    ) -> List[ModelT]:
        """按字段取多条，按主键排序"""
        stmt = (
            select(model_class)
            .where(getattr(model_class, field_name) == field_value)
            .order_by(model_class.id)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())
