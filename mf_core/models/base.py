"""
ORM 基类
时间列一律带时区（UTC），重量列为 Numeric，序列化时重量输出字符串。
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import BigInteger, DateTime, Integer
from sqlalchemy.orm import DeclarativeBase

# SQLite 只对 INTEGER PRIMARY KEY 自增
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


def _column_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class Base(DeclarativeBase):
    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }

    def to_dict(self) -> Dict[str, Any]:
        """按列导出（审计流水接口使用）"""
        return {column.key: _column_value(getattr(self, column.key)) for column in self.__table__.columns}
