"""
MatFlow 日志
structlog 业务日志与标准 logging（uvicorn、SQLAlchemy、httpx）共用同一条处理链，
输出一行一个 JSON 对象。

每条记录自动带上当前上下文：trace_id（HTTP 请求）、shop_domain、event_id（Webhook 投递）、
material_id（账本事务）。Shopify 令牌与 Webhook 密钥在输出前脱敏。
"""
import logging
import re
import sys
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

CONTEXT_FIELDS = ("trace_id", "shop_domain", "event_id", "material_id")

_context_vars: Dict[str, ContextVar] = {
    name: ContextVar(f"mf_{name}", default=None) for name in CONTEXT_FIELDS
}


class SecretMaskingProcessor:
    """令牌、密钥、签名脱敏"""

    PATTERNS = [
        # Shopify Admin API 访问令牌
        (re.compile(r"shp(at|ss|ca|pa)_[0-9a-zA-Z]{6,}"), r"shp\1_***"),
        (re.compile(r"(access_token|webhook_secret|hmac|secret|password)([\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I),
         r"\1\2***"),
    ]
    SENSITIVE_KEYS = {"access_token", "shopify_access_token", "webhook_secret", "hmac", "signature", "password"}

    def __call__(self, logger, method_name, event_dict):
        return {key: self._mask(key, value) for key, value in event_dict.items()}

    def _mask(self, key: str, value: Any) -> Any:
        if key.lower() in self.SENSITIVE_KEYS and value:
            return "***"
        if isinstance(value, str):
            for pattern, replacement in self.PATTERNS:
                value = pattern.sub(replacement, value)
            return value
        if isinstance(value, dict):
            return {k: self._mask(str(k), v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._mask(key, item) for item in value]
        return value


def add_context_fields(logger, method_name, event_dict):
    """合并上下文变量；调用方显式传入的字段优先"""
    for name, var in _context_vars.items():
        value = var.get()
        if value is not None:
            event_dict.setdefault(name, value)
    return event_dict


def _shared_processors(enable_masking: bool) -> List[Any]:
    processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        add_context_fields,
    ]
    if enable_masking:
        processors.append(SecretMaskingProcessor())
    return processors


def setup_logging(log_level: str = "INFO", log_format: str = "json", enable_masking: bool = True) -> None:
    """配置日志（应用启动时调用一次）"""
    level = getattr(logging, log_level.upper())
    shared = _shared_processors(enable_masking)

    if log_format == "json":
        renderer = [
            structlog.processors.format_exc_info,
            structlog.processors.EventRenamer("action"),
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer = [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=shared + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderer],
    ))

    root_logger = logging.getLogger()
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # 第三方库只保留警告以上
    for name in ("httpx", "httpcore", "asyncio", "uvicorn.access", "sqlalchemy.engine", "aiosqlite"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class LogContext:
    """设置日志上下文，退出时恢复

        with LogContext(shop_domain=shop, event_id=webhook_id):
            ...
    """

    def __init__(self, **fields: Optional[Any]):
        unknown = set(fields) - set(CONTEXT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown log context fields: {sorted(unknown)}")
        self.fields = {name: value for name, value in fields.items() if value is not None}
        self._tokens = []

    def __enter__(self):
        for name, value in self.fields.items():
            self._tokens.append(_context_vars[name].set(value))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for token in reversed(self._tokens):
            token.var.reset(token)
        self._tokens = []
