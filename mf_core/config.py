"""
MatFlow Configuration Management
环境变量前缀 MF__
"""
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache


class Settings(BaseSettings):
    """全局配置类"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="MF__",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    db_url: Optional[str] = Field(default=None)  # 完整连接串，优先于下面的分项配置
    db_host: str = Field(default="localhost")
    db_port: int = Field(default=5432)
    db_name: str = Field(default="matflow")
    db_user: str = Field(default="matflow")
    db_password: str = Field(default="")
    db_pool_size: int = Field(default=10)
    db_max_overflow: int = Field(default=20)
    db_slow_query_ms: int = Field(default=100)  # 超过该耗时的 SQL 记录告警

    # API Settings
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_prefix: str = Field(default="/api/mf/v1")
    api_title: str = Field(default="MatFlow API")
    api_version: str = Field(default="1.0.0")
    api_debug: bool = Field(default=False)

    # Monitoring
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    # 对账引擎
    catalog_retry_max: int = Field(default=3)
    catalog_backoff_base: float = Field(default=2.0)
    ledger_cas_retry_max: int = Field(default=3)
    commit_topic: str = Field(default="orders/paid")
    webhook_processing_timeout: int = Field(default=300)  # 秒；超时仍为 processing 的投递允许重新处理

    # Shopify 渠道
    shopify_shop_domain: Optional[str] = Field(default=None)
    shopify_access_token: Optional[str] = Field(default=None)
    shopify_api_version: str = Field(default="2025-01")
    shopify_webhook_secret: Optional[str] = Field(default=None)
    shopify_rate_limit: float = Field(default=2.0)  # 每秒请求数
    shopify_timeout: float = Field(default=30.0)

    @field_validator("api_prefix")
    @classmethod
    def validate_api_prefix(cls, v):
        """确保 API 前缀符合规范"""
        if not v.startswith("/api/mf/"):
            raise ValueError("API prefix must start with /api/mf/")
        return v

    @field_validator("catalog_retry_max", "ledger_cas_retry_max")
    @classmethod
    def validate_retry_bound(cls, v):
        if v < 1:
            raise ValueError("Retry bound must be at least 1")
        return v

    @property
    def database_url(self) -> str:
        """构建数据库连接字符串"""
        if self.db_url:
            return self.db_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()
