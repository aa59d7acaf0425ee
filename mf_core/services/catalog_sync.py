"""
商品目录同步
把可售判定推送到外部商品目录（可售 = 库存 1，不可售 = 库存 0）。

状态机：ATTEMPTING(n) -> SUCCESS | CONFLICT_RETRY(n+1) | FATAL_FAILURE
重试耗尽为 EXHAUSTED。同步失败只上报，不回滚账本。
"""
import asyncio
import enum
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional, Protocol, Tuple

from mf_core.config import get_settings
from mf_core.utils.errors import (
    CatalogError, CatalogFatalError, CatalogRateLimitError, CatalogTransientError
)
from mf_core.utils.logger import get_logger

logger = get_logger(__name__)

SELLABLE_QUANTITY = 1
UNSELLABLE_QUANTITY = 0


@dataclass(frozen=True)
class InventoryHandle:
    """变体在商品目录中的库存项"""
    inventory_item_id: str
    location_ids: Tuple[str, ...]

    @property
    def location_id(self) -> str:
        if not self.location_ids:
            raise CatalogFatalError(f"No stock location for inventory item {self.inventory_item_id}")
        return self.location_ids[0]


class CatalogClient(Protocol):
    """对账引擎需要的商品目录能力"""

    async def resolve_inventory_handle(self, variant_id: str) -> InventoryHandle: ...

    async def read_inventory_level(self, inventory_item_id: str, location_id: str) -> Optional[int]: ...

    async def activate_inventory_level(self, inventory_item_id: str, location_id: str) -> bool:
        """激活库存级别；已激活返回 False"""
        ...

    async def set_inventory_quantity(
        self,
        inventory_item_id: str,
        location_id: str,
        quantity: int,
        compare_quantity: int,
    ) -> None:
        """比较写入，冲突时抛出 CatalogConflictError"""
        ...

    async def fetch_variant_title(self, variant_id: str) -> Optional[str]: ...


class SyncState(str, enum.Enum):
    ATTEMPTING = "ATTEMPTING"
    CONFLICT_RETRY = "CONFLICT_RETRY"
    SUCCESS = "SUCCESS"
    FATAL_FAILURE = "FATAL_FAILURE"
    EXHAUSTED = "EXHAUSTED"


@dataclass
class SyncResult:
    """一次同步的结果"""
    variant_id: str
    sellable: bool
    state: SyncState
    attempts: int
    error: Optional[str] = None
    written: bool = False

    @property
    def ok(self) -> bool:
        return self.state is SyncState.SUCCESS

    def to_dict(self) -> dict:
        return {
            "variant_id": self.variant_id,
            "sellable": self.sellable,
            "state": self.state.value,
            "attempts": self.attempts,
            "written": self.written,
            "error": self.error,
        }


class CatalogSync:
    """带有界重试的目录同步"""

    def __init__(
        self,
        client: CatalogClient,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = get_settings()
        self.client = client
        self.max_attempts = max_attempts if max_attempts is not None else settings.catalog_retry_max
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.backoff_base = backoff_base if backoff_base is not None else settings.catalog_backoff_base
        self._sleep = sleep

    def backoff_delay(self, attempt: int, error: Optional[CatalogError] = None) -> float:
        """第 attempt 次（从 0 开始）失败后的等待秒数"""
        delay = float(self.backoff_base ** attempt)
        if isinstance(error, CatalogRateLimitError) and error.retry_after:
            delay = max(delay, float(error.retry_after))
        return delay

    async def set_sellable(
        self,
        variant_id: str,
        sellable: bool,
        expected_prior_level: Optional[int] = None,
    ) -> SyncResult:
        """让目录中的可售标记与判定一致

        expected_prior_level 作为第一次比较写入的比较值；冲突后重新读取。
        """
        target = SELLABLE_QUANTITY if sellable else UNSELLABLE_QUANTITY
        handle: Optional[InventoryHandle] = None
        compare = expected_prior_level
        attempt = 0
        state = SyncState.ATTEMPTING

        while True:
            try:
                if handle is None:
                    handle = await self.client.resolve_inventory_handle(variant_id)
                location_id = handle.location_id

                if compare is None:
                    compare = await self.client.read_inventory_level(handle.inventory_item_id, location_id)
                    if compare is None:
                        created = await self.client.activate_inventory_level(
                            handle.inventory_item_id, location_id
                        )
                        logger.info(
                            "Inventory level activated",
                            variant_id=variant_id,
                            inventory_item_id=handle.inventory_item_id,
                            created=created,
                        )
                        compare = await self.client.read_inventory_level(
                            handle.inventory_item_id, location_id
                        ) or 0

                if compare == target:
                    logger.debug("Catalog already in sync", variant_id=variant_id, quantity=target)
                    return SyncResult(variant_id, sellable, SyncState.SUCCESS, attempt + 1)

                await self.client.set_inventory_quantity(
                    handle.inventory_item_id, location_id, target, compare
                )
                logger.info(
                    "Catalog sellable flag updated",
                    variant_id=variant_id,
                    sellable=sellable,
                    quantity=target,
                    compare_quantity=compare,
                    attempts=attempt + 1,
                )
                return SyncResult(variant_id, sellable, SyncState.SUCCESS, attempt + 1, written=True)

            except CatalogTransientError as e:
                attempt += 1
                if attempt >= self.max_attempts:
                    logger.error(
                        "Catalog sync retries exhausted",
                        variant_id=variant_id,
                        sellable=sellable,
                        attempts=attempt,
                        error=str(e),
                    )
                    return SyncResult(variant_id, sellable, SyncState.EXHAUSTED, attempt, error=str(e))

                state = SyncState.CONFLICT_RETRY
                delay = self.backoff_delay(attempt - 1, e)
                logger.warning(
                    "Catalog sync retrying",
                    variant_id=variant_id,
                    state=state.value,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay_seconds=delay,
                    error=str(e),
                )
                await self._sleep(delay)
                # 重新读取比较值
                compare = None

            except CatalogError as e:
                logger.error(
                    "Catalog sync failed",
                    variant_id=variant_id,
                    sellable=sellable,
                    attempts=attempt + 1,
                    error=str(e),
                    user_errors=e.user_errors,
                )
                return SyncResult(variant_id, sellable, SyncState.FATAL_FAILURE, attempt + 1, error=str(e))

            except Exception as e:
                logger.error(
                    "Catalog sync failed unexpectedly",
                    variant_id=variant_id,
                    sellable=sellable,
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                return SyncResult(variant_id, sellable, SyncState.FATAL_FAILURE, attempt + 1, error=str(e))

    async def push(self, verdicts: Iterable[Tuple[str, bool]]) -> List[SyncResult]:
        """依次推送多个 (variant_id, sellable)"""
        results = []
        for variant_id, sellable in verdicts:
            results.append(await self.set_sellable(variant_id, sellable))
        return results


# 全局目录同步实例（未配置商品目录时为 None）
_catalog_sync: Optional[CatalogSync] = None


def get_catalog_sync() -> Optional[CatalogSync]:
    return _catalog_sync


def set_catalog_sync(catalog_sync: Optional[CatalogSync]) -> None:
    """注册目录同步实例（应用启动或测试时调用）"""
    global _catalog_sync
    _catalog_sync = catalog_sync
