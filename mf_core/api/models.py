"""
API 请求/响应模型
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional, Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar('T')


class ApiResponse(BaseModel, Generic[T]):
    """统一 API 响应格式"""
    ok: bool = Field(description="操作是否成功")
    data: Optional[T] = Field(default=None, description="响应数据")
    error: Optional[Dict[str, Any]] = Field(default=None, description="错误信息（RFC7807 Problem Details）")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="元数据")

    @classmethod
    def success(cls, data: T, metadata: Optional[Dict[str, Any]] = None) -> "ApiResponse[T]":
        """创建成功响应"""
        return cls(ok=True, data=data, metadata=metadata)


# 原料相关模型
class VariantLinkRequest(BaseModel):
    """变体关联"""
    variant_id: str = Field(description="商品变体ID（数字或 GID）")
    variant_name: Optional[str] = Field(default=None, description="显示名称，留空时从商品目录读取")
    consumption_requirement: Decimal = Field(ge=0, description="每件消耗重量")
    requirement_unit: str = Field(default="kg", description="消耗量单位 kg/g/lb/oz")


class CreateMaterialRequest(BaseModel):
    """登记原料请求"""
    shop_domain: str = Field(min_length=1, description="店铺域名")
    name: str = Field(min_length=1, max_length=200, description="原料名称")
    total_weight: Decimal = Field(ge=0, description="初始总重量")
    weight_unit: str = Field(default="kg", description="重量单位")
    threshold: Optional[Decimal] = Field(default=None, ge=0, description="低库存阈值")
    variants: List[VariantLinkRequest] = Field(default_factory=list)


class UpdateMaterialRequest(BaseModel):
    """编辑原料请求；total_weight 变化按调整记账"""
    name: Optional[str] = Field(default=None, max_length=200)
    weight_unit: Optional[str] = None
    threshold: Optional[Decimal] = Field(default=None, ge=0)
    clear_threshold: bool = Field(default=False, description="清除低库存阈值")
    total_weight: Optional[Decimal] = Field(default=None, ge=0)


class SetVariantsRequest(BaseModel):
    """替换变体关联"""
    variants: List[VariantLinkRequest]


class AdjustmentRequest(BaseModel):
    """手工调整（正数入库，负数扣减）"""
    delta: Decimal = Field(description="带符号的重量变化")
    note: Optional[str] = Field(default=None, max_length=500)
