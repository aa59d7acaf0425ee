"""
原料 API 路由
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from mf_core.services import MaterialService
from mf_core.services.catalog_sync import get_catalog_sync
from mf_core.utils.errors import NotFoundError
from mf_core.utils.logger import get_logger
from .models import (
    AdjustmentRequest, ApiResponse, CreateMaterialRequest, SetVariantsRequest, UpdateMaterialRequest
)

router = APIRouter()
logger = get_logger(__name__)


async def get_material_service() -> MaterialService:
    """依赖注入：获取原料服务"""
    return MaterialService(catalog_sync=get_catalog_sync())


@router.post("", response_model=ApiResponse[dict], status_code=201)
async def create_material(
    body: CreateMaterialRequest,
    service: MaterialService = Depends(get_material_service),
):
    """登记原料"""
    material = await service.create_material(
        shop_domain=body.shop_domain,
        name=body.name,
        total_weight=body.total_weight,
        weight_unit=body.weight_unit,
        threshold=body.threshold,
        variants=[variant.model_dump() for variant in body.variants],
    )
    return ApiResponse.success(material)


@router.get("", response_model=ApiResponse[dict])
async def list_materials(
    shop_domain: str = Query(..., min_length=1, description="店铺域名"),
    service: MaterialService = Depends(get_material_service),
):
    """原料列表"""
    materials = await service.list_materials(shop_domain)
    return ApiResponse.success({"items": materials, "total": len(materials)})


@router.get("/{material_id}", response_model=ApiResponse[dict])
async def get_material(
    material_id: int,
    service: MaterialService = Depends(get_material_service),
):
    """原料详情"""
    result = await service.get_material(material_id)
    if not result.success:
        raise NotFoundError(code=result.error_code or "MATERIAL_NOT_FOUND", resource=f"Material {material_id}")
    return ApiResponse.success(result.data)


@router.patch("/{material_id}", response_model=ApiResponse[dict])
async def update_material(
    material_id: int,
    body: UpdateMaterialRequest,
    service: MaterialService = Depends(get_material_service),
):
    """编辑原料"""
    material = await service.update_material(
        material_id,
        name=body.name,
        weight_unit=body.weight_unit,
        threshold=body.threshold,
        clear_threshold=body.clear_threshold,
        total_weight=body.total_weight,
    )
    return ApiResponse.success(material)


@router.put("/{material_id}/variants", response_model=ApiResponse[dict])
async def set_variants(
    material_id: int,
    body: SetVariantsRequest,
    service: MaterialService = Depends(get_material_service),
):
    """替换变体关联"""
    material = await service.set_variant_links(
        material_id, [variant.model_dump() for variant in body.variants]
    )
    return ApiResponse.success(material)


@router.post("/{material_id}/adjustments", response_model=ApiResponse[dict])
async def adjust_material(
    material_id: int,
    body: AdjustmentRequest,
    service: MaterialService = Depends(get_material_service),
):
    """手工调整总重量"""
    outcome = await service.adjust_weight(material_id, body.delta, note=body.note)
    logger.info(
        "Manual adjustment applied",
        material_id=material_id,
        delta=str(body.delta),
        sync_failures=len(outcome.sync_failures),
    )
    return ApiResponse.success(outcome.to_dict())


@router.get("/{material_id}/movements", response_model=ApiResponse[dict])
async def list_movements(
    material_id: int,
    order_id: Optional[str] = Query(None, description="按订单筛选"),
    service: MaterialService = Depends(get_material_service),
):
    """库存流水"""
    movements = await service.list_movements(material_id, order_id=order_id)
    return ApiResponse.success({"items": movements, "total": len(movements)})


@router.get("/{material_id}/audit", response_model=ApiResponse[dict])
async def audit_material(
    material_id: int,
    service: MaterialService = Depends(get_material_service),
):
    """用流水重放校验计数器"""
    return ApiResponse.success(await service.audit_material(material_id))
