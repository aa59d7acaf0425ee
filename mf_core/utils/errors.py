"""
MatFlow 错误体系
HTTP 层错误以 RFC7807 Problem Details 返回，包在 {"ok": false, "error": ...} 中。
账本错误是 409 冲突的子类；商品目录错误不走 HTTP，由 CatalogSync 按 transient 决定是否重试。
"""
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict


class ProblemDetail(BaseModel):
    """Problem Details 载荷；业务附加字段原样保留"""
    model_config = ConfigDict(extra="allow")

    type: str = "about:blank"
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
    code: Optional[str] = None


def _jsonable(value: Any) -> Any:
    # 重量一律以字符串输出，避免浮点误差
    return str(value) if isinstance(value, Decimal) else value


class MatFlowException(Exception):
    """带状态码与业务错误码的异常基类"""

    def __init__(self, status: int, code: str, title: str, detail: Optional[str] = None, **extra: Any):
        self.status = status
        self.code = code
        self.title = title
        self.detail = detail
        self.extra = extra
        super().__init__(detail or title)

    def to_problem_detail(self, instance: Optional[str] = None) -> ProblemDetail:
        payload = {key: _jsonable(value) for key, value in self.extra.items()}
        payload.update(title=self.title, status=self.status, detail=self.detail, instance=instance, code=self.code)
        return ProblemDetail.model_validate(payload)

    def to_response(self, request: Optional[Request] = None) -> JSONResponse:
        problem = self.to_problem_detail(str(request.url) if request is not None else None)
        return JSONResponse(
            status_code=self.status,
            content={"ok": False, "error": problem.model_dump(exclude_none=True)},
        )


class HTTPProblem(MatFlowException):
    """固定状态码的错误；子类只声明 status、title 与默认错误码"""

    status_code = 500
    default_title = "Internal Server Error"
    default_code = "INTERNAL_ERROR"
    default_detail: Optional[str] = None

    def __init__(self, code: Optional[str] = None, detail: Optional[str] = None, **extra: Any):
        super().__init__(
            status=self.status_code,
            code=code or self.default_code,
            title=self.default_title,
            detail=detail or self.default_detail,
            **extra,
        )


class BadRequestError(HTTPProblem):
    status_code = 400
    default_title = "Bad Request"
    default_code = "BAD_REQUEST"


class UnauthorizedError(HTTPProblem):
    status_code = 401
    default_title = "Unauthorized"
    default_code = "UNAUTHORIZED"
    default_detail = "Authentication required"


class NotFoundError(HTTPProblem):
    status_code = 404
    default_title = "Not Found"
    default_code = "NOT_FOUND"

    def __init__(self, code: Optional[str] = None, resource: str = "Resource", **extra: Any):
        super().__init__(code=code, detail=f"{resource} not found", **extra)


class ConflictError(HTTPProblem):
    status_code = 409
    default_title = "Conflict"
    default_code = "CONFLICT"


class ValidationError(HTTPProblem):
    """输入不合法（负重量、未知单位、缺少字段等）"""
    status_code = 422
    default_title = "Validation Failed"
    default_code = "VALIDATION_ERROR"


class InternalServerError(HTTPProblem):
    default_detail = "An internal error occurred"


# 账本错误
class LedgerError(ConflictError):
    """账本状态迁移被拒绝"""


class InvariantViolation(LedgerError):
    """迁移会破坏 0 <= weight_committed <= total_weight"""
    default_code = "LEDGER_INVARIANT_VIOLATION"

    def __init__(self, detail: str, **extra: Any):
        super().__init__(detail=detail, **extra)


class DataIntegrityError(LedgerError):
    """上游记账错误（例如重复投递的取消事件导致承诺重量为负）"""
    default_code = "LEDGER_DATA_INTEGRITY"

    def __init__(self, detail: str, **extra: Any):
        super().__init__(detail=detail, **extra)


class ConcurrentLedgerUpdate(LedgerError):
    """比较写入失败：读取之后该原料的计数器已被其他事务修改"""
    default_code = "LEDGER_CONCURRENT_UPDATE"

    def __init__(self, material_id: int):
        super().__init__(detail=f"Material {material_id} was modified concurrently", material_id=material_id)


# 外部商品目录错误
class CatalogError(Exception):
    """商品目录调用失败"""

    transient = False

    def __init__(self, message: str, user_errors: Optional[list] = None):
        self.user_errors = user_errors or []
        super().__init__(message)


class CatalogTransientError(CatalogError):
    """可重试错误（并发冲突、限流）"""

    transient = True


class CatalogConflictError(CatalogTransientError):
    """比较数量不一致（并发修改）"""


class CatalogRateLimitError(CatalogTransientError):
    """触发限流"""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class CatalogFatalError(CatalogError):
    """不可重试错误（请求格式错误、缺少库存项、权限不足）"""


def problem_payload(exc: MatFlowException) -> Dict[str, Any]:
    """用于事件处理结果中的错误摘要"""
    return {"code": exc.code, "detail": exc.detail}
