import hashlib
import hmac
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .access_code_service import AccessCodeService
from .coupon_service import CouponService
from .errors import ErrorKind, ServiceError
from .logging_config import get_logger, setup_logging
from .models import (
    AccessCode, AccessCodeDetails, AccessCodeFilter, AccessCodePage, AccessCodeRedemption,
    AccessCodeStats, AccessCodeValidation, Coupon, CouponFilter, CouponPage, CouponStats,
    CreateAccessCodeRequest, IssueCouponRequest, RedeemAccessCodeRequest, RedeemCouponRequest,
    RedemptionResult, Role, ToggleResponse, UserAccessSummary,
)
from .settings import Settings, settings as default_settings
from .storage import InMemoryStorage

logger = get_logger(__name__)


def build_storage(app_settings: Settings):
    if app_settings.storage_backend == "mongo":
        from .mongo import MongoStorage
        return MongoStorage.from_settings(app_settings)
    return InMemoryStorage()


def get_coupon_service(request: Request) -> CouponService:
    return request.app.state.coupon_service


def get_access_code_service(request: Request) -> AccessCodeService:
    return request.app.state.access_code_service


def require_admin(
    request: Request,
    x_admin_key: Optional[str] = Header(default=None),
    admin_key: Optional[str] = Query(default=None),
) -> str:
    key = x_admin_key or admin_key
    if not key:
        raise ServiceError(ErrorKind.UNAUTHORIZED, "Authentication required")

    app_settings: Settings = request.app.state.settings
    if app_settings.env in ("development", "test") and app_settings.admin_key:
        if hmac.compare_digest(key, app_settings.admin_key):
            return "admin"

    if not app_settings.admin_key_hash:
        logger.error("admin_key_hash_missing")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Server configuration error")

    hashed = hashlib.sha256(key.encode("utf-8")).hexdigest()
    if hmac.compare_digest(hashed, app_settings.admin_key_hash):
        return "admin"
    raise ServiceError(ErrorKind.FORBIDDEN, "Invalid authentication credentials")


router = APIRouter()
admin_router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "codeledger"}


@router.post("/coupon", response_model=Coupon, status_code=status.HTTP_201_CREATED, tags=["Coupons"])
def issue_coupon(request: IssueCouponRequest, service: CouponService = Depends(get_coupon_service)) -> Coupon:
    return service.issue_coupon(request)


@router.get("/coupon", response_model=Coupon, tags=["Coupons"])
def get_coupon(owner_id: str, service: CouponService = Depends(get_coupon_service)) -> Coupon:
    return service.get_coupon(owner_id)


@router.post("/redeem", response_model=RedemptionResult, tags=["Coupons"])
def redeem_coupon(
    request: RedeemCouponRequest, service: CouponService = Depends(get_coupon_service)
) -> RedemptionResult:
    return service.redeem_coupon(request)


@router.get("/access-code/validate/{code}", response_model=AccessCodeValidation, tags=["Access Codes"])
def validate_access_code(
    code: str, service: AccessCodeService = Depends(get_access_code_service)
) -> AccessCodeValidation:
    return service.validate_access_code(code)


@router.post("/access-code/redeem", response_model=AccessCodeRedemption, tags=["Access Codes"])
def redeem_access_code(
    request: RedeemAccessCodeRequest, service: AccessCodeService = Depends(get_access_code_service)
) -> AccessCodeRedemption:
    return service.redeem_access_code(request)


@router.get("/access-code/user/{username}", response_model=UserAccessSummary, tags=["Access Codes"])
def get_user_access(
    username: str, service: AccessCodeService = Depends(get_access_code_service)
) -> UserAccessSummary:
    return service.get_usage_by_user(username)


@admin_router.get("/coupons", response_model=CouponPage, tags=["Admin"])
def list_coupons(
    page: int = 1,
    limit: int = 20,
    role: Optional[Role] = None,
    min_followers: Optional[int] = None,
    display_name: Optional[str] = None,
    service: CouponService = Depends(get_coupon_service),
) -> CouponPage:
    coupon_filter = CouponFilter(role=role, min_followers=min_followers, display_name=display_name)
    return service.list_coupons(coupon_filter, page, limit)


@admin_router.get("/stats", response_model=CouponStats, tags=["Admin"])
def coupon_stats(service: CouponService = Depends(get_coupon_service)) -> CouponStats:
    return service.get_stats()


@admin_router.delete("/coupon/{coupon_id}", tags=["Admin"])
def delete_coupon(coupon_id: UUID, service: CouponService = Depends(get_coupon_service)):
    service.delete_coupon(coupon_id)
    return {"status": "success", "message": "Coupon deleted successfully"}


@admin_router.post(
    "/access-code", response_model=AccessCode, status_code=status.HTTP_201_CREATED, tags=["Admin"]
)
def create_access_code(
    request: CreateAccessCodeRequest,
    admin_id: str = Depends(require_admin),
    service: AccessCodeService = Depends(get_access_code_service),
) -> AccessCode:
    return service.create_access_code(request, created_by=admin_id)


@admin_router.get("/access-codes", response_model=AccessCodePage, tags=["Admin"])
def list_access_codes(
    page: int = 1,
    limit: int = 20,
    active: Optional[bool] = None,
    expired: Optional[bool] = None,
    code: Optional[str] = None,
    service: AccessCodeService = Depends(get_access_code_service),
) -> AccessCodePage:
    code_filter = AccessCodeFilter(active=active, expired=expired, code=code)
    return service.list_access_codes(code_filter, page, limit)


@admin_router.get("/access-code/{code}", response_model=AccessCodeDetails, tags=["Admin"])
def get_access_code(code: str, service: AccessCodeService = Depends(get_access_code_service)) -> AccessCodeDetails:
    return service.get_access_code_details(code)


@admin_router.patch("/access-code/{code}/deactivate", response_model=ToggleResponse, tags=["Admin"])
def deactivate_access_code(
    code: str, service: AccessCodeService = Depends(get_access_code_service)
) -> ToggleResponse:
    return service.deactivate_access_code(code)


@admin_router.patch("/access-code/{code}/activate", response_model=ToggleResponse, tags=["Admin"])
def reactivate_access_code(
    code: str, service: AccessCodeService = Depends(get_access_code_service)
) -> ToggleResponse:
    return service.reactivate_access_code(code)


@admin_router.delete("/access-code/{code}", tags=["Admin"])
def delete_access_code(code: str, service: AccessCodeService = Depends(get_access_code_service)):
    service.delete_access_code(code)
    return {"status": "success", "message": "Access code deleted successfully"}


@admin_router.get("/access-code-stats", response_model=AccessCodeStats, tags=["Admin"])
def access_code_stats(service: AccessCodeService = Depends(get_access_code_service)) -> AccessCodeStats:
    return service.get_stats()


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.kind.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"] if part != "body")
        problems.append(f"{field}: {error['msg']}" if field else error["msg"])
    return await service_error_handler(request, ServiceError.invalid_input("; ".join(problems)))


def create_app(storage=None, app_settings: Optional[Settings] = None, root_path: str = "") -> FastAPI:
    app_settings = app_settings or default_settings
    setup_logging(app_settings.log_level, app_settings.log_format)
    storage = storage if storage is not None else build_storage(app_settings)

    app = FastAPI(
        title="Coupon & Access Code Ledger API",
        description="Referral coupons with one-time cross-user redemption, plus quota-limited beta access codes",
        version="1.0.0",
        root_path=root_path,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in app_settings.allowed_origins.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = app_settings
    app.state.coupon_service = CouponService(storage, reward_points=app_settings.redemption_reward_points)
    app.state.access_code_service = AccessCodeService(storage)

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)
    app.include_router(admin_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
