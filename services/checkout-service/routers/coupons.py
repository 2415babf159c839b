"""Coupons API router."""
from fastapi import APIRouter, Depends, Path

from auth import Principal, get_current_principal
from dependencies import get_coupon_service
from schemas import (
    CouponCreatedResponse,
    CouponDetailResponse,
    CouponListResponse,
    CouponResponse,
    CreateCouponRequest,
)
from services.coupon_service import CouponService

router = APIRouter(prefix="/coupons", tags=["coupons"])


@router.post("", response_model=CouponCreatedResponse, status_code=201)
def create_coupon(
    request: CreateCouponRequest,
    principal: Principal = Depends(get_current_principal),
    coupon_service: CouponService = Depends(get_coupon_service)
):
    """Create a coupon - sellers and administrators only."""
    coupon = coupon_service.create_coupon(
        principal,
        code=request.code,
        type=request.type,
        value=request.value,
        min_amount=request.min_amount,
        max_discount=request.max_discount,
        usage_limit=request.usage_limit,
        expires_at=request.expires_at,
    )
    return CouponCreatedResponse(
        message="Coupon created successfully",
        data={"coupon": CouponResponse.from_record(coupon)},
    )


@router.get("", response_model=CouponListResponse)
def get_coupons(
    principal: Principal = Depends(get_current_principal),
    coupon_service: CouponService = Depends(get_coupon_service)
):
    """List coupons visible to the caller - sellers and administrators only."""
    coupons = coupon_service.list_coupons(principal)
    return CouponListResponse(data={"coupons": [CouponResponse.from_record(c) for c in coupons]})


@router.get("/{coupon_id}", response_model=CouponDetailResponse)
def get_coupon(
    coupon_id: int = Path(..., description="Coupon ID"),
    principal: Principal = Depends(get_current_principal),
    coupon_service: CouponService = Depends(get_coupon_service)
):
    """Get one of the caller's coupons - administrators may read any coupon."""
    coupon = coupon_service.get_coupon(principal, coupon_id)
    return CouponDetailResponse(data={"coupon": CouponResponse.from_record(coupon)})
