"""Coupon definitions issued by sellers and administrators."""
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from auth import Principal
from config import COUPON_ISSUER_ROLES
from database import SessionFactory, transaction, transaction_retry
from errors import ForbiddenError, InvalidStateError, InvalidStateReason, NotFoundError
from monitoring import coupons_created_counter
from records import CouponRecord, CouponType, normalize_coupon_code
from services.repositories import CouponRepository

logger = logging.getLogger(__name__)


class CouponService:
    """Creates and lists coupons. Redemption belongs to checkout."""

    def __init__(self, session_factory: SessionFactory, coupons: Optional[CouponRepository] = None):
        self.session_factory = session_factory
        self.coupons = coupons or CouponRepository()

    @transaction_retry()
    def create_coupon(
        self,
        principal: Principal,
        code: str,
        type: str,
        value: Decimal,
        min_amount: Decimal = Decimal("0"),
        max_discount: Optional[Decimal] = None,
        usage_limit: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ) -> CouponRecord:
        """
        Create a coupon owned by the caller.

        Args:
            principal: Caller, must be a seller or an administrator
            code: Coupon code, stored upper case
            type: percentage or fixed
            value: Percentage (at most 100) or fixed amount
            min_amount: Minimum order subtotal
            max_discount: Cap on the discount of a percentage coupon
            usage_limit: Maximum number of redemptions across all users
            expires_at: Expiry timestamp

        Returns:
            The stored coupon

        Raises:
            ForbiddenError: If the caller may not issue coupons
            InvalidStateError: On an invalid definition or a duplicate code
        """
        if principal.role not in COUPON_ISSUER_ROLES:
            raise ForbiddenError("Only sellers can create coupons")

        normalized = normalize_coupon_code(code)
        if normalized is None:
            raise InvalidStateError(InvalidStateReason.INVALID_REQUEST, "Coupon code is required")

        try:
            coupon_type = CouponType(type)
        except ValueError:
            raise InvalidStateError(InvalidStateReason.INVALID_REQUEST, "Invalid coupon type")

        if value <= 0:
            raise InvalidStateError(InvalidStateReason.INVALID_REQUEST, "Coupon value must be positive")
        if coupon_type == CouponType.PERCENTAGE and value > 100:
            raise InvalidStateError(InvalidStateReason.INVALID_REQUEST, "Percentage discount cannot exceed 100")

        with transaction(self.session_factory) as tx:
            if self.coupons.get_coupon_by_code(tx, normalized) is not None:
                raise InvalidStateError(InvalidStateReason.INVALID_REQUEST, "Coupon code already exists")

            coupon = self.coupons.create_coupon(
                tx,
                code=normalized,
                seller_id=principal.user_id,
                type=coupon_type.value,
                value=value,
                min_amount=min_amount,
                max_discount=max_discount if coupon_type == CouponType.PERCENTAGE else None,
                usage_limit=usage_limit,
                expires_at=expires_at,
            )

        coupons_created_counter.add(1, {"role": principal.role, "type": coupon_type.value})
        logger.info("Coupon created", extra={
            "coupon_id": coupon.id,
            "code": coupon.code,
            "seller_id": principal.user_id
        })
        return coupon

    def list_coupons(self, principal: Principal) -> List[CouponRecord]:
        """Sellers see the coupons they issued; administrators see all of them."""
        if principal.role not in COUPON_ISSUER_ROLES:
            raise ForbiddenError("Only sellers can view coupons")

        seller_id = None if principal.is_privileged else principal.user_id
        with transaction(self.session_factory) as tx:
            return self.coupons.list_coupons(tx, seller_id=seller_id)

    def get_coupon(self, principal: Principal, coupon_id: int) -> CouponRecord:
        """
        Get one coupon visible to the caller.

        Raises:
            ForbiddenError: If the caller may not issue coupons
            NotFoundError: If the coupon does not exist or belongs to another seller
        """
        if principal.role not in COUPON_ISSUER_ROLES:
            raise ForbiddenError("Only sellers can view coupons")

        with transaction(self.session_factory) as tx:
            coupon = self.coupons.get_coupon(tx, coupon_id)
        if coupon is None or not principal.can_access(coupon.seller_id):
            raise NotFoundError("coupon", coupon_id)
        return coupon
