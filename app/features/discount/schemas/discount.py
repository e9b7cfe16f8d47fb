import enum
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import Field

from app.features.discount.models.discount_code import AppliesTo, DiscountSource, DiscountType
from app.platform.schemas import CamelModel


class RejectionReason(str, enum.Enum):
    unknown_code = "unknown_code"
    inactive = "inactive"
    not_started = "not_started"
    expired = "expired"
    max_uses_reached = "max_uses_reached"
    user_limit_reached = "user_limit_reached"
    below_min_purchase = "below_min_purchase"
    not_applicable = "not_applicable"


REJECTION_MESSAGES = {
    RejectionReason.unknown_code: "Invalid discount code",
    RejectionReason.inactive: "Discount code is no longer active",
    RejectionReason.not_started: "Discount code is not valid yet",
    RejectionReason.expired: "Discount code has expired",
    RejectionReason.max_uses_reached: "Discount code has reached maximum uses",
    RejectionReason.user_limit_reached: "You have already used this discount code",
    RejectionReason.below_min_purchase: "Minimum purchase not reached",
    RejectionReason.not_applicable: "Discount code does not apply to this purchase",
}


class ProductContext(CamelModel):
    """What is being bought, for ``applies_to`` checks."""
    product_type: Optional[str] = None  # lifetime, subscription, credits
    product_id: Optional[str] = None
    # Price of the granted period for free_month / free_trial codes
    period_price: Optional[Decimal] = Field(default=None, ge=0)


class DiscountCodeCreate(CamelModel):
    code: Optional[str] = None  # generated when omitted
    name: Optional[str] = None
    description: Optional[str] = None
    type: DiscountType = DiscountType.percent
    value: Decimal = Field(default=Decimal("0"), ge=0)
    applies_to: AppliesTo = AppliesTo.all
    applies_to_products: Optional[List[str]] = None
    source: DiscountSource = DiscountSource.admin
    max_uses: Optional[int] = Field(default=None, ge=0)
    max_uses_per_user: int = Field(default=1, ge=1)
    min_purchase: Optional[Decimal] = Field(default=None, ge=0)
    max_discount: Optional[Decimal] = Field(default=None, ge=0)
    is_active: bool = True
    is_public: bool = False
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_by: Optional[str] = None


class DiscountCodeUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    value: Optional[Decimal] = Field(default=None, ge=0)
    applies_to: Optional[AppliesTo] = None
    applies_to_products: Optional[List[str]] = None
    max_uses: Optional[int] = Field(default=None, ge=0)
    max_uses_per_user: Optional[int] = Field(default=None, ge=1)
    min_purchase: Optional[Decimal] = Field(default=None, ge=0)
    max_discount: Optional[Decimal] = Field(default=None, ge=0)
    is_active: Optional[bool] = None
    is_public: Optional[bool] = None
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class DiscountCodeResponse(CamelModel):
    id: str
    code: str
    name: Optional[str] = None
    type: DiscountType
    value: Decimal
    applies_to: AppliesTo
    source: DiscountSource
    max_uses: Optional[int] = None
    max_uses_per_user: int
    current_uses: int
    min_purchase: Optional[Decimal] = None
    max_discount: Optional[Decimal] = None
    is_active: bool
    is_public: bool
    referral_reward_id: Optional[str] = None
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class DiscountValidation(CamelModel):
    valid: bool
    reason: Optional[RejectionReason] = None
    message: Optional[str] = None
    discount_code: Optional[DiscountCodeResponse] = None
    discount_amount: Optional[Decimal] = None
    final_amount: Optional[Decimal] = None

    @classmethod
    def reject(cls, reason: RejectionReason, discount_code=None) -> "DiscountValidation":
        return cls(
            valid=False,
            reason=reason,
            message=REJECTION_MESSAGES[reason],
            discount_code=discount_code,
        )


class DiscountApplication(CamelModel):
    success: bool
    final_amount: Decimal
    discount_amount: Decimal
    reason: Optional[RejectionReason] = None
    message: Optional[str] = None
    usage_id: Optional[str] = None


class DiscountUsageResponse(CamelModel):
    id: str
    discount_code_id: str
    user_id: str
    order_id: Optional[str] = None
    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    product_type: Optional[str] = None
    product_id: Optional[str] = None
    applied_at: datetime
