import enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    event,
)

from app.platform.db.base import BaseModel
from app.platform.exceptions import InvalidTransitionError


class DiscountType(enum.Enum):
    percent = "percent"
    fixed = "fixed"
    free_month = "free_month"
    free_trial = "free_trial"


# Benefits whose amount is the price of a granted period, resolved by the caller
PERIOD_BENEFITS = (DiscountType.free_month, DiscountType.free_trial)


class AppliesTo(enum.Enum):
    all = "all"
    lifetime = "lifetime"
    subscription = "subscription"
    credits = "credits"


class DiscountSource(enum.Enum):
    referral = "referral"
    admin = "admin"
    campaign = "campaign"
    partner = "partner"


class DiscountCode(BaseModel):
    """
    A redeemable token that reduces a purchase amount.

    ``current_uses`` only ever moves through UsageLedger.append_and_count.
    """
    __tablename__ = "discount_codes"

    code = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)

    type = Column(Enum(DiscountType), nullable=False)
    value = Column(Numeric(10, 2), nullable=False)  # 50 for 50%, or a fixed amount

    applies_to = Column(Enum(AppliesTo), default=AppliesTo.all, nullable=False)
    applies_to_products = Column(JSON, nullable=True)  # product ids, when restricted
    source = Column(Enum(DiscountSource), default=DiscountSource.admin, nullable=False, index=True)

    # Usage caps
    max_uses = Column(Integer, nullable=True)
    max_uses_per_user = Column(Integer, default=1, nullable=False)
    current_uses = Column(Integer, default=0, nullable=False)

    min_purchase = Column(Numeric(10, 2), nullable=True)
    max_discount = Column(Numeric(10, 2), nullable=True)  # cap per usage

    referral_reward_id = Column(
        String, ForeignKey("referral_rewards.id", ondelete="SET NULL"), nullable=True, unique=True
    )
    created_by = Column(String, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False, index=True)
    is_public = Column(Boolean, default=False, nullable=False)  # shown on pricing page

    starts_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("current_uses >= 0", name="check_current_uses_non_negative"),
        CheckConstraint(
            "max_uses IS NULL OR current_uses <= max_uses", name="check_current_uses_within_cap"
        ),
    )


class DiscountUsage(BaseModel):
    """Append-only ledger entry for one redemption."""
    __tablename__ = "discount_usages"

    discount_code_id = Column(String, ForeignKey("discount_codes.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    order_id = Column(String(100), nullable=True)  # payment intent or order id

    original_amount = Column(Numeric(10, 2), nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False)
    final_amount = Column(Numeric(10, 2), nullable=False)

    product_type = Column(String(50), nullable=True)
    product_id = Column(String(100), nullable=True)

    applied_at = Column(DateTime, nullable=False, index=True)

    __table_args__ = (
        Index("idx_discount_usages_code_user", "discount_code_id", "user_id"),
    )


@event.listens_for(DiscountUsage, "before_update")
def _usage_is_append_only(mapper, connection, target):
    raise InvalidTransitionError("Discount usage rows are append-only")
