import enum

from sqlalchemy import JSON, Boolean, Column, Enum, ForeignKey, Index, Integer, String, Text

from app.platform.db.base import BaseModel


class RewardType(enum.Enum):
    discount_code = "discount_code"
    credits = "credits"
    free_month = "free_month"
    tier_upgrade = "tier_upgrade"
    custom = "custom"


# Changing any of these after a reward exists would rewrite past unlocks
LOCKED_TIER_FIELDS = ("referrals_required", "reward_type", "reward_value", "is_stackable", "season_id")


class ReferralTier(BaseModel):
    """
    A referral-count threshold that unlocks a reward.

    reward_value examples:
        discount_code: {"percent": 25, "code_prefix": "BRONZE25", "max_uses": 1, "expires_days": 60}
        credits: {"amount": 500}
        free_month: {"months": 1, "tier": "pro"}
    """
    __tablename__ = "referral_tiers"

    season_id = Column(String, ForeignKey("referral_seasons.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    referrals_required = Column(Integer, nullable=False)
    reward_type = Column(Enum(RewardType), nullable=False)
    reward_value = Column(JSON, default=dict, nullable=False)

    # Display only; composed into reward listings at read time
    badge_icon = Column(String(50), nullable=True)
    badge_color = Column(String(20), nullable=True)

    is_stackable = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("idx_referral_tiers_season_required", "season_id", "referrals_required"),
    )

    def occurrences_owed(self, successful_referrals: int) -> int:
        """How many rewards this tier grants at the given referral count."""
        if self.referrals_required <= 0:
            return 1
        if successful_referrals < self.referrals_required:
            return 0
        if self.is_stackable:
            return successful_referrals // self.referrals_required
        return 1
