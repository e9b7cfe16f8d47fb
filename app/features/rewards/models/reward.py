from sqlalchemy import JSON, Boolean, Column, DateTime, Enum, ForeignKey, Integer, String, UniqueConstraint

from app.features.rewards.models.tier import RewardType
from app.platform.db.base import BaseModel


class ReferralReward(BaseModel):
    """
    An entitlement granted when a user reaches a tier.

    Non-stackable tiers grant occurrence 1 only; stackable tiers grant one
    occurrence per multiple of ``referrals_required``.
    """
    __tablename__ = "referral_rewards"

    user_id = Column(String, nullable=False, index=True)
    tier_id = Column(String, ForeignKey("referral_tiers.id", ondelete="SET NULL"), nullable=True, index=True)
    season_id = Column(String, ForeignKey("referral_seasons.id", ondelete="SET NULL"), nullable=True, index=True)
    occurrence = Column(Integer, default=1, nullable=False)

    reward_type = Column(Enum(RewardType), nullable=False)
    reward_data = Column(JSON, default=dict, nullable=False)

    # Set once the backing discount code is minted
    discount_code_id = Column(String, nullable=True, index=True)

    is_unlocked = Column(Boolean, default=True, nullable=False)
    is_claimed = Column(Boolean, default=False, nullable=False, index=True)
    claimed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "tier_id", "occurrence", name="uq_referral_reward_user_tier_occurrence"),
    )

    @property
    def needs_discount_code(self) -> bool:
        return (
            self.is_unlocked
            and self.reward_type == RewardType.discount_code
            and self.discount_code_id is None
        )
