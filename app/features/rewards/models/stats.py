from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint

from app.platform.db.base import BaseModel

# season_scope value for referrals that do not belong to a season
GLOBAL_SCOPE = "*"


def scope_for(season_id) -> str:
    return season_id or GLOBAL_SCOPE


class ReferralStats(BaseModel):
    """
    Denormalized per-user, per-season referral projection.

    Only StatsService writes these rows; they can always be rebuilt from
    referrals, codes and rewards.
    """
    __tablename__ = "referral_stats"

    user_id = Column(String, nullable=False, index=True)
    season_id = Column(String, ForeignKey("referral_seasons.id", ondelete="SET NULL"), nullable=True, index=True)
    # Non-null twin of season_id so the unique constraint also covers season-less stats
    season_scope = Column(String, nullable=False, default=GLOBAL_SCOPE)

    total_clicks = Column(Integer, default=0, nullable=False)
    total_referrals = Column(Integer, default=0, nullable=False)
    successful_referrals = Column(Integer, default=0, nullable=False)
    pending_referrals = Column(Integer, default=0, nullable=False)
    expired_referrals = Column(Integer, default=0, nullable=False)
    total_conversions = Column(Integer, default=0, nullable=False)
    total_conversion_value = Column(Numeric(10, 2), default=0, nullable=False)
    total_rewards_earned = Column(Integer, default=0, nullable=False)
    total_rewards_claimed = Column(Integer, default=0, nullable=False)

    current_tier_id = Column(String, nullable=True)
    next_tier_id = Column(String, nullable=True)
    referrals_to_next_tier = Column(Integer, nullable=True)
    leaderboard_rank = Column(Integer, nullable=True)

    # Leaderboard tie-break input
    first_conversion_at = Column(DateTime, nullable=True)
    last_conversion_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "season_scope", name="uq_referral_stats_user_scope"),
        Index("idx_referral_stats_scope_rank", "season_scope", "successful_referrals"),
    )
