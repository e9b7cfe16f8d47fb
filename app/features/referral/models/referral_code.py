from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, func, text

from app.platform.db.base import BaseModel


class ReferralCode(BaseModel):
    """
    A shareable code owned by the referring user.

    A user may hold one active code per season; ``code`` is globally unique
    and stored uppercase.
    """
    __tablename__ = "referral_codes"

    user_id = Column(String, nullable=False, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    season_id = Column(String, ForeignKey("referral_seasons.id", ondelete="SET NULL"), nullable=True, index=True)

    # Click tracking
    clicks = Column(Integer, default=0, nullable=False)
    last_click_at = Column(DateTime, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    expires_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_referral_codes_user_season", "user_id", "season_id"),
    )


# One active code per (user, season); season-less codes share the "*" bucket
Index(
    "uq_referral_codes_active_user_season",
    ReferralCode.user_id,
    func.coalesce(ReferralCode.season_id, "*"),
    unique=True,
    postgresql_where=text("is_active"),
    sqlite_where=text("is_active = 1"),
)
