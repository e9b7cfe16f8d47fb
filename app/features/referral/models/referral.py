import enum

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Index, Numeric, String, Text, func, text

from app.platform.db.base import BaseModel


class ReferralStatus(enum.Enum):
    """Referral state machine"""
    clicked = "clicked"
    signed_up = "signed_up"
    converted = "converted"
    expired = "expired"
    rejected = "rejected"


OPEN_STATUSES = (ReferralStatus.clicked, ReferralStatus.signed_up)

# Allowed forward moves; anything else is a regression or a skip
TRANSITIONS = {
    ReferralStatus.clicked: {
        ReferralStatus.signed_up,
        ReferralStatus.converted,
        ReferralStatus.expired,
        ReferralStatus.rejected,
    },
    ReferralStatus.signed_up: {
        ReferralStatus.converted,
        ReferralStatus.expired,
        ReferralStatus.rejected,
    },
    ReferralStatus.converted: set(),
    ReferralStatus.expired: set(),
    ReferralStatus.rejected: set(),
}


class Referral(BaseModel):
    """
    One referred visitor's journey from click to conversion.

    There is at most one open referral per (referral code, visitor); a repeat
    click from the same visitor updates the open row.
    """
    __tablename__ = "referrals"

    referrer_id = Column(String, nullable=False, index=True)
    referred_user_id = Column(String, nullable=True, index=True)
    referred_email = Column(String(255), nullable=True)

    referral_code_id = Column(String, ForeignKey("referral_codes.id", ondelete="SET NULL"), nullable=True, index=True)
    season_id = Column(String, ForeignKey("referral_seasons.id", ondelete="SET NULL"), nullable=True, index=True)

    # Resolved identity of the visitor (user id, visitor id or fingerprint)
    visitor_key = Column(String(128), nullable=True, index=True)

    status = Column(Enum(ReferralStatus), default=ReferralStatus.clicked, nullable=False, index=True)
    status_reason = Column(String(100), nullable=True)

    click_date = Column(DateTime, nullable=True)
    last_click_at = Column(DateTime, nullable=True)
    signup_date = Column(DateTime, nullable=True)
    conversion_date = Column(DateTime, nullable=True)

    conversion_type = Column(String(50), nullable=True)  # subscription, lifetime, credits, other
    conversion_value = Column(Numeric(10, 2), nullable=True)
    conversion_product = Column(String(100), nullable=True)

    # Click metadata
    ip_address = Column(String(45), nullable=True)  # IPv4 or IPv6
    user_agent = Column(Text, nullable=True)
    utm_source = Column(String(100), nullable=True)
    utm_medium = Column(String(100), nullable=True)
    utm_campaign = Column(String(100), nullable=True)

    __table_args__ = (
        Index("idx_referrals_code_visitor", "referral_code_id", "visitor_key"),
        Index("idx_referrals_referrer_season_status", "referrer_id", "season_id", "status"),
    )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def can_move_to(self, target: ReferralStatus) -> bool:
        return target in TRANSITIONS[self.status]


# A user is referred at most once per season; season-less referrals share the "*" bucket
Index(
    "uq_referrals_referred_user_season",
    Referral.referred_user_id,
    func.coalesce(Referral.season_id, "*"),
    unique=True,
    postgresql_where=text("status IN ('signed_up', 'converted')"),
    sqlite_where=text("status IN ('signed_up', 'converted')"),
)
