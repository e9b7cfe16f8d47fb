from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, String, Text, text

from app.features.referral.schemas.season import SeasonConfig
from app.platform.db.base import BaseModel


class ReferralSeason(BaseModel):
    """
    A bounded referral campaign and the rules that apply during it.

    Seasons are never deleted; they are retired by clearing ``is_active``.
    """
    __tablename__ = "referral_seasons"

    name = Column(String(100), nullable=False)
    slug = Column(String(50), unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)

    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)

    # SeasonConfig as JSON
    config = Column(JSON, default=dict, nullable=False)

    __table_args__ = (
        # At most one default season
        Index(
            "uq_referral_seasons_default",
            "is_default",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
    )

    @property
    def rules(self) -> SeasonConfig:
        return SeasonConfig.model_validate(self.config or {})

    def is_running(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        if self.start_date and now < self.start_date:
            return False
        if self.end_date and now > self.end_date:
            return False
        return True

    def __repr__(self) -> str:
        return f"<ReferralSeason {self.slug} default={self.is_default}>"


def season_rules(season: Optional[ReferralSeason]) -> SeasonConfig:
    """Rules for a season, or the program defaults for season-less referrals."""
    if season is None:
        return SeasonConfig.program_defaults()
    return season.rules
