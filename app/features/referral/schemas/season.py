from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import Field

from app.platform.config import settings
from app.platform.schemas import CamelModel


class SeasonConfig(CamelModel):
    """Rules of a referral season, stored as JSON on the season row."""
    allow_self_referral: bool = False
    require_conversion: bool = True
    conversion_window_days: int = Field(default=30, ge=0)
    min_purchase_for_conversion: Decimal = Field(default=Decimal("0"), ge=0)
    max_referrals_per_user: Optional[int] = Field(default=None, ge=0)
    referral_code_prefix: str = "REF"

    @classmethod
    def program_defaults(cls) -> "SeasonConfig":
        return cls(
            conversion_window_days=settings.DEFAULT_CONVERSION_WINDOW_DAYS,
            referral_code_prefix=settings.REFERRAL_CODE_PREFIX,
        )

    def to_storage(self) -> dict:
        # snake_case keys, JSON-safe values
        return self.model_dump(mode="json")


class SeasonCreate(CamelModel):
    name: str
    slug: str
    description: Optional[str] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    is_active: bool = True
    is_default: bool = False
    config: SeasonConfig = Field(default_factory=SeasonConfig)


class SeasonResponse(CamelModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    start_date: datetime
    end_date: Optional[datetime] = None
    is_active: bool
    is_default: bool
    config: SeasonConfig


class SeasonUpdate(CamelModel):
    """Editable season fields; slug and start date are fixed once created."""
    name: Optional[str] = None
    description: Optional[str] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None
    is_default: Optional[bool] = None
    config: Optional[SeasonConfig] = None
