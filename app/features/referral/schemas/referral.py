from datetime import datetime
from decimal import Decimal
from typing import Optional

from app.features.referral.models.referral import ReferralStatus
from app.features.rewards.schemas.rewards import TierProgress
from app.platform.schemas import CamelModel


class ClickMetadata(CamelModel):
    """What the API layer knows about a visitor following a referral link."""
    visitor_user_id: Optional[str] = None  # set when the visitor is logged in
    visitor_id: Optional[str] = None  # anonymous cookie / device id
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None


class ReferralCodeResponse(CamelModel):
    id: str
    user_id: str
    code: str
    season_id: Optional[str] = None
    clicks: int
    last_click_at: Optional[datetime] = None
    is_active: bool
    expires_at: Optional[datetime] = None


class ReferralResponse(CamelModel):
    id: str
    referrer_id: str
    referred_user_id: Optional[str] = None
    referred_email: Optional[str] = None
    referral_code_id: Optional[str] = None
    season_id: Optional[str] = None
    status: ReferralStatus
    status_reason: Optional[str] = None
    click_date: Optional[datetime] = None
    signup_date: Optional[datetime] = None
    conversion_date: Optional[datetime] = None
    conversion_type: Optional[str] = None
    conversion_value: Optional[Decimal] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None


class ConversionResult(CamelModel):
    referral: ReferralResponse
    progress: TierProgress


class ReferralExportRow(CamelModel):
    """Flat referral row for CSV / spreadsheet exports."""
    id: str
    status: ReferralStatus
    status_reason: Optional[str] = None
    click_date: Optional[datetime] = None
    signup_date: Optional[datetime] = None
    conversion_date: Optional[datetime] = None
    conversion_type: Optional[str] = None
    conversion_value: Optional[Decimal] = None
    referral_code: Optional[str] = None
    referrer_id: str
    referred_user_id: Optional[str] = None
    season_id: Optional[str] = None
