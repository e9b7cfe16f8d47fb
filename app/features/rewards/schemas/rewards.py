from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import Field

from app.features.rewards.models.tier import RewardType
from app.platform.schemas import CamelModel


class TierCreate(CamelModel):
    season_id: str
    name: str
    description: Optional[str] = None
    referrals_required: int = Field(ge=0)
    reward_type: RewardType
    reward_value: Dict[str, Any] = Field(default_factory=dict)
    badge_icon: Optional[str] = None
    badge_color: Optional[str] = None
    is_stackable: bool = False
    is_active: bool = True
    sort_order: int = 0


class TierUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    referrals_required: Optional[int] = Field(default=None, ge=0)
    reward_type: Optional[RewardType] = None
    reward_value: Optional[Dict[str, Any]] = None
    badge_icon: Optional[str] = None
    badge_color: Optional[str] = None
    is_stackable: Optional[bool] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


class TierResponse(CamelModel):
    id: str
    season_id: str
    name: str
    description: Optional[str] = None
    referrals_required: int
    reward_type: RewardType
    reward_value: Dict[str, Any]
    badge_icon: Optional[str] = None
    badge_color: Optional[str] = None
    is_stackable: bool
    is_active: bool
    sort_order: int


class RewardResponse(CamelModel):
    id: str
    user_id: str
    tier_id: Optional[str] = None
    season_id: Optional[str] = None
    occurrence: int = 1
    reward_type: RewardType
    reward_data: Dict[str, Any]
    discount_code_id: Optional[str] = None
    is_unlocked: bool
    is_claimed: bool
    claimed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class RewardView(RewardResponse):
    """A reward with tier and code details looked up at read time."""
    tier_name: Optional[str] = None
    badge_icon: Optional[str] = None
    badge_color: Optional[str] = None
    discount_code: Optional[str] = None


class TierProgress(CamelModel):
    user_id: str
    season_id: Optional[str] = None
    successful_referrals: int
    new_rewards: List[RewardResponse] = Field(default_factory=list)
    unfulfilled_reward_ids: List[str] = Field(default_factory=list)
    current_tier_id: Optional[str] = None
    next_tier_id: Optional[str] = None
    referrals_to_next_tier: int = 0


class StatsResponse(CamelModel):
    user_id: str
    season_id: Optional[str] = None
    total_clicks: int
    total_referrals: int
    successful_referrals: int
    pending_referrals: int
    expired_referrals: int
    total_conversions: int
    total_conversion_value: Decimal
    total_rewards_earned: int
    total_rewards_claimed: int
    current_tier_id: Optional[str] = None
    next_tier_id: Optional[str] = None
    referrals_to_next_tier: Optional[int] = None
    leaderboard_rank: Optional[int] = None


class LeaderboardEntry(CamelModel):
    rank: int
    user_id: str
    successful_referrals: int
    total_conversion_value: Decimal
    first_conversion_at: Optional[datetime] = None


class AdminStats(CamelModel):
    """Program-wide totals for the admin dashboard."""
    active_referral_codes: int
    total_clicks: int
    total_referrals: int
    pending_referrals: int
    converted_referrals: int
    total_revenue: Decimal
    claimed_rewards: int
    active_discount_codes: int
    discount_codes_used: int
