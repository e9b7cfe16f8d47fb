from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.discount.models.discount_code import DiscountCode
from app.features.referral.models.season import ReferralSeason
from app.features.rewards.models.reward import ReferralReward
from app.features.rewards.models.tier import LOCKED_TIER_FIELDS, ReferralTier
from app.features.rewards.schemas.rewards import RewardResponse, RewardView, TierCreate, TierUpdate
from app.platform.db.session import unit_of_work
from app.platform.exceptions import ImmutableTierError, NotFoundError
from app.platform.logger import get_logger

logger = get_logger(__name__)


class TierService:
    """Tier administration and reward listings."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_tier(self, data: TierCreate) -> ReferralTier:
        async with unit_of_work(self.db):
            if await self.db.get(ReferralSeason, data.season_id) is None:
                raise NotFoundError(f"Season {data.season_id} not found")

            tier = ReferralTier(**data.model_dump())
            self.db.add(tier)
            await self.db.flush()

        logger.info(f"Created tier {tier.name!r} ({tier.referrals_required} referrals) in season {tier.season_id}")
        return tier

    async def update_tier(self, tier_id: str, data: TierUpdate) -> ReferralTier:
        """
        Apply a partial update.

        Raises:
            NotFoundError: unknown tier
            ImmutableTierError: a threshold or reward field changes after a reward was granted
        """
        async with unit_of_work(self.db):
            tier = await self.db.get(ReferralTier, tier_id, populate_existing=True)
            if tier is None:
                raise NotFoundError(f"Tier {tier_id} not found")

            changes = data.model_dump(exclude_unset=True)
            locked = [
                field for field in LOCKED_TIER_FIELDS
                if field in changes and changes[field] != getattr(tier, field)
            ]
            if locked and await self._has_rewards(tier_id):
                raise ImmutableTierError(f"Tier {tier_id} has granted rewards; cannot change {', '.join(locked)}")

            for field, value in changes.items():
                setattr(tier, field, value)
            await self.db.flush()

        logger.info(f"Updated tier {tier_id}: {sorted(changes)}")
        return tier

    async def _has_rewards(self, tier_id: str) -> bool:
        result = await self.db.execute(
            select(func.count()).select_from(ReferralReward).where(ReferralReward.tier_id == tier_id)
        )
        return result.scalar_one() > 0

    async def list_tiers(self, season_id: str, include_inactive: bool = False) -> List[ReferralTier]:
        async with unit_of_work(self.db):
            query = select(ReferralTier).where(ReferralTier.season_id == season_id)
            if not include_inactive:
                query = query.where(ReferralTier.is_active.is_(True))
            result = await self.db.execute(query.order_by(ReferralTier.sort_order, ReferralTier.referrals_required))
            return list(result.scalars().all())

    async def get_user_rewards(self, user_id: str, season_id: Optional[str] = None) -> List[RewardView]:
        """A user's rewards, newest first, with tier badge and code attached."""
        async with unit_of_work(self.db):
            query = (
                select(ReferralReward, ReferralTier, DiscountCode.code)
                .outerjoin(ReferralTier, ReferralTier.id == ReferralReward.tier_id)
                .outerjoin(DiscountCode, DiscountCode.id == ReferralReward.discount_code_id)
                .where(ReferralReward.user_id == user_id)
            )
            if season_id is not None:
                query = query.where(ReferralReward.season_id == season_id)
            result = await self.db.execute(
                query.order_by(ReferralReward.created_at.desc(), ReferralReward.occurrence.desc())
            )
            rows = result.all()

        views = []
        for reward, tier, code in rows:
            view = RewardView(
                **RewardResponse.model_validate(reward).model_dump(),
                tier_name=tier.name if tier else None,
                badge_icon=tier.badge_icon if tier else None,
                badge_color=tier.badge_color if tier else None,
                discount_code=code,
            )
            views.append(view)
        return views
