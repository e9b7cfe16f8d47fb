from datetime import timedelta
from decimal import InvalidOperation
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.discount.models.discount_code import DiscountCode
from app.features.discount.services.discount_service import DiscountService
from app.features.referral.models.referral import Referral, ReferralStatus
from app.features.rewards.models.reward import ReferralReward
from app.features.rewards.models.tier import ReferralTier, RewardType
from app.features.rewards.schemas.rewards import RewardResponse, TierProgress
from app.features.rewards.services.stats_service import StatsService
from app.platform.clock import Clock, utcnow
from app.platform.db.session import unit_of_work
from app.platform.exceptions import RewardsEngineError
from app.platform.logger import get_logger

logger = get_logger(__name__)

# Failures that leave a reward waiting for its code instead of failing the evaluation
MINT_FAILURES = (RewardsEngineError, IntegrityError, ValueError, KeyError, InvalidOperation)


class _AlreadyLinked(Exception):
    pass


class TierProgressionService:
    """
    Turns successful referral counts into unlocked rewards.

    Evaluation is idempotent: rewards are keyed by (user, tier, occurrence)
    and discount codes are linked with a compare-and-set, so re-running only
    fills in what is missing.
    """

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock = utcnow,
        discount_service: Optional[DiscountService] = None,
    ):
        self.db = db
        self.clock = clock
        self.discounts = discount_service or DiscountService(db, clock=clock)
        self.stats = StatsService(db, clock=clock)

    async def evaluate_tier_progress(self, user_id: str, season_id: Optional[str]) -> TierProgress:
        async with unit_of_work(self.db):
            progress = await self.evaluate(user_id, season_id)

        if progress.new_rewards:
            logger.info(f"User {user_id} unlocked {len(progress.new_rewards)} reward(s) in season {season_id}")
        return progress

    async def evaluate(self, user_id: str, season_id: Optional[str]) -> TierProgress:
        """Same as ``evaluate_tier_progress`` but inside the caller's transaction."""
        successful = await self._count_successful(user_id, season_id)
        tiers = await self.stats.active_tiers(season_id)

        new_rewards: List[ReferralReward] = []
        for tier in tiers:
            owed = tier.occurrences_owed(successful)
            if not owed:
                continue

            granted = await self._granted_occurrences(user_id, tier.id)
            for occurrence in range(1, owed + 1):
                if occurrence in granted:
                    continue
                reward = await self._unlock(user_id, tier, occurrence)
                if reward is not None:
                    new_rewards.append(reward)

        unfulfilled = await self._fulfil_discount_codes(user_id, season_id)
        stats = await self.stats.recompute(user_id, season_id, tiers=tiers)

        return TierProgress(
            user_id=user_id,
            season_id=season_id,
            successful_referrals=successful,
            new_rewards=[RewardResponse.model_validate(reward) for reward in new_rewards],
            unfulfilled_reward_ids=unfulfilled,
            current_tier_id=stats.current_tier_id,
            next_tier_id=stats.next_tier_id,
            referrals_to_next_tier=stats.referrals_to_next_tier or 0,
        )

    async def _count_successful(self, user_id: str, season_id: Optional[str]) -> int:
        season_filter = Referral.season_id.is_(None) if season_id is None else Referral.season_id == season_id
        result = await self.db.execute(
            select(func.count())
            .select_from(Referral)
            .where(
                Referral.referrer_id == user_id,
                Referral.status == ReferralStatus.converted,
                season_filter,
            )
        )
        return result.scalar_one()

    async def _granted_occurrences(self, user_id: str, tier_id: str) -> set:
        result = await self.db.execute(
            select(ReferralReward.occurrence).where(
                ReferralReward.user_id == user_id, ReferralReward.tier_id == tier_id
            )
        )
        return set(result.scalars().all())

    async def _unlock(self, user_id: str, tier: ReferralTier, occurrence: int) -> Optional[ReferralReward]:
        reward_data = dict(tier.reward_value or {})
        claim_days = reward_data.get("claim_within_days")
        now = self.clock()
        reward = ReferralReward(
            user_id=user_id,
            tier_id=tier.id,
            season_id=tier.season_id,
            occurrence=occurrence,
            reward_type=tier.reward_type,
            reward_data=reward_data,
            is_unlocked=True,
            is_claimed=False,
            expires_at=now + timedelta(days=claim_days) if claim_days else None,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(reward)
                await self.db.flush()
        except IntegrityError:
            logger.info(f"Tier {tier.id} occurrence {occurrence} already unlocked for user {user_id}")
            return None

        logger.info(f"Unlocked tier {tier.name!r} (occurrence {occurrence}) for user {user_id}")
        return reward

    async def _fulfil_discount_codes(self, user_id: str, season_id: Optional[str]) -> List[str]:
        """Mint and link codes for unlocked discount rewards that lack one. Returns the ids still lacking one."""
        season_filter = (
            ReferralReward.season_id.is_(None) if season_id is None else ReferralReward.season_id == season_id
        )
        result = await self.db.execute(
            select(ReferralReward)
            .where(
                ReferralReward.user_id == user_id,
                ReferralReward.reward_type == RewardType.discount_code,
                ReferralReward.is_unlocked.is_(True),
                ReferralReward.discount_code_id.is_(None),
                season_filter,
            )
            .order_by(ReferralReward.created_at, ReferralReward.occurrence)
        )

        unfulfilled = []
        for reward in result.scalars().all():
            reward_id = reward.id
            try:
                async with self.db.begin_nested():
                    code = await self._existing_code(reward_id)
                    if code is None:
                        code = await self.discounts.mint_for_reward(reward_id, reward.reward_data or {})
                    linked = await self.db.execute(
                        update(ReferralReward)
                        .where(ReferralReward.id == reward_id, ReferralReward.discount_code_id.is_(None))
                        .values(discount_code_id=code.id)
                        .execution_options(synchronize_session=False)
                    )
                    if linked.rowcount != 1:
                        raise _AlreadyLinked()
            except _AlreadyLinked:
                pass
            except MINT_FAILURES:
                logger.exception(f"Could not mint a discount code for reward {reward_id}")
                await self.db.refresh(reward)
                if reward.discount_code_id is None:
                    unfulfilled.append(reward_id)
                continue

            await self.db.refresh(reward)
        return unfulfilled

    async def _existing_code(self, reward_id: str) -> Optional[DiscountCode]:
        result = await self.db.execute(select(DiscountCode).where(DiscountCode.referral_reward_id == reward_id))
        return result.scalar_one_or_none()
