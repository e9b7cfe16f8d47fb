from typing import List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.discount.models.discount_code import DiscountCode, DiscountUsage
from app.features.discount.schemas.discount import RejectionReason
from app.features.rewards.models.reward import ReferralReward
from app.features.rewards.services.stats_service import StatsService
from app.platform.clock import Clock, utcnow
from app.platform.db.session import unit_of_work
from app.platform.exceptions import (
    AlreadyClaimedError,
    InvalidTransitionError,
    NotFoundError,
    NotUnlockedError,
)
from app.platform.logger import get_logger

logger = get_logger(__name__)


class UsageCapReached(Exception):
    """The compare-and-increment lost: a usage cap or the code window closed."""

    def __init__(self, reason: RejectionReason):
        super().__init__(reason.value)
        self.reason = reason


class UsageLedger:
    """
    Append-only bookkeeping of discount redemptions and reward claims.

    ``append_and_count`` is the only code path that increments
    ``DiscountCode.current_uses``.
    """

    def __init__(self, db: AsyncSession, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    async def append_and_count(self, usage: DiscountUsage) -> DiscountUsage:
        """
        Increment the code's counter and append ``usage`` in one savepoint.

        The increment is a conditional UPDATE, so two callers racing for the
        last use cannot both succeed. Must run inside the caller's transaction.

        Raises:
            UsageCapReached: nothing was written
        """
        now = self.clock()

        async with self.db.begin_nested():
            result = await self.db.execute(
                update(DiscountCode)
                .where(
                    DiscountCode.id == usage.discount_code_id,
                    DiscountCode.is_active.is_(True),
                    or_(DiscountCode.starts_at.is_(None), DiscountCode.starts_at <= now),
                    or_(DiscountCode.expires_at.is_(None), DiscountCode.expires_at >= now),
                    or_(DiscountCode.max_uses.is_(None), DiscountCode.current_uses < DiscountCode.max_uses),
                )
                .values(current_uses=DiscountCode.current_uses + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise UsageCapReached(await self._lost_race_reason(usage.discount_code_id, now))

            # The code row is locked from here on
            per_user_limit = (
                await self.db.execute(
                    select(DiscountCode.max_uses_per_user).where(DiscountCode.id == usage.discount_code_id)
                )
            ).scalar_one()
            used = await self.count_user_usages(usage.discount_code_id, usage.user_id)
            if used >= per_user_limit:
                raise UsageCapReached(RejectionReason.user_limit_reached)

            if usage.applied_at is None:
                usage.applied_at = now
            self.db.add(usage)
            await self.db.flush()

        logger.info(
            f"Recorded usage {usage.id} of code {usage.discount_code_id} by user {usage.user_id}: "
            f"-{usage.discount_amount} on {usage.original_amount}"
        )
        return usage

    async def _lost_race_reason(self, code_id: str, now) -> RejectionReason:
        code = (
            await self.db.execute(
                select(DiscountCode).where(DiscountCode.id == code_id).execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if code is None:
            return RejectionReason.unknown_code
        if not code.is_active:
            return RejectionReason.inactive
        if code.starts_at and now < code.starts_at:
            return RejectionReason.not_started
        if code.expires_at and now > code.expires_at:
            return RejectionReason.expired
        return RejectionReason.max_uses_reached

    async def count_user_usages(self, code_id: str, user_id: str) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(DiscountUsage)
            .where(DiscountUsage.discount_code_id == code_id, DiscountUsage.user_id == user_id)
        )
        return result.scalar_one()

    async def count_usages(self, code_id: str) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(DiscountUsage).where(DiscountUsage.discount_code_id == code_id)
        )
        return result.scalar_one()

    async def get_usage_history(self, code_id: str) -> List[DiscountUsage]:
        async with unit_of_work(self.db):
            code = await self.db.get(DiscountCode, code_id)
            if code is None:
                raise NotFoundError(f"Discount code {code_id} not found")

            result = await self.db.execute(
                select(DiscountUsage)
                .where(DiscountUsage.discount_code_id == code_id)
                .order_by(DiscountUsage.applied_at, DiscountUsage.id)
            )
            return list(result.scalars().all())

    async def claim_reward(self, reward_id: str, user_id: Optional[str] = None) -> ReferralReward:
        """
        Mark an unlocked reward as claimed.

        Raises:
            NotFoundError: unknown reward, or owned by another user
            NotUnlockedError: reward is still locked
            AlreadyClaimedError: reward was claimed before (including by a concurrent call)
            InvalidTransitionError: reward has expired
        """
        now = self.clock()

        async with unit_of_work(self.db):
            reward = await self.db.get(ReferralReward, reward_id, populate_existing=True)
            if reward is None or (user_id is not None and reward.user_id != user_id):
                raise NotFoundError(f"Reward {reward_id} not found")
            if not reward.is_unlocked:
                raise NotUnlockedError(f"Reward {reward_id} is not unlocked")
            if reward.is_claimed:
                raise AlreadyClaimedError(f"Reward {reward_id} was already claimed")
            if reward.expires_at and now > reward.expires_at:
                raise InvalidTransitionError(f"Reward {reward_id} expired at {reward.expires_at}")

            result = await self.db.execute(
                update(ReferralReward)
                .where(
                    ReferralReward.id == reward_id,
                    ReferralReward.is_unlocked.is_(True),
                    ReferralReward.is_claimed.is_(False),
                )
                .values(is_claimed=True, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise AlreadyClaimedError(f"Reward {reward_id} was already claimed")

            await self.db.refresh(reward)
            await StatsService(self.db, clock=self.clock).recompute(reward.user_id, reward.season_id)

        logger.info(f"Reward {reward_id} claimed by user {reward.user_id}")
        return reward
