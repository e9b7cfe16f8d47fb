from typing import List, Optional, Sequence

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.discount.models.discount_code import DiscountCode, DiscountUsage
from app.features.referral.models.referral import Referral, ReferralStatus
from app.features.referral.models.referral_code import ReferralCode
from app.features.rewards.models.reward import ReferralReward
from app.features.rewards.models.stats import ReferralStats, scope_for
from app.features.rewards.models.tier import ReferralTier
from app.features.rewards.schemas.rewards import AdminStats, LeaderboardEntry
from app.platform.clock import Clock, utcnow
from app.platform.db.session import unit_of_work
from app.platform.logger import get_logger
from app.platform.utils.money import round_money

logger = get_logger(__name__)


def _in_season(column, season_id: Optional[str]):
    if season_id is None:
        return column.is_(None)
    return column == season_id


def _counted(condition):
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


class StatsService:
    """Maintains the ReferralStats projection and the leaderboard built on it."""

    def __init__(self, db: AsyncSession, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    async def recompute(
        self,
        user_id: str,
        season_id: Optional[str],
        tiers: Optional[Sequence[ReferralTier]] = None,
    ) -> ReferralStats:
        """
        Rebuild one user's stats row from referrals, codes and rewards.

        Runs inside the caller's transaction. ``tiers`` are the season's
        active tiers ordered by ``referrals_required``; they are loaded when
        not given.
        """
        converted = Referral.status == ReferralStatus.converted
        referral_counts = (
            await self.db.execute(
                select(
                    _counted(Referral.status.in_([ReferralStatus.signed_up, ReferralStatus.converted])),
                    _counted(converted),
                    _counted(Referral.status == ReferralStatus.signed_up),
                    _counted(Referral.status == ReferralStatus.expired),
                    func.coalesce(func.sum(case((converted, Referral.conversion_value), else_=0)), 0),
                    func.min(case((converted, Referral.conversion_date), else_=None)),
                    func.max(case((converted, Referral.conversion_date), else_=None)),
                ).where(Referral.referrer_id == user_id, _in_season(Referral.season_id, season_id))
            )
        ).one()
        total, successful, pending, expired, conversion_value, first_conversion, last_conversion = referral_counts

        clicks = (
            await self.db.execute(
                select(func.coalesce(func.sum(ReferralCode.clicks), 0)).where(
                    ReferralCode.user_id == user_id, _in_season(ReferralCode.season_id, season_id)
                )
            )
        ).scalar_one()

        reward_rows = (
            await self.db.execute(
                select(ReferralReward.tier_id, ReferralReward.is_claimed).where(
                    ReferralReward.user_id == user_id,
                    ReferralReward.is_unlocked.is_(True),
                    _in_season(ReferralReward.season_id, season_id),
                )
            )
        ).all()
        unlocked_tier_ids = {tier_id for tier_id, _ in reward_rows}

        if tiers is None:
            tiers = await self.active_tiers(season_id)
        current_tier = None
        next_tier = None
        for tier in tiers:
            if tier.id in unlocked_tier_ids:
                current_tier = tier
            if next_tier is None and tier.referrals_required > successful:
                next_tier = tier

        stats = await self._get_or_create(user_id, season_id)
        stats.total_clicks = int(clicks)
        stats.total_referrals = int(total)
        stats.successful_referrals = int(successful)
        stats.pending_referrals = int(pending)
        stats.expired_referrals = int(expired)
        stats.total_conversions = int(successful)
        stats.total_conversion_value = round_money(conversion_value)
        stats.first_conversion_at = first_conversion
        stats.last_conversion_at = last_conversion
        stats.total_rewards_earned = len(reward_rows)
        stats.total_rewards_claimed = sum(1 for _, claimed in reward_rows if claimed)
        stats.current_tier_id = current_tier.id if current_tier else None
        stats.next_tier_id = next_tier.id if next_tier else None
        stats.referrals_to_next_tier = next_tier.referrals_required - successful if next_tier else 0
        await self.db.flush()

        logger.debug(f"Recomputed stats for user {user_id} in season {season_id}: {successful} successful")
        return stats

    async def active_tiers(self, season_id: Optional[str]) -> List[ReferralTier]:
        if season_id is None:
            return []
        result = await self.db.execute(
            select(ReferralTier)
            .where(ReferralTier.season_id == season_id, ReferralTier.is_active.is_(True))
            .order_by(ReferralTier.referrals_required, ReferralTier.sort_order, ReferralTier.id)
        )
        return list(result.scalars().all())

    async def _find(self, user_id: str, season_id: Optional[str]) -> Optional[ReferralStats]:
        result = await self.db.execute(
            select(ReferralStats)
            .where(ReferralStats.user_id == user_id, ReferralStats.season_scope == scope_for(season_id))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _get_or_create(self, user_id: str, season_id: Optional[str]) -> ReferralStats:
        stats = await self._find(user_id, season_id)
        if stats is not None:
            return stats

        stats = ReferralStats(user_id=user_id, season_id=season_id, season_scope=scope_for(season_id))
        try:
            async with self.db.begin_nested():
                self.db.add(stats)
                await self.db.flush()
        except IntegrityError:
            # Created concurrently
            stats = await self._find(user_id, season_id)
            if stats is None:
                raise
        return stats

    async def get_stats(self, user_id: str, season_id: Optional[str] = None) -> Optional[ReferralStats]:
        async with unit_of_work(self.db):
            return await self._find(user_id, season_id)

    def _ranking_query(self, season_id: Optional[str]):
        return (
            select(ReferralStats)
            .where(
                ReferralStats.season_scope == scope_for(season_id),
                ReferralStats.successful_referrals > 0,
            )
            .order_by(
                ReferralStats.successful_referrals.desc(),
                ReferralStats.first_conversion_at.asc(),
                ReferralStats.user_id.asc(),
            )
        )

    async def get_leaderboard(self, season_id: Optional[str] = None, limit: int = 10) -> List[LeaderboardEntry]:
        """Top referrers by successful referrals; ties go to the earliest first conversion."""
        async with unit_of_work(self.db):
            result = await self.db.execute(self._ranking_query(season_id).limit(limit))
            rows = result.scalars().all()

        return [
            LeaderboardEntry(
                rank=position,
                user_id=stats.user_id,
                successful_referrals=stats.successful_referrals,
                total_conversion_value=round_money(stats.total_conversion_value),
                first_conversion_at=stats.first_conversion_at,
            )
            for position, stats in enumerate(rows, start=1)
        ]

    async def rank_leaderboard(self, season_id: Optional[str] = None) -> int:
        """
        Write ``leaderboard_rank`` for every stats row of the season.

        Users without a successful referral get no rank. Returns the number
        of ranked users.
        """
        async with unit_of_work(self.db):
            ranked = (await self.db.execute(self._ranking_query(season_id))).scalars().all()
            ranked_ids = set()
            for position, stats in enumerate(ranked, start=1):
                stats.leaderboard_rank = position
                ranked_ids.add(stats.id)

            unranked = await self.db.execute(
                select(ReferralStats).where(
                    ReferralStats.season_scope == scope_for(season_id),
                    ReferralStats.leaderboard_rank.is_not(None),
                )
            )
            for stats in unranked.scalars().all():
                if stats.id not in ranked_ids:
                    stats.leaderboard_rank = None
            await self.db.flush()

        logger.info(f"Ranked {len(ranked)} referrers in season {season_id}")
        return len(ranked)

    async def get_admin_stats(self) -> AdminStats:
        """Totals across every season, read straight from the source tables."""
        async with unit_of_work(self.db):
            active_codes = await self.db.scalar(
                select(func.count(ReferralCode.id)).where(ReferralCode.is_active.is_(True))
            )
            clicks = await self.db.scalar(select(func.coalesce(func.sum(ReferralCode.clicks), 0)))
            total, pending, converted, revenue = (
                await self.db.execute(
                    select(
                        func.count(Referral.id),
                        _counted(Referral.status == ReferralStatus.signed_up),
                        _counted(Referral.status == ReferralStatus.converted),
                        func.coalesce(
                            func.sum(case((Referral.status == ReferralStatus.converted, Referral.conversion_value), else_=0)),
                            0,
                        ),
                    )
                )
            ).one()
            claimed = await self.db.scalar(
                select(func.count(ReferralReward.id)).where(ReferralReward.is_claimed.is_(True))
            )
            active_discounts = await self.db.scalar(
                select(func.count(DiscountCode.id)).where(DiscountCode.is_active.is_(True))
            )
            usages = await self.db.scalar(select(func.count(DiscountUsage.id)))

        return AdminStats(
            active_referral_codes=active_codes or 0,
            total_clicks=int(clicks or 0),
            total_referrals=total or 0,
            pending_referrals=int(pending),
            converted_referrals=int(converted),
            total_revenue=round_money(revenue),
            claimed_rewards=claimed or 0,
            active_discount_codes=active_discounts or 0,
            discount_codes_used=usages or 0,
        )
