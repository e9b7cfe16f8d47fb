"""
Entry point for callers of the rewards engine.

Every operation opens its own session from the injected factory, so one
RewardsEngine can be shared by concurrent request handlers.
"""
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.features.discount.models.discount_code import DiscountCode, DiscountUsage
from app.features.discount.schemas.discount import (
    DiscountApplication,
    DiscountCodeCreate,
    DiscountValidation,
    ProductContext,
)
from app.features.discount.services import pricing
from app.features.discount.services.discount_cache import CachedDiscountService, DiscountCodeCache
from app.features.discount.services.discount_service import DiscountService
from app.features.discount.services.usage_ledger import UsageLedger
from app.features.referral.models.referral import Referral, ReferralStatus
from app.features.referral.models.referral_code import ReferralCode
from app.features.referral.models.season import ReferralSeason
from app.features.referral.schemas.referral import ClickMetadata, ConversionResult, ReferralExportRow
from app.features.referral.schemas.season import SeasonCreate, SeasonUpdate
from app.features.referral.services.identity import IdentityResolver
from app.features.referral.services.referral_service import ReferralService
from app.features.rewards.models.reward import ReferralReward
from app.features.rewards.models.stats import ReferralStats
from app.features.rewards.models.tier import ReferralTier
from app.features.rewards.schemas.rewards import AdminStats, LeaderboardEntry, RewardView, TierCreate, TierProgress
from app.features.rewards.services.stats_service import StatsService
from app.features.rewards.services.tier_progression import TierProgressionService
from app.features.rewards.services.tier_service import TierService
from app.platform.clock import Clock, utcnow
from app.platform.db.session import SessionLocal


class RewardsEngine:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        clock: Clock = utcnow,
        identity_resolver: Optional[IdentityResolver] = None,
        discount_cache: Optional[DiscountCodeCache] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.clock = clock
        self.identity_resolver = identity_resolver
        self.discount_cache = discount_cache

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as db:
            yield db

    def _discounts(self, db: AsyncSession) -> DiscountService:
        if self.discount_cache is not None:
            return CachedDiscountService(db, self.discount_cache, clock=self.clock)
        return DiscountService(db, clock=self.clock)

    def _tiers(self, db: AsyncSession) -> TierProgressionService:
        return TierProgressionService(db, clock=self.clock, discount_service=self._discounts(db))

    def _referrals(self, db: AsyncSession) -> ReferralService:
        return ReferralService(
            db,
            clock=self.clock,
            identity_resolver=self.identity_resolver,
            tier_progression=self._tiers(db),
        )

    # ── Referral tracking ────────────────────────

    async def record_click(self, code_value: str, metadata: Optional[ClickMetadata] = None) -> Referral:
        async with self._session() as db:
            return await self._referrals(db).record_click(code_value, metadata)

    async def record_signup(
        self,
        code_value: str,
        referred_user_id: str,
        referred_email: Optional[str] = None,
        visitor_id: Optional[str] = None,
    ) -> Referral:
        async with self._session() as db:
            return await self._referrals(db).record_signup(code_value, referred_user_id, referred_email, visitor_id)

    async def record_conversion(
        self,
        referral_id: str,
        conversion_type: str,
        conversion_value,
        product_id: Optional[str] = None,
    ) -> ConversionResult:
        async with self._session() as db:
            return await self._referrals(db).record_conversion(referral_id, conversion_type, conversion_value, product_id)

    async def expire_stale_referrals(self, now=None) -> int:
        async with self._session() as db:
            return await self._referrals(db).expire_stale_referrals(now)

    async def create_season(self, data: SeasonCreate) -> ReferralSeason:
        async with self._session() as db:
            return await self._referrals(db).create_season(data)

    async def get_or_create_referral_code(self, user_id: str, season_id: Optional[str] = None) -> ReferralCode:
        async with self._session() as db:
            return await self._referrals(db).get_or_create_referral_code(user_id, season_id)

    async def get_active_seasons(self) -> List[ReferralSeason]:
        async with self._session() as db:
            return await self._referrals(db).get_active_seasons()

    async def update_season(self, season_id: str, data: SeasonUpdate) -> ReferralSeason:
        async with self._session() as db:
            return await self._referrals(db).update_season(season_id, data)

    # ── Administration ───────────────────────────

    async def list_referral_codes(
        self, season_id: Optional[str] = None, page: int = 1, per_page: int = 100
    ) -> Tuple[List[ReferralCode], int]:
        async with self._session() as db:
            return await self._referrals(db).list_referral_codes(season_id, page, per_page)

    async def list_referrals(
        self, status: Optional[ReferralStatus] = None, page: int = 1, per_page: int = 100
    ) -> Tuple[List[Referral], int]:
        async with self._session() as db:
            return await self._referrals(db).list_referrals(status, page, per_page)

    async def export_referral_data(self, season_id: Optional[str] = None) -> List[ReferralExportRow]:
        async with self._session() as db:
            return await self._referrals(db).export_referral_data(season_id)

    async def get_admin_stats(self) -> AdminStats:
        async with self._session() as db:
            return await StatsService(db, clock=self.clock).get_admin_stats()

    # ── Tiers and rewards ────────────────────────

    async def evaluate_tier_progress(self, user_id: str, season_id: Optional[str]) -> TierProgress:
        async with self._session() as db:
            return await self._tiers(db).evaluate_tier_progress(user_id, season_id)

    async def create_tier(self, data: TierCreate) -> ReferralTier:
        async with self._session() as db:
            return await TierService(db).create_tier(data)

    async def get_user_rewards(self, user_id: str, season_id: Optional[str] = None) -> List[RewardView]:
        async with self._session() as db:
            return await TierService(db).get_user_rewards(user_id, season_id)

    async def claim_reward(self, reward_id: str, user_id: Optional[str] = None) -> ReferralReward:
        async with self._session() as db:
            return await UsageLedger(db, clock=self.clock).claim_reward(reward_id, user_id)

    async def get_stats(self, user_id: str, season_id: Optional[str] = None) -> Optional[ReferralStats]:
        async with self._session() as db:
            return await StatsService(db, clock=self.clock).get_stats(user_id, season_id)

    async def get_leaderboard(self, season_id: Optional[str] = None, limit: int = 10) -> List[LeaderboardEntry]:
        async with self._session() as db:
            return await StatsService(db, clock=self.clock).get_leaderboard(season_id, limit)

    async def rank_leaderboard(self, season_id: Optional[str] = None) -> int:
        async with self._session() as db:
            return await StatsService(db, clock=self.clock).rank_leaderboard(season_id)

    # ── Discount codes ───────────────────────────

    async def generate_code(self, prefix: Optional[str] = None, length: Optional[int] = None) -> str:
        async with self._session() as db:
            return await self._discounts(db).generate_code(prefix, length)

    async def create_discount_code(self, data: DiscountCodeCreate) -> DiscountCode:
        async with self._session() as db:
            return await self._discounts(db).create_discount_code(data)

    async def validate_code(
        self,
        code_value: str,
        user_id: str,
        purchase_amount,
        product: Optional[ProductContext] = None,
    ) -> DiscountValidation:
        async with self._session() as db:
            return await self._discounts(db).validate(code_value, user_id, purchase_amount, product)

    @staticmethod
    def compute_discount(code: DiscountCode, purchase_amount, period_price=None) -> Decimal:
        return pricing.compute_discount(code, purchase_amount, period_price)

    async def redeem_code(
        self,
        code_value: str,
        user_id: str,
        purchase_amount,
        order_id: Optional[str] = None,
        product: Optional[ProductContext] = None,
    ) -> DiscountApplication:
        async with self._session() as db:
            return await self._discounts(db).redeem(code_value, user_id, purchase_amount, order_id, product)

    async def get_usage_history(self, code_id: str) -> List[DiscountUsage]:
        async with self._session() as db:
            return await UsageLedger(db, clock=self.clock).get_usage_history(code_id)
