import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import IntegrityError

from app.features.referral.models.referral import ReferralStatus
from app.features.referral.models.referral_code import ReferralCode
from app.features.referral.schemas.referral import ClickMetadata
from app.features.referral.services.identity import DefaultIdentityResolver
from app.features.referral.services.referral_service import ReferralService
from app.platform.exceptions import (
    ConversionWindowExpiredError,
    InvalidTransitionError,
    NotFoundError,
    ReferralLimitReachedError,
    SelfReferralError,
)


class TestIdentityResolver:
    """Test suite for visitor identity resolution"""

    def test_prefers_logged_in_user(self):
        metadata = ClickMetadata(visitor_user_id="bob", visitor_id="cookie-1", ip_address="10.0.0.1")
        assert DefaultIdentityResolver().resolve(metadata) == "bob"

    def test_falls_back_to_visitor_id(self):
        metadata = ClickMetadata(visitor_id="cookie-1", ip_address="10.0.0.1")
        assert DefaultIdentityResolver().resolve(metadata) == "cookie-1"

    def test_fingerprint_is_stable(self):
        metadata = ClickMetadata(ip_address="10.0.0.1", user_agent="Mozilla/5.0")
        first = DefaultIdentityResolver().resolve(metadata)
        second = DefaultIdentityResolver().resolve(metadata)
        assert first == second
        assert first.startswith("fp:")

    def test_no_signal_means_anonymous(self):
        assert DefaultIdentityResolver().resolve(ClickMetadata()) is None


class TestRecordClick:
    """Test suite for click tracking"""

    @pytest.mark.asyncio
    async def test_click_creates_clicked_referral(self, rewards_engine, make_season, clock):
        season = await make_season()
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)

        referral = await rewards_engine.record_click(
            code.code, ClickMetadata(visitor_id="cookie-1", utm_source="newsletter")
        )

        assert referral.status == ReferralStatus.clicked
        assert referral.referrer_id == "alice"
        assert referral.season_id == season.id
        assert referral.click_date == clock()
        assert referral.utm_source == "newsletter"

    @pytest.mark.asyncio
    async def test_code_lookup_is_normalized(self, rewards_engine, make_season):
        season = await make_season()
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)

        referral = await rewards_engine.record_click(f"  {code.code.lower()} ", ClickMetadata(visitor_id="v"))

        assert referral.referral_code_id == code.id

    @pytest.mark.asyncio
    async def test_repeat_click_updates_open_referral(self, rewards_engine, make_season, clock, db):
        season = await make_season()
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)

        first = await rewards_engine.record_click(code.code, ClickMetadata(visitor_id="cookie-1"))
        clock.advance(hours=2)
        second = await rewards_engine.record_click(code.code, ClickMetadata(visitor_id="cookie-1"))

        assert first.id == second.id
        assert second.last_click_at == clock()

        referrals = await ReferralService(db).get_user_referrals("alice")
        assert len(referrals) == 1

        refreshed = await rewards_engine.get_or_create_referral_code("alice", season.id)
        assert refreshed.clicks == 2

    @pytest.mark.asyncio
    async def test_anonymous_clicks_are_not_merged(self, rewards_engine, make_season, db):
        season = await make_season()
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)

        await rewards_engine.record_click(code.code)
        await rewards_engine.record_click(code.code)

        assert len(await ReferralService(db).get_user_referrals("alice")) == 2

    @pytest.mark.asyncio
    async def test_unknown_code(self, rewards_engine):
        with pytest.raises(NotFoundError):
            await rewards_engine.record_click("REF-NOPE", ClickMetadata(visitor_id="v"))

    @pytest.mark.asyncio
    async def test_deactivated_code(self, rewards_engine, make_season, db):
        season = await make_season()
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)
        await ReferralService(db).deactivate_referral_code(code.id)

        with pytest.raises(NotFoundError):
            await rewards_engine.record_click(code.code, ClickMetadata(visitor_id="v"))

    @pytest.mark.asyncio
    async def test_retired_season_code(self, rewards_engine, make_season, db):
        season = await make_season()
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)
        await ReferralService(db).retire_season(season.id)

        with pytest.raises(NotFoundError):
            await rewards_engine.record_click(code.code, ClickMetadata(visitor_id="v"))

    @pytest.mark.asyncio
    async def test_self_referral_click_writes_nothing(self, rewards_engine, make_season, db):
        season = await make_season()
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)

        with pytest.raises(SelfReferralError):
            await rewards_engine.record_click(code.code, ClickMetadata(visitor_user_id="alice"))

        assert await ReferralService(db).get_user_referrals("alice") == []
        refreshed = await rewards_engine.get_or_create_referral_code("alice", season.id)
        assert refreshed.clicks == 0

    @pytest.mark.asyncio
    async def test_self_referral_allowed_by_season(self, rewards_engine, make_season):
        season = await make_season(allow_self_referral=True)
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)

        referral = await rewards_engine.record_click(code.code, ClickMetadata(visitor_user_id="alice"))

        assert referral.visitor_key == "alice"


class TestRecordSignup:
    """Test suite for signup attribution"""

    @pytest.mark.asyncio
    async def test_signup_moves_click_to_signed_up(self, rewards_engine, make_season, refer, clock):
        season = await make_season()
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)

        referral = await refer(code, "bob")

        assert referral.status == ReferralStatus.signed_up
        assert referral.referred_user_id == "bob"
        assert referral.referred_email == "bob@example.com"
        assert referral.click_date <= referral.signup_date

        stats = await rewards_engine.get_stats("alice", season.id)
        assert stats.pending_referrals == 1
        assert stats.total_referrals == 1
        assert stats.successful_referrals == 0

    @pytest.mark.asyncio
    async def test_signup_without_click(self, rewards_engine, make_season):
        season = await make_season()
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)

        with pytest.raises(InvalidTransitionError):
            await rewards_engine.record_signup(code.code, "bob")

    @pytest.mark.asyncio
    async def test_self_signup(self, rewards_engine, make_season):
        season = await make_season()
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)
        await rewards_engine.record_click(code.code, ClickMetadata(visitor_id="v"))

        with pytest.raises(SelfReferralError):
            await rewards_engine.record_signup(code.code, "alice", visitor_id="v")

    @pytest.mark.asyncio
    async def test_user_cannot_be_referred_twice(self, rewards_engine, make_season, refer):
        season = await make_season()
        alice_code = await rewards_engine.get_or_create_referral_code("alice", season.id)
        carol_code = await rewards_engine.get_or_create_referral_code("carol", season.id)
        await refer(alice_code, "bob")
        await rewards_engine.record_click(carol_code.code, ClickMetadata(visitor_id="visitor-bob"))

        with pytest.raises(InvalidTransitionError):
            await rewards_engine.record_signup(carol_code.code, "bob", visitor_id="visitor-bob")

    @pytest.mark.asyncio
    async def test_signup_after_click_window_expires_referral(self, rewards_engine, make_season, clock, db):
        season = await make_season(conversion_window_days=7)
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)
        await rewards_engine.record_click(code.code, ClickMetadata(visitor_id="v"))
        clock.advance(days=8)

        with pytest.raises(InvalidTransitionError):
            await rewards_engine.record_signup(code.code, "bob", visitor_id="v")

        [referral] = await ReferralService(db).get_user_referrals("alice")
        assert referral.status == ReferralStatus.expired
        assert referral.status_reason == "click_window_elapsed"

    @pytest.mark.asyncio
    async def test_referral_limit(self, rewards_engine, make_season, refer, db):
        season = await make_season(max_referrals_per_user=1)
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)
        await refer(code, "bob")

        with pytest.raises(ReferralLimitReachedError):
            await refer(code, "carol")

        rejected = await ReferralService(db).get_user_referrals("alice", status=ReferralStatus.rejected)
        assert [r.referred_user_id for r in rejected] == ["carol"]

    @pytest.mark.asyncio
    async def test_limit_error_is_an_invalid_transition(self):
        assert issubclass(ReferralLimitReachedError, InvalidTransitionError)

    @pytest.mark.asyncio
    async def test_concurrent_signups_respect_limit(self, rewards_engine, make_season, session_factory, clock):
        season = await make_season(max_referrals_per_user=1)
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)
        for visitor_id in ("v-bob", "v-carol"):
            await rewards_engine.record_click(code.code, ClickMetadata(visitor_id=visitor_id))

        async def signup(user_id, visitor_id):
            async with session_factory() as db:
                return await ReferralService(db, clock=clock).record_signup(code.code, user_id, visitor_id=visitor_id)

        results = await asyncio.gather(
            signup("bob", "v-bob"), signup("carol", "v-carol"), return_exceptions=True
        )

        assert sum(isinstance(r, ReferralLimitReachedError) for r in results) == 1
        assert sum(getattr(r, "status", None) == ReferralStatus.signed_up for r in results) == 1
        stats = await rewards_engine.get_stats("alice", season.id)
        assert stats.total_referrals == 1

    @pytest.mark.asyncio
    async def test_second_referrer_loses_to_unique_signup(self, rewards_engine, make_season, refer, db):
        season = await make_season()
        alice_code = await rewards_engine.get_or_create_referral_code("alice", season.id)
        carol_code = await rewards_engine.get_or_create_referral_code("carol", season.id)
        await refer(alice_code, "bob")
        await rewards_engine.record_click(carol_code.code, ClickMetadata(visitor_id="visitor-bob"))

        # carol's signup passed the read check before alice's committed
        with patch.object(ReferralService, "_already_referred", new=AsyncMock(return_value=False)):
            with pytest.raises(InvalidTransitionError):
                await rewards_engine.record_signup(carol_code.code, "bob", visitor_id="visitor-bob")

        [clicked] = await ReferralService(db).get_user_referrals("carol")
        assert clicked.status == ReferralStatus.clicked
        assert clicked.referred_user_id is None


class TestRecordConversion:
    """Test suite for conversions and the conversion window"""

    @pytest.mark.asyncio
    async def test_conversion(self, rewards_engine, make_season, refer, clock):
        season = await make_season()
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)
        referral = await refer(code, "bob")
        clock.advance(days=3)

        result = await rewards_engine.record_conversion(referral.id, "subscription", "49.999", product_id="pro")

        assert result.referral.status == ReferralStatus.converted
        assert result.referral.conversion_value == Decimal("50.00")
        assert result.referral.signup_date <= result.referral.conversion_date
        assert result.progress.successful_referrals == 1

        stats = await rewards_engine.get_stats("alice", season.id)
        assert stats.successful_referrals == 1
        assert stats.total_conversion_value == Decimal("50.00")
        assert stats.first_conversion_at == clock()

    @pytest.mark.asyncio
    async def test_conversion_after_window(self, rewards_engine, make_season, clock, db):
        season = await make_season(conversion_window_days=7)
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)
        await rewards_engine.record_click(code.code, ClickMetadata(visitor_id="v"))
        clock.advance(days=1)
        referral = await rewards_engine.record_signup(code.code, "bob", visitor_id="v")
        clock.advance(days=8)

        with pytest.raises(ConversionWindowExpiredError) as exc_info:
            await rewards_engine.record_conversion(referral.id, "subscription", 50)

        assert exc_info.value.referral_id == referral.id
        assert exc_info.value.reason == "conversion_window_elapsed"
        expired = await ReferralService(db).get_referral(referral.id)
        assert expired.status == ReferralStatus.expired
        assert expired.conversion_date is None

    @pytest.mark.asyncio
    async def test_conversion_below_minimum(self, rewards_engine, make_season, refer, db):
        season = await make_season(min_purchase_for_conversion=Decimal("20"))
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)
        referral = await refer(code, "bob")

        with pytest.raises(ConversionWindowExpiredError) as exc_info:
            await rewards_engine.record_conversion(referral.id, "credits", "19.99")

        assert exc_info.value.reason == "below_min_purchase"
        assert (await ReferralService(db).get_referral(referral.id)).status == ReferralStatus.expired

    @pytest.mark.asyncio
    async def test_conversion_requires_signup(self, rewards_engine, make_season):
        season = await make_season()
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)
        referral = await rewards_engine.record_click(code.code, ClickMetadata(visitor_id="v"))

        with pytest.raises(InvalidTransitionError):
            await rewards_engine.record_conversion(referral.id, "subscription", 50)

    @pytest.mark.asyncio
    async def test_direct_conversion_when_signup_not_required(self, rewards_engine, make_season):
        season = await make_season(require_conversion=False)
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)
        referral = await rewards_engine.record_click(code.code, ClickMetadata(visitor_id="v"))

        result = await rewards_engine.record_conversion(referral.id, "lifetime", 99)

        assert result.referral.status == ReferralStatus.converted

    @pytest.mark.asyncio
    async def test_converted_referral_never_regresses(self, rewards_engine, make_season, refer):
        season = await make_season()
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)
        result = await refer(code, "bob", conversion_value=10)

        with pytest.raises(InvalidTransitionError):
            await rewards_engine.record_conversion(result.referral.id, "subscription", 10)

    @pytest.mark.asyncio
    async def test_unknown_referral(self, rewards_engine):
        with pytest.raises(NotFoundError):
            await rewards_engine.record_conversion("missing", "subscription", 10)


class TestExpireStaleReferrals:
    """Test suite for the expiration sweep"""

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, rewards_engine, make_season, refer, clock, db):
        season = await make_season(conversion_window_days=7)
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)
        await refer(code, "bob")
        await rewards_engine.record_click(code.code, ClickMetadata(visitor_id="v"))
        await refer(code, "carol", conversion_value=10)
        clock.advance(days=8)

        assert await rewards_engine.expire_stale_referrals() == 2
        assert await rewards_engine.expire_stale_referrals() == 0

        statuses = sorted(r.status.value for r in await ReferralService(db).get_user_referrals("alice"))
        assert statuses == ["converted", "expired", "expired"]

        stats = await rewards_engine.get_stats("alice", season.id)
        assert stats.expired_referrals == 2
        assert stats.pending_referrals == 0
        assert stats.successful_referrals == 1

    @pytest.mark.asyncio
    async def test_sweep_leaves_fresh_referrals(self, rewards_engine, make_season, refer, clock):
        season = await make_season(conversion_window_days=7)
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)
        await refer(code, "bob")
        clock.advance(days=6)

        assert await rewards_engine.expire_stale_referrals() == 0


class TestSeasons:
    """Test suite for season administration and referral codes"""

    @pytest.mark.asyncio
    async def test_single_default_season(self, make_season, db):
        first = await make_season("spring", is_default=True)
        second = await make_season("summer", is_default=True)
        service = ReferralService(db)

        assert (await service.get_default_season()).id == second.id

        await service.set_default_season(first.id)
        assert (await service.get_default_season()).id == first.id

    @pytest.mark.asyncio
    async def test_duplicate_slug(self, make_season):
        await make_season("spring")
        with pytest.raises(ValueError):
            await make_season("spring")

    @pytest.mark.asyncio
    async def test_code_is_reused_per_season(self, rewards_engine, make_season):
        season = await make_season(referral_code_prefix="SPRING")

        first = await rewards_engine.get_or_create_referral_code("alice", season.id)
        second = await rewards_engine.get_or_create_referral_code("alice", season.id)

        assert first.id == second.id
        assert first.code.startswith("SPRING-")

    @pytest.mark.asyncio
    async def test_concurrent_first_calls_share_one_code(self, make_season, session_factory, clock):
        season = await make_season()

        async def get_code():
            async with session_factory() as db:
                return await ReferralService(db, clock=clock).get_or_create_referral_code("alice", season.id)

        first, second = await asyncio.gather(get_code(), get_code())

        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_expired_code_is_replaced(self, rewards_engine, make_season, db, clock):
        season = await make_season()
        first = await rewards_engine.get_or_create_referral_code("alice", season.id)
        stored = await db.get(ReferralCode, first.id)
        stored.expires_at = clock() - timedelta(hours=1)
        await db.commit()

        second = await rewards_engine.get_or_create_referral_code("alice", season.id)

        assert second.id != first.id
        await db.refresh(stored)
        assert stored.is_active is False
        await db.commit()

    @pytest.mark.asyncio
    async def test_one_active_code_per_user_and_season(self, db):
        db.add_all(
            [
                ReferralCode(user_id="alice", code="REF-AAAAAAAA", clicks=0, is_active=True),
                ReferralCode(user_id="alice", code="REF-BBBBBBBB", clicks=0, is_active=True),
            ]
        )
        with pytest.raises(IntegrityError):
            await db.flush()
        await db.rollback()

    @pytest.mark.asyncio
    async def test_code_defaults_to_default_season(self, rewards_engine, make_season):
        season = await make_season(is_default=True)

        code = await rewards_engine.get_or_create_referral_code("alice")

        assert code.season_id == season.id

    @pytest.mark.asyncio
    async def test_season_less_code(self, rewards_engine, refer):
        code = await rewards_engine.get_or_create_referral_code("alice")
        assert code.season_id is None

        result = await refer(code, "bob", conversion_value=10)

        assert result.referral.season_id is None
        stats = await rewards_engine.get_stats("alice")
        assert stats.successful_referrals == 1
        assert stats.season_scope == "*"

    @pytest.mark.asyncio
    async def test_season_not_started(self, rewards_engine, make_season, db, clock):
        season = await make_season()
        code = await rewards_engine.get_or_create_referral_code("alice", season.id)
        clock.now = season.start_date - timedelta(days=1)

        with pytest.raises(NotFoundError):
            await rewards_engine.record_click(code.code, ClickMetadata(visitor_id="v"))
