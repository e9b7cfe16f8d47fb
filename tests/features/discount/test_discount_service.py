import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from app.features.discount.models.discount_code import AppliesTo, DiscountCode, DiscountType, DiscountUsage
from app.features.discount.schemas.discount import DiscountCodeCreate, DiscountCodeUpdate, ProductContext, RejectionReason
from app.features.discount.services.discount_cache import CachedDiscountService, DiscountCodeCache
from app.features.discount.services.discount_service import DiscountService
from app.features.discount.services.pricing import compute_discount
from app.platform.exceptions import CodeGenerationExhausted
from app.platform.utils.code_generator import CODE_ALPHABET


@pytest.fixture
def make_code(session_factory, clock):
    async def _make(**fields):
        fields.setdefault("code", "SPRING20")
        fields.setdefault("type", DiscountType.percent)
        fields.setdefault("value", Decimal("20"))
        async with session_factory() as db:
            return await DiscountService(db, clock=clock).create_discount_code(DiscountCodeCreate(**fields))

    return _make


class TestComputeDiscount:
    """Test suite for discount math"""

    def test_percent_capped_by_max_discount(self):
        code = DiscountCode(type=DiscountType.percent, value=Decimal("20"), max_discount=Decimal("15"))
        assert compute_discount(code, Decimal("100")) == Decimal("15.00")

    def test_percent_rounds_half_up(self):
        code = DiscountCode(type=DiscountType.percent, value=Decimal("15"))
        assert compute_discount(code, Decimal("9.99")) == Decimal("1.50")
        assert compute_discount(code, Decimal("0.10")) == Decimal("0.02")

    def test_fixed_never_exceeds_amount(self):
        code = DiscountCode(type=DiscountType.fixed, value=Decimal("30"))
        assert compute_discount(code, Decimal("20")) == Decimal("20.00")
        assert compute_discount(code, Decimal("45")) == Decimal("30.00")

    def test_period_benefit_uses_period_price(self):
        code = DiscountCode(type=DiscountType.free_month, value=Decimal("1"))
        assert compute_discount(code, Decimal("50"), period_price=Decimal("19.99")) == Decimal("19.99")
        assert compute_discount(code, Decimal("50")) == Decimal("0.00")

    def test_zero_amount(self):
        code = DiscountCode(type=DiscountType.fixed, value=Decimal("5"))
        assert compute_discount(code, Decimal("0")) == Decimal("0.00")


class TestGenerateCode:
    """Test suite for discount code generation"""

    @pytest.mark.asyncio
    async def test_generated_code_shape(self, rewards_engine):
        code = await rewards_engine.generate_code("promo")

        prefix, body = code.split("-")
        assert prefix == "PROMO"
        assert len(body) == 8
        assert set(body) <= set(CODE_ALPHABET)

    @pytest.mark.asyncio
    async def test_exhaustion(self, rewards_engine, make_code):
        await make_code(code="PROMO-AAAAAAAA")

        with patch("app.platform.utils.code_generator.generate_code", return_value="PROMO-AAAAAAAA"):
            with pytest.raises(CodeGenerationExhausted):
                await rewards_engine.generate_code("PROMO")

    @pytest.mark.asyncio
    async def test_create_without_code_generates_one(self, make_code):
        discount = await make_code(code=None)

        assert discount.code.startswith("PROMO-")

    @pytest.mark.asyncio
    async def test_create_duplicate_code(self, make_code):
        await make_code(code="spring20")
        with pytest.raises(ValueError):
            await make_code(code="SPRING20 ")


class TestValidate:
    """Test suite for discount validation outcomes"""

    @pytest.mark.asyncio
    async def test_valid_code(self, rewards_engine, make_code):
        await make_code(max_discount=Decimal("15"))

        result = await rewards_engine.validate_code("spring20", "alice", 100)

        assert result.valid
        assert result.discount_amount == Decimal("15.00")
        assert result.final_amount == Decimal("85.00")
        assert result.discount_code.code == "SPRING20"

    @pytest.mark.asyncio
    async def test_unknown_code(self, rewards_engine):
        result = await rewards_engine.validate_code("NOPE", "alice", 100)

        assert not result.valid
        assert result.reason == RejectionReason.unknown_code
        assert result.message == "Invalid discount code"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "fields, reason",
        [
            ({"is_active": False}, RejectionReason.inactive),
            ({"max_uses": 0}, RejectionReason.max_uses_reached),
            ({"min_purchase": Decimal("150")}, RejectionReason.below_min_purchase),
            ({"applies_to": AppliesTo.lifetime}, RejectionReason.not_applicable),
            ({"applies_to_products": ["credits-100"]}, RejectionReason.not_applicable),
        ],
    )
    async def test_rejections(self, rewards_engine, make_code, fields, reason):
        await make_code(**fields)

        result = await rewards_engine.validate_code(
            "SPRING20", "alice", 100, ProductContext(product_type="subscription", product_id="pro-monthly")
        )

        assert not result.valid
        assert result.reason == reason

    @pytest.mark.asyncio
    async def test_code_window(self, rewards_engine, make_code, clock):
        await make_code(code="LATER", starts_at=clock() + timedelta(days=1))
        await make_code(code="EARLIER", expires_at=clock() - timedelta(seconds=1))

        assert (await rewards_engine.validate_code("LATER", "alice", 100)).reason == RejectionReason.not_started
        assert (await rewards_engine.validate_code("EARLIER", "alice", 100)).reason == RejectionReason.expired

    @pytest.mark.asyncio
    async def test_user_limit(self, rewards_engine, make_code):
        await make_code(max_uses=10, max_uses_per_user=1)
        await rewards_engine.redeem_code("SPRING20", "alice", 100)

        assert (await rewards_engine.validate_code("SPRING20", "alice", 100)).reason == RejectionReason.user_limit_reached
        assert (await rewards_engine.validate_code("SPRING20", "bob", 100)).valid


class TestRedeem:
    """Test suite for redemption and the usage ledger"""

    @pytest.mark.asyncio
    async def test_redeem_records_usage(self, rewards_engine, make_code, db):
        discount = await make_code(type=DiscountType.fixed, value=Decimal("10"), max_uses=5)

        application = await rewards_engine.redeem_code("SPRING20", "alice", "59.90", order_id="order-1")

        assert application.success
        assert application.discount_amount == Decimal("10.00")
        assert application.final_amount == Decimal("49.90")

        [usage] = await rewards_engine.get_usage_history(discount.id)
        assert usage.id == application.usage_id
        assert usage.order_id == "order-1"
        assert usage.original_amount == Decimal("59.90")

        stored = await DiscountService(db).get_by_id(discount.id)
        assert stored.current_uses == 1

    @pytest.mark.asyncio
    async def test_rejected_redemption_leaves_no_usage(self, rewards_engine, make_code):
        discount = await make_code(max_uses=1)
        assert (await rewards_engine.redeem_code("SPRING20", "alice", 100)).success

        application = await rewards_engine.redeem_code("SPRING20", "bob", 100)

        assert not application.success
        assert application.reason == RejectionReason.max_uses_reached
        assert application.final_amount == Decimal("100.00")
        assert application.usage_id is None
        assert len(await rewards_engine.get_usage_history(discount.id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_redemptions_of_last_use(self, session_factory, make_code, clock):
        discount = await make_code(max_uses=1)

        async def redeem(user_id):
            async with session_factory() as db:
                return await DiscountService(db, clock=clock).redeem("SPRING20", user_id, 100)

        results = await asyncio.gather(redeem("alice"), redeem("bob"))

        assert sorted(r.success for r in results) == [False, True]
        async with session_factory() as db:
            stored = await db.get(DiscountCode, discount.id)
            usages = await db.execute(
                select(func.count()).select_from(DiscountUsage).where(DiscountUsage.discount_code_id == discount.id)
            )
            assert stored.current_uses == usages.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_atomic_cap_rejects_after_prevalidation(self, rewards_engine, make_code, session_factory):
        discount = await make_code(max_uses=1)
        assert (await rewards_engine.redeem_code("SPRING20", "alice", 100)).success

        # bob's read of the code still sees a free use
        with patch.object(DiscountService, "_check_code", return_value=None):
            application = await rewards_engine.redeem_code("SPRING20", "bob", 100)

        assert not application.success
        assert application.reason == RejectionReason.max_uses_reached
        assert application.usage_id is None
        history = await rewards_engine.get_usage_history(discount.id)
        assert [u.user_id for u in history] == ["alice"]
        async with session_factory() as db:
            stored = await db.get(DiscountCode, discount.id)
            assert stored.current_uses == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [-5, "-0.01"])
    async def test_negative_purchase_amount(self, rewards_engine, make_code, amount):
        discount = await make_code(max_uses=1)

        with pytest.raises(ValueError):
            await rewards_engine.validate_code("SPRING20", "alice", amount)
        with pytest.raises(ValueError):
            await rewards_engine.redeem_code("SPRING20", "alice", amount)

        assert await rewards_engine.get_usage_history(discount.id) == []
        assert (await rewards_engine.redeem_code("SPRING20", "alice", 20)).success

    @pytest.mark.asyncio
    async def test_usage_counter_matches_ledger(self, rewards_engine, make_code, clock):
        discount = await make_code(max_uses=3, max_uses_per_user=2)

        outcomes = []
        for user_id in ("alice", "alice", "alice", "bob", "carol"):
            clock.advance(seconds=1)
            outcomes.append((await rewards_engine.redeem_code("SPRING20", user_id, 100)).success)

        assert outcomes == [True, True, False, True, False]
        history = await rewards_engine.get_usage_history(discount.id)
        assert [u.user_id for u in history] == ["alice", "alice", "bob"]
        assert all(u.discount_amount <= u.original_amount for u in history)


class TestAdministration:
    """Test suite for discount code updates"""

    @pytest.mark.asyncio
    async def test_cap_cannot_drop_below_uses(self, rewards_engine, make_code, db):
        discount = await make_code(max_uses=5)
        await rewards_engine.redeem_code("SPRING20", "alice", 100)
        await rewards_engine.redeem_code("SPRING20", "bob", 100)

        with pytest.raises(ValueError):
            await DiscountService(db).update_discount_code(discount.id, DiscountCodeUpdate(max_uses=1))

    @pytest.mark.asyncio
    async def test_deactivate(self, rewards_engine, make_code, db):
        discount = await make_code()

        await DiscountService(db).deactivate_discount_code(discount.id)

        assert (await rewards_engine.validate_code("SPRING20", "alice", 100)).reason == RejectionReason.inactive


class TestDiscountCache:
    """Test suite for the hot-code cache"""

    def test_lru_eviction(self):
        cache = DiscountCodeCache(max_entries=2)
        for key in ("A", "B", "C"):
            cache.put(key, DiscountCode(code=key))

        assert "A" not in cache
        assert len(cache) == 2

    def test_ttl(self, clock):
        cache = DiscountCodeCache(ttl_seconds=60, clock=clock)
        cache.put("A", DiscountCode(code="A"))
        clock.advance(seconds=61)

        assert cache.get("A") is None
        assert cache.misses == 1

    @pytest.mark.asyncio
    async def test_validation_reads_through_cache(self, session_factory, make_code, clock):
        await make_code(max_uses=5)
        cache = DiscountCodeCache()

        async with session_factory() as db:
            service = CachedDiscountService(db, cache, clock=clock)
            assert (await service.validate("SPRING20", "alice", 100)).valid
            assert (await service.validate("spring20", "bob", 100)).valid

        assert cache.hits == 1
        assert "SPRING20" in cache

    @pytest.mark.asyncio
    async def test_writes_invalidate(self, session_factory, make_code, clock):
        discount = await make_code(max_uses=5)
        cache = DiscountCodeCache()

        async with session_factory() as db:
            service = CachedDiscountService(db, cache, clock=clock)
            await service.get_by_code("SPRING20")
            assert "SPRING20" in cache

            assert (await service.redeem("SPRING20", "alice", 100)).success
            assert "SPRING20" not in cache

            await service.get_by_code("SPRING20")
            await service.update_discount_code(discount.id, DiscountCodeUpdate(is_active=False))
            assert "SPRING20" not in cache

            assert (await service.validate("SPRING20", "bob", 100)).reason == RejectionReason.inactive
