from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.discount.models.discount_code import (
    AppliesTo,
    DiscountCode,
    DiscountSource,
    DiscountType,
    DiscountUsage,
)
from app.features.discount.schemas.discount import (
    DiscountApplication,
    DiscountCodeCreate,
    DiscountCodeResponse,
    DiscountCodeUpdate,
    DiscountValidation,
    ProductContext,
    RejectionReason,
)
from app.features.discount.services import pricing
from app.features.discount.services.usage_ledger import UsageCapReached, UsageLedger
from app.platform.clock import Clock, utcnow
from app.platform.config import settings
from app.platform.db.session import unit_of_work
from app.platform.exceptions import NotFoundError
from app.platform.logger import get_logger
from app.platform.utils.code_generator import generate_unique_code, normalize_code

logger = get_logger(__name__)


def _purchase_amount(value) -> Decimal:
    amount = pricing.as_decimal(value)
    if amount < 0:
        raise ValueError(f"Purchase amount cannot be negative: {amount}")
    return amount


class DiscountService:
    """Generation, validation and redemption of discount codes."""

    def __init__(self, db: AsyncSession, clock: Clock = utcnow, ledger: Optional[UsageLedger] = None):
        self.db = db
        self.clock = clock
        self.ledger = ledger or UsageLedger(db, clock=clock)

    # ── Lookup ───────────────────────────────────

    async def _find_code(self, normalized: str) -> Optional[DiscountCode]:
        result = await self.db.execute(
            select(DiscountCode)
            .where(DiscountCode.code == normalized)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _lookup(self, normalized: str) -> Optional[DiscountCode]:
        """Lookup used by read-only validation; overridden by the caching decorator."""
        return await self._find_code(normalized)

    async def get_by_code(self, code_value: str) -> Optional[DiscountCode]:
        async with unit_of_work(self.db):
            return await self._lookup(normalize_code(code_value))

    async def get_by_id(self, code_id: str) -> Optional[DiscountCode]:
        async with unit_of_work(self.db):
            return await self.db.get(DiscountCode, code_id)

    # ── Generation ───────────────────────────────

    async def generate_code(self, prefix: Optional[str] = None, length: Optional[int] = None) -> str:
        """
        Return a code that is not yet taken.

        Raises:
            CodeGenerationExhausted: every attempt collided
        """
        async with unit_of_work(self.db):
            return await self._generate_code(prefix, length)

    async def _generate_code(self, prefix: Optional[str], length: Optional[int] = None) -> str:
        return await generate_unique_code(
            self.db,
            DiscountCode.code,
            prefix,
            length or settings.DISCOUNT_CODE_LENGTH,
            settings.CODE_GENERATION_MAX_ATTEMPTS,
        )

    async def create_discount_code(self, data: DiscountCodeCreate) -> DiscountCode:
        async with unit_of_work(self.db):
            if data.code:
                code_value = normalize_code(data.code)
                if await self._find_code(code_value) is not None:
                    raise ValueError(f"Discount code {code_value} already exists")
            else:
                code_value = await self._generate_code(settings.DISCOUNT_CODE_PREFIX)

            discount = DiscountCode(
                code=code_value,
                name=data.name,
                description=data.description,
                type=data.type,
                value=data.value,
                applies_to=data.applies_to,
                applies_to_products=data.applies_to_products,
                source=data.source,
                max_uses=data.max_uses,
                max_uses_per_user=data.max_uses_per_user,
                current_uses=0,
                min_purchase=data.min_purchase,
                max_discount=data.max_discount,
                is_active=data.is_active,
                is_public=data.is_public,
                starts_at=data.starts_at or self.clock(),
                expires_at=data.expires_at,
                created_by=data.created_by,
            )
            self.db.add(discount)
            await self.db.flush()

        logger.info(f"Created {discount.source.value} discount code {discount.code}")
        return discount

    async def mint_for_reward(self, reward_id: str, reward_value: Dict[str, Any]) -> DiscountCode:
        """
        Issue the discount code backing a referral reward.

        Runs inside the caller's transaction. ``reward_value`` is the tier's
        JSON, e.g. {"percent": 25, "code_prefix": "BRONZE25", "max_uses": 1,
        "expires_days": 60}; {"amount": 10} issues a fixed discount.
        """
        prefix = reward_value.get("code_prefix") or settings.REWARD_CODE_PREFIX
        code_value = await self._generate_code(prefix)

        if "percent" in reward_value:
            discount_type, value = DiscountType.percent, reward_value["percent"]
        elif "amount" in reward_value:
            discount_type, value = DiscountType.fixed, reward_value["amount"]
        else:
            discount_type = DiscountType(reward_value.get("type", DiscountType.percent.value))
            value = reward_value.get("value", 0)

        now = self.clock()
        expires_days = reward_value.get("expires_days")
        discount = DiscountCode(
            code=code_value,
            name=reward_value.get("name"),
            type=discount_type,
            value=pricing.as_decimal(value),
            applies_to=AppliesTo(reward_value.get("applies_to", AppliesTo.all.value)),
            source=DiscountSource.referral,
            max_uses=reward_value.get("max_uses", 1),
            max_uses_per_user=reward_value.get("max_uses_per_user", 1),
            current_uses=0,
            min_purchase=reward_value.get("min_purchase"),
            max_discount=reward_value.get("max_discount"),
            referral_reward_id=reward_id,
            is_active=True,
            is_public=False,
            starts_at=now,
            expires_at=now + timedelta(days=expires_days) if expires_days else None,
        )
        self.db.add(discount)
        await self.db.flush()

        logger.info(f"Minted discount code {discount.code} for reward {reward_id}")
        return discount

    async def update_discount_code(self, code_id: str, data: DiscountCodeUpdate) -> DiscountCode:
        async with unit_of_work(self.db):
            discount = await self.db.get(DiscountCode, code_id, populate_existing=True)
            if discount is None:
                raise NotFoundError(f"Discount code {code_id} not found")

            changes = data.model_dump(exclude_unset=True)
            new_cap = changes.get("max_uses")
            if new_cap is not None and new_cap < discount.current_uses:
                raise ValueError(
                    f"max_uses {new_cap} is below the {discount.current_uses} uses already recorded"
                )
            for field, value in changes.items():
                setattr(discount, field, value)
            await self.db.flush()

        logger.info(f"Updated discount code {discount.code}: {sorted(changes)}")
        return discount

    async def deactivate_discount_code(self, code_id: str) -> DiscountCode:
        return await self.update_discount_code(code_id, DiscountCodeUpdate(is_active=False))

    # ── Validation ───────────────────────────────

    @staticmethod
    def compute_discount(code, purchase_amount, period_price=None) -> Decimal:
        return pricing.compute_discount(code, purchase_amount, period_price)

    def _check_code(self, code: DiscountCode) -> Optional[RejectionReason]:
        now = self.clock()
        if not code.is_active:
            return RejectionReason.inactive
        if code.starts_at and now < code.starts_at:
            return RejectionReason.not_started
        if code.expires_at and now > code.expires_at:
            return RejectionReason.expired
        if code.max_uses is not None and code.current_uses >= code.max_uses:
            return RejectionReason.max_uses_reached
        return None

    def _check_purchase(self, code: DiscountCode, purchase_amount: Decimal, product: ProductContext) -> Optional[RejectionReason]:
        if code.min_purchase is not None and purchase_amount < pricing.as_decimal(code.min_purchase):
            return RejectionReason.below_min_purchase
        if not pricing.applies_to_product(code, product.product_type, product.product_id):
            return RejectionReason.not_applicable
        return None

    async def _validate(
        self,
        code: Optional[DiscountCode],
        user_id: str,
        purchase_amount: Decimal,
        product: ProductContext,
    ) -> DiscountValidation:
        if code is None:
            return DiscountValidation.reject(RejectionReason.unknown_code)

        snapshot = DiscountCodeResponse.model_validate(code)
        reason = self._check_code(code)
        if reason is None and await self.ledger.count_user_usages(code.id, user_id) >= code.max_uses_per_user:
            reason = RejectionReason.user_limit_reached
        if reason is None:
            reason = self._check_purchase(code, purchase_amount, product)
        if reason is not None:
            return DiscountValidation.reject(reason, discount_code=snapshot)

        discount_amount = pricing.compute_discount(code, purchase_amount, product.period_price)
        return DiscountValidation(
            valid=True,
            discount_code=snapshot,
            discount_amount=discount_amount,
            final_amount=pricing.final_amount(purchase_amount, discount_amount),
        )

    async def validate(
        self,
        code_value: str,
        user_id: str,
        purchase_amount,
        product: Optional[ProductContext] = None,
    ) -> DiscountValidation:
        """
        Check whether ``user_id`` may apply the code to this purchase.

        Expected business outcomes come back as ``valid=False`` with a reason;
        nothing is raised for them.

        Raises:
            ValueError: negative purchase amount
        """
        amount = _purchase_amount(purchase_amount)
        product = product or ProductContext()

        async with unit_of_work(self.db):
            code = await self._lookup(normalize_code(code_value))
            validation = await self._validate(code, user_id, amount, product)

        if not validation.valid:
            logger.info(f"Discount code {normalize_code(code_value)!r} rejected for user {user_id}: {validation.reason.value}")
        return validation

    # ── Redemption ───────────────────────────────

    async def redeem(
        self,
        code_value: str,
        user_id: str,
        purchase_amount,
        order_id: Optional[str] = None,
        product: Optional[ProductContext] = None,
    ) -> DiscountApplication:
        """
        Validate and apply a code, recording the usage.

        The cap check and the counter increment happen in one conditional
        UPDATE in the ledger; a redemption that loses the race returns
        ``success=False`` and leaves no usage row.

        Raises:
            ValueError: negative purchase amount; nothing is recorded
        """
        amount = _purchase_amount(purchase_amount)
        product = product or ProductContext()
        normalized = normalize_code(code_value)

        async with unit_of_work(self.db):
            code = await self._find_code(normalized)
            validation = await self._validate(code, user_id, amount, product)
            if not validation.valid:
                application = self._rejected(amount, validation.reason)
            else:
                application = await self._apply(code, user_id, amount, validation.discount_amount, order_id, product)

        if application.success:
            logger.info(f"User {user_id} redeemed {normalized}: {amount} -> {application.final_amount}")
        else:
            logger.info(f"Redemption of {normalized!r} by user {user_id} rejected: {application.reason.value}")
        return application

    async def _apply(
        self,
        code: DiscountCode,
        user_id: str,
        amount: Decimal,
        discount_amount: Decimal,
        order_id: Optional[str],
        product: ProductContext,
    ) -> DiscountApplication:
        usage = DiscountUsage(
            discount_code_id=code.id,
            user_id=user_id,
            order_id=order_id,
            original_amount=pricing.round_money(amount),
            discount_amount=discount_amount,
            final_amount=pricing.final_amount(amount, discount_amount),
            product_type=product.product_type,
            product_id=product.product_id,
        )
        try:
            await self.ledger.append_and_count(usage)
        except UsageCapReached as exc:
            return self._rejected(amount, exc.reason)

        await self.db.refresh(code)
        return DiscountApplication(
            success=True,
            final_amount=usage.final_amount,
            discount_amount=usage.discount_amount,
            usage_id=usage.id,
        )

    @staticmethod
    def _rejected(amount: Decimal, reason: RejectionReason) -> DiscountApplication:
        validation = DiscountValidation.reject(reason)
        return DiscountApplication(
            success=False,
            final_amount=pricing.round_money(amount),
            discount_amount=pricing.ZERO,
            reason=validation.reason,
            message=validation.message,
        )