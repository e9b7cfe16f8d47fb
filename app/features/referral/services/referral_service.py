from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.referral.models.referral import OPEN_STATUSES, Referral, ReferralStatus
from app.features.referral.models.referral_code import ReferralCode
from app.features.referral.models.season import ReferralSeason, season_rules
from app.features.referral.schemas.referral import ClickMetadata, ConversionResult, ReferralExportRow, ReferralResponse
from app.features.referral.schemas.season import SeasonConfig, SeasonCreate, SeasonUpdate
from app.features.referral.services.identity import DefaultIdentityResolver, IdentityResolver
from app.features.rewards.services.stats_service import StatsService
from app.features.rewards.services.tier_progression import TierProgressionService
from app.platform.clock import Clock, utcnow
from app.platform.config import settings
from app.platform.db.session import unit_of_work
from app.platform.exceptions import (
    ConversionWindowExpiredError,
    InvalidTransitionError,
    NotFoundError,
    ReferralLimitReachedError,
    SelfReferralError,
)
from app.platform.logger import get_logger
from app.platform.utils.code_generator import generate_unique_code, normalize_code
from app.platform.utils.money import as_decimal, round_money

logger = get_logger(__name__)


def _in_season(column, season_id: Optional[str]):
    if season_id is None:
        return column.is_(None)
    return column == season_id


def _window_elapsed(rules: SeasonConfig, started_at: Optional[datetime], now: datetime) -> bool:
    if started_at is None:
        return False
    return now - started_at > timedelta(days=rules.conversion_window_days)


class ReferralService:
    """
    Referral tracking: seasons, referral codes and the
    clicked -> signed_up -> converted state machine.
    """

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock = utcnow,
        identity_resolver: Optional[IdentityResolver] = None,
        tier_progression: Optional[TierProgressionService] = None,
    ):
        self.db = db
        self.clock = clock
        self.identity_resolver = identity_resolver or DefaultIdentityResolver()
        self.tiers = tier_progression or TierProgressionService(db, clock=clock)
        self.stats = StatsService(db, clock=clock)

    # ── Seasons ──────────────────────────────────

    async def create_season(self, data: SeasonCreate) -> ReferralSeason:
        async with unit_of_work(self.db):
            taken = await self.db.execute(select(ReferralSeason.id).where(ReferralSeason.slug == data.slug))
            if taken.scalar_one_or_none() is not None:
                raise ValueError(f"Season slug {data.slug!r} already exists")

            if data.is_default:
                await self._clear_default()

            season = ReferralSeason(
                name=data.name,
                slug=data.slug,
                description=data.description,
                start_date=data.start_date,
                end_date=data.end_date,
                is_active=data.is_active,
                is_default=data.is_default,
                config=data.config.to_storage(),
            )
            self.db.add(season)
            await self.db.flush()

        logger.info(f"Created referral season {season.slug}")
        return season

    async def _clear_default(self, keep_id: Optional[str] = None) -> None:
        query = update(ReferralSeason).where(ReferralSeason.is_default.is_(True))
        if keep_id is not None:
            query = query.where(ReferralSeason.id != keep_id)
        await self.db.execute(
            query
            .values(is_default=False)
            .execution_options(synchronize_session=False)
        )

    async def _get_season(self, season_id: str) -> ReferralSeason:
        season = await self.db.get(ReferralSeason, season_id, populate_existing=True)
        if season is None:
            raise NotFoundError(f"Season {season_id} not found")
        return season

    async def set_default_season(self, season_id: str) -> ReferralSeason:
        async with unit_of_work(self.db):
            season = await self._get_season(season_id)
            if not season.is_active:
                raise InvalidTransitionError(f"Season {season.slug} is retired")
            await self._clear_default(keep_id=season.id)
            season.is_default = True
            await self.db.flush()

        logger.info(f"Season {season.slug} is now the default")
        return season

    async def retire_season(self, season_id: str) -> ReferralSeason:
        async with unit_of_work(self.db):
            season = await self._get_season(season_id)
            season.is_active = False
            season.is_default = False
            await self.db.flush()

        logger.info(f"Retired season {season.slug}")
        return season

    async def _default_season(self) -> Optional[ReferralSeason]:
        result = await self.db.execute(
            select(ReferralSeason)
            .where(ReferralSeason.is_default.is_(True), ReferralSeason.is_active.is_(True))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_default_season(self) -> Optional[ReferralSeason]:
        async with unit_of_work(self.db):
            return await self._default_season()

    async def get_active_seasons(self) -> List[ReferralSeason]:
        """Active seasons, the default first and then the most recently started."""
        async with unit_of_work(self.db):
            result = await self.db.execute(
                select(ReferralSeason)
                .where(ReferralSeason.is_active.is_(True))
                .order_by(ReferralSeason.is_default.desc(), ReferralSeason.start_date.desc())
            )
            return list(result.scalars().all())

    async def update_season(self, season_id: str, data: SeasonUpdate) -> ReferralSeason:
        """
        Apply a partial update. Making a season the default clears the flag
        everywhere else; deactivating a season also drops its default flag.

        Raises:
            NotFoundError: unknown season
            InvalidTransitionError: an inactive season cannot become the default
        """
        changes = data.model_dump(exclude_unset=True)
        async with unit_of_work(self.db):
            season = await self._get_season(season_id)

            is_active = changes.get("is_active", season.is_active)
            if changes.get("is_default") and not is_active:
                raise InvalidTransitionError(f"Season {season.slug} is not active and cannot be the default")
            if changes.get("is_default"):
                await self._clear_default(keep_id=season.id)
            if not is_active:
                changes["is_default"] = False

            if "config" in changes:
                changes["config"] = data.config.to_storage() if data.config is not None else {}
            for field, value in changes.items():
                setattr(season, field, value)
            await self.db.flush()

        logger.info(f"Updated season {season.slug}: {sorted(changes)}")
        return season

    # ── Referral codes ───────────────────────────

    async def get_or_create_referral_code(self, user_id: str, season_id: Optional[str] = None) -> ReferralCode:
        """
        The user's active code for the season, created on first use.

        Without ``season_id`` the default season is used; with no default
        season the code is season-less.
        """
        now = self.clock()
        async with unit_of_work(self.db):
            season = await self._get_season(season_id) if season_id else await self._default_season()
            scope_id = season.id if season else None

            code = await self._active_code(user_id, scope_id)
            if code is not None and (code.expires_at is None or code.expires_at > now):
                return code
            if code is not None:
                # Expired codes give up the active slot
                code.is_active = False
                await self.db.flush()

            value = await generate_unique_code(
                self.db,
                ReferralCode.code,
                season_rules(season).referral_code_prefix,
                settings.REFERRAL_CODE_LENGTH,
                settings.CODE_GENERATION_MAX_ATTEMPTS,
            )
            code = ReferralCode(user_id=user_id, code=value, season_id=scope_id, clicks=0, is_active=True)
            try:
                async with self.db.begin_nested():
                    self.db.add(code)
                    await self.db.flush()
            except IntegrityError:
                # Created concurrently
                code = await self._active_code(user_id, scope_id)
                if code is None:
                    raise
                return code

        logger.info(f"Created referral code {code.code} for user {user_id}")
        return code

    async def _active_code(self, user_id: str, season_id: Optional[str]) -> Optional[ReferralCode]:
        result = await self.db.execute(
            select(ReferralCode)
            .where(
                ReferralCode.user_id == user_id,
                _in_season(ReferralCode.season_id, season_id),
                ReferralCode.is_active.is_(True),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def deactivate_referral_code(self, code_id: str) -> ReferralCode:
        async with unit_of_work(self.db):
            code = await self.db.get(ReferralCode, code_id, populate_existing=True)
            if code is None:
                raise NotFoundError(f"Referral code {code_id} not found")
            code.is_active = False
            await self.db.flush()

        logger.info(f"Deactivated referral code {code.code}")
        return code

    async def _resolve_code(
        self, code_value: str, now: datetime, lock: bool = False
    ) -> Tuple[ReferralCode, Optional[ReferralSeason]]:
        normalized = normalize_code(code_value)
        query = select(ReferralCode).where(ReferralCode.code == normalized)
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query.execution_options(populate_existing=True))
        code = result.scalar_one_or_none()
        if code is None or not code.is_active or (code.expires_at and code.expires_at <= now):
            raise NotFoundError(f"Referral code {normalized!r} not found or inactive")

        season = None
        if code.season_id:
            season = await self.db.get(ReferralSeason, code.season_id)
            if season is None or not season.is_running(now):
                raise NotFoundError(f"Referral code {normalized!r} belongs to a season that is not running")
        return code, season

    # ── State machine ────────────────────────────

    @staticmethod
    def _transition(referral: Referral, target: ReferralStatus, reason: Optional[str] = None) -> None:
        if not referral.can_move_to(target):
            raise InvalidTransitionError(
                f"Referral {referral.id} cannot move from {referral.status.value} to {target.value}"
            )
        previous = referral.status
        referral.status = target
        if reason:
            referral.status_reason = reason
        logger.info(f"Referral {referral.id}: {previous.value} -> {target.value}" + (f" ({reason})" if reason else ""))

    async def record_click(self, code_value: str, metadata: Optional[ClickMetadata] = None) -> Referral:
        """
        Count a click on a referral link.

        A repeat click by the same visitor while their referral is still open
        updates that referral instead of creating another.

        Raises:
            NotFoundError: unknown, inactive or expired code, or its season is not running
            SelfReferralError: the visitor owns the code
        """
        metadata = metadata or ClickMetadata()
        now = self.clock()

        async with unit_of_work(self.db):
            code, season = await self._resolve_code(code_value, now)
            visitor_key = self.identity_resolver.resolve(metadata)

            if not season_rules(season).allow_self_referral and code.user_id in (visitor_key, metadata.visitor_user_id):
                raise SelfReferralError(f"User {code.user_id} cannot click their own referral code")

            await self.db.execute(
                update(ReferralCode)
                .where(ReferralCode.id == code.id)
                .values(clicks=ReferralCode.clicks + 1, last_click_at=now)
                .execution_options(synchronize_session=False)
            )

            referral = await self._open_referral(code.id, visitor_key) if visitor_key else None
            if referral is not None:
                referral.last_click_at = now
            else:
                referral = Referral(
                    referrer_id=code.user_id,
                    referral_code_id=code.id,
                    season_id=code.season_id,
                    visitor_key=visitor_key,
                    status=ReferralStatus.clicked,
                    click_date=now,
                    last_click_at=now,
                    ip_address=metadata.ip_address,
                    user_agent=metadata.user_agent,
                    utm_source=metadata.utm_source,
                    utm_medium=metadata.utm_medium,
                    utm_campaign=metadata.utm_campaign,
                )
                self.db.add(referral)
            await self.db.flush()

        logger.info(f"Click on referral code {code.code} by visitor {visitor_key or 'anonymous'}")
        return referral

    async def _open_referral(self, code_id: str, visitor_key: str) -> Optional[Referral]:
        result = await self.db.execute(
            select(Referral)
            .where(
                Referral.referral_code_id == code_id,
                Referral.visitor_key == visitor_key,
                Referral.status.in_(OPEN_STATUSES),
            )
            .order_by(Referral.click_date.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _pick_click(self, code_id: str, visitor_keys: Iterable[Optional[str]]) -> Optional[Referral]:
        clicked = (
            select(Referral)
            .where(Referral.referral_code_id == code_id, Referral.status == ReferralStatus.clicked)
            .order_by(Referral.last_click_at.desc(), Referral.click_date.desc())
            .limit(1)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        keys = [key for key in visitor_keys if key]
        if keys:
            result = await self.db.execute(clicked.where(Referral.visitor_key.in_(keys)))
            referral = result.scalar_one_or_none()
            if referral is not None:
                return referral

        result = await self.db.execute(clicked.where(Referral.referred_user_id.is_(None)))
        return result.scalar_one_or_none()

    async def _already_referred(self, referred_user_id: str, season_id: Optional[str]) -> bool:
        result = await self.db.execute(
            select(Referral.id)
            .where(
                Referral.referred_user_id == referred_user_id,
                _in_season(Referral.season_id, season_id),
                Referral.status.in_([ReferralStatus.signed_up, ReferralStatus.converted]),
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def _count_referrals(self, referrer_id: str, season_id: Optional[str]) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(Referral)
            .where(
                Referral.referrer_id == referrer_id,
                _in_season(Referral.season_id, season_id),
                Referral.status.in_([ReferralStatus.signed_up, ReferralStatus.converted]),
            )
        )
        return result.scalar_one()

    async def record_signup(
        self,
        code_value: str,
        referred_user_id: str,
        referred_email: Optional[str] = None,
        visitor_id: Optional[str] = None,
    ) -> Referral:
        """
        Attribute a new account to the click that brought it in.

        Raises:
            NotFoundError: unknown or inactive code
            SelfReferralError: the new user owns the code
            InvalidTransitionError: no click to attribute, the user was already
                referred this season, or the click window has elapsed (the
                referral is expired first)
            ReferralLimitReachedError: the referrer is at the season's limit
                (the referral is rejected first)
        """
        now = self.clock()
        failure = None

        async with unit_of_work(self.db):
            # The code row lock serializes signups that share a referrer and its clicks
            code, season = await self._resolve_code(code_value, now, lock=True)
            rules = season_rules(season)

            if not rules.allow_self_referral and referred_user_id == code.user_id:
                raise SelfReferralError(f"User {referred_user_id} cannot sign up with their own referral code")

            if await self._already_referred(referred_user_id, code.season_id):
                raise InvalidTransitionError(f"User {referred_user_id} was already referred in this season")

            referral = await self._pick_click(code.id, (referred_user_id, visitor_id))
            if referral is None:
                raise InvalidTransitionError(f"No click on {code.code} to attribute user {referred_user_id} to")

            referral.referred_user_id = referred_user_id
            referral.referred_email = referred_email

            if _window_elapsed(rules, referral.click_date, now):
                self._transition(referral, ReferralStatus.expired, reason="click_window_elapsed")
                failure = InvalidTransitionError(f"Referral {referral.id} click window has elapsed")
            elif (
                rules.max_referrals_per_user is not None
                and await self._count_referrals(code.user_id, code.season_id) >= rules.max_referrals_per_user
            ):
                self._transition(referral, ReferralStatus.rejected, reason="referral_limit_reached")
                failure = ReferralLimitReachedError(
                    f"User {code.user_id} reached {rules.max_referrals_per_user} referrals this season"
                )
            else:
                referral.signup_date = now
                self._transition(referral, ReferralStatus.signed_up)

            try:
                await self.db.flush()
            except IntegrityError as exc:
                # Lost a race with a signup through another referrer's code
                raise InvalidTransitionError(
                    f"User {referred_user_id} was already referred in this season"
                ) from exc
            await self.stats.recompute(code.user_id, code.season_id)

        if failure is not None:
            raise failure
        return referral

    async def _lock_referral(self, referral_id: str) -> Optional[Referral]:
        result = await self.db.execute(
            select(Referral)
            .where(Referral.id == referral_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def record_conversion(
        self,
        referral_id: str,
        conversion_type: str,
        conversion_value,
        product_id: Optional[str] = None,
    ) -> ConversionResult:
        """
        Convert a referral and run tier progression for the referrer.

        Raises:
            NotFoundError: unknown referral
            InvalidTransitionError: the referral is not in a convertible state
            ConversionWindowExpiredError: too late or below the season's
                minimum purchase; the referral is committed as expired
        """
        now = self.clock()
        value = as_decimal(conversion_value)
        failure = None

        async with unit_of_work(self.db):
            referral = await self._lock_referral(referral_id)
            if referral is None:
                raise NotFoundError(f"Referral {referral_id} not found")

            season = await self.db.get(ReferralSeason, referral.season_id) if referral.season_id else None
            rules = season_rules(season)

            if not referral.can_move_to(ReferralStatus.converted) or (
                rules.require_conversion and referral.status != ReferralStatus.signed_up
            ):
                raise InvalidTransitionError(
                    f"Referral {referral_id} cannot convert from {referral.status.value}"
                )

            reason = None
            if value < rules.min_purchase_for_conversion:
                reason = "below_min_purchase"
            elif _window_elapsed(rules, referral.signup_date or referral.click_date, now):
                reason = "conversion_window_elapsed"

            if reason is not None:
                self._transition(referral, ReferralStatus.expired, reason=reason)
                await self.db.flush()
                await self.stats.recompute(referral.referrer_id, referral.season_id)
                failure = ConversionWindowExpiredError(
                    f"Referral {referral_id} expired: {reason}", referral_id=referral_id, reason=reason
                )
            else:
                referral.conversion_date = now
                referral.conversion_type = conversion_type
                referral.conversion_value = round_money(value)
                referral.conversion_product = product_id
                self._transition(referral, ReferralStatus.converted)
                await self.db.flush()

                progress = await self.tiers.evaluate(referral.referrer_id, referral.season_id)
                result = ConversionResult(referral=ReferralResponse.model_validate(referral), progress=progress)

        if failure is not None:
            raise failure
        return result

    async def expire_stale_referrals(self, now: Optional[datetime] = None) -> int:
        """
        Expire open referrals whose window has elapsed. Safe to run repeatedly
        and concurrently; returns the number of referrals expired.
        """
        now = now or self.clock()
        expired_total = 0

        async with unit_of_work(self.db):
            season_ids = (
                await self.db.execute(
                    select(Referral.season_id).where(Referral.status.in_(OPEN_STATUSES)).distinct()
                )
            ).scalars().all()

            for season_id in season_ids:
                season = await self.db.get(ReferralSeason, season_id) if season_id else None
                cutoff = now - timedelta(days=season_rules(season).conversion_window_days)
                stale = (
                    _in_season(Referral.season_id, season_id),
                    Referral.status.in_(OPEN_STATUSES),
                    func.coalesce(Referral.signup_date, Referral.click_date) < cutoff,
                )

                referrer_ids = (
                    await self.db.execute(select(Referral.referrer_id).where(*stale).distinct())
                ).scalars().all()
                if not referrer_ids:
                    continue

                result = await self.db.execute(
                    update(Referral)
                    .where(*stale)
                    .values(status=ReferralStatus.expired, status_reason="window_elapsed")
                    .execution_options(synchronize_session=False)
                )
                expired_total += result.rowcount

                for referrer_id in referrer_ids:
                    await self.stats.recompute(referrer_id, season_id)

        if expired_total:
            logger.info(f"Expired {expired_total} stale referral(s)")
        return expired_total

    # ── Queries ──────────────────────────────────

    async def get_referral(self, referral_id: str) -> Referral:
        async with unit_of_work(self.db):
            referral = await self.db.get(Referral, referral_id, populate_existing=True)
            if referral is None:
                raise NotFoundError(f"Referral {referral_id} not found")
            return referral

    async def get_user_referrals(
        self,
        user_id: str,
        season_id: Optional[str] = None,
        status: Optional[ReferralStatus] = None,
    ) -> List[Referral]:
        """Referrals made by ``user_id``, newest first."""
        async with unit_of_work(self.db):
            query = select(Referral).where(Referral.referrer_id == user_id)
            if season_id is not None:
                query = query.where(Referral.season_id == season_id)
            if status is not None:
                query = query.where(Referral.status == status)
            result = await self.db.execute(query.order_by(Referral.click_date.desc(), Referral.id.desc()))
            return list(result.scalars().all())

    # ── Administration ───────────────────────────

    async def list_referral_codes(
        self,
        season_id: Optional[str] = None,
        page: int = 1,
        per_page: int = 100,
    ) -> Tuple[List[ReferralCode], int]:
        """One page of referral codes, newest first, with the total count."""
        offset = (page - 1) * per_page
        async with unit_of_work(self.db):
            total_query = select(func.count(ReferralCode.id))
            query = select(ReferralCode)
            if season_id is not None:
                total_query = total_query.where(ReferralCode.season_id == season_id)
                query = query.where(ReferralCode.season_id == season_id)

            total = await self.db.scalar(total_query) or 0
            result = await self.db.execute(
                query.order_by(ReferralCode.created_at.desc(), ReferralCode.id.desc()).offset(offset).limit(per_page)
            )
            return list(result.scalars().all()), total

    async def list_referrals(
        self,
        status: Optional[ReferralStatus] = None,
        page: int = 1,
        per_page: int = 100,
    ) -> Tuple[List[Referral], int]:
        """One page of referrals across all referrers, newest first, with the total count."""
        offset = (page - 1) * per_page
        async with unit_of_work(self.db):
            total_query = select(func.count(Referral.id))
            query = select(Referral)
            if status is not None:
                total_query = total_query.where(Referral.status == status)
                query = query.where(Referral.status == status)

            total = await self.db.scalar(total_query) or 0
            result = await self.db.execute(
                query.order_by(Referral.created_at.desc(), Referral.id.desc()).offset(offset).limit(per_page)
            )
            return list(result.scalars().all()), total

    async def export_referral_data(self, season_id: Optional[str] = None) -> List[ReferralExportRow]:
        async with unit_of_work(self.db):
            query = (
                select(Referral, ReferralCode.code)
                .outerjoin(ReferralCode, Referral.referral_code_id == ReferralCode.id)
                .order_by(Referral.created_at.desc(), Referral.id.desc())
            )
            if season_id is not None:
                query = query.where(Referral.season_id == season_id)
            rows = (await self.db.execute(query)).all()

        return [
            ReferralExportRow(
                id=referral.id,
                status=referral.status,
                status_reason=referral.status_reason,
                click_date=referral.click_date,
                signup_date=referral.signup_date,
                conversion_date=referral.conversion_date,
                conversion_type=referral.conversion_type,
                conversion_value=referral.conversion_value,
                referral_code=code,
                referrer_id=referral.referrer_id,
                referred_user_id=referral.referred_user_id,
                season_id=referral.season_id,
            )
            for referral, code in rows
        ]
