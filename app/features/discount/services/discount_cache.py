from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from app.features.discount.models.discount_code import DiscountCode
from app.features.discount.schemas.discount import DiscountApplication, DiscountCodeUpdate
from app.features.discount.services.discount_service import DiscountService
from app.features.discount.services.usage_ledger import UsageLedger
from app.platform.clock import Clock, utcnow
from app.platform.config import settings
from app.platform.logger import get_logger
from app.platform.utils.code_generator import normalize_code

logger = get_logger(__name__)


class DiscountCodeCache:
    """
    Bounded LRU of discount code rows keyed by normalized code.

    Shared per process. Entries are detached snapshots; writes made through
    CachedDiscountService invalidate them, and ``ttl_seconds`` bounds how long
    a change made elsewhere can go unseen.
    """

    def __init__(self, max_entries: Optional[int] = None, ttl_seconds: Optional[int] = None, clock: Clock = utcnow):
        self.max_entries = max_entries or settings.DISCOUNT_CACHE_MAX_ENTRIES
        self.ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else None
        self.clock = clock
        self._entries: "OrderedDict[str, Tuple[DiscountCode, datetime]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[DiscountCode]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        code, stored_at = entry
        if self.ttl is not None and self.clock() - stored_at > self.ttl:
            del self._entries[key]
            self.misses += 1
            return None

        self._entries.move_to_end(key)
        self.hits += 1
        return code

    def put(self, key: str, code: DiscountCode) -> None:
        self._entries[key] = (code, self.clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted discount code {evicted} from cache")

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class CachedDiscountService(DiscountService):
    """
    DiscountService whose read-only lookups go through a DiscountCodeCache.

    Redemption still reads and increments the row in the database.
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: DiscountCodeCache,
        clock: Clock = utcnow,
        ledger: Optional[UsageLedger] = None,
    ):
        super().__init__(db, clock=clock, ledger=ledger)
        self.cache = cache

    async def _lookup(self, normalized: str) -> Optional[DiscountCode]:
        cached = self.cache.get(normalized)
        if cached is not None:
            return cached

        code = await self._find_code(normalized)
        if code is not None:
            # Keep the session's own instance out of the shared cache
            self.db.expunge(code)
            self.cache.put(normalized, code)
        return code

    async def redeem(self, code_value: str, *args, **kwargs) -> DiscountApplication:
        try:
            return await super().redeem(code_value, *args, **kwargs)
        finally:
            self.cache.invalidate(normalize_code(code_value))

    async def update_discount_code(self, code_id: str, data: DiscountCodeUpdate) -> DiscountCode:
        discount = await super().update_discount_code(code_id, data)
        self.cache.invalidate(discount.code)
        return discount
