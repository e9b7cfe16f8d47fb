# Import every model so Base.metadata knows all tables
from app.features.discount.models.discount_code import DiscountCode, DiscountUsage  # noqa: F401
from app.features.referral.models.referral import Referral  # noqa: F401
from app.features.referral.models.referral_code import ReferralCode  # noqa: F401
from app.features.referral.models.season import ReferralSeason  # noqa: F401
from app.features.rewards.models.reward import ReferralReward  # noqa: F401
from app.features.rewards.models.stats import ReferralStats  # noqa: F401
from app.features.rewards.models.tier import ReferralTier  # noqa: F401
from app.platform.db.base import Base  # noqa: F401
