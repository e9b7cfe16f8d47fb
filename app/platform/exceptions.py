"""
Error taxonomy for the rewards engine.

Business-rule rejections of discount codes are not exceptions: they are
returned as ``DiscountValidation`` / ``DiscountApplication`` results.
Everything here is raised for state-machine violations and for
infrastructure failures.
"""
from typing import Optional


class RewardsEngineError(Exception):
    """Base class for every error raised by the engine."""

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class NotFoundError(RewardsEngineError):
    """Unknown, inactive or expired code, referral, reward or season."""


class InvalidTransitionError(RewardsEngineError):
    """A referral or reward state-machine violation."""


class ReferralLimitReachedError(InvalidTransitionError):
    """The referrer already has the maximum number of referrals for the season."""


class SelfReferralError(RewardsEngineError):
    """The visitor or referred user is the owner of the referral code."""


class ConversionWindowExpiredError(RewardsEngineError):
    """The conversion came too late or was too small; the referral is now expired."""

    def __init__(self, message: str = "", referral_id: Optional[str] = None, reason: Optional[str] = None):
        super().__init__(message)
        self.referral_id = referral_id
        self.reason = reason


class AlreadyClaimedError(RewardsEngineError):
    pass


class NotUnlockedError(RewardsEngineError):
    pass


class ImmutableTierError(RewardsEngineError):
    """A tier referenced by an unlocked reward cannot change its unlock terms."""


class CodeGenerationExhausted(RewardsEngineError):
    """No free code was found within the configured number of attempts."""


class InfrastructureError(RewardsEngineError):
    """The persistence layer failed; the original error is chained as __cause__."""
