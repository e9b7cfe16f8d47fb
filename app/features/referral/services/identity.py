import hashlib
from typing import Optional, Protocol

from app.features.referral.schemas.referral import ClickMetadata


class IdentityResolver(Protocol):
    """Maps click metadata to a stable visitor identity, or None when unknown."""

    def resolve(self, metadata: ClickMetadata) -> Optional[str]:
        ...


class DefaultIdentityResolver:
    """
    Logged-in user id first, then the anonymous visitor id, then a
    fingerprint of IP address and user agent.
    """

    def resolve(self, metadata: ClickMetadata) -> Optional[str]:
        if metadata.visitor_user_id:
            return metadata.visitor_user_id
        if metadata.visitor_id:
            return metadata.visitor_id
        if metadata.ip_address or metadata.user_agent:
            raw = f"{metadata.ip_address or ''}|{metadata.user_agent or ''}"
            return "fp:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]
        return None
