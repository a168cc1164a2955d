"""Promo codes that grant free credits, redeemable once per identity."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class PromoCode:
    code: str
    credits: int
    description: str
    max_redemptions: Optional[int] = None
    expires_at: Optional[datetime] = None
    redeemed_by: Set[str] = field(default_factory=set)


@dataclass(frozen=True)
class Redemption:
    success: bool
    credits: int = 0
    error: Optional[str] = None


DEFAULT_CODES = (
    ("FACEBOOK", 5, "Facebook ad source - 5 free video generations"),
    ("LINKEDIN", 5, "LinkedIn ad source - 5 free video generations"),
    ("INSTAGRAM", 5, "Instagram ad source - 5 free video generations"),
    ("TWITTER", 5, "Twitter ad source - 5 free video generations"),
)


class PromoCodeRegistry:
    def __init__(self, clock: Optional[Callable[[], datetime]] = None, *, seed_defaults: bool = True) -> None:
        self._codes: Dict[str, PromoCode] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        if seed_defaults:
            for code, credits, description in DEFAULT_CODES:
                self.add(PromoCode(code=code, credits=credits, description=description))

    def add(self, promo: PromoCode) -> PromoCode:
        promo.code = promo.code.strip().upper()
        self._codes[promo.code] = promo
        logger.info("Promo code added: %s (%s credits)", promo.code, promo.credits)
        return promo

    def remove(self, code: str) -> bool:
        return self._codes.pop(code.strip().upper(), None) is not None

    def get(self, code: str) -> Optional[PromoCode]:
        return self._codes.get(code.strip().upper())

    async def redeem(self, identity_key: str, code: str) -> Redemption:
        """Claim a code for an identity. The caller credits the returned amount."""
        async with self._lock:
            promo = self.get(code)
            if promo is None:
                return Redemption(success=False, error="Invalid promo code")
            if promo.expires_at and self._clock() > promo.expires_at:
                return Redemption(success=False, error="This promo code has expired")
            if identity_key in promo.redeemed_by:
                return Redemption(success=False, error="You have already used this promo code")
            if promo.max_redemptions is not None and len(promo.redeemed_by) >= promo.max_redemptions:
                return Redemption(success=False, error="This promo code has reached its redemption limit")
            promo.redeemed_by.add(identity_key)
        logger.info("Promo code %s redeemed by %s", promo.code, identity_key)
        return Redemption(success=True, credits=promo.credits)

    async def release(self, identity_key: str, code: str) -> None:
        """Undo a claim when crediting the redemption failed."""
        async with self._lock:
            promo = self.get(code)
            if promo is not None:
                promo.redeemed_by.discard(identity_key)
