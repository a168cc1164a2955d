"""Caller identity used for free-tier rate limiting and credit accounting."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from fastapi import Request


@dataclass(frozen=True)
class Identity:
    """Opaque accounting key plus whether an account row backs it."""

    key: str
    account_id: Optional[str] = None
    email: Optional[str] = None

    @property
    def has_persisted_account(self) -> bool:
        return self.account_id is not None

    @classmethod
    def for_account(cls, account_id: str, email: Optional[str] = None) -> "Identity":
        return cls(key=f"user:{account_id}", account_id=account_id, email=email)

    @classmethod
    def for_address(cls, address: str) -> "Identity":
        return cls(key=f"ip:{address or 'unknown'}")


def client_address(request: Request, trusted_proxies: Iterable[str] = ()) -> str:
    """Caller network address.

    The socket peer is authoritative. ``X-Forwarded-For`` is read only when
    the peer is a configured proxy, or when there is no peer at all.
    """
    peer = request.client.host if request.client and request.client.host else None
    if peer is None or peer in set(trusted_proxies):
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return peer or "unknown"


def is_privileged(identity: Identity, admin_emails: Iterable[str]) -> bool:
    """Operator accounts bypass rate limits and credit charges."""
    if not identity.email:
        return False
    allowed = {str(email).strip().lower() for email in admin_emails if str(email).strip()}
    return identity.email.strip().lower() in allowed
