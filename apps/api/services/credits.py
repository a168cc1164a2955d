"""Account credit purchases, admin grants and credit history."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_ledger import CreditLedger
from models.user import User
from services.account_store import BUCKET_ADMIN, BUCKET_PURCHASED


@dataclass(frozen=True)
class CreditProduct:
    key: str
    name: str
    credits: int
    price: float
    popular: bool = False


PRODUCTS: Dict[str, CreditProduct] = {
    "three_pack": CreditProduct(key="three_pack", name="3 Videos", credits=3, price=9.99),
    "ten_pack": CreditProduct(key="ten_pack", name="10 Videos", credits=10, price=19.99),
    "twenty_five_pack": CreditProduct(
        key="twenty_five_pack", name="25 Videos", credits=25, price=29.99, popular=True
    ),
}


def get_product(key: str) -> Optional[CreditProduct]:
    return PRODUCTS.get(key)


async def _get_user(user_id: str, db: AsyncSession) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def _total(user: User) -> int:
    return int(user.purchased_credits or 0) + int(user.admin_credits or 0)


def _record(
    db: AsyncSession,
    user: User,
    *,
    entry_type: str,
    bucket: str,
    delta_credits: int,
    reason: Optional[str] = None,
    billing_provider: Optional[str] = None,
    billing_reference: Optional[str] = None,
    actor_email: Optional[str] = None,
) -> CreditLedger:
    entry = CreditLedger(
        user_id=user.id,
        entry_type=entry_type,
        bucket=bucket,
        delta_credits=int(delta_credits),
        balance_after=_total(user),
        reason=reason,
        billing_provider=billing_provider,
        billing_reference=billing_reference,
        actor_email=actor_email,
    )
    db.add(entry)
    return entry


async def add_credit_purchase(
    user_id: str,
    db: AsyncSession,
    *,
    credits: int,
    provider: str,
    billing_reference: str,
    reason: str = "Credit purchase",
    entry_type: str = "purchase",
) -> Dict[str, Any]:
    grant = max(int(credits), 0)
    if grant <= 0:
        raise HTTPException(status_code=422, detail="credits must be greater than 0")
    user = await _get_user(user_id, db)
    user.purchased_credits = int(user.purchased_credits or 0) + grant
    _record(
        db,
        user,
        entry_type=entry_type,
        bucket=BUCKET_PURCHASED,
        delta_credits=grant,
        reason=reason,
        billing_provider=provider,
        billing_reference=billing_reference,
    )
    await db.commit()
    return {"balance_after": _total(user)}


async def grant_admin_credits(
    user_id: str,
    db: AsyncSession,
    *,
    credits: int,
    actor_email: str,
) -> Dict[str, Any]:
    grant = int(credits)
    if grant <= 0:
        raise HTTPException(status_code=422, detail="credits must be greater than 0")
    user = await _get_user(user_id, db)
    user.admin_credits = int(user.admin_credits or 0) + grant
    _record(
        db,
        user,
        entry_type="admin_grant",
        bucket=BUCKET_ADMIN,
        delta_credits=grant,
        reason="Admin credit grant",
        actor_email=actor_email,
    )
    await db.commit()
    return _account_payload(user)


async def revoke_admin_credits(
    user_id: str,
    db: AsyncSession,
    *,
    credits: int,
    actor_email: str,
) -> Dict[str, Any]:
    """Claw back admin-granted credits. Purchased credits are never touched."""
    amount = int(credits)
    if amount <= 0:
        raise HTTPException(status_code=422, detail="credits must be greater than 0")
    user = await _get_user(user_id, db)
    available = int(user.admin_credits or 0)
    if available < amount:
        raise HTTPException(
            status_code=400,
            detail=f"User only has {available} admin credits. Cannot remove {amount} credits.",
        )
    user.admin_credits = available - amount
    _record(
        db,
        user,
        entry_type="admin_revoke",
        bucket=BUCKET_ADMIN,
        delta_credits=-amount,
        reason="Admin credit revocation",
        actor_email=actor_email,
    )
    await db.commit()
    return _account_payload(user)


def _account_payload(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "purchased_credits": int(user.purchased_credits or 0),
        "admin_credits": int(user.admin_credits or 0),
        "total_credits": _total(user),
    }


async def list_accounts(db: AsyncSession) -> list[Dict[str, Any]]:
    result = await db.execute(select(User).order_by(User.created_at.desc()))
    return [_account_payload(user) for user in result.scalars().all()]


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    user = await _get_user(user_id, db)
    result = await db.execute(
        select(CreditLedger)
        .where(CreditLedger.user_id == user_id)
        .order_by(CreditLedger.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "balance": _total(user),
        "purchased_credits": int(user.purchased_credits or 0),
        "admin_credits": int(user.admin_credits or 0),
        "recent_entries": [
            {
                "id": entry.id,
                "entry_type": entry.entry_type,
                "bucket": entry.bucket,
                "delta_credits": entry.delta_credits,
                "balance_after": entry.balance_after,
                "reason": entry.reason,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
