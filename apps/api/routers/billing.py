"""Credits, credit packs and promo code redemption."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.user import User
from routers.auth_scope import get_caller_identity, get_current_identity
from routers.deps import get_access_ledger, get_promo_registry
from routers.rate_limit import rate_limit
from services.access_ledger import AccessLedger
from services.credits import PRODUCTS, add_credit_purchase, get_credit_summary, get_product
from services.identity import Identity
from services.promo_codes import PromoCodeRegistry

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditTopUpRequest(BaseModel):
    product: Optional[str] = None
    credits: Optional[int] = Field(default=None, ge=1, le=10000)
    billing_reference: Optional[str] = None


class PromoRedeemRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)


async def _ensure_user(db: AsyncSession, identity: Identity) -> User:
    result = await db.execute(select(User).where(User.id == identity.account_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(id=identity.account_id, email=identity.email or f"{identity.account_id}@local.invalid")
    db.add(user)
    await db.flush()
    return user


@router.get("/credits")
async def credits_summary(
    identity: Identity = Depends(get_caller_identity),
    ledger: AccessLedger = Depends(get_access_ledger),
    db: AsyncSession = Depends(get_db),
):
    """Account balances for signed-in callers, ledger balance and free-tier state otherwise."""
    free_check = await ledger.can_use_free(identity.key)
    free_tier = {
        "available": free_check.allowed,
        "retry_after_minutes": free_check.retry_after_minutes,
    }
    if identity.has_persisted_account:
        await _ensure_user(db, identity)
        summary = await get_credit_summary(identity.account_id, db)
        summary["free_tier"] = free_tier
        return summary

    stats = await ledger.get_stats(identity.key)
    return {
        "balance": await ledger.get_credits(identity.key),
        "free_generations_used": stats.free_generation_count,
        "free_tier": free_tier,
    }


@router.get("/products")
async def list_products():
    return [
        {
            "key": product.key,
            "name": product.name,
            "credits": product.credits,
            "price": product.price,
            "popular": product.popular,
        }
        for product in PRODUCTS.values()
    ]


@router.post("/topup")
async def manual_topup(
    request: CreditTopUpRequest,
    _rate_limit: None = Depends(rate_limit("billing_topup", limit=30, window_seconds=3600)),
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """Credit a completed purchase to the signed-in account."""
    if request.product:
        product = get_product(request.product)
        if product is None:
            raise HTTPException(status_code=404, detail=f"Unknown product: {request.product}")
        credits = product.credits
        reason = f"Purchased {product.name}"
    elif request.credits:
        credits = request.credits
        reason = "Credit purchase"
    else:
        raise HTTPException(status_code=422, detail="Provide a product or a credit amount.")

    await _ensure_user(db, identity)
    result = await add_credit_purchase(
        user_id=identity.account_id,
        db=db,
        credits=credits,
        provider="manual",
        billing_reference=request.billing_reference or f"manual:{credits}",
        reason=reason,
    )
    return {
        "ok": True,
        "credits_added": credits,
        "balance_after": result.get("balance_after", 0),
    }


@router.post("/promo")
async def redeem_promo(
    request: PromoRedeemRequest,
    _rate_limit: None = Depends(rate_limit("promo_redeem", limit=20, window_seconds=3600)),
    identity: Identity = Depends(get_caller_identity),
    promos: PromoCodeRegistry = Depends(get_promo_registry),
    ledger: AccessLedger = Depends(get_access_ledger),
    db: AsyncSession = Depends(get_db),
):
    redemption = await promos.redeem(identity.key, request.code)
    if not redemption.success:
        raise HTTPException(status_code=400, detail=redemption.error)

    code = request.code.strip().upper()
    try:
        if identity.has_persisted_account:
            await _ensure_user(db, identity)
            result = await add_credit_purchase(
                user_id=identity.account_id,
                db=db,
                credits=redemption.credits,
                provider="promo",
                billing_reference=f"promo:{code}",
                reason=f"Promo code {code}",
                entry_type="promo",
            )
            balance = result.get("balance_after", 0)
        else:
            balance = await ledger.add_credits(identity.key, redemption.credits)
    except Exception:
        await promos.release(identity.key, code)
        raise

    logger.info("Promo %s credited %s credits to %s", code, redemption.credits, identity.key)
    return {
        "ok": True,
        "code": code,
        "credits_added": redemption.credits,
        "balance_after": balance,
    }
