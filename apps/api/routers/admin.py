"""Operator endpoints for account credits."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import require_admin
from services.credits import grant_admin_credits, list_accounts, revoke_admin_credits
from services.identity import Identity

router = APIRouter()


class AdminCreditRequest(BaseModel):
    user_id: str = Field(min_length=1)
    credits: int = Field(ge=1, le=10000)


@router.get("/users")
async def admin_users(
    _admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return {"users": await list_accounts(db)}


@router.post("/credits/grant")
async def admin_grant_credits(
    request: AdminCreditRequest,
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    account = await grant_admin_credits(
        request.user_id,
        db,
        credits=request.credits,
        actor_email=admin.email or admin.key,
    )
    return {"ok": True, "user": account}


@router.post("/credits/revoke")
async def admin_revoke_credits(
    request: AdminCreditRequest,
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Remove admin-granted credits; purchased credits are left alone."""
    account = await revoke_admin_credits(
        request.user_id,
        db,
        credits=request.credits,
        actor_email=admin.email or admin.key,
    )
    return {"ok": True, "user": account}
