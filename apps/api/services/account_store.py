"""Account credit balances for authenticated identities."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from models.credit_ledger import CreditLedger
from models.user import User

logger = logging.getLogger(__name__)

BUCKET_ADMIN = "admin"
BUCKET_PURCHASED = "purchased"
# Admin grants are revocable promotional credit, so they are spent first.
DEBIT_ORDER = (BUCKET_ADMIN, BUCKET_PURCHASED)

BALANCE_FIELDS = {"purchased_credits", "admin_credits"}
UPDATABLE_ACCOUNT_FIELDS = BALANCE_FIELDS | {"name", "picture", "last_login"}


@dataclass(frozen=True)
class AccountBalance:
    account_id: str
    email: Optional[str]
    purchased_credits: int
    admin_credits: int

    @property
    def total_credits(self) -> int:
        return self.purchased_credits + self.admin_credits


@dataclass(frozen=True)
class CreditDebit:
    bucket: str
    balance: AccountBalance


class AccountStore(ABC):
    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[AccountBalance]:
        raise NotImplementedError

    @abstractmethod
    async def update_account(self, account_id: str, **fields: Any) -> Optional[AccountBalance]:
        raise NotImplementedError

    @abstractmethod
    async def deduct_credit(self, account_id: str) -> Optional[CreditDebit]:
        """Spend one credit, admin bucket first. None when the account has nothing to spend."""
        raise NotImplementedError

    @abstractmethod
    async def refund_credit(self, account_id: str, bucket: str) -> Optional[AccountBalance]:
        raise NotImplementedError


def _balance_from_user(user: User) -> AccountBalance:
    return AccountBalance(
        account_id=user.id,
        email=user.email,
        purchased_credits=int(user.purchased_credits or 0),
        admin_credits=int(user.admin_credits or 0),
    )


def _check_update_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_ACCOUNT_FIELDS
    if unknown:
        raise ValueError(f"Cannot update account fields: {', '.join(sorted(unknown))}")
    for name in BALANCE_FIELDS:
        if name in fields and int(fields[name]) < 0:
            raise ValueError(f"{name} cannot be negative")


def _bucket_column(bucket: str):
    if bucket == BUCKET_ADMIN:
        return User.admin_credits
    if bucket == BUCKET_PURCHASED:
        return User.purchased_credits
    raise ValueError(f"Unknown credit bucket: {bucket}")


class SqlAccountStore(AccountStore):
    """Account balances on the ``users`` table.

    Every decrement is one guarded ``UPDATE ... WHERE bucket >= 1`` so two
    concurrent spends cannot both take the last credit.
    """

    def __init__(self, session_maker: async_sessionmaker) -> None:
        self._session_maker = session_maker

    async def get_account(self, account_id: str) -> Optional[AccountBalance]:
        async with self._session_maker() as db:
            result = await db.execute(select(User).where(User.id == account_id))
            user = result.scalar_one_or_none()
            return _balance_from_user(user) if user else None

    async def update_account(self, account_id: str, **fields: Any) -> Optional[AccountBalance]:
        _check_update_fields(fields)
        async with self._session_maker() as db:
            result = await db.execute(select(User).where(User.id == account_id))
            user = result.scalar_one_or_none()
            if not user:
                return None
            for name, value in fields.items():
                setattr(user, name, value)
            await db.commit()
            await db.refresh(user)
            return _balance_from_user(user)

    async def deduct_credit(self, account_id: str) -> Optional[CreditDebit]:
        async with self._session_maker() as db:
            for bucket in DEBIT_ORDER:
                column = _bucket_column(bucket)
                result = await db.execute(
                    update(User)
                    .where(User.id == account_id, column >= 1)
                    .values({column: column - 1})
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount:
                    balance = await self._reload(db, account_id)
                    db.add(
                        CreditLedger(
                            user_id=account_id,
                            entry_type="debit",
                            bucket=bucket,
                            delta_credits=-1,
                            balance_after=balance.total_credits,
                            reason="Video generation",
                        )
                    )
                    await db.commit()
                    return CreditDebit(bucket=bucket, balance=balance)
            await db.rollback()
            return None

    async def refund_credit(self, account_id: str, bucket: str) -> Optional[AccountBalance]:
        column = _bucket_column(bucket)
        async with self._session_maker() as db:
            result = await db.execute(
                update(User)
                .where(User.id == account_id)
                .values({column: column + 1})
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                await db.rollback()
                return None
            balance = await self._reload(db, account_id)
            db.add(
                CreditLedger(
                    user_id=account_id,
                    entry_type="refund",
                    bucket=bucket,
                    delta_credits=1,
                    balance_after=balance.total_credits,
                    reason="Generation submission failed",
                )
            )
            await db.commit()
            return balance

    @staticmethod
    async def _reload(db: AsyncSession, account_id: str) -> AccountBalance:
        result = await db.execute(
            select(User.id, User.email, User.purchased_credits, User.admin_credits).where(User.id == account_id)
        )
        row = result.one()
        return AccountBalance(
            account_id=row.id,
            email=row.email,
            purchased_credits=int(row.purchased_credits or 0),
            admin_credits=int(row.admin_credits or 0),
        )


class InMemoryAccountStore(AccountStore):
    """Dict-backed account balances for tests and local runs."""

    def __init__(self) -> None:
        self._accounts: Dict[str, AccountBalance] = {}
        self._profiles: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def seed(
        self,
        account_id: str,
        *,
        email: Optional[str] = None,
        purchased_credits: int = 0,
        admin_credits: int = 0,
    ) -> AccountBalance:
        balance = AccountBalance(
            account_id=account_id,
            email=email,
            purchased_credits=purchased_credits,
            admin_credits=admin_credits,
        )
        self._accounts[account_id] = balance
        return balance

    async def get_account(self, account_id: str) -> Optional[AccountBalance]:
        return self._accounts.get(account_id)

    async def update_account(self, account_id: str, **fields: Any) -> Optional[AccountBalance]:
        _check_update_fields(fields)
        async with self._lock:
            current = self._accounts.get(account_id)
            if current is None:
                return None
            balances = {name: int(value) for name, value in fields.items() if name in BALANCE_FIELDS}
            profile = {name: value for name, value in fields.items() if name not in BALANCE_FIELDS}
            self._profiles.setdefault(account_id, {}).update(profile)
            updated = replace(current, **balances)
            self._accounts[account_id] = updated
            return updated

    async def deduct_credit(self, account_id: str) -> Optional[CreditDebit]:
        async with self._lock:
            current = self._accounts.get(account_id)
            if current is None:
                return None
            if current.admin_credits >= 1:
                updated = replace(current, admin_credits=current.admin_credits - 1)
                bucket = BUCKET_ADMIN
            elif current.purchased_credits >= 1:
                updated = replace(current, purchased_credits=current.purchased_credits - 1)
                bucket = BUCKET_PURCHASED
            else:
                return None
            self._accounts[account_id] = updated
            return CreditDebit(bucket=bucket, balance=updated)

    async def refund_credit(self, account_id: str, bucket: str) -> Optional[AccountBalance]:
        async with self._lock:
            current = self._accounts.get(account_id)
            if current is None:
                return None
            if bucket == BUCKET_ADMIN:
                updated = replace(current, admin_credits=current.admin_credits + 1)
            elif bucket == BUCKET_PURCHASED:
                updated = replace(current, purchased_credits=current.purchased_credits + 1)
            else:
                raise ValueError(f"Unknown credit bucket: {bucket}")
            self._accounts[account_id] = updated
            return updated
