"""Admission decisions: who pays for a generation, or why it may not run."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from services.access_ledger import AccessLedger
from services.account_store import AccountStore
from services.identity import Identity

logger = logging.getLogger(__name__)

MODE_BYPASS = "bypass"
MODE_PAID = "paid"
MODE_FREE = "free"
MODE_DENIED = "denied"

REASON_RATE_LIMITED = "rate_limited"
REASON_INSUFFICIENT_CREDITS = "insufficient_credits"

CHARGED_LEDGER = "ledger"


@dataclass(frozen=True)
class Decision:
    mode: str
    reason: Optional[str] = None
    retry_after_minutes: Optional[int] = None
    new_balance: Optional[int] = None
    charged_from: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.mode != MODE_DENIED

    @classmethod
    def denied(cls, reason: str, retry_after_minutes: Optional[int] = None) -> "Decision":
        return cls(mode=MODE_DENIED, reason=reason, retry_after_minutes=retry_after_minutes)

    def user_message(self) -> str:
        if self.reason == REASON_RATE_LIMITED:
            minutes = int(self.retry_after_minutes or 0)
            return (
                f"Free generation limit reached. Try again in {minutes} minutes "
                "or use a credit to skip the wait."
            )
        if self.reason == REASON_INSUFFICIENT_CREDITS:
            return "You don't have enough credits. Buy a credit pack to continue."
        return f"Admission {self.mode}"


class AdmissionController:
    """Single decision point for spending money on the video provider."""

    def __init__(self, ledger: AccessLedger, accounts: AccountStore) -> None:
        self._ledger = ledger
        self._accounts = accounts

    async def admit(
        self,
        identity: Identity,
        wants_to_spend_credit: bool,
        is_privileged_override: bool,
    ) -> Decision:
        if is_privileged_override:
            logger.info("Admission bypass for privileged identity %s", identity.key)
            return Decision(mode=MODE_BYPASS)

        if wants_to_spend_credit:
            return await self._admit_paid(identity)

        check = await self._ledger.can_use_free(identity.key)
        if not check.allowed:
            logger.info(
                "Free generation denied for %s; retry in %s min",
                identity.key,
                check.retry_after_minutes,
            )
            return Decision.denied(REASON_RATE_LIMITED, retry_after_minutes=check.retry_after_minutes)
        # The caller records the free use only after the submission succeeds.
        return Decision(mode=MODE_FREE)

    async def _admit_paid(self, identity: Identity) -> Decision:
        if identity.has_persisted_account:
            debit = await self._accounts.deduct_credit(identity.account_id)
            if debit is None:
                logger.info("Paid generation denied for %s: no credits", identity.key)
                return Decision.denied(REASON_INSUFFICIENT_CREDITS)
            return Decision(
                mode=MODE_PAID,
                new_balance=debit.balance.total_credits,
                charged_from=debit.bucket,
            )

        if not await self._ledger.deduct_credit(identity.key):
            logger.info("Paid generation denied for %s: no credits", identity.key)
            return Decision.denied(REASON_INSUFFICIENT_CREDITS)
        return Decision(
            mode=MODE_PAID,
            new_balance=await self._ledger.get_credits(identity.key),
            charged_from=CHARGED_LEDGER,
        )

    async def refund(self, identity: Identity, decision: Decision) -> None:
        """Return the credit taken by a paid decision whose submission then failed."""
        if decision.mode != MODE_PAID or not decision.charged_from:
            return
        if decision.charged_from == CHARGED_LEDGER:
            await self._ledger.add_credits(identity.key, 1)
        elif identity.has_persisted_account:
            await self._accounts.refund_credit(identity.account_id, decision.charged_from)
        logger.info("Refunded 1 %s credit to %s", decision.charged_from, identity.key)
