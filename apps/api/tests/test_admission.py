import asyncio
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select

from database import Base
from models.credit_ledger import CreditLedger
from models.user import User
from services.access_ledger import AccessLedger
from services.account_store import BUCKET_ADMIN, BUCKET_PURCHASED, InMemoryAccountStore, SqlAccountStore
from services.admission import (
    CHARGED_LEDGER,
    MODE_BYPASS,
    MODE_DENIED,
    MODE_FREE,
    MODE_PAID,
    REASON_INSUFFICIENT_CREDITS,
    REASON_RATE_LIMITED,
    AdmissionController,
)
from services.identity import Identity
from services.ledger_store import InMemoryLedgerStore


@pytest.fixture
def ledger(clock):
    return AccessLedger(InMemoryLedgerStore(), clock=clock)


@pytest.fixture
def accounts():
    return InMemoryAccountStore()


@pytest.fixture
def controller(ledger, accounts):
    return AdmissionController(ledger, accounts)


@pytest_asyncio.fixture
async def sql_session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'admission.db'}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield session_maker
    await engine.dispose()


@pytest.mark.asyncio
async def test_privileged_override_bypasses_everything(controller, ledger, accounts):
    accounts.seed("acct-1", email="ops@example.com")
    identity = Identity.for_account("acct-1", "ops@example.com")
    await ledger.record_free_use(identity.key)

    decision = await controller.admit(identity, wants_to_spend_credit=True, is_privileged_override=True)

    assert decision.mode == MODE_BYPASS
    assert decision.allowed
    balance = await accounts.get_account("acct-1")
    assert balance.total_credits == 0
    assert (await ledger.get_stats(identity.key)).free_generation_count == 1


@pytest.mark.asyncio
async def test_admin_credits_are_spent_before_purchased(controller, accounts):
    accounts.seed("acct-2", purchased_credits=3, admin_credits=2)
    identity = Identity.for_account("acct-2")

    for _ in range(3):
        decision = await controller.admit(identity, True, False)
        assert decision.mode == MODE_PAID

    balance = await accounts.get_account("acct-2")
    assert (balance.admin_credits, balance.purchased_credits) == (0, 2)

    decision = await controller.admit(identity, True, False)
    assert decision.charged_from == BUCKET_PURCHASED
    assert decision.new_balance == 1
    balance = await accounts.get_account("acct-2")
    assert (balance.admin_credits, balance.purchased_credits) == (0, 1)


@pytest.mark.asyncio
async def test_account_without_credits_is_denied(controller, accounts):
    accounts.seed("acct-3")
    decision = await controller.admit(Identity.for_account("acct-3"), True, False)

    assert decision.mode == MODE_DENIED
    assert decision.reason == REASON_INSUFFICIENT_CREDITS
    assert not decision.allowed
    assert "credits" in decision.user_message()


@pytest.mark.asyncio
async def test_anonymous_insufficient_credits_leaves_ledger_unchanged(controller, ledger):
    identity = Identity.for_address("10.1.1.1")
    decision = await controller.admit(identity, True, False)

    assert decision.mode == MODE_DENIED
    assert decision.reason == REASON_INSUFFICIENT_CREDITS
    assert await ledger.get_credits(identity.key) == 0
    assert await ledger.store.get_credit_entry(identity.key) is None


@pytest.mark.asyncio
async def test_anonymous_paid_admission_uses_ledger(controller, ledger):
    identity = Identity.for_address("10.1.1.2")
    await ledger.add_credits(identity.key, 2)

    decision = await controller.admit(identity, True, False)

    assert decision.mode == MODE_PAID
    assert decision.charged_from == CHARGED_LEDGER
    assert decision.new_balance == 1


@pytest.mark.asyncio
async def test_free_then_rate_limited(controller, ledger):
    identity = Identity.for_address("10.1.1.3")

    first = await controller.admit(identity, False, False)
    assert first.mode == MODE_FREE
    # Admission alone does not start the cooldown.
    assert (await controller.admit(identity, False, False)).mode == MODE_FREE

    await ledger.record_free_use(identity.key)
    second = await controller.admit(identity, False, False)

    assert second.mode == MODE_DENIED
    assert second.reason == REASON_RATE_LIMITED
    assert 179 <= second.retry_after_minutes <= 180
    assert "180 minutes" in second.user_message()


@pytest.mark.asyncio
async def test_concurrent_paid_admissions_respect_balance(controller, accounts):
    accounts.seed("acct-4", purchased_credits=1, admin_credits=1)
    identity = Identity.for_account("acct-4")

    decisions = await asyncio.gather(*(controller.admit(identity, True, False) for _ in range(6)))

    assert [d.mode for d in decisions].count(MODE_PAID) == 2
    balance = await accounts.get_account("acct-4")
    assert balance.total_credits == 0


@pytest.mark.asyncio
async def test_refund_returns_credit_to_charged_bucket(controller, accounts, ledger):
    accounts.seed("acct-5", purchased_credits=1, admin_credits=1)
    identity = Identity.for_account("acct-5")

    decision = await controller.admit(identity, True, False)
    assert decision.charged_from == BUCKET_ADMIN
    await controller.refund(identity, decision)
    balance = await accounts.get_account("acct-5")
    assert (balance.admin_credits, balance.purchased_credits) == (1, 1)

    anon = Identity.for_address("10.1.1.4")
    await ledger.add_credits(anon.key, 1)
    anon_decision = await controller.admit(anon, True, False)
    await controller.refund(anon, anon_decision)
    assert await ledger.get_credits(anon.key) == 1


@pytest.mark.asyncio
async def test_refund_ignores_free_and_bypass(controller, ledger):
    identity = Identity.for_address("10.1.1.5")
    free = await controller.admit(identity, False, False)
    await controller.refund(identity, free)
    bypass = await controller.admit(identity, True, True)
    await controller.refund(identity, bypass)

    assert await ledger.get_credits(identity.key) == 0


@pytest.mark.asyncio
async def test_sql_account_store_priority_and_history(sql_session_maker, ledger):
    async with sql_session_maker() as db:
        db.add(User(id="acct-sql", email="owner@example.com", purchased_credits=3, admin_credits=2))
        await db.commit()

    controller = AdmissionController(ledger, SqlAccountStore(sql_session_maker))
    identity = Identity.for_account("acct-sql", "owner@example.com")

    for _ in range(3):
        assert (await controller.admit(identity, True, False)).mode == MODE_PAID

    async with sql_session_maker() as db:
        user = (await db.execute(select(User).where(User.id == "acct-sql"))).scalar_one()
        assert (user.admin_credits, user.purchased_credits) == (0, 2)
        entries = (await db.execute(select(CreditLedger).where(CreditLedger.user_id == "acct-sql"))).scalars().all()
        assert sorted(entry.bucket for entry in entries) == ["admin", "admin", "purchased"]
        assert all(entry.entry_type == "debit" and entry.delta_credits == -1 for entry in entries)


@pytest.mark.asyncio
async def test_sql_account_store_never_goes_negative(sql_session_maker, ledger):
    async with sql_session_maker() as db:
        db.add(User(id="acct-race", email="race@example.com", purchased_credits=2, admin_credits=0))
        await db.commit()

    controller = AdmissionController(ledger, SqlAccountStore(sql_session_maker))
    identity = Identity.for_account("acct-race")

    decisions = await asyncio.gather(*(controller.admit(identity, True, False) for _ in range(4)))

    assert [d.mode for d in decisions].count(MODE_PAID) == 2
    async with sql_session_maker() as db:
        user = (await db.execute(select(User).where(User.id == "acct-race"))).scalar_one()
        assert user.purchased_credits == 0


@pytest.mark.asyncio
async def test_sql_refund_restores_bucket(sql_session_maker, ledger):
    async with sql_session_maker() as db:
        db.add(User(id="acct-refund", email="refund@example.com", purchased_credits=1, admin_credits=0))
        await db.commit()

    store = SqlAccountStore(sql_session_maker)
    controller = AdmissionController(ledger, store)
    identity = Identity.for_account("acct-refund")

    decision = await controller.admit(identity, True, False)
    assert decision.charged_from == BUCKET_PURCHASED
    await controller.refund(identity, decision)

    balance = await store.get_account("acct-refund")
    assert balance.purchased_credits == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("backend", ["memory", "sql"])
async def test_account_stores_accept_the_same_update_fields(backend, sql_session_maker):
    if backend == "memory":
        store = InMemoryAccountStore()
        store.seed("acct-9", email="fetch@example.com", purchased_credits=1)
    else:
        store = SqlAccountStore(sql_session_maker)
        async with sql_session_maker() as db:
            db.add(User(id="acct-9", email="fetch@example.com", purchased_credits=1))
            await db.commit()

    updated = await store.update_account(
        "acct-9",
        name="Rex Owner",
        picture="https://example.com/rex.png",
        last_login=datetime(2026, 1, 1, tzinfo=timezone.utc),
        admin_credits=2,
    )

    assert (updated.purchased_credits, updated.admin_credits) == (1, 2)
    with pytest.raises(ValueError):
        await store.update_account("acct-9", email="other@example.com")
    with pytest.raises(ValueError):
        await store.update_account("acct-9", purchased_credits=-1)
    assert await store.update_account("missing", name="Nobody") is None
