import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.future import select
from unittest.mock import patch

from config import settings
from database import Base, get_db
from main import app
from models.credit_ledger import CreditLedger
from models.user import User
from routers.deps import get_access_ledger, get_promo_registry
from services.access_ledger import AccessLedger
from services.ledger_store import InMemoryLedgerStore
from services.promo_codes import PromoCodeRegistry
from services.session_token import create_session_token


def _auth(account_id: str, email: str) -> dict:
    token = create_session_token(account_id, email)["token"]
    return {"Authorization": f"Bearer {token}"}


ADMIN = _auth("acct-admin", "ops@example.com")


@pytest_asyncio.fixture
async def api(tmp_path, clock):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with session_maker() as db:
        db.add(User(id="acct-1", email="owner@example.com", purchased_credits=2, admin_credits=3))
        await db.commit()

    ledger = AccessLedger(InMemoryLedgerStore(), clock=clock)
    promos = PromoCodeRegistry()

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_access_ledger] = lambda: ledger
    app.dependency_overrides[get_promo_registry] = lambda: promos

    with patch.object(settings, "ADMIN_EMAILS", ["ops@example.com"]):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            client.session_maker = session_maker
            client.ledger = ledger
            yield client

    app.dependency_overrides.clear()
    await engine.dispose()


async def _user(api, user_id: str) -> User:
    async with api.session_maker() as db:
        return await db.get(User, user_id)


@pytest.mark.asyncio
async def test_products_catalog(api):
    response = await api.get("/billing/products")
    assert response.status_code == 200
    products = {item["key"]: item for item in response.json()}
    assert products["three_pack"]["credits"] == 3
    assert products["ten_pack"]["price"] == 19.99
    assert products["twenty_five_pack"]["popular"] is True


@pytest.mark.asyncio
async def test_account_credit_summary(api):
    response = await api.get("/billing/credits", headers=_auth("acct-1", "owner@example.com"))
    assert response.status_code == 200
    body = response.json()
    assert body["balance"] == 5
    assert body["purchased_credits"] == 2
    assert body["admin_credits"] == 3
    assert body["free_tier"]["available"] is True


@pytest.mark.asyncio
async def test_anonymous_credit_summary_uses_ledger(api):
    await api.ledger.add_credits("ip:127.0.0.1", 2)
    response = await api.get("/billing/credits", headers={"X-Forwarded-For": "198.51.100.7"})
    assert response.status_code == 200
    assert response.json()["balance"] == 2
    assert response.json()["free_generations_used"] == 0


@pytest.mark.asyncio
async def test_topup_with_product_adds_purchased_credits(api):
    response = await api.post(
        "/billing/topup",
        json={"product": "ten_pack", "billing_reference": "order-42"},
        headers=_auth("acct-1", "owner@example.com"),
    )
    assert response.status_code == 200
    assert response.json()["credits_added"] == 10
    assert response.json()["balance_after"] == 15

    user = await _user(api, "acct-1")
    assert user.purchased_credits == 12
    assert user.admin_credits == 3


@pytest.mark.asyncio
async def test_topup_requires_session_and_known_product(api):
    assert (await api.post("/billing/topup", json={"credits": 3})).status_code == 401
    unknown = await api.post(
        "/billing/topup",
        json={"product": "lifetime"},
        headers=_auth("acct-1", "owner@example.com"),
    )
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_promo_code_once_per_identity(api):
    headers = _auth("acct-1", "owner@example.com")
    first = await api.post("/billing/promo", json={"code": "facebook"}, headers=headers)
    assert first.status_code == 200
    assert first.json()["credits_added"] == 5
    assert first.json()["code"] == "FACEBOOK"

    again = await api.post("/billing/promo", json={"code": "FACEBOOK"}, headers=headers)
    assert again.status_code == 400
    assert "already used" in again.json()["detail"]

    invalid = await api.post("/billing/promo", json={"code": "NOPE"}, headers=headers)
    assert invalid.status_code == 400

    user = await _user(api, "acct-1")
    assert user.purchased_credits == 7
    async with api.session_maker() as db:
        entries = (await db.execute(select(CreditLedger).where(CreditLedger.entry_type == "promo"))).scalars().all()
        assert len(entries) == 1


@pytest.mark.asyncio
async def test_anonymous_promo_credits_the_ledger(api):
    with patch.object(settings, "TRUSTED_PROXY_HOSTS", ["127.0.0.1"]):
        response = await api.post(
            "/billing/promo",
            json={"code": "TWITTER"},
            headers={"X-Forwarded-For": "203.0.113.9"},
        )
    assert response.status_code == 200
    assert await api.ledger.get_credits("ip:203.0.113.9") == 5


@pytest.mark.asyncio
async def test_admin_endpoints_require_admin_email(api):
    response = await api.get("/admin/users", headers=_auth("acct-1", "owner@example.com"))
    assert response.status_code == 403
    assert (await api.get("/admin/users")).status_code == 401

    listing = await api.get("/admin/users", headers=ADMIN)
    assert listing.status_code == 200
    assert listing.json()["users"][0]["total_credits"] == 5


@pytest.mark.asyncio
async def test_admin_grant_and_revoke(api):
    granted = await api.post("/admin/credits/grant", json={"user_id": "acct-1", "credits": 4}, headers=ADMIN)
    assert granted.status_code == 200
    assert granted.json()["user"]["admin_credits"] == 7

    too_many = await api.post("/admin/credits/revoke", json={"user_id": "acct-1", "credits": 8}, headers=ADMIN)
    assert too_many.status_code == 400
    assert "only has 7 admin credits" in too_many.json()["detail"]

    revoked = await api.post("/admin/credits/revoke", json={"user_id": "acct-1", "credits": 7}, headers=ADMIN)
    assert revoked.status_code == 200
    assert revoked.json()["user"]["admin_credits"] == 0
    assert revoked.json()["user"]["purchased_credits"] == 2

    async with api.session_maker() as db:
        entries = (await db.execute(select(CreditLedger).order_by(CreditLedger.created_at))).scalars().all()
        assert sorted(entry.entry_type for entry in entries) == ["admin_grant", "admin_revoke"]
        assert all(entry.actor_email == "ops@example.com" for entry in entries)


@pytest.mark.asyncio
async def test_admin_grant_unknown_user_is_404(api):
    response = await api.post("/admin/credits/grant", json={"user_id": "ghost", "credits": 1}, headers=ADMIN)
    assert response.status_code == 404
