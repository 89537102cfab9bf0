"""Shared test configuration and fixtures.

Each test gets a brand-new database so committed state never leaks:
- By default a throwaway SQLite file under ``tmp_path`` (aiosqlite).
- Set ``TEST_DATABASE_URL`` (postgresql+asyncpg://...) to run the suite
  against PostgreSQL instead; tables are dropped and recreated per test.

Stripe is never called: ``stripe_gateway`` is an ``AsyncMock`` specced on
``StripeGateway`` and is injected into the app through dependency overrides.
"""

import os
import time
import uuid
from collections.abc import AsyncGenerator
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from toolhub.billing.stripe_client import StripeGateway, get_stripe_gateway
from toolhub.config import settings
from toolhub.database import Base, get_session_factory
from toolhub.main import app
from toolhub.models import (
    Bundle,
    BundlePlan,
    Feature,
    Organization,
    Plan,
    PlanLimit,
    Tool,
)

TEST_SERVICE_KEY = "test-service-key"
WEBHOOK_SECRET = "whsec_test"

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """A fresh engine and schema per test."""
    url = os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'billing_test.db'}"
    engine = create_async_engine(url, echo=False, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session used by tests to seed and inspect data.

    Code under test that opens its own sessions only sees what the test has
    committed, so seed helpers commit.
    """
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Stripe & HTTP
# ---------------------------------------------------------------------------


@pytest.fixture
def stripe_gateway() -> AsyncMock:
    """Gateway mock bound to StripeGateway: async methods are AsyncMocks, construct_event is sync."""
    gateway = AsyncMock(spec=StripeGateway)
    gateway.webhook_secret = WEBHOOK_SECRET
    gateway.get_customer.return_value = {"id": "cus_test", "invoice_settings": {"default_payment_method": None}}
    gateway.retrieve_payment_method.return_value = {"id": "pm_test", "card": {"fingerprint": "fp_test"}}
    gateway.list_customer_subscriptions.return_value = []
    return gateway


@pytest_asyncio.fixture
async def client(session_factory, stripe_gateway, monkeypatch) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test DB and the mocked gateway."""
    monkeypatch.setattr(settings, "internal_api_key", TEST_SERVICE_KEY)
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_stripe_gateway] = lambda: stripe_gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def service_headers() -> dict[str, str]:
    return {"X-Service-Key": TEST_SERVICE_KEY}


# ---------------------------------------------------------------------------
# Catalog & tenants
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def catalog(db_session: AsyncSession) -> SimpleNamespace:
    """Two tools, their features, four plans, one bundle, committed.

    - image tool (14-day trial): trial plan ($0), basic ($9), pro ($29)
    - video tool: video plan ($19)
    - creator bundle ($39) = image pro + video
    """
    image = Tool(name="Image Generator", slug="image-generator", trial_days=14)
    video = Tool(name="Video Editor", slug="video-editor", trial_days=0)
    db_session.add_all([image, video])
    await db_session.flush()

    img_count = Feature(tool_id=image.id, name="Images", slug="img_gen_count")
    img_export = Feature(tool_id=image.id, name="HD export", slug="img_hd_export")
    vid_minutes = Feature(tool_id=video.id, name="Render minutes", slug="vid_minutes")
    db_session.add_all([img_count, img_export, vid_minutes])
    await db_session.flush()

    trial = Plan(
        tool_id=image.id,
        name="Image Trial",
        tier="basic",
        price=0,
        stripe_price_id_monthly="price_img_trial",
        is_trial_plan=True,
    )
    basic = Plan(
        tool_id=image.id,
        name="Image Basic",
        tier="basic",
        price=900,
        stripe_price_id_monthly="price_img_basic_m",
        stripe_price_id_yearly="price_img_basic_y",
    )
    pro = Plan(
        tool_id=image.id,
        name="Image Pro",
        tier="premium",
        price=2900,
        stripe_price_id_monthly="price_img_pro_m",
        stripe_price_id_yearly="price_img_pro_y",
    )
    video_plan = Plan(
        tool_id=video.id,
        name="Video Pro",
        tier="premium",
        price=1900,
        stripe_price_id_monthly="price_video_m",
    )
    db_session.add_all([trial, basic, pro, video_plan])
    await db_session.flush()

    db_session.add_all(
        [
            PlanLimit(plan_id=trial.id, feature_id=img_count.id, default_limit=10, reset_period="monthly"),
            PlanLimit(plan_id=basic.id, feature_id=img_count.id, default_limit=100, reset_period="monthly"),
            PlanLimit(plan_id=pro.id, feature_id=img_count.id, default_limit=1000, reset_period="monthly"),
            PlanLimit(plan_id=pro.id, feature_id=img_export.id, default_limit=None, reset_period="yearly"),
            PlanLimit(plan_id=video_plan.id, feature_id=vid_minutes.id, default_limit=60, reset_period="monthly"),
        ]
    )

    bundle = Bundle(
        name="Creator Suite",
        slug="creator-suite",
        price=3900,
        stripe_price_id_monthly="price_creator_m",
    )
    db_session.add(bundle)
    await db_session.flush()
    db_session.add_all(
        [
            BundlePlan(bundle_id=bundle.id, plan_id=pro.id),
            BundlePlan(bundle_id=bundle.id, plan_id=video_plan.id),
        ]
    )
    await db_session.commit()

    return SimpleNamespace(
        image=image,
        video=video,
        img_count=img_count,
        img_export=img_export,
        vid_minutes=vid_minutes,
        trial=trial,
        basic=basic,
        pro=pro,
        video_plan=video_plan,
        bundle=bundle,
    )


async def create_organization(
    db_session: AsyncSession,
    stripe_customer_id: str | None = None,
    name: str = "Acme",
) -> Organization:
    """Create and commit an organization."""
    unique = uuid.uuid4().hex[:8]
    organization = Organization(
        name=name,
        slug=f"{name.lower()}-{unique}",
        billing_email=f"billing-{unique}@test.com",
        stripe_customer_id=stripe_customer_id,
    )
    db_session.add(organization)
    await db_session.commit()
    return organization


@pytest_asyncio.fixture
async def organization(db_session: AsyncSession) -> Organization:
    return await create_organization(db_session, stripe_customer_id="cus_test")


# ---------------------------------------------------------------------------
# Stripe payload builders
# ---------------------------------------------------------------------------


def make_stripe_subscription(
    sub_id: str,
    organization_id: uuid.UUID | str | None,
    price_id: str = "price_img_pro_m",
    status: str = "active",
    customer: str = "cus_test",
    period_on_items: bool = True,
    **overrides,
) -> dict:
    """Build a Stripe Subscription payload as a plain dict (wrap with ``construct_from`` for a StripeObject)."""
    now = int(time.time())
    item = {"id": f"si_{sub_id}", "price": {"id": price_id}, "quantity": 1}
    sub = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": {"organizationId": str(organization_id)} if organization_id else {},
        "items": {"object": "list", "data": [item]},
        "trial_start": None,
        "trial_end": None,
        "cancel_at_period_end": False,
        "default_payment_method": None,
    }
    if period_on_items:
        item["current_period_start"] = now
        item["current_period_end"] = now + 30 * 86400
    else:
        sub["current_period_start"] = now
        sub["current_period_end"] = now + 30 * 86400
    sub.update(overrides)
    return sub


def make_event(event_type: str, data_object: dict, event_id: str | None = None) -> dict:
    """Build a Stripe Event payload."""
    return {
        "id": event_id or f"evt_test_{uuid.uuid4().hex[:8]}",
        "object": "event",
        "type": event_type,
        "data": {"object": data_object},
    }


@pytest.fixture
def stripe_subscription():
    return make_stripe_subscription


@pytest.fixture
def stripe_event():
    return make_event


@pytest.fixture
def org_factory(db_session: AsyncSession):
    async def _create(stripe_customer_id: str | None = None, name: str = "Acme") -> Organization:
        return await create_organization(db_session, stripe_customer_id=stripe_customer_id, name=name)

    return _create
