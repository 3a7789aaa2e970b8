import pytest
from fastapi import Header, HTTPException
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from app.core.plan_limits import seed_usage_limits
from app.db.base import Base
from app.db.session import build_engine, get_db
from app.dependencies.auth import verify_supabase_token
from app.dependencies.services import get_access_engine, get_entitlement_store, get_usage_ledger
from app.models import UserProfile
from app.services.access_engine import AccessDecisionEngine
from app.services.entitlement_store import EntitlementStore
from app.services.usage_ledger import UsageLedger


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = factory()
    try:
        seed_usage_limits(session)
    finally:
        session.close()
    return factory


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store():
    return EntitlementStore(ttl_seconds=300, max_entries=100)


@pytest.fixture
def ledger(store):
    return UsageLedger(store)


@pytest.fixture
def access_engine(store, ledger):
    return AccessDecisionEngine(store, ledger)


@pytest.fixture
def make_profile(db):
    def _make(user_id, tier="free", status="none", **fields):
        profile = UserProfile(
            id=user_id,
            email=f"{user_id}@example.com",
            subscription_tier=tier,
            subscription_status=status,
            is_grandfathered=fields.pop("is_grandfathered", False),
            **fields,
        )
        db.add(profile)
        db.commit()
        return profile
    return _make


def fake_verify_supabase_token(x_test_user: str | None = Header(None)) -> dict:
    if not x_test_user:
        raise HTTPException(status_code=401, detail="Missing authorization header")
    return {"sub": x_test_user, "email": f"{x_test_user}@example.com"}


@pytest.fixture
def client(session_factory, store, ledger, access_engine):
    from app.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[verify_supabase_token] = fake_verify_supabase_token
    app.dependency_overrides[get_entitlement_store] = lambda: store
    app.dependency_overrides[get_usage_ledger] = lambda: ledger
    app.dependency_overrides[get_access_engine] = lambda: access_engine
    yield TestClient(app)
    app.dependency_overrides.clear()
