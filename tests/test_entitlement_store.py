from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from app.core.errors import NotFoundError, StorageUnavailable
from app.models import SubscriptionEvent, UserProfile
from app.services.entitlement_store import EntitlementStore


def _now():
    return datetime.now(timezone.utc)


def _ms(dt):
    return int(dt.timestamp() * 1000)


def _apply(entitlement_store, db, event_id, event_type, user_id="user-1", **kwargs):
    kwargs.setdefault("product_id", "lingua_premium_monthly")
    kwargs.setdefault("store", "APP_STORE")
    return entitlement_store.apply_provider_event(
        db,
        user_id=user_id,
        event_id=event_id,
        event_type=event_type,
        app_user_id=user_id,
        payload={"event": {"id": event_id, "type": event_type}},
        **kwargs,
    )


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestFetch:
    def test_missing_profile_raises_not_found(self, store, db):
        with pytest.raises(NotFoundError):
            store.fetch(db, "nobody")

    def test_returns_stored_entitlement(self, store, db, make_profile):
        make_profile("user-1", tier="premium", status="active")

        entitlement = store.fetch(db, "user-1")

        assert entitlement.tier == "premium"
        assert entitlement.status == "active"
        assert entitlement.has_access

    def test_storage_error_raises_storage_unavailable(self, store, db, monkeypatch):
        def broken_get(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("connection refused"))

        monkeypatch.setattr(db, "get", broken_get)

        with pytest.raises(StorageUnavailable):
            store.fetch(db, "user-1")

    def test_lapsed_grandfathering_reads_as_free_expired_without_writing(
        self, store, db, make_profile, session_factory
    ):
        make_profile(
            "legacy",
            tier="premium",
            status="trial",
            is_grandfathered=True,
            grandfathered_until=_now() - timedelta(days=1),
        )

        entitlement = store.fetch(db, "legacy")

        assert entitlement.tier == "free"
        assert entitlement.status == "expired"
        assert not entitlement.has_access

        other = session_factory()
        try:
            stored = other.get(UserProfile, "legacy")
            assert stored.subscription_tier == "premium"
            assert stored.subscription_status == "trial"
        finally:
            other.close()

    def test_active_grandfathering_keeps_premium(self, store, db, make_profile):
        make_profile(
            "legacy",
            tier="premium",
            status="trial",
            is_grandfathered=True,
            grandfathered_until=_now() + timedelta(days=10),
        )

        assert store.fetch(db, "legacy").has_access

    def test_cached_entry_is_corrected_when_grandfathering_lapses(self, store, db, make_profile):
        until = _now() + timedelta(hours=1)
        make_profile("legacy", tier="premium", status="trial", is_grandfathered=True, grandfathered_until=until)

        assert store.fetch(db, "legacy").has_access
        later = store.fetch(db, "legacy", now=until + timedelta(seconds=1))

        assert later.tier == "free"
        assert later.status == "expired"


class TestCache:
    def test_cache_serves_reads_until_ttl(self, db, make_profile):
        clock = FakeClock()
        store = EntitlementStore(ttl_seconds=60, max_entries=10, clock=clock)
        profile = make_profile("user-1", tier="free", status="none")

        assert store.fetch(db, "user-1").tier == "free"

        profile.subscription_tier = "premium"
        profile.subscription_status = "active"
        db.commit()
        assert store.fetch(db, "user-1").tier == "free"

        clock.now += 61
        assert store.fetch(db, "user-1").tier == "premium"

    def test_cache_is_bounded(self, db, make_profile):
        store = EntitlementStore(ttl_seconds=60, max_entries=2)
        for user_id in ("a", "b", "c"):
            make_profile(user_id)
            store.fetch(db, user_id)

        assert store._cached("a") is None
        assert store._cached("b") is not None
        assert store._cached("c") is not None

    def test_reset_returns_defaults_and_keeps_durable_state(self, store, db, make_profile):
        make_profile("user-1", tier="premium", status="active")
        store.fetch(db, "user-1")

        reset = store.reset("user-1")

        assert reset.tier == "free"
        assert reset.status == "none"
        assert store._cached("user-1") is None
        assert store.fetch(db, "user-1").tier == "premium"


class TestCreateDefault:
    def test_creates_free_profile(self, store, db):
        entitlement = store.create_default(db, "new-user", email="new@example.com")

        assert entitlement.tier == "free"
        assert entitlement.status == "none"
        assert db.get(UserProfile, "new-user").email == "new@example.com"

    def test_existing_profile_is_untouched(self, store, db, make_profile):
        make_profile("user-1", tier="premium", status="active")

        entitlement = store.create_default(db, "user-1", email="other@example.com")

        assert entitlement.tier == "premium"
        assert db.get(UserProfile, "user-1").email == "user-1@example.com"


class TestApplyProviderEvent:
    def test_initial_purchase_activates_premium(self, store, db, make_profile):
        make_profile("user-1")
        expires = _now() + timedelta(days=30)

        outcome = _apply(store, db, "evt_1", "INITIAL_PURCHASE", expires_at_ms=_ms(expires),
                         purchased_at_ms=_ms(_now()))

        assert outcome.applied
        profile = db.get(UserProfile, "user-1")
        assert profile.subscription_tier == "premium"
        assert profile.subscription_status == "active"
        assert profile.subscription_platform == "ios"
        assert profile.subscription_product_id == "lingua_premium_monthly"
        assert profile.subscription_started_at is not None
        assert store.fetch(db, "user-1").has_access

    def test_unknown_user_is_recorded_without_creating_a_profile(self, store, db):
        anonymous = "$RCAnonymousID:0123456789abcdef0123456789abcdef"

        outcome = _apply(store, db, "evt_anon", "INITIAL_PURCHASE", user_id=anonymous)

        assert outcome.applied
        assert outcome.entitlement is None
        assert db.query(UserProfile).count() == 0
        event = db.query(SubscriptionEvent).filter_by(event_id="evt_anon").one()
        assert event.user_id is None
        assert event.revenuecat_app_user_id == anonymous
        assert event.error is None

    def test_event_after_account_deletion_does_not_resurrect_profile(self, store, db, make_profile):
        make_profile("gone")
        db.delete(db.get(UserProfile, "gone"))
        db.commit()

        _apply(store, db, "evt_late", "RENEWAL", user_id="gone")

        assert db.get(UserProfile, "gone") is None
        with pytest.raises(NotFoundError):
            store.fetch(db, "gone")

    def test_duplicate_event_is_a_no_op(self, store, db, make_profile):
        make_profile("user-1")
        _apply(store, db, "evt_123", "INITIAL_PURCHASE")
        first = store.fetch(db, "user-1")

        # A later event changes state; replaying evt_123 must not undo it
        _apply(store, db, "evt_124", "CANCELLATION")
        outcome = _apply(store, db, "evt_123", "INITIAL_PURCHASE")

        assert outcome.already_processed
        assert not outcome.applied
        assert first.status == "active"
        assert store.fetch(db, "user-1").status == "cancelled"
        assert db.query(SubscriptionEvent).filter_by(event_id="evt_123").count() == 1

    def test_expiration_drops_to_free(self, store, db, make_profile):
        make_profile("user-1", tier="premium", status="active")

        _apply(store, db, "evt_exp", "EXPIRATION")

        entitlement = store.fetch(db, "user-1")
        assert entitlement.tier == "free"
        assert entitlement.status == "expired"

    def test_subscription_event_clears_grandfathering(self, store, db, make_profile):
        make_profile(
            "legacy",
            tier="premium",
            status="trial",
            is_grandfathered=True,
            grandfathered_until=_now() + timedelta(days=5),
        )

        _apply(store, db, "evt_1", "RENEWAL", user_id="legacy")

        profile = db.get(UserProfile, "legacy")
        assert profile.is_grandfathered is False
        assert profile.grandfathered_until is None
        assert profile.subscription_status == "active"

    def test_informational_event_is_recorded_without_state_change(self, store, db, make_profile):
        make_profile("user-1")

        outcome = _apply(store, db, "evt_test", "TEST")

        assert outcome.applied
        assert outcome.entitlement is None
        assert db.get(UserProfile, "user-1").subscription_status == "none"
        assert db.query(SubscriptionEvent).filter_by(event_id="evt_test").one().error is None

    def test_failed_update_is_recorded_and_retried(self, store, db, make_profile, monkeypatch):
        make_profile("user-1")
        real_commit = db.commit
        calls = {"count": 0}

        def flaky_commit():
            calls["count"] += 1
            if calls["count"] == 1:
                raise OperationalError("COMMIT", {}, Exception("connection lost"))
            real_commit()

        monkeypatch.setattr(db, "commit", flaky_commit)

        with pytest.raises(StorageUnavailable):
            _apply(store, db, "evt_retry", "INITIAL_PURCHASE")

        failed = db.query(SubscriptionEvent).filter_by(event_id="evt_retry").one()
        assert failed.error is not None
        assert store.fetch(db, "user-1").status == "none"

        outcome = _apply(store, db, "evt_retry", "INITIAL_PURCHASE")

        assert outcome.applied
        assert store.fetch(db, "user-1").status == "active"
        event = db.query(SubscriptionEvent).filter_by(event_id="evt_retry").one()
        assert event.error is None


class TestExpireGrandfathered:
    def test_sweep_persists_lapsed_downgrades_only(self, store, db, make_profile):
        make_profile("lapsed", tier="premium", status="trial", is_grandfathered=True,
                     grandfathered_until=_now() - timedelta(days=1))
        make_profile("current", tier="premium", status="trial", is_grandfathered=True,
                     grandfathered_until=_now() + timedelta(days=1))

        assert store.expire_grandfathered(db) == 1
        assert store.expire_grandfathered(db) == 0

        assert db.get(UserProfile, "lapsed").subscription_status == "expired"
        assert db.get(UserProfile, "lapsed").subscription_tier == "free"
        assert db.get(UserProfile, "current").subscription_status == "trial"
