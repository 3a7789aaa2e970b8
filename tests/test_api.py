import pytest
from sqlalchemy.exc import OperationalError

from app.api.routes import webhooks
from app.models import SubscriptionEvent, UserProfile

WEBHOOK_SECRET = "rc_test_secret_value"


def _headers(user_id="user-1"):
    return {"X-Test-User": user_id}


def _webhook(event_id="evt_123", event_type="INITIAL_PURCHASE", app_user_id="user-1", **fields):
    event = {
        "id": event_id,
        "type": event_type,
        "app_user_id": app_user_id,
        "product_id": "lingua_premium_monthly",
        "period_type": "NORMAL",
        "purchased_at_ms": 1767225600000,
        "expiration_at_ms": 1769904000000,
        "store": "PLAY_STORE",
        "event_timestamp_ms": 1767225600000,
    }
    event.update(fields)
    return {"api_version": "1.0", "event": event}


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(webhooks, "REVENUECAT_WEBHOOK_SECRET", WEBHOOK_SECRET)
    return {"Authorization": f"Bearer {WEBHOOK_SECRET}"}


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200 and r.json()["status"] == "ok"


class TestUsageRoutes:
    def test_requires_authentication(self, client):
        assert client.get("/api/usage/summary").status_code == 401

    def test_allowed(self, client, make_profile):
        make_profile("user-1")

        r = client.get("/api/usage/translation/allowed", headers=_headers())

        assert r.status_code == 200
        assert r.json() == {"action_type": "translation", "allowed": True}

    def test_unknown_action_type_is_rejected(self, client):
        r = client.get("/api/usage/teleport/allowed", headers=_headers())
        assert r.status_code == 422

    def test_consume_then_quota_exceeded(self, client, make_profile):
        make_profile("user-1")

        for i in range(5):
            r = client.post("/api/usage/cefr_analysis/consume", headers=_headers(),
                            json={"metadata": {"text_length": 120}})
            assert r.status_code == 200
            assert r.json()["used"] == i + 1

        r = client.post("/api/usage/cefr_analysis/consume", headers=_headers())

        assert r.status_code == 403
        detail = r.json()["detail"]
        assert detail["code"] == "quota_exceeded"
        assert detail["action_type"] == "cefr_analysis"
        assert detail["remaining"] == 0
        assert detail["daily_limit"] == 5

    def test_consume_disabled_feature(self, client, make_profile):
        make_profile("user-1")

        r = client.post("/api/usage/chat_message/consume", headers=_headers())

        assert r.status_code == 403
        assert r.json()["detail"]["code"] == "feature_not_available"

    def test_summary(self, client, make_profile):
        make_profile("user-1")
        client.post("/api/usage/translation/consume", headers=_headers())

        r = client.get("/api/usage/summary", headers=_headers())

        assert r.status_code == 200
        body = r.json()
        assert body["tier"] == "free"
        assert body["usage"]["translation"] == {"used": 1, "daily_limit": 10, "remaining": 9}
        assert body["usage"]["chat_message"]["daily_limit"] == 0

    def test_access_summary(self, client, make_profile):
        make_profile("user-1", tier="premium", status="grace_period")

        r = client.get("/api/usage/access", headers=_headers())

        assert r.status_code == 200
        body = r.json()
        assert body["has_access"] is True
        assert body["should_show_paywall"] is False


class TestUserRoutes:
    def test_profile_sync_creates_default_profile(self, client, db):
        r = client.post("/users/profile", headers=_headers("new-user"))

        assert r.status_code == 200
        assert r.json()["tier"] == "free"
        assert r.json()["status"] == "none"
        assert db.get(UserProfile, "new-user").email == "new-user@example.com"

    def test_get_entitlement(self, client, make_profile):
        make_profile("user-1", tier="premium", status="active")

        r = client.get("/users/me/entitlement", headers=_headers())

        assert r.status_code == 200
        assert r.json()["has_access"] is True

    def test_get_entitlement_without_profile(self, client):
        assert client.get("/users/me/entitlement", headers=_headers("ghost")).status_code == 404

    def test_sign_out_resets_cache_only(self, client, store, db, make_profile):
        make_profile("user-1", tier="premium", status="active")
        client.get("/users/me/entitlement", headers=_headers())

        r = client.post("/users/sign-out", headers=_headers())

        assert r.status_code == 200
        assert r.json()["tier"] == "free"
        assert store.fetch(db, "user-1").tier == "premium"


class TestRevenueCatWebhook:
    def test_rejects_missing_or_wrong_secret(self, client, webhook_secret):
        assert client.post("/webhooks/revenuecat", json=_webhook()).status_code == 401
        r = client.post("/webhooks/revenuecat", json=_webhook(),
                        headers={"Authorization": "Bearer wrong"})
        assert r.status_code == 401

    def test_rejects_when_secret_not_configured(self, client, monkeypatch):
        monkeypatch.setattr(webhooks, "REVENUECAT_WEBHOOK_SECRET", "")
        r = client.post("/webhooks/revenuecat", json=_webhook(),
                        headers={"Authorization": "Bearer anything"})
        assert r.status_code == 500

    def test_applies_event(self, client, webhook_secret, db, make_profile):
        make_profile("user-1")

        r = client.post("/webhooks/revenuecat", json=_webhook(), headers=webhook_secret)

        assert r.status_code == 200
        assert r.json() == {"success": True}
        db.expire_all()
        profile = db.get(UserProfile, "user-1")
        assert profile.subscription_tier == "premium"
        assert profile.subscription_status == "active"
        assert profile.subscription_platform == "android"

    def test_duplicate_delivery_is_acknowledged_once(self, client, webhook_secret, db, make_profile):
        make_profile("user-1")

        first = client.post("/webhooks/revenuecat", json=_webhook(), headers=webhook_secret)
        second = client.post("/webhooks/revenuecat", json=_webhook(), headers=webhook_secret)

        assert first.json() == {"success": True}
        assert second.status_code == 200
        assert second.json() == {"success": True, "message": "Event already processed"}
        assert db.query(SubscriptionEvent).filter_by(event_id="evt_123").count() == 1

    def test_malformed_payload(self, client, webhook_secret):
        r = client.post("/webhooks/revenuecat", json={"event": {"type": "RENEWAL"}}, headers=webhook_secret)
        assert r.status_code == 400

        r = client.post("/webhooks/revenuecat", json=_webhook(app_user_id=None), headers=webhook_secret)
        assert r.status_code == 400

    def test_undecodable_body_is_rejected(self, client, webhook_secret):
        headers = {**webhook_secret, "Content-Type": "application/json"}

        r = client.post("/webhooks/revenuecat", content=b"{\"event\": \"\xff\"}", headers=headers)
        assert r.status_code == 400

        r = client.post("/webhooks/revenuecat", content=b"{\"event\": ", headers=headers)
        assert r.status_code == 400

    def test_unknown_app_user_is_acknowledged_without_profile(self, client, webhook_secret, db):
        anonymous = "$RCAnonymousID:0123456789abcdef0123456789abcdef"

        r = client.post("/webhooks/revenuecat", json=_webhook(event_id="evt_anon", app_user_id=anonymous),
                        headers=webhook_secret)

        assert r.status_code == 200
        assert r.json() == {"success": True}
        assert db.query(UserProfile).count() == 0
        assert db.query(SubscriptionEvent).filter_by(event_id="evt_anon").one().user_id is None

    def test_storage_failure_returns_500_for_retry(self, client, webhook_secret, store, monkeypatch):
        from app.core.errors import StorageUnavailable

        def unavailable(*args, **kwargs):
            raise StorageUnavailable("database is down") from OperationalError("COMMIT", {}, Exception("down"))

        monkeypatch.setattr(store, "apply_provider_event", unavailable)

        r = client.post("/webhooks/revenuecat", json=_webhook(), headers=webhook_secret)

        assert r.status_code == 500
