"""
Entitlement Store: authoritative subscription tier/status per user.

Reads go to the database through a small bounded TTL cache. Writes come from
RevenueCat webhooks (apply_provider_event) and from signup (create_default).
Lapsed grandfathering is corrected at read time, so no decision depends on the
expire_grandfathered sweep having run.
"""
import logging
import os
import threading
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, StorageUnavailable
from app.models.subscription_event import SubscriptionEvent
from app.models.user_profile import UserProfile, SubscriptionTier, SubscriptionStatus
from app.schemas.entitlement import Entitlement
from app.services.subscription_events import (
    resolve_state,
    platform_for_store,
    ms_to_datetime,
)

logger = logging.getLogger(__name__)

ENTITLEMENT_CACHE_TTL_SECONDS = int(os.getenv("ENTITLEMENT_CACHE_TTL_SECONDS", "300"))
ENTITLEMENT_CACHE_MAX_ENTRIES = int(os.getenv("ENTITLEMENT_CACHE_MAX_ENTRIES", "10000"))

MAX_ERROR_LENGTH = 2000


class ProviderEventOutcome(BaseModel):
    applied: bool
    already_processed: bool = False
    entitlement: Optional[Entitlement] = None


class EntitlementStore:
    def __init__(
        self,
        ttl_seconds: int = ENTITLEMENT_CACHE_TTL_SECONDS,
        max_entries: int = ENTITLEMENT_CACHE_MAX_ENTRIES,
        clock=time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._cache: "OrderedDict[str, Tuple[Entitlement, float]]" = OrderedDict()
        self._lock = threading.Lock()  # Guards the cache dict only

    # ---- cache ----

    def _cached(self, user_id: str) -> Optional[Entitlement]:
        if self.ttl_seconds <= 0:
            return None
        with self._lock:
            entry = self._cache.get(user_id)
            if entry is None:
                return None
            entitlement, stored_at = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._cache[user_id]
                return None
            self._cache.move_to_end(user_id)
            return entitlement

    def _remember(self, entitlement: Entitlement) -> None:
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            self._cache[entitlement.user_id] = (entitlement, self._clock())
            self._cache.move_to_end(entitlement.user_id)
            while len(self._cache) > self.max_entries:
                self._cache.popitem(last=False)

    def invalidate(self, user_id: str) -> None:
        """Drop any cached entitlement so the next read hits the database."""
        with self._lock:
            self._cache.pop(user_id, None)

    def reset(self, user_id: str) -> Entitlement:
        """Sign-out: revert cached state to defaults. Durable storage is untouched."""
        self.invalidate(user_id)
        logger.info("Entitlement cache reset for user %s", user_id)
        return Entitlement.default(user_id)

    # ---- reads ----

    def fetch(self, db: Session, user_id: str, now: Optional[datetime] = None) -> Entitlement:
        """
        Return the user's entitlement with lapsed grandfathering already applied.

        Raises NotFoundError when the user has no profile row and
        StorageUnavailable when the database cannot be read.
        """
        now = now or datetime.now(timezone.utc)
        cached = self._cached(user_id)
        if cached is not None:
            return cached.effective(now)

        try:
            profile = db.get(UserProfile, user_id)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to load entitlement for user %s: %s", user_id, e)
            raise StorageUnavailable(f"Could not load entitlement for user {user_id}") from e

        if profile is None:
            raise NotFoundError(user_id)

        entitlement = Entitlement.from_profile(profile).effective(now)
        self._remember(entitlement)
        return entitlement

    # ---- writes ----

    def create_default(self, db: Session, user_id: str, email: Optional[str] = None) -> Entitlement:
        """Create the signup profile (free/none). Existing profiles are left as they are."""
        try:
            profile = db.get(UserProfile, user_id)
            if profile is None:
                profile = UserProfile(
                    id=user_id,
                    email=email,
                    subscription_tier=SubscriptionTier.FREE.value,
                    subscription_status=SubscriptionStatus.NONE.value,
                    is_grandfathered=False,
                )
                db.add(profile)
                try:
                    db.commit()
                    logger.info("Created default profile for user %s", user_id)
                except IntegrityError:
                    # Concurrent signup sync created it first
                    db.rollback()
                    profile = db.get(UserProfile, user_id)
            elif email and not profile.email:
                profile.email = email
                db.commit()
            entitlement = Entitlement.from_profile(profile)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to create profile for user %s: %s", user_id, e)
            raise StorageUnavailable(f"Could not create profile for user {user_id}") from e

        self.invalidate(user_id)
        return entitlement.effective()

    def apply_provider_event(
        self,
        db: Session,
        *,
        user_id: str,
        event_id: str,
        event_type: str,
        product_id: Optional[str] = None,
        expires_at_ms: Optional[int] = None,
        store: Optional[str] = None,
        purchased_at_ms: Optional[int] = None,
        period_type: Optional[str] = None,
        app_user_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> ProviderEventOutcome:
        """
        Apply a RevenueCat event to the user's entitlement, at most once per event id.

        An event already recorded without error is a no-op. If the update fails
        the event is recorded with its error and StorageUnavailable is raised, so
        the webhook answers non-2xx and the redelivered event is applied again.
        """
        try:
            existing = (
                db.query(SubscriptionEvent)
                .filter(SubscriptionEvent.event_id == event_id)
                .first()
            )
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageUnavailable(f"Could not check subscription event {event_id}") from e

        if existing is not None and existing.error is None:
            logger.info("Subscription event %s already processed, skipping", event_id)
            return ProviderEventOutcome(applied=False, already_processed=True)

        state = resolve_state(event_type, product_id, period_type)
        now = datetime.now(timezone.utc)
        entitlement = None

        try:
            profile = db.get(UserProfile, user_id)
            if profile is None:
                # Profiles come from signup only; deleted accounts and anonymous
                # RevenueCat ids are recorded for audit but never materialized
                logger.warning(
                    "Subscription event %s (%s) for unknown user %s, recorded without entitlement change",
                    event_id, event_type, user_id,
                )
            elif state is not None:
                tier, status = state
                profile.subscription_tier = tier
                profile.subscription_status = status
                profile.subscription_expires_at = ms_to_datetime(expires_at_ms)
                if purchased_at_ms is not None:
                    profile.subscription_started_at = ms_to_datetime(purchased_at_ms)
                profile.subscription_platform = platform_for_store(store)
                if product_id:
                    profile.subscription_product_id = product_id
                profile.revenuecat_app_user_id = app_user_id or user_id
                # A real subscription event supersedes legacy grandfathering
                profile.is_grandfathered = False
                profile.grandfathered_until = None
                entitlement = Entitlement.from_profile(profile)
            else:
                logger.info("Subscription event %s (%s) carries no entitlement change", event_id, event_type)

            event = existing if existing is not None else SubscriptionEvent(event_id=event_id)
            event.user_id = user_id if profile is not None else None
            event.revenuecat_app_user_id = app_user_id
            event.event_type = event_type
            event.event_data = payload
            event.error = None
            event.processed_at = now
            if existing is None:
                db.add(event)
            db.commit()
        except IntegrityError as e:
            db.rollback()
            if self._is_processed(db, event_id):
                # A concurrent delivery of the same event got there first
                logger.info("Subscription event %s applied concurrently, skipping", event_id)
                return ProviderEventOutcome(applied=False, already_processed=True)
            self._record_failure(db, event_id, event_type, app_user_id, payload, str(e))
            raise StorageUnavailable(f"Could not apply subscription event {event_id}") from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to apply subscription event %s for user %s: %s", event_id, user_id, e)
            self._record_failure(db, event_id, event_type, app_user_id, payload, str(e))
            raise StorageUnavailable(f"Could not apply subscription event {event_id}") from e

        if entitlement is not None:
            self._remember(entitlement.effective(now))
            logger.info(
                "Applied %s for user %s: tier=%s status=%s",
                event_type, user_id, entitlement.tier, entitlement.status,
            )
        return ProviderEventOutcome(applied=True, entitlement=entitlement)

    def _is_processed(self, db: Session, event_id: str) -> bool:
        try:
            event = db.query(SubscriptionEvent).filter(SubscriptionEvent.event_id == event_id).first()
        except SQLAlchemyError:
            db.rollback()
            return False
        return event is not None and event.error is None

    def _record_failure(
        self,
        db: Session,
        event_id: str,
        event_type: str,
        app_user_id: Optional[str],
        payload: Optional[Dict[str, Any]],
        error: str,
    ) -> None:
        """Best-effort audit row for an event whose entitlement update failed."""
        try:
            event = db.query(SubscriptionEvent).filter(SubscriptionEvent.event_id == event_id).first()
            if event is None:
                event = SubscriptionEvent(event_id=event_id)
                db.add(event)
            elif event.error is None:
                return
            event.event_type = event_type
            event.revenuecat_app_user_id = app_user_id
            event.event_data = payload
            event.error = error[:MAX_ERROR_LENGTH]
            event.processed_at = datetime.now(timezone.utc)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Could not record failed subscription event %s", event_id)

    def expire_grandfathered(self, db: Session, now: Optional[datetime] = None) -> int:
        """Persist the downgrade of lapsed grandfathered profiles. Returns how many changed."""
        now = now or datetime.now(timezone.utc)
        profiles = (
            db.query(UserProfile)
            .filter(
                UserProfile.is_grandfathered.is_(True),
                UserProfile.grandfathered_until.isnot(None),
                UserProfile.grandfathered_until < now,
                UserProfile.subscription_status != SubscriptionStatus.EXPIRED.value,
            )
            .all()
        )
        user_ids = []
        for profile in profiles:
            profile.subscription_tier = SubscriptionTier.FREE.value
            profile.subscription_status = SubscriptionStatus.EXPIRED.value
            user_ids.append(profile.id)
        db.commit()
        for user_id in user_ids:
            self.invalidate(user_id)
        if user_ids:
            logger.info("Expired grandfathering for %d users", len(user_ids))
        return len(user_ids)
