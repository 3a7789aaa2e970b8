"""
Process-wide service instances, injected into routes with Depends so tests
can swap them through app.dependency_overrides.
"""
from app.services.entitlement_store import EntitlementStore
from app.services.usage_ledger import UsageLedger
from app.services.access_engine import AccessDecisionEngine

entitlement_store = EntitlementStore()
usage_ledger = UsageLedger(entitlement_store)
access_engine = AccessDecisionEngine(entitlement_store, usage_ledger)


def get_entitlement_store() -> EntitlementStore:
    return entitlement_store


def get_usage_ledger() -> UsageLedger:
    return usage_ledger


def get_access_engine() -> AccessDecisionEngine:
    return access_engine
