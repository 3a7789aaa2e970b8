from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.core.errors import QuotaExceeded
from app.db.session import get_db
from app.dependencies.auth import get_current_user_id
from app.dependencies.services import get_access_engine, get_usage_ledger
from app.models.usage_log import ActionType
from app.schemas.usage import (
    ActionAllowedResponse,
    ConsumeRequest,
    UsageLogResult,
    UsageSummaryResponse,
    AccessSummaryResponse,
)
from app.services.access_engine import AccessDecisionEngine
from app.services.usage_ledger import UsageLedger

router = APIRouter()


@router.get("/summary", response_model=UsageSummaryResponse)
def get_usage_summary(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: AccessDecisionEngine = Depends(get_access_engine),
    ledger: UsageLedger = Depends(get_usage_ledger),
):
    """Today's used / limit / remaining for every metered action."""
    return UsageSummaryResponse(
        tier=engine.resolve_entitlement(db, user_id).tier,
        usage=ledger.usage_summary(db, user_id),
    )


@router.get("/access", response_model=AccessSummaryResponse)
def get_access_summary(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: AccessDecisionEngine = Depends(get_access_engine),
):
    """Entitlement flags plus paywall / upgrade banner hints for the app."""
    return engine.access_summary(db, user_id)


@router.get("/{action_type}/allowed", response_model=ActionAllowedResponse)
def can_perform_action(
    action_type: ActionType,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: AccessDecisionEngine = Depends(get_access_engine),
):
    allowed = engine.can_perform_action(db, user_id, action_type)
    return ActionAllowedResponse(action_type=action_type.value, allowed=allowed)


@router.post("/{action_type}/consume", response_model=UsageLogResult)
def consume_action(
    action_type: ActionType,
    body: ConsumeRequest | None = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    engine: AccessDecisionEngine = Depends(get_access_engine),
):
    """Record one use of a metered action. 403 when today's allowance is used up."""
    try:
        return engine.check_and_consume(
            db, user_id, action_type, metadata=body.metadata if body else None
        )
    except QuotaExceeded as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.to_detail())
