from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, StorageUnavailable
from app.db.session import get_db
from app.dependencies.auth import get_current_user_id, get_current_user_email
from app.dependencies.services import get_entitlement_store
from app.schemas.entitlement import EntitlementResponse, ProfileSyncRequest
from app.services.entitlement_store import EntitlementStore

router = APIRouter()


@router.get("/me/entitlement", response_model=EntitlementResponse)
def get_my_entitlement(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    """Current subscription state (lapsed grandfathering already applied)."""
    try:
        entitlement = store.fetch(db, user_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User profile not found")
    except StorageUnavailable:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Subscription status is temporarily unavailable. Please try again."
        )
    return EntitlementResponse.from_entitlement(entitlement)


@router.post("/profile", response_model=EntitlementResponse)
def sync_profile(
    body: Optional[ProfileSyncRequest] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    token_email: Optional[str] = Depends(get_current_user_email),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    """
    Called by the app after signup / sign-in. Creates the free profile if it
    does not exist yet and drops any cached entitlement for the user.
    """
    email = (body.email if body and body.email else None) or token_email
    try:
        entitlement = store.create_default(db, user_id, email=email)
    except StorageUnavailable:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not create user profile. Please try again."
        )
    return EntitlementResponse.from_entitlement(entitlement)


@router.post("/sign-out", response_model=EntitlementResponse)
def sign_out(
    user_id: str = Depends(get_current_user_id),
    store: EntitlementStore = Depends(get_entitlement_store),
):
    """Forget cached entitlement state for the user. The stored profile is unchanged."""
    return EntitlementResponse.from_entitlement(store.reset(user_id))
