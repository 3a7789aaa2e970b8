from fastapi import Header, HTTPException, status, Depends
import jwt  # PyJWT
import logging
import os
import requests
import time
from typing import Optional

logger = logging.getLogger(__name__)

# Cache for JWKS (Public Keys)
JWKS_CACHE = None
JWKS_CACHE_TIMESTAMP = None
JWKS_CACHE_TTL = 3600  # Cache for 1 hour
JWKS_STALE_LIMIT = 86400  # Stale keys still usable for a day if Supabase is unreachable

ASYMMETRIC_ALGORITHMS = ("ES256", "RS256")


def get_jwks(supabase_url: str, force_refresh: bool = False):
    """
    Fetch JWKS from Supabase with caching and retry logic.
    Only successful fetches are cached so failures are retried next time.
    """
    global JWKS_CACHE, JWKS_CACHE_TIMESTAMP

    if JWKS_CACHE and JWKS_CACHE_TIMESTAMP and not force_refresh:
        if time.time() - JWKS_CACHE_TIMESTAMP < JWKS_CACHE_TTL:
            return JWKS_CACHE

    jwks_url = f"{supabase_url}/auth/v1/.well-known/jwks.json"
    max_retries = 3
    last_error = None
    for attempt in range(max_retries):
        try:
            r = requests.get(jwks_url, timeout=10)
            r.raise_for_status()
            JWKS_CACHE = r.json()
            JWKS_CACHE_TIMESTAMP = time.time()
            logger.info("Fetched JWKS with %d keys", len(JWKS_CACHE.get("keys", [])))
            return JWKS_CACHE
        except (requests.exceptions.RequestException, ValueError) as e:
            last_error = str(e)
            logger.warning("JWKS fetch failed (attempt %d/%d): %s", attempt + 1, max_retries, last_error)
            if attempt < max_retries - 1:
                time.sleep(1)

    logger.error("Failed to fetch JWKS after %d attempts: %s", max_retries, last_error)
    if JWKS_CACHE and JWKS_CACHE_TIMESTAMP and time.time() - JWKS_CACHE_TIMESTAMP < JWKS_STALE_LIMIT:
        logger.warning("Using stale JWKS cache")
        return JWKS_CACHE
    return None


def _signing_key(jwks: dict, kid: Optional[str]):
    jwk_set = jwt.PyJWKSet.from_dict(jwks)
    for key in jwk_set.keys:
        if kid is None or key.key_id == kid:
            return key.key
    return None


def verify_supabase_token(authorization: Optional[str] = Header(None)) -> dict:
    """
    Verify a Supabase access token and return its payload.
    Supports HS256 (shared secret) and ES256/RS256 (project JWKS).
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization header. Expected 'Bearer <token>'"
        )

    token = authorization[len("Bearer "):].strip()
    if not token or token.lower() in ("null", "undefined", "none") or token.count(".") != 2:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token format"
        )

    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as e:
        logger.info("Failed to decode token header: %s", e)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token header")

    algo = header.get("alg")
    if algo == "HS256":
        key = os.getenv("SUPABASE_JWT_SECRET")
        if not key:
            logger.error("SUPABASE_JWT_SECRET is not set")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Server misconfiguration: SUPABASE_JWT_SECRET not set"
            )
    elif algo in ASYMMETRIC_ALGORITHMS:
        supabase_url = os.getenv("SUPABASE_URL")
        if not supabase_url:
            logger.error("SUPABASE_URL is not set, cannot verify %s tokens", algo)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Server misconfiguration: SUPABASE_URL not set"
            )
        jwks = get_jwks(supabase_url)
        if not jwks:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Authentication service temporarily unavailable. Please try again in a moment."
            )
        key = _signing_key(jwks, header.get("kid"))
        if key is None:
            # Keys may have rotated since the cache was filled
            jwks = get_jwks(supabase_url, force_refresh=True)
            key = _signing_key(jwks, header.get("kid")) if jwks else None
        if key is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown signing key")
    else:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Unsupported token algorithm: {algo}"
        )

    try:
        payload = jwt.decode(
            token,
            key,
            algorithms=[algo],
            audience="authenticated",
            options={"verify_aud": True}
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has expired")
    except jwt.PyJWTError as e:
        logger.info("%s verification failed: %s", algo, e)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token signature")

    return payload


def get_current_user_id(payload: dict = Depends(verify_supabase_token)) -> str:
    """Supabase auth user id (UUID) from the token's sub claim."""
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token is missing the sub claim"
        )
    return user_id


def get_current_user_email(payload: dict = Depends(verify_supabase_token)) -> Optional[str]:
    return payload.get("email")
