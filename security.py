import hashlib
import hmac

from fastapi import Depends, HTTPException, status, Request

from config import settings

# =========================
# API KEY EXTRACTION
# =========================

def extract_api_key(request: Request) -> str:
    """
    Extract admin key from request headers.
    Header: X-API-Key
    """
    api_key = request.headers.get("x-api-key")
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key missing",
        )
    return api_key


# =========================
# HASHING
# =========================

def hash_api_key(raw_key: str) -> str:
    """
    Hash API key using SHA-256.
    Raw keys are NEVER stored or logged.
    """
    return hashlib.sha256(raw_key.encode()).hexdigest()


# =========================
# VALIDATION (SHARED ADMIN SECRET)
# =========================

def verify_admin_key(raw_api_key: str, expected: str = settings.ADMIN_API_KEY) -> bool:
    return hmac.compare_digest(raw_api_key.encode(), expected.encode())


def require_admin(raw_api_key: str = Depends(extract_api_key)) -> str:
    """
    Gate for the admin plane. Returns the actor id recorded in audit
    entries (a short digest of the key, never the key itself).
    """
    if not verify_admin_key(raw_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

    return f"admin:{hash_api_key(raw_api_key)[:12]}"
