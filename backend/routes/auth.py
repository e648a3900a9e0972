"""
Authentication for the Domain Ledger API.

Tokens are issued by the external auth service; this module only decodes
them. ``sub`` is the external user id, ``email`` is optional. The first
authenticated request from a user creates their Customer record.
"""

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from config import settings
from database import get_db
from models import Customer
from services.clock import utcnow
from services.payment_capture import resolve_customer

router = APIRouter(prefix="/auth", tags=["Authentication"])

security = HTTPBearer(auto_error=False)

ALGORITHM = "HS256"

# Token roles allowed to trigger runs and place or clear holds
OPERATOR_ROLES = ("admin", "service")


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Sign a token the way the auth service does (local tooling and tests)."""
    to_encode = data.copy()
    # jose requires 'sub' to be a string
    if "sub" in to_encode:
        to_encode["sub"] = str(to_encode["sub"])
    expire = utcnow() + (expires_delta or timedelta(minutes=60))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Return the token claims. Raises 401 on a bad or subject-less token."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return payload


def get_current_customer(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> Customer:
    """Customer behind the bearer token. Raises 401 if not authenticated."""
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(credentials.credentials)

    email = payload.get("email")
    customer = resolve_customer(db, str(payload["sub"]), email.lower() if email else None)
    db.commit()
    db.refresh(customer)
    return customer


def require_operator(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> dict:
    """Staff or the scheduling service. Raises 401 without a token, 403 for other roles."""
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(credentials.credentials)
    if payload.get("role") not in OPERATOR_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator role required")
    return payload


@router.get("/me")
def get_me(customer: Customer = Depends(get_current_customer)):
    """Get the authenticated customer's profile."""
    return {
        "id": customer.id,
        "user_id": customer.user_id,
        "email": customer.email,
        "created_at": customer.created_at,
    }
