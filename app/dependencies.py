import logging
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from app.config import settings
from app.models import User, get_db

security = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


def decode_access_token(token: str) -> dict | None:
    """Claims of a wallet-auth access token, or None when it is unusable."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        logger.debug("Rejected bearer token: %s", exc)
        return None
    if payload.get("sub") is None or payload.get("type") not in {None, "access"}:
        return None
    return payload


def get_current_user_optional(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    db: Annotated[Session, Depends(get_db)],
) -> User | None:
    if not credentials:
        return None
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        return None
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        return None

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        return None
    # Tokens minted for one wallet must not authenticate a user re-bound to another.
    wallet = payload.get("wallet")
    if wallet and wallet.strip() != user.wallet_address:
        logger.warning("Token wallet does not match user %s", user.id)
        return None
    return user


def get_current_user(
    user: Annotated[User | None, Depends(get_current_user_optional)],
) -> User:
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
