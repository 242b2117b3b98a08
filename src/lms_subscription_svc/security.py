"""Password hashing and JWT helpers for parent accounts."""
import base64
import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import bcrypt
import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from lms_subscription_svc.config import Settings, get_settings
from lms_subscription_svc.errors import AuthenticationError
from lms_subscription_svc.models.account import Account
from lms_subscription_svc.models.base import get_db

ALGORITHM = "HS256"

bearer_scheme = HTTPBearer(auto_error=False)


def _prepare_password(password: str) -> bytes:
    # SHA-256 pre-hash keeps long passwords under bcrypt's 72-byte limit.
    return base64.b64encode(hashlib.sha256(password.encode()).digest())


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_prepare_password(password), bcrypt.gensalt()).decode()


def verify_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(_prepare_password(password), password_hash.encode())


class TokenIssuer:
    """Issues and verifies the session tokens handed to logged-in parents."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        settings = settings or get_settings()
        self.secret_key = settings.jwt_secret
        self.expire_days = settings.jwt_expire_days

    def create_access_token(self, account_id: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "id": account_id,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(days=self.expire_days)).timestamp()),
        }
        return jwt.encode(payload, self.secret_key, algorithm=ALGORITHM)

    def decode(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, self.secret_key, algorithms=[ALGORITHM])
        except jwt.ExpiredSignatureError as e:
            raise AuthenticationError("Token has expired.") from e
        except jwt.InvalidTokenError as e:
            raise AuthenticationError("Not authorized. Invalid token.") from e


def get_token_issuer() -> TokenIssuer:
    return TokenIssuer()


def get_current_account(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
    token_issuer: TokenIssuer = Depends(get_token_issuer),
) -> Account:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail="Not authorized. Please provide a token.")
    try:
        payload = token_issuer.decode(credentials.credentials)
    except AuthenticationError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    account = db.query(Account).filter(Account.id == payload.get("id")).first()
    if account is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail="Account not found for this token.")
    if not account.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail="Account is inactive.")
    return account
