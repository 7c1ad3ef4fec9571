from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from pydantic import ValidationError

from voucher_system.auth.utils import verify_token
from voucher_system.auth.schemas import Identity

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)

def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

def _identity_from_token(token: str) -> Identity:
    credentials_exception = _credentials_exception()
    payload = verify_token(token, credentials_exception)
    
    try:
        return Identity(
            user_id=str(payload["sub"]),
            role=payload["role"],
            email=payload.get("email")
        )
    except ValidationError:
        raise credentials_exception

def get_current_identity(token: str = Depends(oauth2_scheme)) -> Identity:
    """Get the authenticated caller"""
    return _identity_from_token(token)

def get_optional_identity(token: Optional[str] = Depends(optional_oauth2_scheme)) -> Optional[Identity]:
    """Get the caller if a bearer token was sent, otherwise None"""
    if not token:
        return None
    return _identity_from_token(token)
