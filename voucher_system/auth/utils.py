from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

import jwt

from voucher_system.config import settings


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Mint a bearer token; used by tests and local tooling"""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def verify_token(token: str, credentials_exception) -> Dict[str, Any]:
    """Decode a bearer token or raise the supplied exception"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.PyJWTError:
        raise credentials_exception
    
    if not payload.get("sub") or not payload.get("role"):
        raise credentials_exception
    
    return payload
