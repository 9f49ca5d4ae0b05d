"""
Operator authentication for the integration management API (JWT bearer).

Tokens carry the operator id in "sub" and the store they manage in "store_id".
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.config import settings

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Operator:
    id: str
    store_id: str


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.AUTH_ALGORITHM)


async def get_current_operator(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Operator:
    unauthorized = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise unauthorized
    try:
        payload = jwt.decode(credentials.credentials, settings.JWT_SECRET, algorithms=[settings.AUTH_ALGORITHM])
    except JWTError:
        raise unauthorized
    operator_id = payload.get("sub")
    store_id = payload.get("store_id")
    if not operator_id or not store_id:
        raise unauthorized
    return Operator(id=str(operator_id), store_id=str(store_id))
