from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError

from donorlink.config import get_settings

settings = get_settings()
security = HTTPBearer()


class TokenData(BaseModel):
    sub: str
    hospital_id: str


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.JWT_EXPIRATION_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> TokenData:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        return TokenData(sub=payload["sub"], hospital_id=payload["hospital_id"])
    except (JWTError, KeyError, ValidationError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


async def get_current_hospital_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """The hospital the caller acts for; every engine call is scoped to it."""
    return decode_token(credentials.credentials).hospital_id
