from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError as PydanticValidationError

from lifeline.config import get_settings
from lifeline.services.access_gate import Actor, Role

settings = get_settings()
security = HTTPBearer(auto_error=False)


class TokenData(BaseModel):
    user_id: str
    role: Role


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Sign a token. Production tokens come from the Auth service; this is for tooling and tests."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.JWT_EXPIRATION_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> TokenData:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        return TokenData(user_id=str(payload["sub"]), role=payload.get("role", Role.USER.value))
    except (JWTError, KeyError, PydanticValidationError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


async def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Actor:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    token_data = decode_token(credentials.credentials)
    return Actor(kind=token_data.role, id=token_data.user_id)


def require_role(*roles: Role):
    async def role_checker(actor: Actor = Depends(get_current_actor)) -> Actor:
        # Admin bypasses all role checks
        if actor.kind == Role.ADMIN:
            return actor
        if actor.kind not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role {actor.kind.value} not authorized. Required: {[r.value for r in roles]}",
            )
        return actor
    return role_checker
