from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header
from jose import JWTError, jwt
from passlib.context import CryptContext

import settings
from errors import Forbidden, Unauthorized
from schemas import Principal, Role, User

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def create_token(user: User) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user.id,
        "email": user.email,
        "role": user.role,
        "email_verified": user.email_verified,
        "is_approved": user.is_approved,
        "exp": now + timedelta(minutes=settings.JWT_EXPIRE_MINUTES),
        "iat": now,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def verify_token(authorization: Optional[str] = Header(None)) -> Principal:
    if not authorization:
        raise Unauthorized("Missing Authorization header")
    try:
        scheme, token = authorization.split(" ", 1)
        if scheme.lower() != "bearer":
            raise ValueError("Invalid auth scheme")
        data = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
        return Principal(
            id=data["sub"],
            role=data["role"],
            email=data.get("email", ""),
            email_verified=data.get("email_verified", False),
            is_approved=data.get("is_approved", False),
        )
    except (ValueError, KeyError, JWTError):
        raise Unauthorized("Invalid or expired token") from None


def require_admin(user: Principal = Depends(verify_token)) -> Principal:
    if user.role != Role.ADMIN:
        raise Forbidden("Admin access required")
    return user
