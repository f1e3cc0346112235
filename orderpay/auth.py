from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from orderpay.config import settings


def verify_token(authorization: str = Header(...)) -> dict:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported scheme")
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def current_user_id(claims: dict = Depends(verify_token)) -> int:
    try:
        return int(claims["sub"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Token has no user")
