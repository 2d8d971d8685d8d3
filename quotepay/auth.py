import os

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

import quotepay.config  # noqa: F401  loads .env


def verify_token(authorization: str = Header(...)):
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Unsupported authorization scheme")
        return jwt.decode(token, os.getenv("JWT_SECRET"), algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def require_admin(claims: dict = Depends(verify_token)):
    if not (claims.get("is_admin") or claims.get("role") == "admin"):
        raise HTTPException(status_code=403, detail="Admin access required")
    return claims
