from typing import Optional

import jwt
from fastapi import Cookie, HTTPException

from config import TOKEN_SECRET

JWT_ALGORITHM = "HS256"


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, TOKEN_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Token inválido")


def get_current_user_id(token: Optional[str] = Cookie(default=None)) -> str:
    """User id from the session cookie issued by the login service."""
    if not token:
        raise HTTPException(status_code=401, detail="No autenticado")
    payload = decode_token(token)
    user_id = payload.get("id")
    if user_id is None:
        raise HTTPException(status_code=401, detail="Token inválido")
    return str(user_id)
