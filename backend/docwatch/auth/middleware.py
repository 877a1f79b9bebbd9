from fastapi import Cookie, HTTPException, Request
from jose import ExpiredSignatureError, JWTError, jwt

from docwatch.config import settings

ALGORITHM = "HS256"


def bearer_or_cookie(request: Request, cookie: str | None) -> str | None:
    """Token from the ``session`` cookie, else from ``Authorization: Bearer``."""
    if cookie:
        return cookie
    scheme, _, credentials = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


def decode_operator(token: str) -> dict:
    claims = jwt.decode(token, settings.jwt_secret, algorithms=[ALGORITHM])
    subject = claims.get("sub")
    if not subject:
        raise JWTError("token has no subject")
    return {"user_id": subject, "is_admin": bool(claims.get("is_admin", False))}


async def get_current_user(request: Request, session: str | None = Cookie(default=None)) -> dict:
    token = bearer_or_cookie(request, session)
    if token is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return decode_operator(token)
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
