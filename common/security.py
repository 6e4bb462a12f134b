import time, jwt
from typing import Dict, Optional
from common.settings import settings

ALGO = "HS256"

def mint_admin_jwt(sub: str, claims: Optional[Dict] = None) -> str:
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "aud": settings.admin_audience,
        "sub": sub,
        "role": "admin",
        "iat": now,
        "exp": now + settings.jwt_ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def verify_token(token: str, audience: Optional[str] = None) -> Dict:
    options = {"require": ["exp", "iat", "iss"]}
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGO],
        audience=audience,
        options=options,
        issuer=settings.jwt_issuer,
    )

def admin_subject(token: str) -> Optional[str]:
    """Return the admin id carried by a valid admin token, else None."""
    try:
        claims = verify_token(token, audience=settings.admin_audience)
    except jwt.PyJWTError:
        return None
    if claims.get("role") != "admin" or not claims.get("sub"):
        return None
    return str(claims["sub"])
