import hashlib
import hmac

from fastapi import Depends, Header, HTTPException, status

from dispatch_api.core.auth import ADMIN_SCOPES, PRO_SCOPES, Principal, PrincipalType
from dispatch_api.core.config import Settings, get_settings


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def _admin_from_key(settings: Settings, api_key: str) -> Principal:
    if not settings.admin_api_key_hash:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="admin auth is not configured",
        )
    if not hmac.compare_digest(settings.admin_api_key_hash, hash_api_key(api_key)):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid admin credentials")
    return Principal(principal_type=PrincipalType.ADMIN, subject="admin", scopes=set(ADMIN_SCOPES))


async def get_admin_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> Principal:
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"admin auth requires {settings.api_key_header}",
        )
    return _admin_from_key(settings, x_api_key)


async def get_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_pro_id: str | None = Header(default=None, alias="X-Pro-Id"),
    x_pro_email: str | None = Header(default=None, alias="X-Pro-Email"),
) -> Principal:
    """Admin when an API key is presented, else the pro identity forwarded by the session layer."""
    if x_api_key:
        return _admin_from_key(settings, x_api_key)

    pro_id = (x_pro_id or "").strip() or None
    email = (x_pro_email or "").strip().lower() or None
    if not pro_id and not email:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="pro auth requires X-Pro-Id or X-Pro-Email",
        )
    return Principal(
        principal_type=PrincipalType.PRO,
        subject=pro_id or email or "",
        scopes=set(PRO_SCOPES),
        pro_id=pro_id,
        email=email,
    )
