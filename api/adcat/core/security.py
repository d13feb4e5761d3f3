from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from adcat.core.auth import CATEGORIES_READ, CATEGORIES_WRITE, Principal
from adcat.core.config import Settings, get_settings

ROLE_SCOPES: dict[str, set[str]] = {
    "user": {CATEGORIES_READ},
    "operator": {CATEGORIES_READ, CATEGORIES_WRITE},
    "admin": {CATEGORIES_READ, CATEGORIES_WRITE},
}
ROLE_PRIORITY = ("admin", "operator", "user")


async def get_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="bearer token required",
        )

    token = authorization.split(" ", maxsplit=1)[1].strip()
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="empty bearer token")

    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth is not configured",
        )

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")

    role = _resolve_role(user)
    email = user.get("email")

    return Principal(
        subject=user_id,
        role=role,
        scopes=set(ROLE_SCOPES.get(role, ROLE_SCOPES["user"])),
        email=email if isinstance(email, str) else None,
    )


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": supabase_anon_key,
    }
    url = f"{supabase_url.rstrip('/')}/auth/v1/user"

    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification unavailable",
        ) from exc

    if response.status_code in {401, 403}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")
    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification failed",
        )

    return response.json()



def _resolve_role(user: dict[str, Any]) -> str:
    # Only app_metadata is server-controlled; user_metadata is editable by the user.
    app_metadata = user.get("app_metadata")
    if not isinstance(app_metadata, dict):
        return "user"

    candidates: set[str] = set()
    role = app_metadata.get("role")
    if isinstance(role, str) and role:
        candidates.add(role)
    roles = app_metadata.get("roles")
    if isinstance(roles, list):
        candidates.update(item for item in roles if isinstance(item, str))

    for known_role in ROLE_PRIORITY:
        if known_role in candidates:
            return known_role
    return "user"
