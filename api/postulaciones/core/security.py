from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from postulaciones.core.auth import Actor
from postulaciones.core.config import Settings, get_settings
from postulaciones.services.repository import RepositoryForbiddenError, require_director


async def get_actor(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Actor:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="authentication requires bearer token",
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
    usuario_id = _resolve_usuario_id(user)
    if usuario_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="token is not linked to a usuario")

    return Actor(id=usuario_id, role=_resolve_role(user))


async def get_director(actor: Actor = Depends(get_actor)) -> Actor:
    try:
        require_director(actor)
    except RepositoryForbiddenError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    return actor


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


# Only app_metadata is server-controlled; user_metadata is writable by the user.
def _app_metadata_value(user: dict[str, Any], key: str) -> Any:
    metadata = user.get("app_metadata")
    if isinstance(metadata, dict):
        return metadata.get(key)
    return None


def _resolve_usuario_id(user: dict[str, Any]) -> int | None:
    value = _app_metadata_value(user, "usuario_id")
    if isinstance(value, bool):
        return None
    try:
        usuario_id = int(value)
    except (TypeError, ValueError):
        return None
    return usuario_id if usuario_id > 0 else None


def _resolve_role(user: dict[str, Any]) -> str:
    role = _app_metadata_value(user, "role")
    if isinstance(role, str) and role:
        return role
    return "user"
