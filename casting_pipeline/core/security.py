import hashlib
import hmac
from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from casting_pipeline.core.auth import Principal, PrincipalType
from casting_pipeline.core.config import Settings, get_settings

ROLE_SCOPES: dict[str, set[str]] = {
    "user": set(),
    "moderator": {"moderation:read", "moderation:write", "sources:read", "pipeline:read"},
    "admin": {
        "moderation:read",
        "moderation:write",
        "sources:read",
        "sources:write",
        "pipeline:read",
        "pipeline:write",
    },
}
ROLE_PRECEDENCE = ("admin", "moderator", "user")
MACHINE_SCOPES = {"intake:write"}
SIGNATURE_PREFIX = "sha256="


async def get_machine_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_module_id: str | None = Header(default=None, alias="X-Module-Id"),
) -> Principal:
    if not x_api_key or not x_module_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="machine auth requires X-API-Key and X-Module-Id",
        )

    expected_hash = settings.machine_api_key_hashes.get(x_module_id)
    if not expected_hash:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid module credentials")

    key_hash = hashlib.sha256(x_api_key.encode("utf-8")).hexdigest()
    if not hmac.compare_digest(expected_hash.strip().lower(), key_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid module credentials")

    return Principal(
        principal_type=PrincipalType.MACHINE,
        subject=x_module_id,
        scopes=set(MACHINE_SCOPES),
        actor_id=x_module_id,
    )


async def get_human_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="human auth requires bearer token",
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

    role = _resolve_human_role(user)

    return Principal(
        principal_type=PrincipalType.HUMAN,
        subject=user_id,
        role=role,
        scopes=set(ROLE_SCOPES.get(role, ROLE_SCOPES["user"])),
        actor_id=user_id,
    )


def verify_webhook_signature(payload: bytes, signature: str | None, secret: str) -> bool:
    """Check an HMAC-SHA256 hex digest of the raw request body."""
    if not signature:
        return False

    provided = signature.strip().lower()
    if provided.startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX) :]

    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(provided, expected)


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


def _resolve_human_role(user: dict[str, Any]) -> str:
    # Only app_metadata is server-controlled; user_metadata is writable by the user.
    app_metadata = user.get("app_metadata")
    if not isinstance(app_metadata, dict):
        return "user"

    role = app_metadata.get("role")
    if isinstance(role, str) and role in ROLE_SCOPES:
        return role

    roles = app_metadata.get("roles")
    if isinstance(roles, list):
        for candidate in ROLE_PRECEDENCE:
            if candidate in roles:
                return candidate

    return "user"
