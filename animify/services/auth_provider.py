"""
Client for the external identity provider (Supabase-style auth REST API).

Only one call is needed: resolve an access token to the provider user.
"""

from __future__ import annotations

from dataclasses import dataclass

import requests

from animify.config import config
from animify.utils.error_handlers import AppError, UpstreamError, ACTION_FIX_INPUT


class InvalidAccessTokenError(AppError):
    status_code = 401
    code = "INVALID_ACCESS_TOKEN"
    action = ACTION_FIX_INPUT


class AuthProviderError(UpstreamError):
    code = "AUTH_PROVIDER_ERROR"


@dataclass
class ProviderUser:
    id: str
    email: str | None
    is_anonymous: bool


def get_user(access_token: str) -> ProviderUser:
    """
    Resolve an access token to the provider user.

    Raises:
        InvalidAccessTokenError: token rejected (401/403) or missing
        AuthProviderError: provider not configured or unreachable
    """
    if not access_token:
        raise InvalidAccessTokenError("access_token is required")
    if not config.AUTH_PROVIDER_CONFIGURED:
        raise AuthProviderError("Identity provider is not configured")

    url = f"{config.AUTH_PROVIDER_URL}/auth/v1/user"
    headers = {
        "apikey": config.AUTH_PROVIDER_API_KEY,
        "Authorization": f"Bearer {access_token}",
    }
    try:
        r = requests.get(url, headers=headers, timeout=config.AUTH_PROVIDER_TIMEOUT)
    except requests.RequestException as e:
        print(f"[AUTH] Identity provider request failed: {e}")
        raise AuthProviderError("Identity provider unreachable") from e

    if r.status_code in (401, 403):
        raise InvalidAccessTokenError("Access token was rejected")
    if not r.ok:
        print(f"[AUTH] Identity provider returned {r.status_code}: {r.text[:200]}")
        raise AuthProviderError(f"Identity provider error {r.status_code}")

    try:
        data = r.json()
    except ValueError as e:
        raise AuthProviderError("Identity provider returned non-JSON") from e

    user_id = data.get("id")
    if not user_id:
        raise AuthProviderError("Identity provider response has no user id")

    return ProviderUser(
        id=str(user_id),
        email=(data.get("email") or None),
        is_anonymous=bool(data.get("is_anonymous", False)),
    )
