"""Google OAuth2 authentication."""
from typing import Optional
from urllib.parse import urlencode

import httpx

from streamslicer.config import Settings
from streamslicer.errors import ConfigurationError


GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


def _require_client(settings: Settings) -> None:
    if not settings.google_client_id or not settings.google_client_secret:
        raise ConfigurationError("Google OAuth is not configured")


def get_google_auth_url(settings: Settings, state: Optional[str] = None) -> str:
    """Generate Google OAuth authorization URL."""
    _require_client(settings)

    params = {
        "client_id": settings.google_client_id,
        "redirect_uri": settings.google_redirect_uri,
        "response_type": "code",
        "scope": "openid email profile",
        "access_type": "online",
        "prompt": "select_account",
    }

    if state:
        params["state"] = state

    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


async def exchange_code_for_tokens(settings: Settings, code: str) -> dict:
    """Exchange authorization code for tokens."""
    async with httpx.AsyncClient() as client:
        response = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "client_id": settings.google_client_id,
                "client_secret": settings.google_client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": settings.google_redirect_uri,
            }
        )
        response.raise_for_status()
        return response.json()


async def get_google_user_info(access_token: str) -> dict:
    """Get user info from Google using access token."""
    async with httpx.AsyncClient() as client:
        response = await client.get(
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"}
        )
        response.raise_for_status()
        return response.json()


async def verify_google_token(settings: Settings, code: str) -> dict:
    """Verify Google OAuth code and return user info.

    Returns:
        dict: User info containing:
            - user_id: ledger user id derived from the Google account id
            - email: User's email
            - name: User's name
    """
    _require_client(settings)

    tokens = await exchange_code_for_tokens(settings, code)
    user_info = await get_google_user_info(tokens["access_token"])

    return {
        "user_id": f"google-{user_info['id']}",
        "email": user_info.get("email"),
        "name": user_info.get("name"),
    }
