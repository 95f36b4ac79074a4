"""Authentication module."""
from .google import get_google_auth_url, verify_google_token
from .jwt import create_access_token, verify_token

__all__ = [
    "get_google_auth_url",
    "verify_google_token",
    "create_access_token",
    "verify_token",
]
