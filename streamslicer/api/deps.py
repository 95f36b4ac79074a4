"""Request dependencies: application context and the calling user."""
import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from streamslicer.context import AppContext


security = HTTPBearer(auto_error=False)


def get_context(request: Request) -> AppContext:
    return request.app.state.context


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    anonymous_id: Optional[str] = Header(default=None, alias="X-Anonymous-Id"),
    ctx: AppContext = Depends(get_context),
) -> str:
    """Resolve the caller from a bearer token, or an anonymous browser id."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "Could not validate credentials", "code": "unauthenticated"},
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is not None:
        user_id = await ctx.ledger.authenticate(credentials.credentials)
        if user_id is None:
            raise credentials_exception
        return user_id

    if anonymous_id and ctx.settings.allow_anonymous:
        try:
            return f"anon-{uuid.UUID(anonymous_id)}"
        except ValueError:
            raise credentials_exception

    raise credentials_exception
