"""StreamSlicer Server - FastAPI application."""
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Callable, Optional

import httpx
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from streamslicer import __version__
from streamslicer.api import billing_router, sessions_router, users_router
from streamslicer.auth import create_access_token, get_google_auth_url, verify_google_token
from streamslicer.config import Settings, get_settings
from streamslicer.context import build_context
from streamslicer.errors import InsufficientBalanceError, StreamSlicerError
from streamslicer.ledger import LedgerBackend
from streamslicer.workflow import Analyzer


logger = logging.getLogger(__name__)


# ============= Auth Endpoints =============

class AuthUrlResponse(BaseModel):
    """Auth URL response."""
    auth_url: str
    state: str


class TokenResponse(BaseModel):
    """Token response after successful auth."""
    access_token: str
    token_type: str = "bearer"
    user_id: str
    email: Optional[str]
    name: Optional[str]
    credits: int
    trial_available: bool


async def get_auth_url(request: Request):
    """Get Google OAuth authorization URL.

    The client should redirect the user to this URL to initiate OAuth flow.
    """
    state = secrets.token_urlsafe(32)
    auth_url = get_google_auth_url(request.app.state.context.settings, state=state)

    return AuthUrlResponse(auth_url=auth_url, state=state)


async def google_callback(request: Request, code: str, state: Optional[str] = None):
    """Handle Google OAuth callback and issue a JWT for the user."""
    ctx = request.app.state.context

    try:
        google_user = await verify_google_token(ctx.settings, code)
    except (httpx.HTTPError, KeyError) as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": f"Authentication failed: {str(e)}", "code": "authentication_failed"}
        )

    user_id = google_user["user_id"]
    access_token = create_access_token(
        user_id, ctx.settings.secret_key, email=google_user["email"]
    )

    return TokenResponse(
        access_token=access_token,
        user_id=user_id,
        email=google_user["email"],
        name=google_user["name"],
        credits=await ctx.ledger.get_balance(user_id),
        trial_available=await ctx.ledger.check_trial_eligibility(user_id),
    )


async def google_token_auth(request: Request, code: str):
    """Authenticate using a Google OAuth code obtained by the client."""
    return await google_callback(request, code=code)


# ============= Errors =============

async def handle_app_error(request: Request, exc: StreamSlicerError):
    detail = {"error": exc.message, "code": exc.kind.value}
    if isinstance(exc, InsufficientBalanceError):
        detail["credits_needed"] = exc.credits_needed
        detail["credits_available"] = exc.credits_available
    return JSONResponse(status_code=exc.status_code, content={"detail": detail})


# ============= App =============

def create_app(
    settings: Optional[Settings] = None,
    backend: Optional[LedgerBackend] = None,
    analyzer_factory: Optional[Callable[[], Analyzer]] = None,
) -> FastAPI:
    """Build the application with an explicit context."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create services on startup, release them on shutdown."""
        ctx = build_context(settings, backend=backend, analyzer_factory=analyzer_factory)
        await ctx.backend.init()
        app.state.context = ctx
        logger.info("%s started with %s ledger", settings.app_name, settings.ledger_backend)
        yield
        await ctx.close()

    app = FastAPI(
        title="StreamSlicer API",
        description="Viral clip detection for stream recordings, billed in credits",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(StreamSlicerError, handle_app_error)

    app.include_router(sessions_router)
    app.include_router(users_router)
    app.include_router(billing_router)

    app.add_api_route("/auth/google/url", get_auth_url, methods=["GET"],
                      response_model=AuthUrlResponse)
    app.add_api_route("/auth/google/callback", google_callback, methods=["GET"],
                      response_model=TokenResponse)
    app.add_api_route("/auth/google/token", google_token_auth, methods=["POST"],
                      response_model=TokenResponse)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "streamslicer-api"}

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "name": "StreamSlicer API",
            "version": __version__,
            "docs": "/docs",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
