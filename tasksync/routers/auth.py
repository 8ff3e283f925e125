import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Response
from fastapi.responses import RedirectResponse

from tasksync.core.config import Settings
from tasksync.core.errors import AuthError
from tasksync.dependencies import ServicesDep, TokenDep
from tasksync.models import LoginRequest, LoginResponse
from tasksync.services.oauth import OAuthFailure

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _set_session_cookie(response: Response, settings: Settings, token: str) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=settings.session_max_age_seconds,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
        path="/",
    )


@router.post("/login", response_model=LoginResponse)
async def login(body: LoginRequest, services: ServicesDep, response: Response):
    """Log in with a password; an unseen password registers a new owner"""
    result = await services.identity.verify_or_register_password(body.password)
    token = await services.sessions.create(result.owner_key)
    _set_session_cookie(response, services.settings, token)
    message = (
        "New password registered with personal todo database"
        if result.is_new_owner
        else "Login successful"
    )
    return LoginResponse(token=token, is_new_owner=result.is_new_owner, message=message)


@router.post("/logout")
async def logout(token: TokenDep, services: ServicesDep, response: Response):
    if token:
        await services.sessions.destroy(token)
        response.delete_cookie(services.settings.session_cookie_name, path="/")
    return {"message": "Logged out"}


@router.get("/check")
async def check_session(token: TokenDep, services: ServicesDep):
    try:
        await services.sessions.resolve(token)
    except AuthError:
        return {"authenticated": False}
    return {"authenticated": True}


@router.get("/oauth/providers")
async def oauth_providers(services: ServicesDep):
    return services.oauth.providers()


@router.get("/oauth/callback")
async def oauth_callback(
    services: ServicesDep, code: str | None = None, state: str | None = None
):
    try:
        profile = await services.oauth.complete(code, state)
    except OAuthFailure as e:
        logger.error(f"OAuth callback failed: {e}")
        return RedirectResponse(f"/?error={e.marker}", status_code=302)

    result = await services.identity.login_oauth(profile)
    token = await services.sessions.create(result.owner_key)
    query = urlencode(
        {
            "oauth_complete": "true",
            "oauth_new": str(result.is_new_owner).lower(),
            "provider": profile.provider,
        }
    )
    redirect = RedirectResponse(f"/?{query}", status_code=302)
    _set_session_cookie(redirect, services.settings, token)
    return redirect


@router.get("/oauth/{provider}")
async def oauth_start(provider: str, services: ServicesDep):
    """Authorization URL for the provider's consent page"""
    return {"authUrl": services.oauth.authorization_url(provider)}
