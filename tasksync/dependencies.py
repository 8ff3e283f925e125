from dataclasses import dataclass

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from typing_extensions import Annotated

from tasksync.core.config import Settings
from tasksync.models import Session
from tasksync.services.identity import CredentialStore, IdentityResolver
from tasksync.services.live import LiveHub
from tasksync.services.oauth import OAuthGateway
from tasksync.services.sessions import SessionRegistry
from tasksync.services.task_store import TaskStore


@dataclass
class Services:
    """Process-wide components, built in the lifespan and kept on ``app.state``."""

    settings: Settings
    credentials: CredentialStore
    sessions: SessionRegistry
    tasks: TaskStore
    live: LiveHub
    identity: IdentityResolver
    oauth: OAuthGateway


def get_services(request: Request) -> Services:
    return request.app.state.services


ServicesDep = Annotated[Services, Depends(get_services)]

bearer = HTTPBearer(auto_error=False)


def get_token(
    request: Request,
    services: ServicesDep,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
) -> str | None:
    """Bearer header first, then the session cookie."""
    if creds and creds.credentials:
        return creds.credentials
    return request.cookies.get(services.settings.session_cookie_name)


TokenDep = Annotated[str | None, Depends(get_token)]


async def require_session(services: ServicesDep, token: TokenDep) -> Session:
    return await services.sessions.resolve(token)


SessionDep = Annotated[Session, Depends(require_session)]
