import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from tasksync.core.config import Settings, get_settings
from tasksync.core.errors import register_exception_handlers
from tasksync.core.logging_setup import configure_logging
from tasksync.dependencies import Services
from tasksync.routers import auth, live, tasks
from tasksync.services.identity import CredentialStore, IdentityResolver
from tasksync.services.live import LiveHub
from tasksync.services.oauth import OAuthGateway
from tasksync.services.reaper import OrphanReaper
from tasksync.services.sessions import SessionRegistry
from tasksync.services.task_store import TaskStore
from tasksync.storage.files import DataPaths

logger = logging.getLogger(__name__)


async def build_services(
    settings: Settings, oauth_transport: httpx.AsyncBaseTransport | None = None
) -> Services:
    """Load persisted state and run the orphan sweep before any request is served."""
    paths = DataPaths(settings.data_dir)
    paths.ensure()

    credentials = CredentialStore(paths.credentials_file)
    await credentials.load()
    sessions = SessionRegistry(paths.sessions_file, settings.session_max_age_seconds)
    await sessions.load()

    live_hub = LiveHub(sessions, queue_size=settings.live_queue_size)
    task_store = TaskStore(
        paths,
        debounce_seconds=settings.write_debounce_seconds,
        on_change=live_hub.broadcast,
    )
    await OrphanReaper(credentials, sessions, task_store).run()

    return Services(
        settings=settings,
        credentials=credentials,
        sessions=sessions,
        tasks=task_store,
        live=live_hub,
        identity=IdentityResolver(credentials, task_store, settings.bcrypt_rounds),
        oauth=OAuthGateway(settings, transport=oauth_transport),
    )


def create_app(
    settings: Settings | None = None, oauth_transport: httpx.AsyncBaseTransport | None = None
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = await build_services(settings, oauth_transport)
        app.state.services = services
        logger.info(f"Task files stored in: {settings.data_dir}/todos_<ownerKey>.json")
        yield
        await services.tasks.close()
        await services.oauth.aclose()

    app = FastAPI(
        title="Task Sync API",
        description="Per-user task lists with debounced file persistence and live updates",
        swagger_ui_parameters={"displayRequestDuration": True},
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.add_middleware(GZipMiddleware, minimum_size=512, compresslevel=6)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Order-Mode"],
    )
    register_exception_handlers(app)

    # Include routers
    app.include_router(auth.router)
    app.include_router(tasks.router)
    app.include_router(live.router)

    @app.get("/")
    async def root():
        return {
            "message": "Welcome to Task Sync API",
            "docs": "/docs",
            "version": settings.app_version,
        }

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    @app.get("/api/version")
    async def version():
        return {"version": settings.app_version}

    return app


app = create_app()
