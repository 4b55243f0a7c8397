import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)

from app.api import groups, health, invites, notifications, websocket_routes
from app.db.session import async_session_factory, engine, init_models
from app.services.connections import ConnectionRegistry
from app.services.gateway_client import UserDirectory
from app.services.group_service import GroupService
from app.services.membership_service import MembershipService
from app.services.notifications import NotificationDispatcher
from app.services.realtime import RealtimeService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=== LIFESPAN STARTUP BEGIN ===")
    try:
        await init_models()
    except Exception as e:
        logger.error(f"Failed to initialize tables on startup: {e}", exc_info=True)

    connections = ConnectionRegistry()
    channels = [connections]
    realtime = None
    if settings.realtime_enabled:
        realtime = RealtimeService()
        channels.append(realtime)
    else:
        logger.info("Supabase Realtime not configured, pushing over WebSockets only")

    directory = UserDirectory()
    dispatcher = NotificationDispatcher(async_session_factory, maxsize=settings.NOTIFICATION_QUEUE_SIZE)
    dispatcher.start(channels)

    memberships = MembershipService(dispatcher, directory)
    app.state.connections = connections
    app.state.dispatcher = dispatcher
    app.state.membership_service = memberships
    app.state.group_service = GroupService(memberships)
    logger.info("=== LIFESPAN STARTUP COMPLETE ===")

    yield

    await connections.close_all()
    await dispatcher.stop()
    if realtime is not None:
        await realtime.close()
    await directory.close()
    await engine.dispose()


app = FastAPI(
    title="Collab Groups Service",
    description="Group membership, permissions and notifications",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(invites.router)
app.include_router(groups.router)
app.include_router(notifications.router)
app.include_router(websocket_routes.router)
