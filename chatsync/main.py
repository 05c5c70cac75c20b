import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from chatsync.database.connection import close_mongo_connection, connect_to_mongo
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.device_repository import DeviceRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.routers.chat import router as chat_router
from chatsync.routers.conversations import router as conversations_router
from chatsync.routers.devices import router as devices_router
from chatsync.routers.presence import router as presence_router
from chatsync.utils.logging_config import setup_logging
from chatsync.utils.realtime_bus import close_bus


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    db = await connect_to_mongo()
    await MessageRepository(db).ensure_indexes()
    await ConversationRepository(db).ensure_indexes()
    await DeviceRepository(db).ensure_indexes()
    logger.info("Chat sync service started")
    try:
        yield
    finally:
        await close_bus()
        await close_mongo_connection()


app = FastAPI(title="Crew chat sync", lifespan=lifespan)


app.include_router(chat_router)
app.include_router(conversations_router)
app.include_router(presence_router)
app.include_router(devices_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
