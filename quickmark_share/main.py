"""
QuickMark Share - FastAPI application entry point.

Serves the sharing REST API and a WebSocket that relays sharing events
to the note-taking UI.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket

from quickmark_share.api.routes import init_routes, router
from quickmark_share.api.websocket import EventStream, parse_topics
from quickmark_share.config import API_HOST, API_PORT, AUTO_RECEIVE, ShareSettings
from quickmark_share.errors import DataError
from quickmark_share.sharing.service import SharingService

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
sharing_service = SharingService(ShareSettings())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info("Starting QuickMark Share...")
    if AUTO_RECEIVE:
        await sharing_service.start_receive_service()

    logger.info(
        f"QuickMark Share ready. API: {API_HOST}:{API_PORT}, "
        f"notes: {sharing_service.store.notes_dir}"
    )
    try:
        yield
    finally:
        logger.info("Shutting down QuickMark Share...")
        await sharing_service.stop()


app = FastAPI(
    title="QuickMark Share",
    version="0.1.0",
    lifespan=lifespan,
)

init_routes(sharing_service)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, topics: str | None = None):
    try:
        event_names = parse_topics(topics)
    except DataError as e:
        await websocket.close(code=1008, reason=str(e))
        return
    await EventStream(websocket, sharing_service, event_names).serve()


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
