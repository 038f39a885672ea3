"""REST API routes for QuickMark sharing."""

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from quickmark_share.config import MAX_PORT
from quickmark_share.errors import DataError, ShareError, StateError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Injected by main.py at startup
_sharing_service = None


def init_routes(sharing_service) -> None:
    """Inject the sharing service into the routes module."""
    global _sharing_service
    _sharing_service = sharing_service


def _http_error(e: ShareError) -> HTTPException:
    if isinstance(e, StateError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, DataError):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=502, detail=str(e))


# --- Receiving ---

@router.post("/receive")
async def start_receive():
    """Start answering discovery pings and accepting offers."""
    message = await _sharing_service.start_receive_service()
    return {"status": message}


@router.get("/transfers/pending")
async def list_pending():
    offers = await _sharing_service.pending_offers()
    return {"transfers": [o.model_dump(mode="json") for o in offers]}


@router.post("/transfers/{transfer_id}/accept")
async def accept_transfer(transfer_id: str):
    try:
        await _sharing_service.accept_incoming_transfer(transfer_id, accept=True)
    except StateError as e:
        raise _http_error(e)
    return {"status": "accepted"}


@router.post("/transfers/{transfer_id}/reject")
async def reject_transfer(transfer_id: str):
    try:
        await _sharing_service.accept_incoming_transfer(transfer_id, accept=False)
    except StateError as e:
        raise _http_error(e)
    return {"status": "rejected"}


# --- Sending ---

@router.get("/receivers")
async def list_receivers(wait_secs: float = 3):
    """Sweep the LAN for receivers."""
    try:
        peers = await _sharing_service.discover_receivers(wait_secs)
    except ShareError as e:
        raise _http_error(e)
    return {"receivers": [p.model_dump() for p in peers]}


class SendBody(BaseModel):
    ip: str
    port: int = Field(ge=1, le=MAX_PORT)
    note_id: str | None = None


@router.post("/send")
async def start_send(body: SendBody):
    """Start sending all notes, or one note, to a receiver."""
    if body.note_id is None:
        task_id = await _sharing_service.start_send_all_notes_to(body.ip, body.port)
    else:
        task_id = await _sharing_service.start_send_note_to(body.note_id, body.ip, body.port)
    return {"task_id": task_id}


@router.get("/send/{task_id}")
async def send_state(task_id: str):
    try:
        state = _sharing_service.send_task_state(task_id)
    except StateError as e:
        raise _http_error(e)
    return {"task_id": task_id, "state": state.value}


@router.post("/send/{task_id}/cancel")
async def cancel_send(task_id: str):
    try:
        cancelled = _sharing_service.cancel_send(task_id)
    except StateError as e:
        raise _http_error(e)
    return {"task_id": task_id, "cancelled": cancelled}


# --- Settings ---

class SettingsBody(BaseModel):
    device_name: str | None = None


@router.get("/settings")
async def get_settings():
    return {
        "device_name": _sharing_service.device_name,
        "notes_dir": str(_sharing_service.store.notes_dir),
        "listening": _sharing_service.is_listening,
    }


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.device_name is not None:
        name = body.device_name.strip()
        if not name:
            raise HTTPException(status_code=400, detail="Device name cannot be empty")
        _sharing_service.device_name = name
    return {"status": "updated"}
