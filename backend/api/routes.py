"""REST API routes for PeerDrop."""

import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from transfer.errors import TransferError
from transfer.models import TransferRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_discovery_service = None
_transfer_manager = None
_settings_store = None


def init_routes(discovery_service, transfer_manager, settings_store) -> None:
    """Inject service dependencies into the routes module."""
    global _discovery_service, _transfer_manager, _settings_store
    _discovery_service = discovery_service
    _transfer_manager = transfer_manager
    _settings_store = settings_store


# --- Device Discovery ---

@router.get("/devices")
async def list_devices():
    """Return list of discovered peers."""
    peers = await _discovery_service.get_peers()
    return {"devices": [p.model_dump(mode="json") for p in peers]}


@router.post("/devices/refresh")
async def refresh_devices():
    """Announce ourselves now instead of waiting for the next interval."""
    sent = _discovery_service.announce_now()
    return {"status": "announced", "destinations": sent}


# --- Transfers ---

@router.get("/transfers")
async def list_transfers():
    """Return all transfers (active + finished)."""
    transfers = _transfer_manager.get_transfers()
    return {"transfers": [t.model_dump(mode="json") for t in transfers]}


@router.get("/transfers/{transfer_id}")
async def get_transfer(transfer_id: str):
    task = _transfer_manager.get_transfer(transfer_id)
    if not task:
        raise HTTPException(status_code=404, detail="Transfer not found")
    return task.model_dump(mode="json")


@router.post("/transfers", status_code=201)
async def create_transfer(body: TransferRequest):
    """Send a file from this machine's disk to a peer."""
    try:
        transfer_id = await _transfer_manager.start_transfer(
            body.source_path, body.target_address
        )
    except TransferError as e:
        status = 502 if e.is_connectivity else 400
        raise HTTPException(status_code=status, detail=e.to_dict())

    return _transfer_manager.get_transfer(transfer_id).model_dump(mode="json")


@router.post("/transfers/{transfer_id}/cancel")
async def cancel_transfer(transfer_id: str):
    if not _transfer_manager.cancel_transfer(transfer_id):
        raise HTTPException(status_code=404, detail="No active transfer with that id")
    return {"status": "cancelled"}


# --- Settings ---

class SettingsBody(BaseModel):
    device_name: str | None = None
    shared_dir: str | None = None
    receive_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return _settings_store.settings.model_dump()


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.shared_dir is not None and not os.path.isdir(body.shared_dir):
        raise HTTPException(status_code=400, detail="Shared directory does not exist")
    if body.receive_dir is not None:
        try:
            _transfer_manager.receiver.receive_dir = body.receive_dir
        except OSError as e:
            raise HTTPException(
                status_code=400, detail=f"Invalid directory: {e}"
            )

    settings = _settings_store.update(**body.model_dump())
    _discovery_service.device_name = settings.device_name
    _discovery_service.shared_dir = settings.shared_dir
    return {"status": "updated", "settings": settings.model_dump()}
