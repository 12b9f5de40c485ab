"""Protocol routes served to peers."""

import logging

from fastapi import APIRouter, HTTPException, Query, Request, Response
from starlette.requests import ClientDisconnect

from lanshare.config import API_PREFIX
from lanshare.discovery.models import InfoDto, RegisterDto
from lanshare.transfer.errors import TransferError
from lanshare.transfer.models import PrepareUploadRequest, PrepareUploadResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix=API_PREFIX)

# Injected by main.py at startup
_session_manager = None


def init_routes(session_manager) -> None:
    """Inject service dependencies into the routes module."""
    global _session_manager
    _session_manager = session_manager


def _wire(model) -> dict:
    return model.to_wire()


@router.get("/info")
async def get_info():
    """Return this device's info."""
    return _wire(_session_manager.get_info())


@router.post("/register")
async def register(body: RegisterDto, request: Request):
    address = request.client.host if request.client else None
    info: InfoDto = await _session_manager.register(body, address)
    return _wire(info)


@router.post("/prepare-upload")
async def prepare_upload(body: PrepareUploadRequest):
    try:
        response: PrepareUploadResponse = await _session_manager.prepare_upload(body)
    except TransferError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)
    return _wire(response)


@router.post("/upload")
async def upload(
    request: Request,
    session_id: str | None = Query(None, alias="sessionId"),
    file_id: str | None = Query(None, alias="fileId"),
    token: str | None = None,
):
    """Receive a file body for a prepared session."""
    try:
        await _session_manager.upload(session_id, file_id, token, request.stream())
    except TransferError as e:
        raise HTTPException(status_code=e.status_code, detail=e.detail)
    except ClientDisconnect:
        # The manager has already removed the partial file
        logger.warning(f"Peer disconnected during upload of {file_id} in session {session_id}")
        return Response(status_code=400)
    return Response(status_code=200)


@router.post("/cancel")
async def cancel(session_id: str | None = Query(None, alias="sessionId")):
    await _session_manager.cancel(session_id)
    return Response(status_code=200)
