"""
Sending side of the protocol.

Offers one file to a peer with prepare-upload, then streams it to the
upload endpoint using the token the peer issued.
"""

import asyncio
import logging
import mimetypes
import os
import uuid

import httpx
from pydantic import ValidationError

from lanshare.config import API_PREFIX, CHUNK_SIZE, CONNECT_TIMEOUT
from lanshare.discovery.models import DeviceIdentity, InfoDto, ProtocolType
from lanshare.transfer.errors import SendError
from lanshare.transfer.models import (
    FileDto,
    PrepareUploadRequest,
    PrepareUploadResponse,
    SendResult,
)

logger = logging.getLogger(__name__)


async def read_chunks(handle, chunk_size: int = CHUNK_SIZE):
    """Yield an open file's bytes without blocking the event loop."""
    while True:
        chunk = await asyncio.to_thread(handle.read, chunk_size)
        if not chunk:
            break
        yield chunk


class Sender:
    """HTTP client for a peer's transfer endpoints."""

    def __init__(
        self,
        identity: DeviceIdentity,
        client: httpx.AsyncClient | None = None,
        timeout: float = CONNECT_TIMEOUT,
    ) -> None:
        self.identity = identity
        # Peers use self-signed certificates
        self._client = client or httpx.AsyncClient(verify=False, timeout=timeout)

    async def __aenter__(self) -> "Sender":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _url(self, address: str, port: int, path: str, protocol: ProtocolType | None) -> str:
        scheme = (protocol or self.identity.protocol).value
        return f"{scheme}://{address}:{port}{API_PREFIX}{path}"

    async def fetch_info(
        self, peer_address: str, peer_port: int, protocol: ProtocolType | None = None
    ) -> InfoDto:
        """Query a peer's device info."""
        response = await self._request(
            "GET", self._url(peer_address, peer_port, "/info", protocol), "Info request failed"
        )
        return self._parse(InfoDto, response)

    async def register(
        self, peer_address: str, peer_port: int, protocol: ProtocolType | None = None
    ) -> InfoDto:
        """Introduce ourselves to a peer and return its info."""
        response = await self._request(
            "POST",
            self._url(peer_address, peer_port, "/register", protocol),
            "Register request failed",
            json=self.identity.to_register().to_wire(),
        )
        return self._parse(InfoDto, response)

    async def cancel(
        self,
        peer_address: str,
        peer_port: int,
        session_id: str,
        protocol: ProtocolType | None = None,
    ) -> None:
        await self._request(
            "POST",
            self._url(peer_address, peer_port, "/cancel", protocol),
            "Cancel request failed",
            params={"sessionId": session_id},
        )

    async def send_file(
        self,
        peer_address: str,
        peer_port: int,
        file_path: str,
        protocol: ProtocolType | None = None,
    ) -> SendResult:
        """
        Send a single file to a peer.

        Raises SendError when the peer rejects either step or cannot be
        reached.
        """
        try:
            handle = open(file_path, "rb")
        except OSError as e:
            raise SendError(f"Cannot read {file_path}: {e}") from e

        with handle:
            return await self._send_open_file(
                peer_address, peer_port, file_path, handle, protocol
            )

    async def _send_open_file(
        self, peer_address, peer_port, file_path, handle, protocol
    ) -> SendResult:
        file_size = os.fstat(handle.fileno()).st_size
        file_id = str(uuid.uuid4())
        file_name = os.path.basename(file_path)
        file_type = mimetypes.guess_type(file_name)[0] or "application/octet-stream"

        offer = PrepareUploadRequest(
            info=self.identity.to_register(),
            files={
                file_id: FileDto(
                    id=file_id,
                    file_name=file_name,
                    size=file_size,
                    file_type=file_type,
                )
            },
        )

        # 1. Prepare upload
        url = self._url(peer_address, peer_port, "/prepare-upload", protocol)
        logger.info(f"Offering {file_name} ({file_size} bytes) to {url}")
        response = await self._request(
            "POST", url, "Prepare-upload rejected", json=offer.to_wire()
        )
        prepared = self._parse(PrepareUploadResponse, response)

        token = prepared.files.get(file_id)
        if not token:
            raise SendError(f"Peer returned no token for {file_name}")

        # 2. Upload
        url = self._url(peer_address, peer_port, "/upload", protocol)
        logger.info(f"Uploading {file_name} to {url}")
        try:
            await self._request(
                "POST",
                url,
                "Upload rejected",
                params={
                    "sessionId": prepared.session_id,
                    "fileId": file_id,
                    "token": token,
                },
                headers={
                    "Content-Type": "application/octet-stream",
                    "Content-Length": str(file_size),
                },
                content=read_chunks(handle),
            )
        except SendError:
            await self._cancel_quietly(peer_address, peer_port, prepared.session_id, protocol)
            raise
        except OSError as e:
            await self._cancel_quietly(peer_address, peer_port, prepared.session_id, protocol)
            raise SendError(f"Cannot read {file_path}: {e}") from e

        logger.info(f"Sent {file_name} successfully")
        return SendResult(
            session_id=prepared.session_id,
            file_id=file_id,
            file_name=file_name,
            bytes_sent=file_size,
        )

    async def _cancel_quietly(self, address, port, session_id, protocol) -> None:
        try:
            await self.cancel(address, port, session_id, protocol)
        except SendError as e:
            logger.debug(f"Cancel after failed upload did not go through: {e}")

    async def _request(self, method: str, url: str, failure: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise SendError(f"{failure}: {e}") from e
        if not response.is_success:
            raise SendError(failure, status_code=response.status_code, body=response.text)
        return response

    @staticmethod
    def _parse(model, response: httpx.Response):
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise SendError(f"Invalid response from peer: {e}") from e
