"""
Transfer Session Manager, the receiving side of the protocol.

Answers info/register queries, accepts prepare-upload offers by minting one
token per file, receives uploads into the download directory and drops
sessions on cancel. All session state lives in memory behind one lock.
"""

import asyncio
import itertools
import logging
import os
import secrets
import time
import uuid
from collections.abc import AsyncIterable
from pathlib import Path

from lanshare.config import DEFAULT_DOWNLOAD_DIR, SESSION_TTL, UPLOAD_TIMEOUT
from lanshare.discovery.models import DeviceIdentity, InfoDto, RegisterDto
from lanshare.transfer.errors import (
    MalformedRequest,
    StorageError,
    Unauthorized,
    UnknownFile,
)
from lanshare.transfer.models import (
    FileDto,
    FileState,
    PrepareUploadRequest,
    PrepareUploadResponse,
    SessionState,
    TransferSession,
    UploadResult,
)

logger = logging.getLogger(__name__)


def sanitize_file_name(name: str) -> str:
    """
    Reduce a client-supplied name to its base name.

    Returns an empty string when nothing usable is left.
    """
    base = name.replace("\x00", "").replace("\\", "/").rsplit("/", 1)[-1].strip()
    if base in (".", ".."):
        return ""
    return base


class SessionManager:
    """Owns the session table. Nothing else reads or writes it."""

    def __init__(
        self,
        identity: DeviceIdentity,
        download_dir: str = DEFAULT_DOWNLOAD_DIR,
        upload_timeout: float = UPLOAD_TIMEOUT,
        session_ttl: float = SESSION_TTL,
    ) -> None:
        self.identity = identity
        self.upload_timeout = upload_timeout
        self.session_ttl = session_ttl
        self._download_dir = str(download_dir)
        self._sessions: dict[str, TransferSession] = {}
        self._lock = asyncio.Lock()
        self._register_callbacks: list = []  # async fn(peer: RegisterDto, address)
        self._expiry_task: asyncio.Task | None = None

    @property
    def download_dir(self) -> str:
        return self._download_dir

    @download_dir.setter
    def download_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._download_dir = str(path)

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def on_register(self, callback) -> None:
        """Register callback: async fn(peer: RegisterDto, address: str | None)."""
        self._register_callbacks.append(callback)

    async def start(self) -> None:
        """Start the expiry sweeper when a session TTL is configured."""
        if self.session_ttl and self.session_ttl > 0:
            self._expiry_task = asyncio.create_task(self._expiry_loop())
            logger.info(f"Sessions expire after {self.session_ttl}s")

    async def stop(self) -> None:
        if self._expiry_task:
            self._expiry_task.cancel()
            await asyncio.gather(self._expiry_task, return_exceptions=True)
            self._expiry_task = None
        logger.info("Session manager stopped")

    # --- Device info ---

    def get_info(self) -> InfoDto:
        return self.identity.to_info()

    async def register(self, peer: RegisterDto, address: str | None = None) -> InfoDto:
        """Handle a register handshake and answer with our own info."""
        logger.info(f"Register from {peer.alias} ({peer.fingerprint}) at {address}")
        for cb in self._register_callbacks:
            try:
                await cb(peer, address)
            except Exception as e:
                logger.error(f"Register callback error: {e}")
        return self.get_info()

    # --- Session life cycle ---

    async def prepare_upload(self, request: PrepareUploadRequest) -> PrepareUploadResponse:
        """Accept an offer: create a session and mint one token per file."""
        if not request.files:
            raise MalformedRequest("No files offered")

        tokens = {file_id: secrets.token_urlsafe(24) for file_id in request.files}

        async with self._lock:
            session_id = str(uuid.uuid4())
            while session_id in self._sessions:
                session_id = str(uuid.uuid4())
            self._sessions[session_id] = TransferSession(
                session_id=session_id,
                sender=request.info,
                files=dict(request.files),
                tokens=tokens,
                file_states={file_id: FileState.PENDING for file_id in request.files},
            )

        logger.info(
            f"Session {session_id} created for {request.info.alias}: "
            f"{len(request.files)} file(s)"
        )
        for file in request.files.values():
            logger.info(f"  - {file.file_name} ({file.size} bytes)")

        return PrepareUploadResponse(session_id=session_id, files=dict(tokens))

    async def upload(
        self,
        session_id: str | None,
        file_id: str | None,
        token: str | None,
        stream: AsyncIterable[bytes],
    ) -> UploadResult:
        """
        Receive one file of a session.

        Credentials are checked in a fixed order: parameters present, session
        known, token issued for this file and not yet used, file offered.
        """
        if not session_id or not file_id or not token:
            raise MalformedRequest()

        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise Unauthorized()
            expected = session.tokens.get(file_id)
            if expected is None or not secrets.compare_digest(
                expected.encode("utf-8"), token.encode("utf-8")
            ):
                raise Unauthorized()
            if session.file_states.get(file_id) != FileState.PENDING:
                raise Unauthorized()
            file = session.files.get(file_id)
            if file is None:
                raise UnknownFile()
            session.file_states[file_id] = FileState.RECEIVING

        try:
            path, handle = await asyncio.to_thread(self._open_destination, file)
        except BaseException:
            await self._release(session, file_id)
            raise

        logger.info(f"Receiving {path.name} for session {session_id}")

        written = 0
        completed = False
        try:
            if self.upload_timeout and self.upload_timeout > 0:
                written = await asyncio.wait_for(
                    self._copy(stream, handle), timeout=self.upload_timeout
                )
            else:
                written = await self._copy(stream, handle)
            completed = True
        except asyncio.TimeoutError as e:
            logger.warning(f"Upload of {path.name} timed out after {self.upload_timeout}s")
            raise StorageError("Upload timed out") from e
        except OSError as e:
            logger.error(f"Failed to write {path}: {e}")
            raise StorageError() from e
        finally:
            await asyncio.to_thread(handle.close)
            if not completed:
                await asyncio.to_thread(path.unlink, True)
                await self._release(session, file_id)

        async with self._lock:
            cancelled = session.state == SessionState.CANCELLED
            if not cancelled:
                session.file_states[file_id] = FileState.COMPLETED

        if cancelled:
            logger.info(f"Session {session_id} was cancelled during upload of {path.name}")
            await asyncio.to_thread(path.unlink, True)
            raise Unauthorized()

        if written != file.size:
            logger.warning(
                f"Size mismatch for {path.name}: received {written} bytes, "
                f"expected {file.size}"
            )

        logger.info(f"File received: {path.name} ({written} bytes)")
        return UploadResult(
            session_id=session_id,
            file_id=file_id,
            path=path,
            bytes_written=written,
            declared_size=file.size,
        )

    async def cancel(self, session_id: str | None) -> None:
        """Drop a session. Unknown or already cancelled ids are ignored."""
        if not session_id:
            return
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session:
                session.state = SessionState.CANCELLED
        if session:
            logger.info(f"Session {session_id} cancelled")

    async def get_session(self, session_id: str) -> TransferSession | None:
        """Return a copy of a session, or None."""
        async with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    async def expire_sessions(self, now: float | None = None) -> list[str]:
        """Drop sessions older than the TTL that have no upload running."""
        if not self.session_ttl or self.session_ttl <= 0:
            return []
        now = now if now is not None else time.time()
        expired = []
        async with self._lock:
            for session_id, session in list(self._sessions.items()):
                if now - session.created_at <= self.session_ttl:
                    continue
                if session.has_upload_in_flight():
                    continue
                session.state = SessionState.CANCELLED
                del self._sessions[session_id]
                expired.append(session_id)
        for session_id in expired:
            logger.info(f"Session {session_id} expired")
        return expired

    # --- Internals ---

    async def _expiry_loop(self) -> None:
        interval = max(1.0, min(self.session_ttl, 60.0))
        while True:
            await asyncio.sleep(interval)
            await self.expire_sessions()

    async def _release(self, session: TransferSession, file_id: str) -> None:
        """Put a file back to pending after a failed upload."""
        async with self._lock:
            if session.file_states.get(file_id) == FileState.RECEIVING:
                session.file_states[file_id] = FileState.PENDING

    async def _copy(self, stream: AsyncIterable[bytes], handle) -> int:
        written = 0
        async for chunk in stream:
            if not chunk:
                continue
            await asyncio.to_thread(handle.write, chunk)
            written += len(chunk)
        return written

    def _open_destination(self, file: FileDto):
        """
        Create the destination file under the download directory.

        Only the base name of the offered name is used. Existing files are
        kept; a " (n)" suffix is added instead.
        """
        root = Path(self._download_dir).resolve()
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError("Failed to create download dir") from e

        name = sanitize_file_name(file.file_name) or sanitize_file_name(file.id) or "file"
        stem, suffix = os.path.splitext(name)

        for attempt in itertools.count():
            candidate = name if attempt == 0 else f"{stem} ({attempt}){suffix}"
            path = root / candidate
            if path.parent != root:
                raise StorageError("Invalid file name")
            try:
                return path, open(path, "xb")
            except FileExistsError:
                continue
            except OSError as e:
                raise StorageError("Failed to create file") from e
