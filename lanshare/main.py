"""
LanShare: FastAPI application and command-line entry point.

`serve` starts multicast discovery and the protocol HTTP server;
`send` offers one file to a peer.
"""

import asyncio
import logging
import sys
import time
from contextlib import asynccontextmanager

import click
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from lanshare.api.routes import init_routes, router
from lanshare.config import (
    ANNOUNCE_INTERVAL,
    API_HOST,
    CERT_FILE,
    DEFAULT_ALIAS,
    DEFAULT_DOWNLOAD_DIR,
    DEFAULT_PORT,
    KEY_FILE,
    LOG_FORMAT,
    LOG_LEVEL,
    USE_HTTPS,
)
from lanshare.discovery.identity import create_identity
from lanshare.discovery.models import DeviceIdentity, Peer, ProtocolType, RegisterDto
from lanshare.discovery.service import DiscoveryService
from lanshare.transfer.errors import SendError
from lanshare.transfer.manager import SessionManager
from lanshare.transfer.sender import Sender

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else getattr(logging, str(LOG_LEVEL).upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)


def create_app(
    identity: DeviceIdentity,
    session_manager: SessionManager | None = None,
    discovery_service: DiscoveryService | None = None,
    announce_interval: float = ANNOUNCE_INTERVAL,
) -> FastAPI:
    """
    Build the application. Discovery is optional so the HTTP surface can run
    on its own.
    """
    session_manager = session_manager or SessionManager(identity)

    if discovery_service is not None:
        async def on_register(peer: RegisterDto, address: str | None):
            if not address or not peer.fingerprint or peer.fingerprint == identity.fingerprint:
                return
            discovery_service.update_peer(Peer(
                fingerprint=peer.fingerprint,
                alias=peer.alias,
                ip_address=address,
                port=peer.port or DEFAULT_PORT,
                protocol=peer.protocol or ProtocolType.HTTP,
                device_model=peer.device_model,
                device_type=peer.device_type,
                version=peer.version,
                last_seen=time.time(),
            ))

        session_manager.on_register(on_register)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop background services."""
        logger.info("Starting LanShare services...")
        try:
            await session_manager.start()
            if discovery_service is not None:
                await discovery_service.start(interval=announce_interval)
            logger.info(
                f"LanShare ready: {identity.alias} on port {identity.port} "
                f"({identity.protocol.value}), saving to {session_manager.download_dir}"
            )
            yield
        finally:
            logger.info("Shutting down LanShare services...")
            if discovery_service is not None:
                await discovery_service.stop()
            await session_manager.stop()

    app = FastAPI(title="LanShare", version="1.0.0", lifespan=lifespan)
    app.state.identity = identity
    app.state.session_manager = session_manager
    app.state.discovery_service = discovery_service

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Malformed request to {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=400, content={"detail": "Malformed request"})

    init_routes(session_manager)
    app.include_router(router)
    return app


# --- CLI ---

@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """LAN file sharing over the LocalSend v2 protocol."""
    setup_logging(verbose)


@cli.command()
@click.option("--port", default=DEFAULT_PORT, show_default=True, help="HTTP port")
@click.option("--alias", default=DEFAULT_ALIAS, help="Device alias (random if empty)")
@click.option("--download-dir", default=DEFAULT_DOWNLOAD_DIR, show_default=True)
@click.option("--https/--http", "use_https", default=USE_HTTPS, show_default=True)
@click.option("--cert", "cert_file", default=CERT_FILE, help="PEM certificate for HTTPS")
@click.option("--key", "key_file", default=KEY_FILE, help="PEM private key for HTTPS")
@click.option("--interval", default=ANNOUNCE_INTERVAL, show_default=True,
              help="Seconds between announcements")
def serve(port, alias, download_dir, use_https, cert_file, key_file, interval):
    """Receive files and announce this device."""
    import uvicorn

    if use_https and not (cert_file and key_file):
        raise click.UsageError("--https needs --cert and --key")

    protocol = ProtocolType.HTTPS if use_https else ProtocolType.HTTP
    identity = create_identity(port=port, alias=alias, protocol=protocol, cert_file=cert_file)
    session_manager = SessionManager(identity)
    session_manager.download_dir = download_dir
    app = create_app(
        identity,
        session_manager=session_manager,
        discovery_service=DiscoveryService(identity),
        announce_interval=interval,
    )

    ssl_args = {"ssl_certfile": cert_file, "ssl_keyfile": key_file} if use_https else {}
    uvicorn.run(app, host=API_HOST, port=port, log_level="info", **ssl_args)


@cli.command()
@click.argument("target")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--port", default=DEFAULT_PORT, show_default=True, help="Peer HTTP port")
@click.option("--alias", default=DEFAULT_ALIAS, help="Device alias (random if empty)")
@click.option("--https/--http", "use_https", default=USE_HTTPS, show_default=True)
def send(target, file_path, port, alias, use_https):
    """Send FILE_PATH to the device at TARGET."""
    protocol = ProtocolType.HTTPS if use_https else ProtocolType.HTTP
    identity = create_identity(port=DEFAULT_PORT, alias=alias, protocol=protocol)

    async def run():
        DiscoveryService(identity).send_announcement()
        async with Sender(identity) as sender:
            return await sender.send_file(target, port, file_path, protocol=protocol)

    try:
        result = asyncio.run(run())
    except SendError as e:
        logger.error(f"Send failed: {e}")
        sys.exit(1)
    click.echo(f"Sent {result.file_name} ({result.bytes_sent} bytes)")


if __name__ == "__main__":
    cli()
