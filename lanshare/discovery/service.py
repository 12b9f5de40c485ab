"""
UDP multicast discovery service.

Announces this device to the multicast group and listens for announcements
from other devices on the same LAN. An announcing peer gets one reply so it
discovers us without waiting for our next periodic announcement.
"""

import asyncio
import json
import logging
import socket
import struct
import time

from pydantic import ValidationError

from lanshare.config import (
    ANNOUNCE_INTERVAL,
    DEFAULT_PORT,
    MULTICAST_GROUP,
    MULTICAST_PORT,
    PEER_TIMEOUT,
    UDP_SOCKET_BUFFER_SIZE,
)
from lanshare.discovery.models import DeviceIdentity, MulticastDto, Peer, ProtocolType

logger = logging.getLogger(__name__)


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving multicast announcements."""

    def __init__(self, service: "DiscoveryService"):
        self.service = service

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.service.handle_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery UDP error: {exc}")

    def connection_lost(self, exc: Exception | None) -> None:
        self.service.connection_lost(exc)


def create_multicast_socket(group: str, port: int) -> socket.socket:
    """Bind a non-blocking UDP socket to `port` and join `group` on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        # Set reuse flags BEFORE binding so several instances can share the port
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if hasattr(socket, "SO_REUSEPORT"):
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            except OSError:
                pass
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, UDP_SOCKET_BUFFER_SIZE)
        sock.bind(("", port))

        membership = struct.pack("4s4s", socket.inet_aton(group), socket.inet_aton("0.0.0.0"))
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 1)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class DiscoveryService:
    """Manages LAN device discovery via UDP multicast."""

    def __init__(
        self,
        identity: DeviceIdentity,
        group: str = MULTICAST_GROUP,
        port: int = MULTICAST_PORT,
        peer_timeout: float = PEER_TIMEOUT,
    ) -> None:
        self.identity = identity
        self.group = group
        self.port = port
        self.peer_timeout = peer_timeout

        self._peers: dict[str, Peer] = {}
        self._lock = asyncio.Lock()
        self._transport: asyncio.DatagramTransport | None = None
        self._closed: asyncio.Future | None = None
        self._tasks: list[asyncio.Task] = []
        self._on_peer_change: list = []  # callbacks: async def fn(event, peer)

    def on_peer_change(self, callback) -> None:
        """Register a callback for peer discovered/lost events."""
        self._on_peer_change.append(callback)

    # --- Lifecycle ---

    async def start(self, interval: float = ANNOUNCE_INTERVAL, announce: bool = True) -> None:
        """Start the listener, the periodic announcer and the stale-peer cleanup."""
        logger.info(f"Starting discovery on {self.group}:{self.port}")
        self._tasks.append(asyncio.create_task(self.start_listening()))
        if announce:
            self._tasks.append(asyncio.create_task(self.start_announcing(interval)))
        self._tasks.append(asyncio.create_task(self._cleanup_loop()))

    async def stop(self) -> None:
        """Stop all discovery tasks and close the socket."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        if self._transport:
            self._transport.close()
            self._transport = None
        logger.info("Discovery service stopped")

    async def start_listening(self) -> None:
        """
        Join the multicast group and receive announcements until the socket
        closes. A bind failure is logged and ends this task only.
        """
        loop = asyncio.get_running_loop()
        try:
            sock = create_multicast_socket(self.group, self.port)
            transport, _ = await loop.create_datagram_endpoint(
                lambda: DiscoveryProtocol(self),
                sock=sock,
            )
        except OSError as e:
            logger.error(f"Could not listen on multicast {self.group}:{self.port}: {e}")
            return

        self._transport = transport
        self._closed = loop.create_future()
        logger.info(f"Listening for announcements on {self.group}:{self.port}")
        try:
            await self._closed
        finally:
            transport.close()
            if self._transport is transport:
                self._transport = None

    def connection_lost(self, exc: Exception | None) -> None:
        if exc:
            logger.error(f"Discovery socket failed: {exc}")
        if self._closed and not self._closed.done():
            self._closed.set_result(None)

    async def start_announcing(self, interval: float = ANNOUNCE_INTERVAL) -> None:
        """Announce now, then once every `interval` seconds until cancelled."""
        while True:
            self.send_announcement()
            await asyncio.sleep(interval)

    # --- Outbound ---

    def send_announcement(self, announce: bool = True) -> None:
        """
        Send one announcement datagram to the multicast group.

        `announce=False` is used for replies: peers record us but do not
        answer back.
        """
        dto = self.identity.to_multicast(announce=announce)
        data = json.dumps(dto.to_wire()).encode("utf-8")
        target = (self.group, self.port)

        try:
            if self._transport is not None:
                self._transport.sendto(data, target)
            else:
                with socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP) as sock:
                    sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 1)
                    sock.sendto(data, target)
        except OSError as e:
            logger.warning(f"Announcement failed: {e}")

    # --- Inbound ---

    def handle_datagram(self, data: bytes, addr: tuple[str, int]) -> None:
        """Process one received datagram."""
        try:
            dto = MulticastDto.model_validate(json.loads(data.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Ignoring invalid discovery packet from {addr[0]}: {e}")
            return

        # Ignore our own announcements
        if dto.fingerprint == self.identity.fingerprint:
            return

        peer = Peer(
            fingerprint=dto.fingerprint,
            alias=dto.alias,
            ip_address=addr[0],
            port=dto.port or DEFAULT_PORT,
            protocol=dto.protocol or ProtocolType.HTTP,
            device_model=dto.device_model,
            device_type=dto.device_type,
            version=dto.version,
            last_seen=time.time(),
        )
        self.update_peer(peer)

        if dto.is_announcing:
            # Replies go out unflagged so the peer does not answer back
            asyncio.get_running_loop().call_soon(self.send_announcement, False)

    # --- Registry ---

    async def get_peers(self) -> list[Peer]:
        """Return a list of currently known peers."""
        async with self._lock:
            return list(self._peers.values())

    def update_peer(self, peer: Peer) -> None:
        """Add or update a peer in the registry."""
        is_new = peer.fingerprint not in self._peers
        self._peers[peer.fingerprint] = peer

        if is_new:
            logger.info(f"Discovered peer: {peer.alias} ({peer.ip_address}:{peer.port})")
            for cb in self._on_peer_change:
                asyncio.ensure_future(cb("peer_discovered", peer))
        else:
            logger.debug(f"Refreshed peer: {peer.alias} ({peer.ip_address})")

    async def _cleanup_loop(self) -> None:
        """Remove stale peers that haven't been seen recently."""
        while True:
            await asyncio.sleep(self.peer_timeout)
            await self.remove_stale_peers()

    async def remove_stale_peers(self, now: float | None = None) -> list[Peer]:
        now = now if now is not None else time.time()
        stale = []

        async with self._lock:
            for fingerprint, peer in list(self._peers.items()):
                if now - peer.last_seen > self.peer_timeout:
                    stale.append(peer)
                    del self._peers[fingerprint]

        for peer in stale:
            logger.info(f"Peer lost: {peer.alias} ({peer.ip_address})")
            for cb in self._on_peer_change:
                asyncio.ensure_future(cb("peer_lost", peer))
        return stale
