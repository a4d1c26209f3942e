"""
UDP-based LAN discovery service.

Announces this node periodically to the limited broadcast address, a fixed
multicast group and every attached subnet, listens for announcements from
other PeerDrop instances, and evicts peers that stop announcing.
"""

import asyncio
import logging
import socket
import struct
import time
from enum import Enum

from pydantic import ValidationError

import events
from config import (
    ANNOUNCE_INTERVAL,
    DEFAULT_SHARED_DIR,
    DEVICE_NAME,
    DISCOVERY_PORT,
    LIMITED_BROADCAST,
    MULTICAST_GROUP,
    PEER_TIMEOUT,
    SWEEP_INTERVAL,
)
from discovery.models import Announcement, Peer, PeerStatus
from discovery.registry import PeerRegistry
from network.addresses import AddressResolver

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    STOPPED = "stopped"
    LISTENING = "listening"
    RUNNING = "running"


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving announcements."""

    def __init__(self, service: "DiscoveryService"):
        self.service = service

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.service.ingest(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery UDP error: {exc}")


class DiscoveryService:
    """Manages LAN device discovery via UDP broadcast and multicast."""

    def __init__(
        self,
        bus: events.EventBus,
        resolver: AddressResolver | None = None,
        registry: PeerRegistry | None = None,
        port: int = DISCOVERY_PORT,
        multicast_group: str = MULTICAST_GROUP,
        announce_interval: float = ANNOUNCE_INTERVAL,
        sweep_interval: float = SWEEP_INTERVAL,
        peer_timeout: float = PEER_TIMEOUT,
        clock=time.time,
    ) -> None:
        self._bus = bus
        self._resolver = resolver or AddressResolver()
        self.registry = registry or PeerRegistry()
        self._port = port
        self._multicast_group = multicast_group
        self._announce_interval = announce_interval
        self._sweep_interval = sweep_interval
        self._peer_timeout = peer_timeout
        self._clock = clock

        self._state = ServiceState.STOPPED
        self._transport: asyncio.DatagramTransport | None = None
        self._announce_task: asyncio.Task | None = None
        self._sweep_task: asyncio.Task | None = None
        self._device_name = DEVICE_NAME
        self._shared_dir = DEFAULT_SHARED_DIR

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def port(self) -> int:
        """Bound UDP port (useful when constructed with port 0)."""
        if self._transport:
            return self._transport.get_extra_info("sockname")[1]
        return self._port

    @property
    def device_name(self) -> str:
        return self._device_name

    @device_name.setter
    def device_name(self, name: str) -> None:
        self._device_name = name

    @property
    def shared_dir(self) -> str:
        return self._shared_dir

    @shared_dir.setter
    def shared_dir(self, path: str) -> None:
        self._shared_dir = path

    # --- Lifecycle ---

    async def start(self) -> None:
        """Bind the UDP endpoint, then start the announce and sweep loops.

        A bind failure is raised to the caller. Failing to join the
        multicast group is not: it is logged as a warning and the service
        runs on broadcast alone, without receiving multicast announcements.
        """
        if self._state != ServiceState.STOPPED:
            return

        logger.info(f"Starting discovery on UDP port {self._port}")
        loop = asyncio.get_running_loop()

        # Socket options must be set BEFORE binding so several instances
        # on one host can share the port.
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.setblocking(False)
            sock.bind(("0.0.0.0", self._port))
        except OSError:
            sock.close()
            raise

        self._join_multicast(sock)

        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: DiscoveryProtocol(self),
                sock=sock,
            )
        except BaseException:
            sock.close()
            raise
        self._transport = transport
        self._state = ServiceState.LISTENING

        self._announce_task = asyncio.create_task(self._announce_loop())
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        self._state = ServiceState.RUNNING
        logger.info("Discovery service started")

    def _join_multicast(self, sock: socket.socket) -> None:
        mreq = struct.pack(
            "=4s4s",
            socket.inet_aton(self._multicast_group),
            socket.inet_aton("0.0.0.0"),
        )
        try:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
        except OSError as e:
            # Hosts without a multicast route still get broadcast discovery.
            logger.warning(f"Could not join multicast group {self._multicast_group}: {e}")

    async def stop(self) -> None:
        """Stop the discovery service. Safe to call more than once."""
        if self._state == ServiceState.STOPPED:
            return

        tasks = [t for t in (self._announce_task, self._sweep_task) if t]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._announce_task = None
        self._sweep_task = None

        if self._transport:
            self._transport.close()
            self._transport = None

        self._state = ServiceState.STOPPED
        logger.info("Discovery service stopped")

    # --- Announcing ---

    def build_announcement(self) -> Announcement:
        return Announcement(
            name=self._device_name,
            ip=self._resolver.primary_address(),
            status=PeerStatus.ONLINE,
            last_seen=int(self._clock() * 1000),
            shared_dir=self._shared_dir,
        )

    def destinations(self) -> list[str]:
        """Limited broadcast, multicast group, then every subnet broadcast."""
        targets = [LIMITED_BROADCAST, self._multicast_group]
        for bcast in self._resolver.interface_broadcast_addresses():
            if bcast not in targets:
                targets.append(bcast)
        return targets

    def announce_now(self) -> int:
        """Queue one announcement for every destination right away.

        Returns the number of destinations it was queued for. The transport
        never raises on send; a destination that rejects the datagram is
        reported through ``DiscoveryProtocol.error_received`` and does not
        stop the others.
        """
        if not self._transport:
            logger.debug("Announce skipped: discovery is not listening")
            return 0

        data = self.build_announcement().to_bytes()
        targets = self.destinations()
        for target in targets:
            self._transport.sendto(data, (target, self._port))
        return len(targets)

    async def _announce_loop(self) -> None:
        """Periodically announce this node."""
        while True:
            try:
                self.announce_now()
            except Exception as e:
                logger.warning(f"Announce failed: {e}")
            await asyncio.sleep(self._announce_interval)

    # --- Ingest ---

    def ingest(self, data: bytes, addr: tuple[str, int]) -> Peer | None:
        """Process one inbound datagram; returns the upserted peer, if any."""
        try:
            announcement = Announcement.model_validate_json(data)
        except (ValidationError, ValueError) as e:
            logger.debug(f"Ignoring invalid discovery packet from {addr}: {e}")
            return None

        sender = addr[0]
        if self._resolver.is_local_address(sender):
            return None

        peer = Peer(
            id=sender,
            display_name=announcement.name,
            status=PeerStatus.ONLINE,
            last_seen_at=self._clock(),
            shared_dir=announcement.shared_dir,
        )
        is_new = self.registry.upsert(peer)

        if is_new:
            logger.info(f"Discovered peer: {peer.display_name} ({peer.id})")
            self._bus.publish(events.PEER_DISCOVERED, peer.model_dump(mode="json"))
        else:
            self._bus.publish(events.PEER_UPDATED, peer.model_dump(mode="json"))
        return peer

    # --- Staleness ---

    def sweep(self, now: float | None = None) -> list[Peer]:
        """Evict peers whose last announcement is older than the timeout."""
        if now is None:
            now = self._clock()

        stale = self.registry.expire(now, self._peer_timeout)
        for peer in stale:
            peer.status = PeerStatus.OFFLINE
            logger.info(f"Peer lost: {peer.display_name} ({peer.id})")
            self._bus.publish(events.PEER_EXPIRED, peer.model_dump(mode="json"))
        return stale

    async def _sweep_loop(self) -> None:
        """Remove stale peers that haven't been seen recently."""
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()

    async def get_peers(self) -> list[Peer]:
        """Return a list of currently known peers."""
        return self.registry.peers()
