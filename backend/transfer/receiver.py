"""
Inbound side of a file transfer.

Listens on the transfer port, reassembles the header line from however
many reads it takes, then writes the body straight to disk. A file that
ends up short is deleted rather than left truncated.
"""

import asyncio
import logging
import os
import time

import events
from config import (
    CHUNK_SIZE,
    COMPLETENESS_TOLERANCE,
    DEFAULT_RECEIVE_DIR,
    IDLE_TIMEOUT,
    REBIND_DELAY,
    TRANSFER_PORT,
)
from network.addresses import AddressResolver
from transfer.models import FrameHeader, ReceiveState, ReceiveTask
from transfer.protocol import HeaderError, decode_header

logger = logging.getLogger(__name__)

MAX_NAME_ATTEMPTS = 100


def safe_file_name(file_name: str) -> str:
    """Strip any directory part a sender put in the name."""
    name = os.path.basename(file_name.replace("\\", "/")).strip()
    if name in ("", ".", ".."):
        raise HeaderError(f"Unusable file name: {file_name!r}")
    return name


def resolve_destination(directory: str, file_name: str, clock=time.time) -> str:
    """
    Pick a path in ``directory`` that does not exist yet.

    ``report.txt`` becomes ``report_<epoch-ms>.txt`` when taken, with a
    counter appended if that is taken too.
    """
    name = safe_file_name(file_name)
    path = os.path.join(directory, name)
    if not os.path.exists(path):
        return path

    stem, ext = os.path.splitext(name)
    stamp = int(clock() * 1000)
    candidate = os.path.join(directory, f"{stem}_{stamp}{ext}")
    counter = 1
    while os.path.exists(candidate):
        candidate = os.path.join(directory, f"{stem}_{stamp}_{counter}{ext}")
        counter += 1
    return candidate


def is_complete(
    expected_bytes: int,
    received_bytes: int,
    on_disk_bytes: int,
    tolerance: float = COMPLETENESS_TOLERANCE,
) -> bool:
    """Accept when everything arrived, or the file on disk is within tolerance of the expected size."""
    if received_bytes >= expected_bytes:
        return True
    return abs(expected_bytes - on_disk_bytes) <= expected_bytes * tolerance


def _remove_partial(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not delete partial file {path}: {e}")


def _discard_opened(opening: asyncio.Future) -> None:
    if opening.cancelled() or opening.exception() is not None:
        return
    f = opening.result()
    f.close()
    _remove_partial(f.name)


class TransferReceiver:
    """TCP listener that accepts one file per connection."""

    def __init__(
        self,
        bus: events.EventBus,
        resolver: AddressResolver | None = None,
        receive_dir: str = DEFAULT_RECEIVE_DIR,
        host: str = "0.0.0.0",
        port: int = TRANSFER_PORT,
        idle_timeout: float = IDLE_TIMEOUT,
        rebind_delay: float = REBIND_DELAY,
        read_size: int = CHUNK_SIZE,
    ) -> None:
        self._bus = bus
        self._resolver = resolver or AddressResolver()
        self._receive_dir = receive_dir
        self._host = host
        self._port = port
        self._idle_timeout = idle_timeout
        self._rebind_delay = rebind_delay
        self._read_size = read_size

        self._server: asyncio.Server | None = None
        self._watchdog: asyncio.Task | None = None
        self._connections: set[asyncio.Task] = set()

    @property
    def receive_dir(self) -> str:
        return self._receive_dir

    @receive_dir.setter
    def receive_dir(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)
        self._receive_dir = path

    @property
    def port(self) -> int:
        return self._port

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    # --- Lifecycle ---

    async def start(self) -> None:
        """Bind the listener. A failure here is raised to the caller."""
        os.makedirs(self._receive_dir, exist_ok=True)
        self._server = await self._bind()
        self._watchdog = asyncio.create_task(self._watch_listener())

    async def _bind(self) -> asyncio.Server:
        server = await asyncio.start_server(
            self._handle_connection,
            self._host,
            self._port,
            limit=self._read_size,
        )
        # Keep the port we actually got so a rebind reuses it
        self._port = server.sockets[0].getsockname()[1]
        logger.info(f"Transfer receiver listening on port {self._port}")
        return server

    async def _watch_listener(self) -> None:
        """Rebind the listener whenever it stops serving, forever."""
        while True:
            await asyncio.sleep(self._rebind_delay)
            if self.is_serving:
                continue

            logger.warning(f"Transfer listener on port {self._port} is down, rebinding")
            try:
                self._server = await self._bind()
            except OSError as e:
                logger.error(
                    f"Rebind on port {self._port} failed: {e}; "
                    f"retrying in {self._rebind_delay}s"
                )

    async def stop(self) -> None:
        """Stop listening and abort any transfer still in progress."""
        if self._watchdog:
            self._watchdog.cancel()
            await asyncio.gather(self._watchdog, return_exceptions=True)
            self._watchdog = None

        if self._server:
            self._server.close()

        connections = list(self._connections)
        for task in connections:
            task.cancel()
        await asyncio.gather(*connections, return_exceptions=True)

        if self._server:
            await self._server.wait_closed()
            self._server = None
        logger.info("Transfer receiver stopped")

    # --- Per connection ---

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Handle a new incoming TCP connection for file reception."""
        peer = writer.get_extra_info("peername")
        host = peer[0] if peer else ""

        if self._resolver.is_local_address(host):
            logger.warning(f"Rejected transfer from local address {host}")
            await self._close(writer)
            return

        current = asyncio.current_task()
        self._connections.add(current)

        task = ReceiveTask(remote_address=host)
        buffer = bytearray()
        f = None
        failed = False

        try:
            while True:
                try:
                    data = await asyncio.wait_for(
                        reader.read(self._read_size), timeout=self._idle_timeout
                    )
                except asyncio.TimeoutError:
                    logger.warning(
                        f"No data from {host} for {self._idle_timeout}s, aborting receive"
                    )
                    writer.transport.abort()
                    break
                except ConnectionError as e:
                    logger.debug(f"Connection from {host} dropped: {e}")
                    break

                if not data:
                    break

                if task.status == ReceiveState.AWAITING_HEADER:
                    buffer.extend(data)
                    decoded = decode_header(buffer)
                    if decoded is None:
                        continue

                    header, data = decoded
                    buffer.clear()
                    f = await self._open_shielded(task, header)
                    task.status = ReceiveState.STREAMING
                    logger.info(
                        f"Receiving {task.file_name} ({task.expected_bytes} bytes) "
                        f"from {host} into {task.resolved_path}"
                    )
                    if not data:
                        continue

                # Reads stay paused while this write is pending, so the
                # sender's drain() blocks once the socket buffers fill.
                try:
                    await asyncio.to_thread(f.write, data)
                except OSError as e:
                    logger.error(f"Write to {task.resolved_path} failed: {e}")
                    failed = True
                    writer.transport.abort()
                    break

                task.received_bytes += len(data)
                self._bus.publish(events.RECEIVE_PROGRESS, self._describe(task))

        except HeaderError as e:
            logger.warning(f"Dropping connection from {host}: {e}")
            failed = True
            writer.transport.abort()
        except OSError as e:
            logger.error(f"Receive error from {host}: {e}")
            failed = True
            writer.transport.abort()
        finally:
            if f is not None:
                try:
                    f.close()
                except OSError as e:
                    logger.error(f"Closing {task.resolved_path} failed: {e}")
                    failed = True
            self._finalize(task, failed)
            self._connections.discard(current)
            await self._close(writer)

    async def _open_shielded(self, task: ReceiveTask, header: FrameHeader):
        """Open the destination in a worker thread.

        The thread cannot be interrupted, so if the connection is cancelled
        while it runs, whatever it creates is closed and deleted once it
        finishes.
        """
        opening = asyncio.ensure_future(
            asyncio.to_thread(self._open_destination, task, header)
        )
        try:
            return await asyncio.shield(opening)
        except asyncio.CancelledError:
            opening.add_done_callback(_discard_opened)
            raise

    def _open_destination(self, task: ReceiveTask, header: FrameHeader):
        """Create the destination file exclusively and fill in the task."""
        os.makedirs(self._receive_dir, exist_ok=True)
        for _ in range(MAX_NAME_ATTEMPTS):
            path = resolve_destination(self._receive_dir, header.file_name)
            try:
                f = open(path, "xb")
            except FileExistsError:
                # Another connection claimed the name between check and create
                continue

            task.transfer_id = header.transfer_id
            task.file_name = os.path.basename(path)
            task.resolved_path = path
            task.expected_bytes = header.file_size
            return f

        raise FileExistsError(f"No free name for {header.file_name} in {self._receive_dir}")

    def _finalize(self, task: ReceiveTask, failed: bool) -> None:
        """Verify a finished receive; keep the file only if it is complete."""
        if not task.resolved_path:
            # Closed before a full header arrived (e.g. a reachability probe)
            if failed:
                task.status = ReceiveState.FAILED
            logger.debug(f"Connection from {task.remote_address} closed without a transfer")
            return

        try:
            on_disk = os.path.getsize(task.resolved_path)
        except OSError:
            on_disk = 0

        if not failed and is_complete(task.expected_bytes, task.received_bytes, on_disk):
            task.status = ReceiveState.COMPLETED
            logger.info(f"Received {task.file_name} ({task.received_bytes} bytes)")
            self._bus.publish(events.RECEIVE_COMPLETED, self._describe(task))
            return

        task.status = ReceiveState.FAILED
        logger.warning(
            f"Incomplete receive of {task.file_name}: "
            f"{task.received_bytes}/{task.expected_bytes} bytes, deleting"
        )
        _remove_partial(task.resolved_path)
        self._bus.publish(events.RECEIVE_FAILED, self._describe(task))

    @staticmethod
    def _describe(task: ReceiveTask) -> dict:
        data = task.model_dump(mode="json")
        data["progress_percent"] = (
            task.received_bytes / task.expected_bytes * 100
            if task.expected_bytes > 0
            else 100.0
        )
        return data

    @staticmethod
    async def _close(writer: asyncio.StreamWriter) -> None:
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error while closing transfer connection: {e}")
