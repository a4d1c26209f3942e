"""
Outbound side of a file transfer.

Validates a send request, then streams the file over one TCP connection:
header line first, body in fixed-size chunks, with ``drain()`` after every
chunk so a slow receiver throttles how fast the file is read.
"""

import asyncio
import logging
import os
import time

from config import (
    CHUNK_SIZE,
    CONNECT_TIMEOUT,
    MAX_FILE_SIZE,
    PROBE_TIMEOUT,
    SPEED_SAMPLE_INTERVAL,
)
from network.addresses import AddressResolver
from transfer.errors import (
    EACCES,
    ECONNREFUSED,
    EFBIG,
    EISDIR,
    ENOENT,
    ETIMEDOUT,
    SELF_TRANSFER,
    TransferError,
)
from transfer.models import FrameHeader, TransferState, TransferTask
from transfer.protocol import encode_header

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation flag for one transfer.

    The streaming loop checks ``cancelled`` at every chunk boundary.
    Callbacks registered with ``add_callback`` run once, on cancel, and are
    used to abort the socket so buffered bytes do not keep it alive.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """Returns False if the token was already cancelled."""
        if self._cancelled:
            return False
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception as e:
                logger.warning(f"Cancel callback failed: {e}")
        return True

    def add_callback(self, callback) -> None:
        self._callbacks.append(callback)

    def remove_callback(self, callback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)


class SpeedMeter:
    """Running-average speed (bytes so far / elapsed), resampled at most once per interval."""

    def __init__(self, interval: float = SPEED_SAMPLE_INTERVAL, clock=time.monotonic):
        self._interval = interval
        self._clock = clock
        self._started = clock()
        self._last_sample = self._started
        self.speed = 0.0

    def update(self, total_bytes: int) -> bool:
        """Record progress; returns True if ``speed`` was recomputed."""
        now = self._clock()
        if now - self._last_sample < self._interval:
            return False
        elapsed = now - self._started
        if elapsed > 0:
            self.speed = total_bytes / elapsed
        self._last_sample = now
        return True


def validate_source(
    source_path: str,
    target_address: str,
    resolver: AddressResolver,
    max_size: int = MAX_FILE_SIZE,
) -> int:
    """
    Check a send request before any connection is opened.

    Returns:
        The size of the source file in bytes.

    Raises:
        TransferError: with code SELF_TRANSFER, ENOENT, EACCES, EISDIR or EFBIG.
    """
    if resolver.is_local_address(target_address):
        raise TransferError(SELF_TRANSFER, "Cannot send a file to this device")

    if not os.path.exists(source_path):
        raise TransferError(ENOENT, f"File not found: {source_path}")
    if not os.access(source_path, os.R_OK):
        raise TransferError(EACCES, f"Permission denied: {source_path}")
    if os.path.isdir(source_path):
        raise TransferError(EISDIR, f"Cannot send a directory: {source_path}")

    size = os.path.getsize(source_path)
    if size > max_size:
        raise TransferError(
            EFBIG, f"File is {size} bytes, larger than the {max_size} byte limit"
        )
    return size


async def probe(host: str, port: int, timeout: float = PROBE_TIMEOUT) -> None:
    """Make sure the peer accepts TCP connections on its transfer port."""
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except asyncio.TimeoutError as e:
        raise TransferError(
            ECONNREFUSED, f"{host}:{port} did not answer within {timeout}s"
        ) from e
    except OSError as e:
        raise TransferError(
            ECONNREFUSED, f"{host}:{port} is not accepting transfers: {e}"
        ) from e

    writer.close()
    try:
        await writer.wait_closed()
    except OSError as e:
        logger.debug(f"Probe connection to {host}:{port} closed with error: {e}")


async def _connect(host: str, port: int, timeout: float):
    try:
        return await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except asyncio.TimeoutError as e:
        raise TransferError(
            ETIMEDOUT, f"Timed out connecting to {host}:{port} after {timeout}s"
        ) from e
    except ConnectionRefusedError as e:
        raise TransferError(ECONNREFUSED, f"Connection refused by {host}:{port}") from e


async def send_file(
    task: TransferTask,
    token: CancelToken,
    port: int,
    progress_callback,
    state_callback,
    chunk_size: int = CHUNK_SIZE,
    connect_timeout: float = CONNECT_TIMEOUT,
) -> None:
    """
    Stream one file to a peer.

    Args:
        task: TransferTask whose progress fields are updated in place.
        token: Checked before every chunk; cancelling stops the transfer.
        port: TCP port the receiver is listening on.
        progress_callback: fn(task) called after every chunk.
        state_callback: fn(task, state, error_message=None) for transitions.
    """
    writer: asyncio.StreamWriter | None = None
    abort = None

    try:
        _, writer = await _connect(task.target_address, port, connect_timeout)
        if token.cancelled:
            return

        abort = writer.transport.abort
        token.add_callback(abort)
        state_callback(task, TransferState.TRANSFERRING)

        header = FrameHeader(
            file_name=task.file_name,
            file_size=task.total_bytes,
            transfer_id=task.id,
        )
        writer.write(encode_header(header))
        await writer.drain()

        meter = SpeedMeter()
        with open(task.source_path, "rb") as f:
            # Never send more than the header announced, even if the file grew
            while task.transferred_bytes < task.total_bytes:
                if token.cancelled:
                    return

                want = min(chunk_size, task.total_bytes - task.transferred_bytes)
                chunk = await asyncio.to_thread(f.read, want)
                if not chunk:
                    break

                writer.write(chunk)
                # Blocks while the transport is above its high-water mark
                await writer.drain()

                if token.cancelled:
                    return

                task.transferred_bytes += len(chunk)
                task.progress_percent = task.transferred_bytes / task.total_bytes * 100
                if meter.update(task.transferred_bytes):
                    task.speed_bps = meter.speed
                progress_callback(task)

        if writer.can_write_eof():
            writer.write_eof()
        # close() flushes what is still buffered; wait_closed() returns once it is out
        writer.close()
        await writer.wait_closed()
        if token.cancelled:
            return

        if task.transferred_bytes < task.total_bytes:
            state_callback(task, TransferState.ERROR, "file shrank while it was being sent")
            return

        task.progress_percent = 100.0
        state_callback(task, TransferState.COMPLETED)

    except TransferError as e:
        logger.warning(f"Send of {task.file_name} to {task.target_address} failed: {e.message}")
        state_callback(task, TransferState.ERROR, e.message)
    except asyncio.CancelledError:
        state_callback(task, TransferState.CANCELLED)
        raise
    except (ConnectionResetError, BrokenPipeError, ConnectionAbortedError) as e:
        if token.cancelled:
            return
        logger.error(f"Send error for {task.file_name}: {e}")
        state_callback(task, TransferState.ERROR, "connection closed unexpectedly")
    except Exception as e:
        if token.cancelled:
            return
        logger.error(f"Send error for {task.file_name}: {e}")
        state_callback(task, TransferState.ERROR, str(e) or e.__class__.__name__)
    finally:
        if abort is not None:
            token.remove_callback(abort)
        if writer:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"Connection for {task.id} closed with error: {e}")
