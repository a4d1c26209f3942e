"""
Transfer Manager: orchestrates outbound transfers and the receiver.

Owns the transfer-task table, validates send requests, runs each send as
its own asyncio task, and turns state changes into bus events.
"""

import asyncio
import logging
import os
import time

import events
from config import CONNECT_TIMEOUT, MAX_FILE_SIZE, PROBE_TIMEOUT, TRANSFER_PORT
from discovery.registry import PeerRegistry
from network.addresses import AddressResolver
from transfer.models import TransferState, TransferTask
from transfer.receiver import TransferReceiver
from transfer.sender import CancelToken, probe, send_file, validate_source

logger = logging.getLogger(__name__)


class TransferManager:
    """Manages all outbound transfers and the inbound listener.

    Task state is only changed on the event loop thread, through
    ``_on_state_change``, which refuses to move a task out of a terminal
    state. A cancel and a progress update therefore never interleave.
    """

    def __init__(
        self,
        bus: events.EventBus,
        resolver: AddressResolver | None = None,
        receiver: TransferReceiver | None = None,
        registry: PeerRegistry | None = None,
        transfer_port: int = TRANSFER_PORT,
        max_file_size: int = MAX_FILE_SIZE,
        connect_timeout: float = CONNECT_TIMEOUT,
        probe_timeout: float = PROBE_TIMEOUT,
    ) -> None:
        self._bus = bus
        self._resolver = resolver or AddressResolver()
        self.receiver = receiver or TransferReceiver(bus, resolver=self._resolver)
        self._registry = registry
        self._transfer_port = transfer_port
        self._max_file_size = max_file_size
        self._connect_timeout = connect_timeout
        self._probe_timeout = probe_timeout

        self._transfers: dict[str, TransferTask] = {}
        self._tokens: dict[str, CancelToken] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._last_id = 0

    async def start(self) -> None:
        """Start the receiver listener."""
        await self.receiver.start()

    async def stop(self) -> None:
        """Stop all transfers and the receiver listener."""
        for transfer_id in list(self._tokens):
            self.cancel_transfer(transfer_id)

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        await self.receiver.stop()
        logger.info("Transfer manager stopped")

    def get_transfers(self) -> list[TransferTask]:
        """Return all transfers."""
        return list(self._transfers.values())

    def get_transfer(self, transfer_id: str) -> TransferTask | None:
        return self._transfers.get(transfer_id)

    def _next_id(self) -> str:
        """Millisecond timestamp, bumped so ids stay strictly increasing."""
        now_ms = int(time.time() * 1000)
        self._last_id = max(self._last_id + 1, now_ms)
        return str(self._last_id)

    async def start_transfer(
        self,
        source_path: str,
        target_address: str,
        target_name: str | None = None,
    ) -> str:
        """
        Validate a send request and start streaming in the background.

        Returns:
            The new task id.

        Raises:
            TransferError: SELF_TRANSFER, ENOENT, EACCES, EISDIR, EFBIG
                or ECONNREFUSED.
        """
        size = validate_source(
            source_path, target_address, self._resolver, self._max_file_size
        )
        await probe(target_address, self._transfer_port, self._probe_timeout)

        if target_name is None:
            peer = self._registry.get(target_address) if self._registry else None
            target_name = peer.display_name if peer else target_address

        task = TransferTask(
            id=self._next_id(),
            source_path=source_path,
            file_name=os.path.basename(source_path),
            target_address=target_address,
            target_name=target_name,
            total_bytes=size,
            started_at=time.time(),
        )
        token = CancelToken()
        self._transfers[task.id] = task
        self._tokens[task.id] = token

        self._tasks[task.id] = asyncio.create_task(self._send_file_task(task, token))
        logger.info(f"Queued {task.file_name} ({size} bytes) for {target_name} [{task.id}]")
        return task.id

    async def _send_file_task(self, task: TransferTask, token: CancelToken) -> None:
        """Task wrapper for sending a single file."""
        try:
            await send_file(
                task=task,
                token=token,
                port=self._transfer_port,
                progress_callback=self._on_progress,
                state_callback=self._on_state_change,
                connect_timeout=self._connect_timeout,
            )
        finally:
            # Clean up task reference
            self._tasks.pop(task.id, None)
            self._tokens.pop(task.id, None)

    async def join(self, transfer_id: str) -> TransferTask | None:
        """Wait until a running send has finished and return its task."""
        running = self._tasks.get(transfer_id)
        if running:
            await asyncio.gather(running, return_exceptions=True)
        return self._transfers.get(transfer_id)

    def cancel_transfer(self, transfer_id: str) -> bool:
        """Cancel a transfer. Returns False if it is unknown or already finished."""
        task = self._transfers.get(transfer_id)
        if task is None or task.is_terminal:
            return False

        if not self._on_state_change(task, TransferState.CANCELLED):
            return False

        token = self._tokens.get(transfer_id)
        if token:
            token.cancel()
        logger.info(f"Transfer {transfer_id} cancelled")
        return True

    def _on_progress(self, task: TransferTask) -> None:
        """Called by the sender after every chunk."""
        if task.status != TransferState.TRANSFERRING:
            return
        self._bus.publish(events.TRANSFER_PROGRESS, task.model_dump(mode="json"))

    def _on_state_change(
        self,
        task: TransferTask,
        state: TransferState,
        error_message: str | None = None,
    ) -> bool:
        """Apply a transition unless the task already reached a terminal state."""
        if task.is_terminal:
            return False

        task.status = state
        if error_message is not None:
            task.error_message = error_message

        data = task.model_dump(mode="json")
        if state == TransferState.TRANSFERRING:
            self._bus.publish(events.TRANSFER_PROGRESS, data)
        elif state == TransferState.COMPLETED:
            logger.info(f"'{task.file_name}' sent to {task.target_name}")
            self._bus.publish(events.TRANSFER_COMPLETED, data)
        elif state == TransferState.ERROR:
            logger.error(f"Transfer of '{task.file_name}' failed: {task.error_message}")
            self._bus.publish(events.TRANSFER_ERROR, data)
        elif state == TransferState.CANCELLED:
            self._bus.publish(events.TRANSFER_CANCELLED, data)
        return True
