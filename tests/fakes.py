"""Test doubles shared by the test modules."""

import asyncio
import time

from network.addresses import AddressResolver


class FakeResolver(AddressResolver):
    """Resolver with a fixed address table.

    Loopback is *not* local unless listed, so tests can run a sender and
    a receiver over 127.0.0.1 as if they were two machines.
    """

    def __init__(self, local=(), broadcasts=(), primary="10.0.0.5"):
        self.local = set(local)
        self.broadcasts = list(broadcasts)
        self.primary = primary

    def list_local_addresses(self) -> set[str]:
        return set(self.local)

    def is_local_address(self, address: str) -> bool:
        return address in self.local

    def interface_broadcast_addresses(self) -> list[str]:
        return list(self.broadcasts)

    def primary_address(self) -> str:
        return self.primary


class EventRecorder:
    """Bus subscriber that keeps every event it sees."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def __call__(self, event: str, data: dict) -> None:
        self.events.append((event, data))

    def of(self, name: str) -> list[dict]:
        return [data for event, data in self.events if event == name]

    def names(self) -> list[str]:
        return [event for event, _ in self.events]

    async def wait_for(self, name: str, count: int = 1, timeout: float = 10.0) -> list[dict]:
        deadline = time.monotonic() + timeout
        while len(self.of(name)) < count:
            if time.monotonic() > deadline:
                raise AssertionError(f"timed out waiting for {count} x {name}: {self.names()}")
            await asyncio.sleep(0.01)
        return self.of(name)


async def wait_until(predicate, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def wait_for_stall(read_progress, interval: float = 0.3, timeout: float = 10.0) -> int:
    """Wait until ``read_progress()`` stops changing; returns where it stopped."""
    deadline = time.monotonic() + timeout
    last = read_progress()
    while True:
        await asyncio.sleep(interval)
        current = read_progress()
        if current == last:
            return current
        if time.monotonic() > deadline:
            raise AssertionError(f"progress never stalled, last seen {current}")
        last = current


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now
