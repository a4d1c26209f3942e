"""Thread-safe in-memory registry of peers seen on the LAN."""

from threading import RLock

from discovery.models import Peer


class PeerRegistry:
    """Holds the live peer set.

    Every operation takes the same lock, so an upsert from the ingest path
    and a sweep never interleave on the same entry.
    """

    def __init__(self) -> None:
        self._peers: dict[str, Peer] = {}
        self._lock = RLock()

    def upsert(self, peer: Peer) -> bool:
        """Add or update a peer.

        Returns:
            True if the peer is new, False if it was already known.
        """
        with self._lock:
            existing = self._peers.get(peer.id)
            if existing is None:
                self._peers[peer.id] = peer
                return True

            existing.display_name = peer.display_name
            existing.status = peer.status
            existing.shared_dir = peer.shared_dir
            existing.last_seen_at = max(existing.last_seen_at, peer.last_seen_at)
            return False

    def get(self, peer_id: str) -> Peer | None:
        with self._lock:
            peer = self._peers.get(peer_id)
            return peer.model_copy() if peer else None

    def remove(self, peer_id: str) -> Peer | None:
        with self._lock:
            return self._peers.pop(peer_id, None)

    def peers(self) -> list[Peer]:
        """Snapshot copy of every known peer."""
        with self._lock:
            return [p.model_copy() for p in self._peers.values()]

    def expire(self, now: float, threshold: float) -> list[Peer]:
        """Remove and return peers not seen for more than ``threshold`` seconds."""
        with self._lock:
            stale = [
                peer for peer in self._peers.values()
                if now - peer.last_seen_at > threshold
            ]
            for peer in stale:
                del self._peers[peer.id]
            return stale

    def clear(self) -> None:
        with self._lock:
            self._peers.clear()

    def __contains__(self, peer_id: object) -> bool:
        with self._lock:
            return peer_id in self._peers

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)
