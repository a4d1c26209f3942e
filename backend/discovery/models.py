"""Pydantic models for peer discovery."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class PeerStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class Peer(BaseModel):
    """Represents a discovered device on the LAN."""
    id: str  # primary address of the peer
    display_name: str
    status: PeerStatus = PeerStatus.ONLINE
    last_seen_at: float  # Unix timestamp
    shared_dir: str = ""  # informational only


class Announcement(BaseModel):
    """The JSON payload sent over UDP."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    ip: str
    status: PeerStatus = PeerStatus.ONLINE
    last_seen: int = Field(alias="lastSeen")  # epoch milliseconds
    shared_dir: str = Field(default="", alias="sharedDir")

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")
