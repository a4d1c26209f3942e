"""Pydantic models for file transfer."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class TransferState(str, Enum):
    """All possible states for an outbound file transfer."""
    PENDING = "pending"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({
    TransferState.COMPLETED,
    TransferState.ERROR,
    TransferState.CANCELLED,
})


class ReceiveState(str, Enum):
    """Lifecycle of one inbound connection."""
    AWAITING_HEADER = "awaiting_header"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


class TransferTask(BaseModel):
    """Full state of a single outbound transfer, exposed to the frontend."""
    id: str
    source_path: str
    file_name: str
    target_address: str
    target_name: str
    status: TransferState = TransferState.PENDING
    total_bytes: int = 0
    transferred_bytes: int = 0
    progress_percent: float = 0.0
    speed_bps: float = 0.0
    started_at: float = 0.0  # Unix timestamp
    error_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


class ReceiveTask(BaseModel):
    """State of one inbound transfer, alive for the duration of a connection."""
    transfer_id: str = ""
    remote_address: str
    file_name: str = ""
    resolved_path: str = ""
    expected_bytes: int = 0
    received_bytes: int = 0
    status: ReceiveState = ReceiveState.AWAITING_HEADER


class TransferRequest(BaseModel):
    """API body for initiating a transfer."""
    source_path: str
    target_address: str


# --- Wire protocol ---

class FrameHeader(BaseModel):
    """Metadata line sent before the file body."""
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(alias="fileName", min_length=1)
    file_size: int = Field(alias="fileSize", ge=0)
    transfer_id: str = Field(alias="transferId")
