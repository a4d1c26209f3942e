"""Errors reported to callers of the transfer operations."""

SELF_TRANSFER = "SELF_TRANSFER"
ENOENT = "ENOENT"
EACCES = "EACCES"
EISDIR = "EISDIR"
EFBIG = "EFBIG"
ECONNREFUSED = "ECONNREFUSED"
ETIMEDOUT = "ETIMEDOUT"


class TransferError(Exception):
    """A transfer request that was rejected, with a machine-readable code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}

    @property
    def is_connectivity(self) -> bool:
        return self.code in (ECONNREFUSED, ETIMEDOUT)
